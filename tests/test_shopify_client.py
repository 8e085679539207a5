from __future__ import annotations

import copy

import pytest

from admin_api import shopify_client
from admin_api.errors import (
    BENIGN,
    FAILURE,
    OK,
    TransportError,
    UserErrorsError,
    check_user_errors,
    classify_user_errors,
)
from admin_api.shopify_client import ShopifyClient

ROLE_DUPLICATE = {"field": ["rolesToAssign", "0"], "message": "Company contact has already been assigned a role at this location."}


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: dict | None = None, headers: dict | None = None):
        self.status_code = status_code
        self._payload = payload or {}
        self.headers = headers or {}
        self.text = str(payload)

    def json(self) -> dict:
        return self._payload


class FakeSession:
    def __init__(self, responses: list):
        self.responses = list(responses)
        self.headers = {}
        self.posts = []

    def post(self, url, json=None, timeout=None):
        self.posts.append((url, copy.deepcopy(json)))
        return self.responses.pop(0)


@pytest.fixture()
def sleeps(monkeypatch: pytest.MonkeyPatch) -> list:
    recorded = []
    monkeypatch.setattr(shopify_client.time, "sleep", recorded.append)
    return recorded


def make(session: FakeSession) -> ShopifyClient:
    return ShopifyClient("TARGET", session=session)


def test_client_reads_prefixed_env(shop_env) -> None:
    session = FakeSession([])
    client = make(session)
    assert client.endpoint == "https://target-shop.myshopify.com/admin/api/2025-10/graphql.json"
    assert session.headers["X-Shopify-Access-Token"] == "shpat_target"

    source = ShopifyClient("SOURCE", session=FakeSession([]))
    assert source.shop_url == "https://source-shop.myshopify.com"


def test_missing_env_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("TARGET_SHOP", raising=False)
    monkeypatch.delenv("TARGET_ACCESS_TOKEN", raising=False)
    with pytest.raises(EnvironmentError):
        ShopifyClient("TARGET", session=FakeSession([]))


def test_http_429_retries_the_identical_request(shop_env, sleeps) -> None:
    session = FakeSession([
        FakeResponse(429, headers={"Retry-After": "1"}),
        FakeResponse(429),
        FakeResponse(200, {"data": {"shop": {"name": "Target"}}}),
    ])
    data = make(session).data("{ shop { name } }", {"x": 1})

    assert data == {"shop": {"name": "Target"}}
    assert len(session.posts) == 3
    assert session.posts[0] == session.posts[1] == session.posts[2]
    assert sleeps == [pytest.approx(1.8), pytest.approx(1.6)]


def test_throttled_graphql_error_is_retried(shop_env, sleeps) -> None:
    throttled = {"errors": [{"message": "Throttled", "extensions": {"code": "THROTTLED"}}]}
    session = FakeSession([FakeResponse(200, throttled), FakeResponse(200, {"data": {"ok": True}})])
    assert make(session).data("{ ok }") == {"ok": True}
    assert sleeps == [pytest.approx(0.8)]


def test_rate_limit_gives_up_after_max_attempts(shop_env, sleeps) -> None:
    session = FakeSession([FakeResponse(429) for _ in range(shopify_client.MAX_ATTEMPTS)])
    with pytest.raises(TransportError) as excinfo:
        make(session).graphql("{ shop { name } }")
    assert excinfo.value.status == 429
    assert len(session.posts) == shopify_client.MAX_ATTEMPTS
    assert len(sleeps) == shopify_client.MAX_ATTEMPTS - 1


def test_other_http_errors_are_not_retried(shop_env, sleeps) -> None:
    session = FakeSession([FakeResponse(500, {"error": "boom"})])
    with pytest.raises(TransportError) as excinfo:
        make(session).graphql("{ shop { name } }")
    assert excinfo.value.status == 500
    assert sleeps == []


def test_top_level_errors_raise(shop_env, sleeps) -> None:
    session = FakeSession([FakeResponse(200, {"errors": [{"message": "Field 'nope' doesn't exist"}]})])
    with pytest.raises(TransportError, match="nope"):
        make(session).data("{ nope }")


def test_low_throttle_budget_pauses(shop_env, sleeps) -> None:
    payload = {"data": {}, "extensions": {"cost": {"throttleStatus": {"currentlyAvailable": 40}}}}
    make(FakeSession([FakeResponse(200, payload)])).graphql("{ shop { id } }")
    assert sleeps == [2]


def test_mutation_user_errors_raise(shop_env, sleeps) -> None:
    payload = {"data": {"companyCreate": {"company": None, "userErrors": [{"field": ["input", "name"], "message": "Name can't be blank"}]}}}
    with pytest.raises(UserErrorsError) as excinfo:
        make(FakeSession([FakeResponse(200, payload)])).mutate("companyCreate", "mutation { x }")
    assert excinfo.value.operation == "companyCreate"
    assert "input.name: Name can't be blank" in str(excinfo.value)


def test_duplicate_role_assignment_is_a_no_op(shop_env, sleeps) -> None:
    payload = {"data": {"companyLocationAssignRoles": {"roleAssignments": [], "userErrors": [ROLE_DUPLICATE]}}}
    result = make(FakeSession([FakeResponse(200, payload)])).assign_location_roles(
        "gid://shopify/CompanyLocation/1", [{"companyContactId": "c", "companyContactRoleId": "r"}]
    )
    assert result is not None


def test_paginate_follows_end_cursor(shop_env, sleeps) -> None:
    pages = [
        {"data": {"products": {"nodes": [{"id": 1}], "pageInfo": {"hasNextPage": True, "endCursor": "c1"}}}},
        {"data": {"products": {"nodes": [{"id": 2}], "pageInfo": {"hasNextPage": False, "endCursor": None}}}},
    ]
    session = FakeSession([FakeResponse(200, page) for page in pages])
    nodes = list(make(session).paginate("query", {"query": None}, ("products",)))

    assert nodes == [{"id": 1}, {"id": 2}]
    assert "cursor" not in session.posts[0][1]["variables"]
    assert session.posts[1][1]["variables"]["cursor"] == "c1"


def test_set_metafields_batches_by_25(shop_env, sleeps) -> None:
    ok = {"data": {"metafieldsSet": {"metafields": [], "userErrors": []}}}
    session = FakeSession([FakeResponse(200, ok) for _ in range(3)])
    metafields = [{"ownerId": "o", "namespace": "custom", "key": f"k{i}", "type": "number_integer", "value": str(i)}
                  for i in range(60)]

    assert make(session).set_metafields(metafields) == 60
    assert [len(json["variables"]["metafields"]) for _, json in session.posts] == [25, 25, 10]


def test_wait_for_file_ready_times_out_without_raising(shop_env, sleeps, monkeypatch: pytest.MonkeyPatch) -> None:
    ticks = iter([0, 0])
    monkeypatch.setattr(shopify_client.time, "time", lambda: next(ticks, 1000))
    processing = {"data": {"node": {"fileStatus": "PROCESSING", "fileErrors": []}}}
    session = FakeSession([FakeResponse(200, processing), FakeResponse(200, processing)])

    result = make(session).wait_for_file_ready("gid://shopify/GenericFile/1", timeout=600)
    assert result == {"status": "PROCESSING", "url": "", "timed_out": True}


def test_classify_user_errors() -> None:
    assert classify_user_errors("companyLocationAssignRoles", []) == OK
    assert classify_user_errors("companyLocationAssignRoles", [ROLE_DUPLICATE]) == BENIGN
    assert classify_user_errors("companyContactAssignRoles", [ROLE_DUPLICATE]) == FAILURE
    mixed = [ROLE_DUPLICATE, {"message": "Role does not exist"}]
    assert classify_user_errors("companyLocationAssignRoles", mixed) == FAILURE
    with pytest.raises(UserErrorsError):
        check_user_errors("companyLocationAssignRoles", mixed)
    assert check_user_errors("companyLocationAssignRoles", [ROLE_DUPLICATE]) is True
    assert check_user_errors("customerCreate", None) is False
