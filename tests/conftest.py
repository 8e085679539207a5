from __future__ import annotations

import pytest

# Methods whose real counterpart returns a list. Unconfigured calls get an empty one.
LIST_METHODS = {
    "search_nodes",
    "find_companies",
    "find_customers",
    "get_metafields",
    "list_metafield_definitions",
    "list_company_contacts",
    "list_publications",
    "list_locations",
    "automatic_discounts_by_title",
}


class FakeClient:
    """
    Stands in for ShopifyClient.

    Every method call is recorded in `calls` as (name, args, kwargs). The
    answer comes from `responses[name]`: an exception instance is raised, a
    callable is called with the same arguments, anything else is returned.
    """

    def __init__(self, **responses):
        self.responses = responses
        self.calls = []
        self.label = "FAKE"
        self.shop_url = "https://fake.myshopify.com"

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)

        def method(*args, **kwargs):
            self.calls.append((name, args, kwargs))
            if name not in self.responses:
                return [] if name in LIST_METHODS else None
            response = self.responses[name]
            if isinstance(response, Exception):
                raise response
            if callable(response):
                return response(*args, **kwargs)
            return response

        return method

    def called(self, name: str) -> list:
        return [(args, kwargs) for call, args, kwargs in self.calls if call == name]


@pytest.fixture()
def make_client():
    return FakeClient


@pytest.fixture()
def shop_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SOURCE_SHOP", "source-shop.myshopify.com")
    monkeypatch.setenv("SOURCE_ACCESS_TOKEN", "shpat_source")
    monkeypatch.setenv("TARGET_SHOP", "https://target-shop.myshopify.com/")
    monkeypatch.setenv("TARGET_ACCESS_TOKEN", "shpat_target")
    monkeypatch.setenv("API_VERSION", "2025-10")
