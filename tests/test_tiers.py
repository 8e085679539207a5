from __future__ import annotations

import pytest

from reconcile.tiers import count_qualifying_orders, order_qualifies, tier_for_count, tier_tag


def order(**overrides) -> dict:
    base = {
        "id": "gid://shopify/Order/1",
        "createdAt": "2025-03-10T12:00:00Z",
        "displayFulfillmentStatus": "FULFILLED",
        "cancelledAt": None,
        "closedAt": "2025-03-20T12:00:00Z",
        "tags": [],
    }
    base.update(overrides)
    return base


@pytest.mark.parametrize(
    "count, tier",
    [(0, "Bronze"), (5, "Bronze"), (6, "Silver"), (10, "Silver"), (11, "Gold"), (25, "Gold"), (26, "Platinum")],
)
def test_tier_thresholds(count, tier) -> None:
    assert tier_for_count(count) == tier


def test_tier_tag() -> None:
    assert tier_tag("Gold") == "Tier_Gold"


@pytest.mark.parametrize(
    "overrides",
    [
        {"displayFulfillmentStatus": "UNFULFILLED"},
        {"cancelledAt": "2025-03-11T00:00:00Z"},
        {"closedAt": None},
        {"tags": ["wholesale", "tier_exclude"]},
        {"createdAt": "2024-12-31T23:00:00Z"},
    ],
)
def test_non_qualifying_orders(overrides) -> None:
    assert not order_qualifies(order(**overrides), 2025)


def test_qualifying_order() -> None:
    assert order_qualifies(order(), 2025)


def test_count_qualifying_orders_for_a_year() -> None:
    orders = [order() for _ in range(6)] + [order(cancelledAt="2025-01-02T00:00:00Z"), order(createdAt="2023-01-01T00:00:00Z")]
    assert count_qualifying_orders(iter(orders), 2025) == 6
    assert tier_for_count(count_qualifying_orders(orders, 2025)) == "Silver"
