"""Customer tier derived from the number of qualifying orders in a calendar year."""

from __future__ import annotations

from datetime import datetime

# (exclusive lower bound, tier), highest first
TIER_THRESHOLDS = (
    (25, "Platinum"),
    (10, "Gold"),
    (5, "Silver"),
)
DEFAULT_TIER = "Bronze"
EXCLUDE_TAG = "tier_exclude"


def tier_for_count(count: int) -> str:
    for threshold, tier in TIER_THRESHOLDS:
        if count > threshold:
            return tier
    return DEFAULT_TIER


def tier_tag(tier: str) -> str:
    return f"Tier_{tier}"


def order_year(order: dict) -> int | None:
    created = order.get("createdAt")
    if not created:
        return None
    return datetime.fromisoformat(str(created).replace("Z", "+00:00")).year


def order_qualifies(order: dict, year: int) -> bool:
    """Fulfilled, closed, not cancelled, not tagged out, and created in `year`."""
    return (
        order_year(order) == year
        and order.get("displayFulfillmentStatus") == "FULFILLED"
        and order.get("cancelledAt") is None
        and order.get("closedAt") is not None
        and EXCLUDE_TAG not in (order.get("tags") or [])
    )


def count_qualifying_orders(orders, year: int | None = None) -> int:
    year = year or datetime.now().year
    return sum(1 for order in orders if order_qualifies(order, year))
