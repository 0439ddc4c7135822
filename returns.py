"""
Return eligibility for order line items.
"""
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Any, Dict, Iterable, Optional

RETURN_WINDOW_DAYS = 4

# Statuses that end an order's return story for good.
CLOSED_ORDER_STATUSES = {"Cancelled", "Returned"}

# An existing request in one of these states blocks filing another one for the same item.
BLOCKING_RETURN_STATUSES = {"Pending", "Approved", "Processing", "Completed"}


def _local_day(value: datetime, tz: tzinfo):
    # pymongo hands back naive datetimes in UTC
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(tz).date()


def return_block_reason(order: Dict[str, Any], product_id: str, existing_returns: Iterable[Dict[str, Any]],
                        now: Optional[datetime] = None, tz: tzinfo = timezone.utc,
                        window_days: int = RETURN_WINDOW_DAYS) -> Optional[str]:
    """Return why `product_id` in `order` cannot be returned, or None when a return may be filed.

    The window is counted in calendar days in `tz`: an order placed on day 0 can be returned up to
    and including day `window_days`, whatever the time of day on either end.
    """
    if order.get("status") in CLOSED_ORDER_STATUSES:
        return f"Order is {order['status'].lower()}."
    order_id = str(order.get("_id", order.get("id", "")))
    for rr in existing_returns:
        if rr.get("order_id") == order_id and rr.get("product_id") == product_id \
                and rr.get("status") in BLOCKING_RETURN_STATUSES:
            return f"A return for this item is already {rr['status'].lower()}."
    now = now or datetime.now(timezone.utc)
    earliest = _local_day(now, tz) - timedelta(days=window_days)
    if _local_day(order["created_at"], tz) < earliest:
        return "Return window closed."
    return None


def is_return_eligible(order: Dict[str, Any], product_id: str, existing_returns: Iterable[Dict[str, Any]],
                       now: Optional[datetime] = None, tz: tzinfo = timezone.utc,
                       window_days: int = RETURN_WINDOW_DAYS) -> bool:
    return return_block_reason(order, product_id, existing_returns, now, tz, window_days) is None


def kept_product_count(orders: Iterable[Dict[str, Any]], returns: Iterable[Dict[str, Any]]) -> int:
    """Units the customer has kept: lines of live orders without an accepted return."""
    returns = list(returns)
    count = 0
    for order in orders:
        if order.get("status") in ("Cancelled", "Returned", "Payment Failed"):
            continue
        order_id = str(order.get("_id", order.get("id", "")))
        for item in order.get("items", []):
            returned = any(
                rr.get("order_id") == order_id and rr.get("product_id") == item["product_id"]
                and rr.get("status") in ("Approved", "Processing", "Completed")
                for rr in returns
            )
            if not returned:
                count += int(item.get("quantity", 0))
    return count
