from datetime import datetime, timezone
from zoneinfo import ZoneInfo

from returns import is_return_eligible, kept_product_count, return_block_reason

UTC = timezone.utc


def order(**overrides):
    doc = {"_id": "o1", "status": "Delivered", "created_at": datetime(2024, 6, 1, 23, 59, tzinfo=UTC),
           "items": [{"product_id": "p1", "quantity": 2}, {"product_id": "p2", "quantity": 1}]}
    doc.update(overrides)
    return doc


def test_window_counts_calendar_days():
    placed = order()
    assert is_return_eligible(placed, "p1", [], now=datetime(2024, 6, 5, 0, 1, tzinfo=UTC))
    assert is_return_eligible(placed, "p1", [], now=datetime(2024, 6, 5, 23, 59, tzinfo=UTC))
    assert not is_return_eligible(placed, "p1", [], now=datetime(2024, 6, 6, 0, 1, tzinfo=UTC))
    assert return_block_reason(placed, "p1", [], now=datetime(2024, 6, 6, tzinfo=UTC)) == "Return window closed."


def test_naive_created_at_is_treated_as_utc():
    placed = order(created_at=datetime(2024, 6, 1, 20, 0))
    ist = ZoneInfo("Asia/Kolkata")
    # 20:00 UTC is already June 2nd in India
    assert is_return_eligible(placed, "p1", [], now=datetime(2024, 6, 6, 10, 0, tzinfo=ist), tz=ist)
    assert not is_return_eligible(placed, "p1", [], now=datetime(2024, 6, 7, 10, 0, tzinfo=ist), tz=ist)


def test_cancelled_and_returned_orders_block():
    now = datetime(2024, 6, 2, tzinfo=UTC)
    assert return_block_reason(order(status="Cancelled"), "p1", [], now=now) == "Order is cancelled."
    assert not is_return_eligible(order(status="Returned"), "p1", [], now=now)


def test_existing_requests_block_unless_rejected_or_cancelled():
    now = datetime(2024, 6, 2, tzinfo=UTC)
    for status in ("Pending", "Approved", "Processing", "Completed"):
        existing = [{"order_id": "o1", "product_id": "p1", "status": status}]
        assert not is_return_eligible(order(), "p1", existing, now=now)
        assert is_return_eligible(order(), "p2", existing, now=now)
    for status in ("Rejected", "Cancelled"):
        existing = [{"order_id": "o1", "product_id": "p1", "status": status}]
        assert is_return_eligible(order(), "p1", existing, now=now)


def test_requests_for_other_orders_do_not_block():
    existing = [{"order_id": "o2", "product_id": "p1", "status": "Pending"}]
    assert is_return_eligible(order(), "p1", existing, now=datetime(2024, 6, 2, tzinfo=UTC))


def test_kept_product_count():
    orders = [
        order(),
        order(_id="o2", status="Cancelled"),
        order(_id="o3", status="Payment Failed"),
        order(_id="o4", items=[{"product_id": "p9", "quantity": 4}]),
    ]
    returns = [
        {"order_id": "o1", "product_id": "p2", "status": "Completed"},
        {"order_id": "o4", "product_id": "p9", "status": "Rejected"},
    ]
    assert kept_product_count(orders, returns) == 2 + 4
