"""
Cart pricing and coupon validity.

Totals are never stored on the cart: they are derived from the current lines and the attached
coupon every time the cart is read or changed, so a coupon that stops qualifying drops out on
its own.
"""
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, Optional


def parse_valid_till(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def cart_subtotal(items: Iterable[Dict[str, Any]]) -> float:
    return round(sum(float(i["price"]) * int(i["quantity"]) for i in items), 2)


def coupon_rejection(coupon: Dict[str, Any], subtotal: float, now: Optional[datetime] = None) -> Optional[str]:
    """Return why the coupon does not apply to `subtotal` right now, or None if it does."""
    now = now or datetime.now(timezone.utc)
    if not coupon.get("is_active", False):
        return "This coupon is no longer active."
    if coupon.get("valid_till") and now.date() > parse_valid_till(coupon["valid_till"]):
        return "This coupon has expired."
    min_amount = float(coupon.get("min_amount") or 0)
    if subtotal < min_amount:
        return f"You need to spend at least {min_amount:.2f} to use this coupon. Current subtotal is {subtotal:.2f}."
    max_uses = coupon.get("max_uses")
    if max_uses is not None and int(coupon.get("times_used") or 0) >= int(max_uses):
        return "This coupon has reached its maximum usage limit."
    return None


def compute_totals(items: Iterable[Dict[str, Any]], coupon: Optional[Dict[str, Any]] = None,
                   now: Optional[datetime] = None) -> Dict[str, Any]:
    subtotal = cart_subtotal(items)
    discount = 0.0
    applied = None
    notice = None
    if coupon:
        reason = coupon_rejection(coupon, subtotal, now)
        if reason is None:
            discount = round(subtotal * float(coupon.get("discount", 0)) / 100.0, 2)
            applied = {"id": str(coupon.get("_id", "")), "code": coupon["code"], "discount": float(coupon["discount"])}
        else:
            notice = f"Coupon {coupon['code']} no longer applies to your cart. {reason}"
    grand_total = round(max(subtotal - discount, 0), 2)
    return {
        "subtotal": subtotal,
        "discount": discount,
        "grand_total": grand_total,
        "applied_coupon": applied,
        "coupon_notice": notice,
    }
