from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from sqlalchemy import func

from checkout_recovery.errors import CouponError
from checkout_recovery.extensions import db
from checkout_recovery.models import BillingCoupon, BillingCouponRedemption
from checkout_recovery.models.billing_coupon import KIND_PERCENT
from checkout_recovery.utils.helpers import utcnow


def normalize_coupon_code(raw: Optional[str]) -> str:
    return "".join((raw or "").split()).upper()


def _redemption_count(code: str, shop: Optional[str] = None) -> int:
    q = db.session.query(func.count(BillingCouponRedemption.id)).filter(BillingCouponRedemption.coupon_code == code)
    if shop is not None:
        q = q.filter(BillingCouponRedemption.shop == shop)
    return int(q.scalar() or 0)


def resolve_coupon_discount(shop: str, plan: str, code: Optional[str],
                            now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
    """
    Validate a billing coupon for a new subscription and record a redemption
    (caller commits). Returns None for an empty code; raises CouponError when
    the coupon cannot be applied.
    """
    coupon_code = normalize_coupon_code(code)
    if not coupon_code:
        return None

    coupon = db.session.get(BillingCoupon, coupon_code)
    if coupon is None or not coupon.is_active:
        raise CouponError("Invalid coupon code")

    now = now or utcnow()
    if coupon.starts_at is not None and now < coupon.starts_at:
        raise CouponError("Coupon not active yet")
    if coupon.expires_at is not None and now >= coupon.expires_at:
        raise CouponError("Coupon expired")

    if coupon.applies_to_plan and coupon.applies_to_plan != plan:
        raise CouponError("Coupon not valid for this plan")

    if coupon.max_total_uses is not None and _redemption_count(coupon_code) >= coupon.max_total_uses:
        raise CouponError("Coupon usage limit reached")
    if coupon.max_uses_per_shop is not None and _redemption_count(coupon_code, shop) >= coupon.max_uses_per_shop:
        raise CouponError("Coupon usage limit reached for this shop")

    try:
        value = Decimal(str(coupon.value))
    except (InvalidOperation, TypeError):
        raise CouponError("Invalid coupon configuration") from None

    if coupon.kind == KIND_PERCENT:
        if value <= 0 or value > 100:
            raise CouponError("Invalid coupon configuration")
        discount_value = {"percentage": float(value / 100)}
    else:
        if value <= 0:
            raise CouponError("Invalid coupon configuration")
        discount_value = {"amount": str(value.quantize(Decimal("0.01")))}

    duration = max(1, int(coupon.duration_intervals or 1))

    db.session.add(BillingCouponRedemption(coupon_code=coupon_code, shop=shop, plan=plan))
    return {
        "coupon_code": coupon_code,
        "discount": {"durationLimitInIntervals": duration, "value": discount_value},
    }
