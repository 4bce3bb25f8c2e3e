from datetime import datetime
from decimal import Decimal

import pytest

from checkout_recovery.billing.coupons import normalize_coupon_code, resolve_coupon_discount
from checkout_recovery.errors import CouponError
from checkout_recovery.extensions import db
from checkout_recovery.models import BillingCoupon, BillingCouponRedemption

SHOP = "demo-store.myshopify.com"
NOW = datetime(2026, 1, 6, 10, 0)


def _coupon(**kw):
    kw.setdefault("code", "WELCOME")
    kw.setdefault("value", Decimal("10"))
    db.session.add(BillingCoupon(**kw))
    db.session.commit()


def test_normalize_coupon_code():
    assert normalize_coupon_code(" wel come ") == "WELCOME"
    assert normalize_coupon_code(None) == ""


def test_empty_code_is_no_coupon(ctx):
    assert resolve_coupon_discount(SHOP, "PRO", "  ") is None


def test_percent_coupon(ctx):
    _coupon()
    res = resolve_coupon_discount(SHOP, "PRO", "welcome", now=NOW)
    assert res == {"coupon_code": "WELCOME",
                   "discount": {"durationLimitInIntervals": 1, "value": {"percentage": 0.1}}}


def test_amount_coupon(ctx):
    _coupon(kind="AMOUNT", value=Decimal("5"), duration_intervals=2)
    res = resolve_coupon_discount(SHOP, "PRO", "WELCOME", now=NOW)
    assert res["discount"] == {"durationLimitInIntervals": 2, "value": {"amount": "5.00"}}


@pytest.mark.parametrize("kw, message", [
    ({"is_active": False}, "Invalid coupon code"),
    ({"starts_at": datetime(2026, 2, 1)}, "Coupon not active yet"),
    ({"expires_at": datetime(2026, 1, 6, 10, 0)}, "Coupon expired"),
    ({"applies_to_plan": "SCALE"}, "Coupon not valid for this plan"),
    ({"value": Decimal("150")}, "Invalid coupon configuration"),
])
def test_coupon_rejections(ctx, kw, message):
    _coupon(**kw)
    with pytest.raises(CouponError) as exc:
        resolve_coupon_discount(SHOP, "PRO", "WELCOME", now=NOW)
    assert str(exc.value) == message


def test_unknown_coupon(ctx):
    with pytest.raises(CouponError):
        resolve_coupon_discount(SHOP, "PRO", "NOPE", now=NOW)


def test_usage_limits(ctx):
    _coupon(max_uses_per_shop=1, max_total_uses=2)

    resolve_coupon_discount(SHOP, "PRO", "WELCOME", now=NOW)
    db.session.commit()
    with pytest.raises(CouponError) as exc:
        resolve_coupon_discount(SHOP, "PRO", "WELCOME", now=NOW)
    assert str(exc.value) == "Coupon usage limit reached for this shop"
    db.session.rollback()

    resolve_coupon_discount("other.myshopify.com", "PRO", "WELCOME", now=NOW)
    db.session.commit()
    with pytest.raises(CouponError) as exc:
        resolve_coupon_discount("third.myshopify.com", "PRO", "WELCOME", now=NOW)
    assert str(exc.value) == "Coupon usage limit reached"
    assert BillingCouponRedemption.query.count() == 2
