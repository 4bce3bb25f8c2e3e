"""
Billing ledger rows and the Shopify app-billing lifecycle around them.
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError

from checkout_recovery.billing.coupons import resolve_coupon_discount
from checkout_recovery.billing.plans import (
    BILLING_CURRENCY, SUBSCRIPTION_NAME_PREFIX, get_plan, is_plan_key, usage_terms_for_plan,
)
from checkout_recovery.errors import CouponError, ShopifyError
from checkout_recovery.extensions import db
from checkout_recovery.models import CallCharge, ShopBilling
from checkout_recovery.models.shop_billing import (
    BILLING_ACTIVE, BILLING_CANCELLED, BILLING_NONE, BILLING_PENDING, PLAN_STARTER,
)
from checkout_recovery.observability import log_event
from checkout_recovery.services.shopify import ShopifyAdminClient, client_for_shop, split_line_items
from checkout_recovery.utils.helpers import as_naive_utc


def idempotency_key_for_call(call_job_id: str) -> str:
    return f"call_{call_job_id}"[:255]


def ensure_billing_row(shop: str, *, lock: bool = False) -> ShopBilling:
    """Return the shop's billing row, creating it on first use. Does not commit."""
    q = ShopBilling.query.filter_by(shop=shop)
    if lock:
        q = q.with_for_update()
    row = q.one_or_none()
    if row is not None:
        return row
    try:
        with db.session.begin_nested():
            row = ShopBilling(shop=shop)
            db.session.add(row)
    except IntegrityError:
        # a concurrent request created it first
        row = q.one()
    return row


def record_zero_charge(shop: str, call_job_id: str, connected_seconds: int) -> bool:
    """Record a nothing-to-bill charge row. False when the call already has a charge."""
    if CallCharge.query.filter_by(call_job_id=call_job_id).first() is not None:
        return False
    ensure_billing_row(shop)
    db.session.add(CallCharge(
        shop=shop,
        call_job_id=call_job_id,
        connected_seconds=max(0, int(connected_seconds)),
        minutes_billed=0,
        amount_cents=0,
        currency_code=BILLING_CURRENCY,
        idempotency_key=idempotency_key_for_call(call_job_id),
    ))
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return False
    return True


def _parse_ts(value) -> Optional[datetime]:
    if not value:
        return None
    try:
        return as_naive_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))
    except ValueError:
        return None


def sync_billing_from_provider(shop: str, client: Optional[ShopifyAdminClient] = None,
                               commit: bool = True) -> Dict[str, Any]:
    """
    Mirror the shop's active app subscription into ShopBilling. The provider
    is the source of truth; a missing subscription clears the references.
    """
    client = client or client_for_shop(shop)
    subs = client.active_subscriptions()
    billing = ensure_billing_row(shop)

    ours = next((s for s in subs if str((s or {}).get("name") or "").startswith(SUBSCRIPTION_NAME_PREFIX)), None)
    if ours is None:
        billing.status = BILLING_NONE
        billing.subscription_id = None
        billing.usage_line_item_id = None
        billing.recurring_line_item_id = None
        billing.pending_plan = None
        if commit:
            db.session.commit()
        log_event("billing_synced", shop=shop, active=False)
        return {"active": False, "plan": billing.plan}

    plan_key = str(ours["name"])[len(SUBSCRIPTION_NAME_PREFIX):].strip().upper()
    ids = split_line_items(ours.get("lineItems") or [])

    billing.plan = plan_key if is_plan_key(plan_key) else PLAN_STARTER
    billing.status = BILLING_ACTIVE
    billing.pending_plan = None
    billing.subscription_id = ours.get("id")
    billing.usage_line_item_id = ids["usage_line_item_id"]
    billing.recurring_line_item_id = ids["recurring_line_item_id"]
    period_end = _parse_ts(ours.get("currentPeriodEnd"))
    if period_end is not None:
        billing.current_period_end = period_end
    if commit:
        db.session.commit()

    log_event("billing_synced", shop=shop, active=True, plan=billing.plan,
              usage_line_item_id=billing.usage_line_item_id)
    return {"active": True, "plan": billing.plan, **ids}


def _money(amount: Decimal) -> Dict[str, str]:
    return {"amount": str(Decimal(amount).quantize(Decimal("0.01"))), "currencyCode": BILLING_CURRENCY}


def create_subscription_for_plan(shop: str, plan: str, return_url: str, test: Optional[bool] = None,
                                 coupon_code: Optional[str] = None,
                                 client: Optional[ShopifyAdminClient] = None) -> Optional[str]:
    """Create the app subscription for a plan and return the merchant confirmation URL."""
    p = get_plan(plan)
    if not p.is_paid:
        raise ValueError("The free plan has no subscription")
    if test is None:
        test = bool(current_app.config.get("SHOPIFY_BILLING_TEST"))

    recurring = None
    if not p.is_usage_only and p.recurring_monthly_eur > 0:
        recurring = {"interval": "EVERY_30_DAYS", "price": _money(p.recurring_monthly_eur)}

    coupon = resolve_coupon_discount(shop, plan, coupon_code)
    if coupon is not None:
        if recurring is None:
            db.session.rollback()
            raise CouponError("Coupons only apply to plans with a monthly fee")
        recurring["discount"] = coupon["discount"]

    line_items = []
    if recurring is not None:
        line_items.append({"plan": {"appRecurringPricingDetails": recurring}})
    if p.usage_cap_eur > 0:
        line_items.append({"plan": {"appUsagePricingDetails": {
            "terms": usage_terms_for_plan(plan),
            "cappedAmount": _money(p.usage_cap_eur),
        }}})

    client = client or client_for_shop(shop)
    try:
        payload = client.create_subscription(f"{SUBSCRIPTION_NAME_PREFIX}{plan}", return_url, line_items, test=test)
    except ShopifyError:
        db.session.rollback()
        raise

    sub = payload.get("appSubscription") or {}
    ids = split_line_items(sub.get("lineItems") or [])

    billing = ensure_billing_row(shop)
    billing.pending_plan = plan
    billing.status = BILLING_PENDING
    billing.subscription_id = sub.get("id")
    billing.usage_line_item_id = ids["usage_line_item_id"]
    billing.recurring_line_item_id = ids["recurring_line_item_id"]
    if coupon is not None:
        value = coupon["discount"]["value"]
        billing.pending_coupon_code = coupon["coupon_code"]
        billing.pending_coupon_percent = (
            Decimal(str(value["percentage"])) * 100 if "percentage" in value else None
        )
        billing.pending_coupon_intervals = coupon["discount"]["durationLimitInIntervals"]
    else:
        billing.pending_coupon_code = None
        billing.pending_coupon_percent = None
        billing.pending_coupon_intervals = None
    db.session.commit()

    log_event("billing_subscription_created", shop=shop, plan=plan, subscription_id=billing.subscription_id,
              coupon=billing.pending_coupon_code)
    return payload.get("confirmationUrl")


def cancel_active_subscription(shop: str, prorate: bool = False,
                               client: Optional[ShopifyAdminClient] = None) -> None:
    billing = ensure_billing_row(shop)
    if not billing.subscription_id:
        billing.status = BILLING_NONE
        db.session.commit()
        return

    client = client or client_for_shop(shop)
    client.cancel_subscription(billing.subscription_id, prorate=prorate)

    billing.status = BILLING_CANCELLED
    billing.subscription_id = None
    billing.usage_line_item_id = None
    billing.recurring_line_item_id = None
    billing.pending_plan = None
    db.session.commit()
    log_event("billing_subscription_cancelled", shop=shop, prorate=bool(prorate))


def request_cap_increase(shop: str, new_cap_eur, client: Optional[ShopifyAdminClient] = None) -> Optional[str]:
    billing = ensure_billing_row(shop)
    if not billing.usage_line_item_id:
        raise ShopifyError("Missing usage line item")
    client = client or client_for_shop(shop)
    url = client.update_capped_amount(billing.usage_line_item_id, _money(Decimal(str(new_cap_eur))))
    db.session.commit()
    return url
