"""
Per-call usage metering.

apply_billing_for_call() may run any number of times for the same call job
(webhook redelivery, concurrent deliveries); at most one CallCharge row is
ever written for it. The quota update, the usage charge bookkeeping and the
charge row commit together or not at all.

Inside that transaction the shop's billing row is locked first, then the
charge check runs and the charge row is inserted, and only then are quota and
the provider touched. A second delivery either sees the charge or fails the
unique insert before it reaches the provider.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import IntegrityError

from checkout_recovery.billing.plans import (
    BILLING_CURRENCY, FREE_LIFETIME_SECONDS, MIN_BILLABLE_SECONDS, get_plan, money_from_cents,
)
from checkout_recovery.errors import BillingNotConfiguredError
from checkout_recovery.extensions import db
from checkout_recovery.models import CallCharge
from checkout_recovery.models.shop_billing import PLAN_FREE
from checkout_recovery.observability import log_event
from checkout_recovery.services.billing import (
    ensure_billing_row, idempotency_key_for_call, record_zero_charge, sync_billing_from_provider,
)
from checkout_recovery.services.shopify import ShopifyAdminClient, client_for_shop
from checkout_recovery.utils.helpers import safe_int

OUTCOME_NOT_BILLABLE = "not_billable"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_FREE = "free"
OUTCOME_CHARGED = "charged"


@dataclass
class BillingResult:
    outcome: str
    minutes_billed: int = 0
    amount_cents: int = 0
    usage_record_id: Optional[str] = None


def billable_minutes(connected_seconds: int) -> int:
    return max(1, math.ceil(connected_seconds / 60))


def is_billable(connected_seconds: int, answered: bool, voicemail: bool) -> bool:
    return bool(answered) and not voicemail and connected_seconds >= MIN_BILLABLE_SECONDS


def apply_billing_for_call(shop: str, call_job_id: str, connected_seconds, answered: bool,
                           voicemail: bool = False, client: Optional[ShopifyAdminClient] = None) -> BillingResult:
    seconds = max(0, safe_int(connected_seconds))

    if not is_billable(seconds, answered, voicemail):
        created = record_zero_charge(shop, call_job_id, seconds)
        return BillingResult(OUTCOME_NOT_BILLABLE if created else OUTCOME_DUPLICATE)

    minutes = billable_minutes(seconds)
    billable_seconds = minutes * 60
    key = idempotency_key_for_call(call_job_id)

    try:
        billing = ensure_billing_row(shop, lock=True)

        # checked under the billing row lock; a concurrent delivery waits above
        if CallCharge.query.filter_by(call_job_id=call_job_id).first() is not None:
            db.session.rollback()
            return BillingResult(OUTCOME_DUPLICATE)

        # the unique call_job_id insert claims the call before any quota or external charge
        charge = CallCharge(
            shop=shop,
            call_job_id=call_job_id,
            connected_seconds=seconds,
            minutes_billed=0,
            amount_cents=0,
            currency_code=BILLING_CURRENCY,
            idempotency_key=key,
        )
        db.session.add(charge)
        db.session.flush()

        if billing.plan == PLAN_FREE:
            used = billing.free_seconds_used or 0
            consume = min(billable_seconds, max(0, FREE_LIFETIME_SECONDS - used))
            billing.free_seconds_used = used + consume
            result = BillingResult(OUTCOME_FREE, minutes_billed=minutes)
        else:
            if not billing.usage_line_item_id:
                client = client or client_for_shop(shop)
                sync_billing_from_provider(shop, client=client, commit=False)
                if not billing.usage_line_item_id:
                    raise BillingNotConfiguredError("No usage line item after sync")

            plan = get_plan(billing.plan)
            used = billing.included_seconds_used or 0
            consume = min(billable_seconds, max(0, plan.included_seconds - used))
            billing.included_seconds_used = used + consume

            chargeable_minutes = (billable_seconds - consume) // 60
            amount_cents = chargeable_minutes * plan.overage_rate_cents

            usage_record_id = None
            if amount_cents > 0:
                client = client or client_for_shop(shop)
                usage_record_id = client.create_usage_charge(
                    billing.usage_line_item_id,
                    money_from_cents(amount_cents),
                    key,
                    f"{plan.title}: {chargeable_minutes} min overage (call {call_job_id})",
                )
            result = BillingResult(OUTCOME_CHARGED, minutes, amount_cents, usage_record_id)

        charge.minutes_billed = result.minutes_billed
        charge.amount_cents = result.amount_cents
        charge.usage_record_id = result.usage_record_id
        db.session.commit()
    except IntegrityError:
        # lost the race to a concurrent delivery for the same call
        db.session.rollback()
        return BillingResult(OUTCOME_DUPLICATE)
    except Exception:
        db.session.rollback()
        raise

    log_event("call_billed", shop=shop, call_job_id=call_job_id, connected_seconds=seconds,
              outcome=result.outcome, minutes_billed=result.minutes_billed,
              amount_cents=result.amount_cents, usage_record_id=result.usage_record_id)
    return result
