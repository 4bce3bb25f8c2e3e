from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict

from checkout_recovery.models.shop_billing import (
    PLAN_FREE, PLAN_STARTER, PLAN_PRO, PLAN_SCALE, PLAN_PAYG,
)

BILLING_CURRENCY = "EUR"
SUBSCRIPTION_NAME_PREFIX = "AI Checkout Calls - "

# Lifetime bucket for shops on the no-cost plan
FREE_LIFETIME_SECONDS = 10 * 60

# Calls shorter than this (or unanswered, or voicemail) are never billed
MIN_BILLABLE_SECONDS = 15


@dataclass(frozen=True)
class Plan:
    key: str
    title: str
    recurring_monthly_eur: Decimal
    included_minutes: int
    overage_eur_per_min: Decimal
    usage_cap_eur: Decimal
    is_usage_only: bool = False

    @property
    def included_seconds(self) -> int:
        return self.included_minutes * 60

    @property
    def overage_rate_cents(self) -> int:
        return eur_to_cents(self.overage_eur_per_min)

    @property
    def is_paid(self) -> bool:
        return self.key != PLAN_FREE


PLANS: Dict[str, Plan] = {
    PLAN_FREE: Plan(PLAN_FREE, "Free", Decimal("0"), 0, Decimal("0"), Decimal("0")),
    PLAN_STARTER: Plan(PLAN_STARTER, "Starter", Decimal("19"), 30, Decimal("0.45"), Decimal("99")),
    PLAN_PRO: Plan(PLAN_PRO, "Pro", Decimal("49"), 120, Decimal("0.35"), Decimal("199")),
    PLAN_SCALE: Plan(PLAN_SCALE, "Scale", Decimal("99"), 400, Decimal("0.25"), Decimal("399")),
    PLAN_PAYG: Plan(PLAN_PAYG, "Pay-as-you-go", Decimal("0"), 0, Decimal("0.60"), Decimal("100"), is_usage_only=True),
}


def is_plan_key(value) -> bool:
    return isinstance(value, str) and value in PLANS


def get_plan(key: str) -> Plan:
    try:
        return PLANS[key]
    except KeyError:
        raise ValueError(f"Unknown plan: {key!r}") from None


def eur_to_cents(amount) -> int:
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def money_from_cents(cents: int, currency: str = BILLING_CURRENCY) -> dict:
    """MoneyInput shape for the Admin API."""
    amount = (Decimal(int(cents)) / 100).quantize(Decimal("0.01"))
    return {"amount": str(amount), "currencyCode": currency}


def usage_terms_for_plan(key: str) -> str:
    p = get_plan(key)
    rate = f"€{p.overage_eur_per_min:.2f}/minute"
    if p.is_usage_only:
        return f"{rate}. Charged per started minute. Answered calls only. Monthly spending limit (cap) applies."
    return (
        f"Includes {p.included_minutes} minutes per billing cycle. Then {rate}. "
        "Charged per started minute. Answered calls only. "
        "Usage charges are limited by the approved capped amount."
    )
