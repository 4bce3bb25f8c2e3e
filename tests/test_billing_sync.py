import json
from datetime import datetime
from decimal import Decimal

import httpx
import pytest
import respx

from checkout_recovery.errors import CouponError, DuplicateDiscountCodeError, ShopifyError, ShopifyUserError
from checkout_recovery.extensions import db
from checkout_recovery.models import BillingCoupon, BillingCouponRedemption, ShopBilling, ShopSession
from checkout_recovery.services.billing import (
    cancel_active_subscription, create_subscription_for_plan, ensure_billing_row, request_cap_increase,
    sync_billing_from_provider,
)
from checkout_recovery.services.shopify import ShopifyAdminClient, client_for_shop, is_duplicate_code_error

SHOP = "demo-store.myshopify.com"
GRAPHQL = f"https://{SHOP}/admin/api/2025-07/graphql.json"

ACTIVE_SUB = {
    "id": "gid://shopify/AppSubscription/42",
    "name": "AI Checkout Calls - PRO",
    "status": "ACTIVE",
    "currentPeriodEnd": "2026-02-05T10:00:00Z",
    "lineItems": [
        {"id": "gid://shopify/AppSubscriptionLineItem/1",
         "plan": {"pricingDetails": {"__typename": "AppRecurringPricing"}}},
        {"id": "gid://shopify/AppSubscriptionLineItem/2",
         "plan": {"pricingDetails": {"__typename": "AppUsagePricing"}}},
    ],
}


def _session():
    db.session.add(ShopSession(shop=SHOP, access_token="shpat_test"))
    db.session.commit()


def _state(subs):
    return httpx.Response(200, json={"data": {"currentAppInstallation": {"activeSubscriptions": subs}}})


def test_client_rejects_bad_shop_domain():
    with pytest.raises(ShopifyError):
        ShopifyAdminClient("evil.example.com", "tok")


def test_client_for_shop_needs_token(ctx):
    with pytest.raises(ShopifyError):
        client_for_shop(SHOP)


def test_duplicate_code_classifier():
    assert is_duplicate_code_error([{"code": "TAKEN", "message": "x"}])
    assert is_duplicate_code_error([{"message": "Code has already been taken"}])
    assert is_duplicate_code_error([{"message": "Code must be unique. Please try a different code."}])
    assert not is_duplicate_code_error([{"message": "Ends at must be after starts at"}])
    assert not is_duplicate_code_error([])


@respx.mock
def test_graphql_errors_raise():
    respx.post(GRAPHQL).mock(side_effect=[
        httpx.Response(200, json={"errors": [{"message": "Throttled"}]}),
        httpx.Response(502, text="bad gateway"),
    ])
    with pytest.raises(ShopifyError):
        ShopifyAdminClient(SHOP, "tok").active_subscriptions()
    with pytest.raises(ShopifyError):
        ShopifyAdminClient(SHOP, "tok").active_subscriptions()


@respx.mock
def test_discount_code_mutation():
    route = respx.post(GRAPHQL).mock(return_value=httpx.Response(200, json={"data": {
        "discountCodeBasicCreate": {"codeDiscountNode": {"id": "gid://shopify/DiscountCodeNode/9"}, "userErrors": []}
    }}))
    node = ShopifyAdminClient(SHOP, "tok").create_discount_code(
        "SAVE1234", 10, "2026-01-06T10:00:00Z", "2026-01-07T10:00:00Z", min_subtotal=Decimal("50.00"))

    assert node == "gid://shopify/DiscountCodeNode/9"
    request = route.calls.last.request
    assert request.headers["X-Shopify-Access-Token"] == "tok"
    discount = json.loads(request.content)["variables"]["basicCodeDiscount"]
    assert discount["code"] == "SAVE1234"
    assert discount["customerGets"]["value"] == {"percentage": 0.1}
    assert discount["customerSelection"] == {"all": True}
    assert discount["minimumRequirement"] == {"subtotal": {"greaterThanOrEqualToSubtotal": "50.00"}}


@respx.mock
def test_discount_code_collision_is_classified():
    respx.post(GRAPHQL).mock(return_value=httpx.Response(200, json={"data": {
        "discountCodeBasicCreate": {"codeDiscountNode": None,
                                    "userErrors": [{"field": ["code"], "code": "TAKEN", "message": "taken"}]}
    }}))
    with pytest.raises(DuplicateDiscountCodeError):
        ShopifyAdminClient(SHOP, "tok").create_discount_code("SAVE1234", 10, "2026-01-06T10:00:00Z")


@respx.mock
def test_sync_mirrors_active_subscription(ctx):
    _session()
    respx.post(GRAPHQL).mock(return_value=_state([ACTIVE_SUB]))

    state = sync_billing_from_provider(SHOP)

    assert state["active"] is True
    assert state["plan"] == "PRO"
    row = db.session.get(ShopBilling, SHOP)
    assert row.status == "ACTIVE"
    assert row.subscription_id == "gid://shopify/AppSubscription/42"
    assert row.usage_line_item_id == "gid://shopify/AppSubscriptionLineItem/2"
    assert row.recurring_line_item_id == "gid://shopify/AppSubscriptionLineItem/1"
    assert row.current_period_end == datetime(2026, 2, 5, 10, 0)


@respx.mock
def test_sync_clears_references_without_subscription(ctx):
    _session()
    db.session.add(ShopBilling(shop=SHOP, plan="PRO", status="ACTIVE", subscription_id="gid://old",
                               usage_line_item_id="gid://old-usage"))
    db.session.commit()
    other_app = {**ACTIVE_SUB, "name": "Some Other App"}
    respx.post(GRAPHQL).mock(return_value=_state([other_app]))

    state = sync_billing_from_provider(SHOP)

    assert state == {"active": False, "plan": "PRO"}
    row = db.session.get(ShopBilling, SHOP)
    assert row.status == "NONE"
    assert row.subscription_id is None
    assert row.usage_line_item_id is None


class FakeShopify:
    def __init__(self):
        self.created = []
        self.cancelled = []

    def create_subscription(self, name, return_url, line_items, test=False):
        self.created.append({"name": name, "return_url": return_url, "line_items": line_items, "test": test})
        return {
            "confirmationUrl": "https://admin.shopify.com/confirm/1",
            "appSubscription": {"id": "gid://shopify/AppSubscription/77", "lineItems": ACTIVE_SUB["lineItems"]},
        }

    def cancel_subscription(self, subscription_id, prorate=False):
        self.cancelled.append((subscription_id, prorate))
        return {}


def test_create_subscription_sets_pending_state(ctx):
    client = FakeShopify()

    url = create_subscription_for_plan(SHOP, "STARTER", "https://app.example/billing/return", client=client)

    assert url == "https://admin.shopify.com/confirm/1"
    created = client.created[0]
    assert created["name"] == "AI Checkout Calls - STARTER"
    assert created["test"] is False
    recurring = created["line_items"][0]["plan"]["appRecurringPricingDetails"]
    assert recurring["price"] == {"amount": "19.00", "currencyCode": "EUR"}
    usage = created["line_items"][1]["plan"]["appUsagePricingDetails"]
    assert usage["cappedAmount"] == {"amount": "99.00", "currencyCode": "EUR"}
    assert "Includes 30 minutes" in usage["terms"]

    row = db.session.get(ShopBilling, SHOP)
    assert row.status == "PENDING"
    assert row.pending_plan == "STARTER"
    assert row.subscription_id == "gid://shopify/AppSubscription/77"
    assert row.pending_coupon_code is None


def test_payg_has_only_a_usage_line(ctx):
    client = FakeShopify()
    create_subscription_for_plan(SHOP, "PAYG", "https://app.example/r", client=client)
    line_items = client.created[0]["line_items"]
    assert len(line_items) == 1
    assert "appUsagePricingDetails" in line_items[0]["plan"]


def test_free_plan_has_no_subscription(ctx):
    with pytest.raises(ValueError):
        create_subscription_for_plan(SHOP, "FREE", "https://app.example/r", client=FakeShopify())


def test_coupon_discount_applies_to_recurring_line(ctx):
    db.session.add(BillingCoupon(code="LAUNCH20", kind="PERCENT", value=Decimal("20"), duration_intervals=3))
    db.session.commit()
    client = FakeShopify()

    create_subscription_for_plan(SHOP, "PRO", "https://app.example/r", coupon_code=" launch 20 ", client=client)

    recurring = client.created[0]["line_items"][0]["plan"]["appRecurringPricingDetails"]
    assert recurring["discount"] == {"durationLimitInIntervals": 3, "value": {"percentage": 0.2}}
    row = db.session.get(ShopBilling, SHOP)
    assert row.pending_coupon_code == "LAUNCH20"
    assert row.pending_coupon_percent == Decimal("20")
    assert row.pending_coupon_intervals == 3
    assert BillingCouponRedemption.query.filter_by(coupon_code="LAUNCH20", shop=SHOP).count() == 1


def test_coupon_rejected_for_usage_only_plan(ctx):
    db.session.add(BillingCoupon(code="LAUNCH20", kind="PERCENT", value=Decimal("20")))
    db.session.commit()
    client = FakeShopify()

    with pytest.raises(CouponError):
        create_subscription_for_plan(SHOP, "PAYG", "https://app.example/r", coupon_code="LAUNCH20", client=client)

    assert client.created == []
    assert BillingCouponRedemption.query.count() == 0


def test_cancel_subscription(ctx):
    db.session.add(ShopBilling(shop=SHOP, plan="PRO", status="ACTIVE", subscription_id="gid://sub/1",
                               usage_line_item_id="gid://li/2"))
    db.session.commit()
    client = FakeShopify()

    cancel_active_subscription(SHOP, client=client)

    assert client.cancelled == [("gid://sub/1", False)]
    row = db.session.get(ShopBilling, SHOP)
    assert row.status == "CANCELLED"
    assert row.subscription_id is None
    assert row.usage_line_item_id is None


def test_ensure_billing_row_is_idempotent(ctx):
    first = ensure_billing_row(SHOP)
    db.session.commit()
    second = ensure_billing_row(SHOP)
    assert first is second
    assert ShopBilling.query.count() == 1


def test_user_errors_surface_messages():
    err = ShopifyUserError([{"message": "Price must be positive"}, {"message": "Name is blank"}])
    assert str(err) == "Price must be positive | Name is blank"


def test_request_cap_increase(ctx):
    db.session.add(ShopBilling(shop=SHOP, plan="PAYG", status="ACTIVE", usage_line_item_id="gid://li/usage"))
    db.session.commit()
    calls = []

    class CapClient:
        def update_capped_amount(self, line_item_id, capped_amount):
            calls.append((line_item_id, capped_amount))
            return "https://admin.shopify.com/confirm/cap"

    assert request_cap_increase(SHOP, 250, client=CapClient()) == "https://admin.shopify.com/confirm/cap"
    assert calls == [("gid://li/usage", {"amount": "250.00", "currencyCode": "EUR"})]


def test_request_cap_increase_needs_usage_line(ctx):
    with pytest.raises(ShopifyError):
        request_cap_increase(SHOP, 250, client=object())
