"""
Shopify Admin GraphQL client: app billing (subscriptions, usage records)
and discount codes. One instance per shop; tokens come from ShopSession.
"""
from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

import httpx
from flask import current_app

from checkout_recovery.errors import DuplicateDiscountCodeError, ShopifyError, ShopifyUserError
from checkout_recovery.models import ShopSession

_DUPLICATE_HINTS = ("already", "taken", "must be unique")

_PRICING_DETAILS = """
          pricingDetails {
            __typename
            ... on AppUsagePricing {
              cappedAmount { amount currencyCode }
              balanceUsed { amount currencyCode }
            }
            ... on AppRecurringPricing {
              interval
              price { amount currencyCode }
            }
          }
"""

BILLING_STATE_QUERY = """
query BillingState {
  currentAppInstallation {
    activeSubscriptions {
      id
      name
      status
      currentPeriodEnd
      lineItems {
        id
        plan {%s}
      }
    }
  }
}
""" % _PRICING_DETAILS

SUBSCRIPTION_CREATE = """
mutation AppSubscriptionCreate(
  $name: String!
  $returnUrl: URL!
  $lineItems: [AppSubscriptionLineItemInput!]!
  $test: Boolean
  $replacementBehavior: AppSubscriptionReplacementBehavior
) {
  appSubscriptionCreate(
    name: $name
    returnUrl: $returnUrl
    lineItems: $lineItems
    test: $test
    replacementBehavior: $replacementBehavior
  ) {
    userErrors { field message }
    confirmationUrl
    appSubscription {
      id
      lineItems {
        id
        plan {%s}
      }
    }
  }
}
""" % _PRICING_DETAILS

SUBSCRIPTION_CANCEL = """
mutation CancelSub($id: ID!, $prorate: Boolean) {
  appSubscriptionCancel(id: $id, prorate: $prorate) {
    userErrors { field message }
    appSubscription { id status }
  }
}
"""

LINE_ITEM_UPDATE = """
mutation UpdateCap($id: ID!, $cappedAmount: MoneyInput!) {
  appSubscriptionLineItemUpdate(id: $id, cappedAmount: $cappedAmount) {
    userErrors { field message }
    confirmationUrl
    appSubscription { id }
  }
}
"""

USAGE_RECORD_CREATE = """
mutation UsageCharge(
  $description: String!
  $price: MoneyInput!
  $subscriptionLineItemId: ID!
  $idempotencyKey: String
) {
  appUsageRecordCreate(
    description: $description
    price: $price
    subscriptionLineItemId: $subscriptionLineItemId
    idempotencyKey: $idempotencyKey
  ) {
    userErrors { field message }
    appUsageRecord { id }
  }
}
"""

DISCOUNT_BASIC_CREATE = """
mutation CreateDiscountCode($basicCodeDiscount: DiscountCodeBasicInput!) {
  discountCodeBasicCreate(basicCodeDiscount: $basicCodeDiscount) {
    codeDiscountNode { id }
    userErrors { field code message }
  }
}
"""

DISCOUNT_FREE_SHIPPING_CREATE = """
mutation CreateFreeShipping($freeShippingCodeDiscount: DiscountCodeFreeShippingInput!) {
  discountCodeFreeShippingCreate(freeShippingCodeDiscount: $freeShippingCodeDiscount) {
    codeDiscountNode { id }
    userErrors { field code message }
  }
}
"""

CUSTOMER_BY_EMAIL = """
query CustomerByEmail($q: String!) {
  customers(first: 1, query: $q) {
    nodes { id email }
  }
}
"""


def is_duplicate_code_error(user_errors: List[Dict[str, Any]]) -> bool:
    for err in user_errors or []:
        if str(err.get("code") or "").upper() == "TAKEN":
            return True
        msg = str(err.get("message") or "").lower()
        if any(h in msg for h in _DUPLICATE_HINTS):
            return True
    return False


def _raise_user_errors(payload: Optional[Dict[str, Any]], *, discount: bool = False) -> None:
    errs = (payload or {}).get("userErrors") or []
    if not errs:
        return
    if discount and is_duplicate_code_error(errs):
        raise DuplicateDiscountCodeError(errs)
    raise ShopifyUserError(errs)


def _minimum_requirement(min_subtotal) -> Optional[Dict[str, Any]]:
    if min_subtotal is None:
        return None
    try:
        value = float(min_subtotal)
    except (TypeError, ValueError):
        return None
    if value <= 0:
        return None
    return {"subtotal": {"greaterThanOrEqualToSubtotal": str(min_subtotal)}}


def split_line_items(line_items: List[Dict[str, Any]]) -> Dict[str, Optional[str]]:
    """Pick the usage / recurring line item ids out of a subscription's lineItems."""
    usage = recurring = None
    for li in line_items or []:
        kind = (((li or {}).get("plan") or {}).get("pricingDetails") or {}).get("__typename")
        if kind == "AppUsagePricing" and usage is None:
            usage = li.get("id")
        elif kind == "AppRecurringPricing" and recurring is None:
            recurring = li.get("id")
    return {"usage_line_item_id": usage, "recurring_line_item_id": recurring}


class ShopifyAdminClient:
    def __init__(self, shop: str, access_token: str, api_version: str = "2025-07", timeout: float = 20.0):
        if not re.match(r"^[a-z0-9][a-z0-9\-]*\.myshopify\.com$", shop or ""):
            raise ShopifyError(f"Invalid shop domain: {shop!r}")
        self.shop = shop
        self.access_token = access_token
        self.endpoint = f"https://{shop}/admin/api/{api_version}/graphql.json"
        self.timeout = timeout

    def graphql(self, query: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            with httpx.Client(timeout=self.timeout) as client:
                resp = client.post(
                    self.endpoint,
                    json={"query": query, "variables": variables or {}},
                    headers={"X-Shopify-Access-Token": self.access_token},
                )
        except httpx.HTTPError as e:
            raise ShopifyError(f"Shopify request failed: {e}") from e

        if resp.status_code >= 400:
            raise ShopifyError(f"Shopify GraphQL HTTP {resp.status_code}: {resp.text[:500]}")
        try:
            body = resp.json()
        except ValueError as e:
            raise ShopifyError("Shopify returned a non-JSON response") from e
        if body.get("errors"):
            raise ShopifyError(f"Shopify GraphQL errors: {body['errors']}")
        return body.get("data") or {}

    # --- billing ---

    def active_subscriptions(self) -> List[Dict[str, Any]]:
        data = self.graphql(BILLING_STATE_QUERY)
        return ((data.get("currentAppInstallation") or {}).get("activeSubscriptions")) or []

    def create_subscription(self, name: str, return_url: str, line_items: List[Dict[str, Any]],
                            test: bool = False) -> Dict[str, Any]:
        data = self.graphql(SUBSCRIPTION_CREATE, {
            "name": name,
            "returnUrl": return_url,
            "lineItems": line_items,
            "test": bool(test),
            "replacementBehavior": "STANDARD",
        })
        payload = data.get("appSubscriptionCreate")
        _raise_user_errors(payload)
        return payload or {}

    def cancel_subscription(self, subscription_id: str, prorate: bool = False) -> Dict[str, Any]:
        data = self.graphql(SUBSCRIPTION_CANCEL, {"id": subscription_id, "prorate": bool(prorate)})
        payload = data.get("appSubscriptionCancel")
        _raise_user_errors(payload)
        return payload or {}

    def update_capped_amount(self, line_item_id: str, capped_amount: Dict[str, str]) -> Optional[str]:
        data = self.graphql(LINE_ITEM_UPDATE, {"id": line_item_id, "cappedAmount": capped_amount})
        payload = data.get("appSubscriptionLineItemUpdate")
        _raise_user_errors(payload)
        return (payload or {}).get("confirmationUrl")

    def create_usage_charge(self, line_item_id: str, price: Dict[str, str], idempotency_key: str,
                            description: str) -> Optional[str]:
        data = self.graphql(USAGE_RECORD_CREATE, {
            "description": description,
            "price": price,
            "subscriptionLineItemId": line_item_id,
            "idempotencyKey": idempotency_key,
        })
        payload = data.get("appUsageRecordCreate")
        _raise_user_errors(payload)
        return ((payload or {}).get("appUsageRecord") or {}).get("id")

    # --- discounts ---

    def create_discount_code(self, code: str, percent: int, starts_at: str, ends_at: Optional[str] = None,
                             customer_gid: Optional[str] = None, min_subtotal=None) -> str:
        pct = max(1, min(99, int(percent)))
        discount: Dict[str, Any] = {
            "title": f"{pct}% Recovery",
            "code": code,
            "startsAt": starts_at,
            "appliesOncePerCustomer": True,
            "customerSelection": {"customers": {"add": [customer_gid]}} if customer_gid else {"all": True},
            "customerGets": {"value": {"percentage": pct / 100}, "items": {"all": True}},
        }
        if ends_at:
            discount["endsAt"] = ends_at
        req = _minimum_requirement(min_subtotal)
        if req:
            discount["minimumRequirement"] = req
        data = self.graphql(DISCOUNT_BASIC_CREATE, {"basicCodeDiscount": discount})
        return self._discount_node_id(data.get("discountCodeBasicCreate"))

    def create_free_shipping_code(self, code: str, starts_at: str, ends_at: Optional[str] = None,
                                  customer_gid: Optional[str] = None, min_subtotal=None) -> str:
        discount: Dict[str, Any] = {
            "title": "Free Shipping Recovery",
            "code": code,
            "startsAt": starts_at,
            "appliesOncePerCustomer": True,
            "customerSelection": {"customers": {"add": [customer_gid]}} if customer_gid else {"all": True},
            "destination": {"all": True},
        }
        if ends_at:
            discount["endsAt"] = ends_at
        req = _minimum_requirement(min_subtotal)
        if req:
            discount["minimumRequirement"] = req
        data = self.graphql(DISCOUNT_FREE_SHIPPING_CREATE, {"freeShippingCodeDiscount": discount})
        return self._discount_node_id(data.get("discountCodeFreeShippingCreate"))

    @staticmethod
    def _discount_node_id(payload: Optional[Dict[str, Any]]) -> str:
        if not payload:
            raise ShopifyError("Discount mutation returned no payload")
        _raise_user_errors(payload, discount=True)
        node_id = (payload.get("codeDiscountNode") or {}).get("id")
        if not node_id:
            raise ShopifyError("Discount mutation returned no codeDiscountNode")
        return str(node_id)

    def find_customer_gid_by_email(self, email: Optional[str]) -> Optional[str]:
        e = (email or "").strip()
        if not e:
            return None
        data = self.graphql(CUSTOMER_BY_EMAIL, {"q": f"email:{e}"})
        nodes = ((data.get("customers") or {}).get("nodes")) or []
        gid = str((nodes[0] or {}).get("id") or "").strip() if nodes else ""
        return gid or None


def client_for_shop(shop: str) -> ShopifyAdminClient:
    session = ShopSession.query.filter_by(shop=shop).one_or_none()
    if session is None or not session.access_token:
        raise ShopifyError(f"No offline access token for {shop}")
    return ShopifyAdminClient(
        shop,
        session.access_token,
        api_version=current_app.config.get("SHOPIFY_API_VERSION") or "2025-07",
        timeout=float(current_app.config.get("SHOPIFY_TIMEOUT_SECONDS") or 20),
    )
