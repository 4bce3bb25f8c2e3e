"""
Domain exceptions.

Permanent errors (validation, policy gates, missing configuration) fail the
operation immediately. Transient provider errors are retried by whoever owns
the retry: the dispatcher for call starts, the webhook transport for billing.
"""
from __future__ import annotations


class RecoveryError(Exception):
    """Base for all errors raised by this package."""


class PermanentCallError(RecoveryError):
    """Starting a call can never succeed for this job (bad phone, missing checkout)."""


class CallStartError(RecoveryError):
    """The call provider refused or failed to start a call; retryable."""


class ShopifyError(RecoveryError):
    """Transport, HTTP or top-level GraphQL error from the Shopify Admin API."""


class ShopifyUserError(ShopifyError):
    """A mutation returned userErrors."""

    def __init__(self, user_errors: list[dict]):
        self.user_errors = list(user_errors or [])
        message = " | ".join(str(e.get("message") or "") for e in self.user_errors if e.get("message"))
        super().__init__(message or "Shopify mutation failed")


class DuplicateDiscountCodeError(ShopifyUserError):
    """The discount code candidate is already taken."""


class BillingNotConfiguredError(RecoveryError):
    """A paid shop has no usage line item even after syncing with the provider."""


class SmsSendError(RecoveryError):
    """The SMS transport rejected the message or is not configured."""


class CouponError(RecoveryError):
    """Billing coupon is unknown, inactive, expired, exhausted or misconfigured."""


class OfferRejected(RecoveryError):
    """A tool call failed a policy gate; surfaced to the voice agent, not raised past it."""

    def __init__(self, message: str, code: str = "offer_rejected"):
        self.code = code
        super().__init__(message)
