"""
Vapi call provider: build the per-call assistant config and start the call.
"""
from __future__ import annotations

import re
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx
from flask import current_app

from checkout_recovery.errors import CallStartError, PermanentCallError
from checkout_recovery.extensions import db
from checkout_recovery.models import CallJob, Checkout, ShopSettings
from checkout_recovery.observability import log_event
from checkout_recovery.services.jobs import merge_job_meta
from checkout_recovery.services.offer_record import merge_offer

SERVER_MESSAGES = [
    "status-update",
    "end-of-call-report",
    'transcript[transcriptType="final"]',
    "tool-calls",
]

SEND_CHECKOUT_OFFER_TOOL = {
    "type": "function",
    "function": {
        "name": "send_checkout_offer",
        "description": (
            "Send the checkout link by SMS. Optionally create a real Shopify discount "
            "or free-shipping code and send it by SMS."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "offerType": {
                    "type": "string",
                    "enum": ["link_only", "discount", "free_shipping"],
                    "description": "The final offer you decided to send.",
                },
                "discountPercent": {
                    "type": "integer",
                    "description": "Required only when offerType=discount. Positive integer within the configured limit.",
                },
                "sendSms": {
                    "type": "boolean",
                    "description": "Set true when the customer accepted receiving the SMS.",
                },
            },
            "required": ["offerType", "sendSms"],
        },
    },
}

E164_RE = re.compile(r"^\+[1-9]\d{6,14}$")


def normalize_phone(raw: Optional[str]) -> Optional[str]:
    """Strip formatting and convert 00/011 international prefixes; no country inference."""
    s = (raw or "").strip()
    if not s:
        return None
    if s.lower().startswith("tel:"):
        s = s[4:]
    plus = s.startswith("+")
    digits = re.sub(r"\D", "", s)
    if not digits:
        return None
    if not plus:
        if digits.startswith("011"):
            digits = digits[3:]
        elif digits.startswith("00"):
            digits = digits[2:]
        else:
            return None
    candidate = "+" + digits
    return candidate if E164_RE.match(candidate) else None


class VapiClient:
    def __init__(self, api_key: str, base_url: str = "https://api.vapi.ai", timeout: float = 15.0):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    @classmethod
    def from_config(cls) -> "VapiClient":
        key = (current_app.config.get("VAPI_API_KEY") or "").strip()
        if not key:
            raise CallStartError("VAPI_API_KEY is not configured")
        return cls(
            api_key=key,
            base_url=current_app.config.get("VAPI_API_BASE") or "https://api.vapi.ai",
            timeout=float(current_app.config.get("VAPI_TIMEOUT_SECONDS") or 15),
        )

    def start_call(self, phone_e164: str, assistant_config: Dict[str, Any]) -> str:
        body = dict(assistant_config)
        body["customer"] = {**(assistant_config.get("customer") or {}), "number": phone_e164}
        try:
            with httpx.Client(timeout=self.timeout) as client:
                resp = client.post(
                    f"{self.base_url}/call/phone",
                    json=body,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
        except httpx.HTTPError as e:
            raise CallStartError(f"Vapi request failed: {e}") from e

        if resp.status_code >= 400:
            raise CallStartError(f"Vapi create call failed: HTTP {resp.status_code} {resp.text[:500]}")
        try:
            data = resp.json()
        except ValueError:
            data = {}
        call_id = (data or {}).get("id") or ((data or {}).get("call") or {}).get("id")
        if not call_id:
            raise CallStartError("Vapi create call returned no call id")
        return str(call_id)


def webhook_url() -> str:
    base = current_app.config.get("VAPI_SERVER_URL")
    if not base:
        base = (current_app.config.get("APP_BASE_URL") or "").rstrip("/") + "/webhooks/vapi"
    secret = current_app.config.get("VAPI_WEBHOOK_SECRET")
    if secret:
        sep = "&" if "?" in base else "?"
        base = f"{base}{sep}{urlencode({'secret': secret})}"
    return base


def sms_followup_available(settings: ShopSettings, checkout: Optional[Checkout]) -> bool:
    return bool(
        settings.followup_sms_enabled
        and current_app.config.get("BREVO_API_KEY")
        and (settings.brevo_sms_sender or current_app.config.get("BREVO_SMS_SENDER"))
        and checkout is not None
        and checkout.recovery_url
    )


def build_assistant_config(job: CallJob, settings: ShopSettings, checkout: Optional[Checkout] = None) -> Dict[str, Any]:
    assistant_id = settings.vapi_assistant_id or current_app.config.get("VAPI_ASSISTANT_ID")
    phone_number_id = settings.vapi_phone_number_id or current_app.config.get("VAPI_PHONE_NUMBER_ID")
    if not assistant_id or not phone_number_id:
        raise CallStartError("Vapi assistant id / phone number id is not configured")

    metadata = {"shop": job.shop, "callJobId": job.id, "checkoutId": job.checkout_id}
    sms_on = sms_followup_available(settings, checkout)

    customer: Dict[str, Any] = {}
    if checkout is not None and checkout.customer_name:
        customer["name"] = checkout.customer_name[:40]

    overrides: Dict[str, Any] = {
        "serverUrl": webhook_url(),
        "serverMessages": list(SERVER_MESSAGES),
        "metadata": metadata,
        "variableValues": {
            "shop": job.shop,
            "checkoutId": job.checkout_id,
            "customerName": customer.get("name") or "",
            "cartValue": str(checkout.value) if checkout is not None else "",
            "currency": checkout.currency if checkout is not None else "",
            "smsFollowupEnabled": sms_on,
            "discountEnabled": bool(settings.discount_enabled) and sms_on,
            "maxDiscountPercent": settings.max_discount_percent_effective,
            "freeShippingEnabled": bool(settings.free_shipping_enabled) and sms_on,
        },
    }
    if sms_on:
        overrides["model"] = {"tools": [SEND_CHECKOUT_OFFER_TOOL]}

    return {
        "assistantId": assistant_id,
        "phoneNumberId": phone_number_id,
        "customer": customer,
        "metadata": metadata,
        "assistantOverrides": overrides,
    }


def start_call_for_job(job: CallJob, settings: ShopSettings, client: VapiClient | None = None) -> str:
    """
    Resolve the destination number and start the call. Raises
    PermanentCallError when no attempt can ever succeed for this job.
    """
    checkout = Checkout.query.filter_by(shop=job.shop, checkout_id=job.checkout_id).one_or_none()
    if checkout is None:
        raise PermanentCallError("CHECKOUT_NOT_FOUND")

    source = "job" if job.phone else "checkout"
    phone = normalize_phone(job.phone or checkout.phone)
    if not phone:
        merge_job_meta(job, {"phone": {"source": source, "raw": job.phone or checkout.phone, "valid": False}})
        db.session.commit()
        raise PermanentCallError("INVALID_PHONE_E164")

    merge_job_meta(job, {"phone": {"source": source, "e164": phone, "valid": True}})
    if job.phone != phone:
        job.phone = phone
    db.session.commit()

    config = build_assistant_config(job, settings, checkout)
    merge_offer(
        job,
        checkout_link=checkout.recovery_url,
        coupon_validity_hours=settings.coupon_validity_hours_effective,
        sms_enabled=sms_followup_available(settings, checkout),
    )
    db.session.commit()

    client = client or VapiClient.from_config()
    provider_call_id = client.start_call(phone, config)
    log_event("vapi_call_started", shop=job.shop, call_job_id=job.id, provider_call_id=provider_call_id)
    return provider_call_id
