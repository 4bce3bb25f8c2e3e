"""
Brevo transactional SMS plus the offer SMS templates.
"""
from __future__ import annotations

import re
from typing import Dict, Optional

import httpx
from flask import current_app

from checkout_recovery.errors import SmsSendError

DEFAULT_OFFER_TEMPLATE = "Checkout: {{checkout_link}} Code: {{offer_code}}"
DEFAULT_NO_OFFER_TEMPLATE = "Checkout: {{checkout_link}}"

TEMPLATE_VARS = (
    "shop", "shop_name", "customer_name", "checkout_id", "checkout_link",
    "discount_link", "offer_code", "percent", "validity_hours",
)


def normalize_sender(sender: Optional[str]) -> str:
    """Numeric senders keep up to 15 digits, alphanumeric ones up to 11 chars."""
    raw = (sender or "").strip()
    if not raw:
        return ""
    digits = re.sub(r"[^\d+]", "", raw).lstrip("+")
    if len(digits) >= 6 and digits.isdigit():
        return digits[:15]
    return raw[:11]


def normalize_recipient(e164: Optional[str]) -> str:
    return re.sub(r"[^\d+]", "", (e164 or "").strip()).lstrip("+")


def apply_template(template: str, variables: Dict[str, str]) -> str:
    out = template or ""
    for k, v in variables.items():
        out = out.replace("{{%s}}" % k, v).replace("{%s}" % k, v)
    return out


def _squash(s: str) -> str:
    return re.sub(r"\s+", " ", s).strip()


def build_sms_text(variables: Dict[str, str], has_offer: bool,
                   template_offer: Optional[str] = None, template_no_offer: Optional[str] = None) -> str:
    if has_offer:
        template = (template_offer or "").strip() or DEFAULT_OFFER_TEMPLATE
    else:
        template = (template_no_offer or "").strip() or DEFAULT_NO_OFFER_TEMPLATE
    out = _squash(apply_template(template, variables))
    if out:
        return out
    fallback = DEFAULT_OFFER_TEMPLATE if has_offer else DEFAULT_NO_OFFER_TEMPLATE
    return _squash(apply_template(fallback, variables))


class BrevoSmsClient:
    def __init__(self, api_key: str, sender: str, base_url: str = "https://api.brevo.com",
                 sms_type: str = "transactional", tag: Optional[str] = None, timeout: float = 15.0):
        self.api_key = api_key
        self.sender = normalize_sender(sender)
        self.base_url = base_url.rstrip("/")
        self.sms_type = "marketing" if (sms_type or "").strip().lower() == "marketing" else "transactional"
        self.tag = (tag or "").strip() or None
        self.timeout = timeout

    @classmethod
    def from_config(cls, sender_override: Optional[str] = None) -> "BrevoSmsClient":
        cfg = current_app.config
        key = (cfg.get("BREVO_API_KEY") or "").strip()
        sender = (sender_override or cfg.get("BREVO_SMS_SENDER") or "").strip()
        if not key:
            raise SmsSendError("BREVO_API_KEY is not configured")
        if not sender:
            raise SmsSendError("BREVO_SMS_SENDER is not configured")
        return cls(
            api_key=key,
            sender=sender,
            base_url=cfg.get("BREVO_API_BASE") or "https://api.brevo.com",
            sms_type=cfg.get("BREVO_SMS_TYPE") or "transactional",
            tag=cfg.get("BREVO_SMS_TAG"),
        )

    def send(self, to_e164: str, body: str) -> str:
        recipient = normalize_recipient(to_e164)
        if not recipient:
            raise SmsSendError("Invalid recipient phone")
        payload = {
            "sender": self.sender,
            "recipient": recipient,
            "content": (body or "").strip(),
            "type": self.sms_type,
        }
        if self.tag:
            payload["tag"] = self.tag

        try:
            with httpx.Client(timeout=self.timeout) as client:
                resp = client.post(
                    f"{self.base_url}/v3/transactionalSMS/send",
                    json=payload,
                    headers={"api-key": self.api_key, "accept": "application/json"},
                )
        except httpx.HTTPError as e:
            raise SmsSendError(f"Brevo request failed: {e}") from e

        if resp.status_code >= 400:
            raise SmsSendError(f"Brevo SMS failed HTTP {resp.status_code}: {resp.text[:900]}")
        try:
            data = resp.json() or {}
        except ValueError:
            data = {}
        return str(data.get("messageId") or "").strip()
