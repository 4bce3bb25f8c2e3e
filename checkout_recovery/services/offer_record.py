"""
Typed view of the offer record stored under CallJob.meta["offer"].
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, fields
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from checkout_recovery.models import CallJob
from checkout_recovery.services.jobs import merge_job_meta
from checkout_recovery.utils.helpers import utcnow

OFFER_LINK_ONLY = "link_only"
OFFER_DISCOUNT = "discount"
OFFER_FREE_SHIPPING = "free_shipping"
OFFER_TYPES = (OFFER_LINK_ONLY, OFFER_DISCOUNT, OFFER_FREE_SHIPPING)

META_KEY = "offer"


@dataclass
class OfferRecord:
    offer_type: Optional[str] = None
    offer_code: Optional[str] = None          # discount / free_shipping only
    discount_percent: Optional[int] = None    # discount only
    shopify_discount_node_id: Optional[str] = None
    checkout_link: Optional[str] = None
    coupon_validity_hours: Optional[int] = None
    sms_enabled: Optional[bool] = None
    sms_text: Optional[str] = None
    sms_sent_at: Optional[str] = None         # ISO-8601, naive UTC
    sms_message_sid: Optional[str] = None
    last_tool_call_id: Optional[str] = None
    last_requested_type: Optional[str] = None
    last_result: Optional[Dict[str, Any]] = None

    @classmethod
    def from_meta(cls, meta: Optional[Dict[str, Any]]) -> "OfferRecord":
        raw = (meta or {}).get(META_KEY)
        if not isinstance(raw, dict):
            return cls()
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in raw.items() if k in known})

    def sent_at(self) -> Optional[datetime]:
        if not self.sms_sent_at:
            return None
        try:
            return datetime.fromisoformat(self.sms_sent_at)
        except ValueError:
            return None

    def sent_recently(self, window: timedelta = timedelta(minutes=5), now: Optional[datetime] = None) -> bool:
        # sms_sent_at is only written after the provider accepted the message;
        # the provider does not always return a message id
        ts = self.sent_at()
        if ts is None:
            return False
        return (now or utcnow()) - ts <= window

    def matches(self, tool_call_id: str, offer_type: str, discount_percent: Optional[int]) -> bool:
        """Same tool call, or same offer (and for discounts the same percent)."""
        if self.last_tool_call_id and self.last_tool_call_id == tool_call_id:
            return True
        if self.offer_type != offer_type:
            return False
        if offer_type == OFFER_DISCOUNT:
            return self.discount_percent == discount_percent
        return True

    def success_payload(self) -> Dict[str, Any]:
        return {
            "ok": True,
            "sms_sent": True,
            "sms_message_id": self.sms_message_sid,
            "offer_type": self.offer_type,
            "code": self.offer_code,
            "discount_percent": self.discount_percent,
        }


def merge_offer(job: CallJob, **updates: Any) -> OfferRecord:
    """Additively merge into the stored offer record; None values are written as given. Caller commits."""
    known = {f.name for f in fields(OfferRecord)}
    unknown = set(updates) - known
    if unknown:
        raise TypeError(f"unknown offer fields: {sorted(unknown)}")
    current = ((job.meta or {}).get(META_KEY) or {})
    merged = {**current, **updates}
    merge_job_meta(job, {META_KEY: merged})
    return OfferRecord.from_meta(job.meta)


def offer_dict(record: OfferRecord) -> Dict[str, Any]:
    return {k: v for k, v in asdict(record).items() if v is not None}
