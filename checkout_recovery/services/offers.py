"""
Mid-call offer tool: create a discount / free-shipping code when asked and
text the checkout link to the customer.

Repeated deliveries of one tool call are absorbed in three places, cheapest
first: the process-local result cache, the offer record persisted on the
job, and the ToolCallLog row that only one worker can claim.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from checkout_recovery.errors import OfferRejected, RecoveryError, ShopifyError
from checkout_recovery.extensions import db
from checkout_recovery.models import CallJob, Checkout, ShopSettings, ToolCallLog
from checkout_recovery.models.tool_call_log import (
    TOOL_CALL_FAILED, TOOL_CALL_PROCESSING, TOOL_CALL_SUCCEEDED,
)
from checkout_recovery.observability import log_event
from checkout_recovery.services.discount_codes import create_offer_code, make_code
from checkout_recovery.services.jobs import get_job
from checkout_recovery.services.offer_record import (
    OFFER_DISCOUNT, OFFER_FREE_SHIPPING, OFFER_LINK_ONLY, OFFER_TYPES, OfferRecord, merge_offer,
)
from checkout_recovery.services.shopify import ShopifyAdminClient, client_for_shop
from checkout_recovery.services.sms import BrevoSmsClient, build_sms_text
from checkout_recovery.services.tool_cache import ToolResultCache, get_tool_cache
from checkout_recovery.utils.helpers import safe_int, safe_str, utcnow


@dataclass
class ToolResult:
    ok: bool
    payload: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    code: Optional[str] = None
    source: str = "fresh"  # fresh | cache | offer_record | tool_log

    @classmethod
    def success(cls, payload: Dict[str, Any], source: str = "fresh") -> "ToolResult":
        return cls(ok=True, payload=dict(payload), source=source)

    @classmethod
    def failure(cls, message: str, code: str) -> "ToolResult":
        return cls(ok=False, error=message, code=code)


def normalize_offer_type(value) -> str:
    v = str(value or "").strip().lower()
    return v if v in OFFER_TYPES else OFFER_LINK_ONLY


def _process_cache() -> ToolResultCache:
    cfg = current_app.config
    return get_tool_cache(
        maxsize=int(cfg.get("TOOL_RESULT_CACHE_MAXSIZE") or 500),
        ttl=int(cfg.get("TOOL_RESULT_CACHE_TTL_SECONDS") or 600),
    )


def handle_tool_call(shop: str, call_job_id: str, tool_call_id: str, requested_offer_type,
                     requested_discount_percent=None, *,
                     cache: Optional[ToolResultCache] = None,
                     shopify: Optional[ShopifyAdminClient] = None,
                     sms: Optional[BrevoSmsClient] = None,
                     code_factory: Callable[[Optional[str]], str] = make_code,
                     now: Optional[datetime] = None) -> ToolResult:
    cache = cache if cache is not None else _process_cache()
    cache_key = ToolResultCache.key(shop, call_job_id, tool_call_id)
    hit = cache.get(cache_key)
    if hit is not None:
        return ToolResult.success(hit, source="cache")

    job = get_job(shop, call_job_id)
    if job is None:
        return ToolResult.failure("CallJob not found.", "job_not_found")

    offer_type = normalize_offer_type(requested_offer_type)
    percent = safe_int(requested_discount_percent, 0) if offer_type == OFFER_DISCOUNT else None
    now = now or utcnow()

    record = OfferRecord.from_meta(job.meta)
    if record.sent_recently(now=now) and record.matches(tool_call_id, offer_type, percent):
        payload = record.success_payload()
        cache.put(cache_key, payload)
        log_event("offer_tool_duplicate", shop=shop, call_job_id=call_job_id, tool_call_id=tool_call_id)
        return ToolResult.success(payload, source="offer_record")

    claim = _claim_tool_call(shop, call_job_id, tool_call_id)
    if isinstance(claim, ToolResult):
        if claim.ok:
            cache.put(cache_key, claim.payload)
        return claim

    try:
        payload, offer_updates = _execute_offer(
            job, offer_type, percent, tool_call_id, now,
            shopify=shopify, sms=sms, code_factory=code_factory,
        )
    except RecoveryError as e:
        db.session.rollback()
        code = e.code if isinstance(e, OfferRejected) else type(e).__name__
        _finish_claim(claim, TOOL_CALL_FAILED, error=str(e))
        log_event("offer_tool_failed", level="warning", shop=shop, call_job_id=call_job_id,
                  tool_call_id=tool_call_id, offer_type=offer_type, error=str(e))
        return ToolResult.failure(str(e), code)
    except Exception as e:
        db.session.rollback()
        _finish_claim(claim, TOOL_CALL_FAILED, error=str(e))
        raise

    # the offer record and the claim row commit together
    merge_offer(job, **offer_updates, last_result=payload)
    _finish_claim(claim, TOOL_CALL_SUCCEEDED, result=payload)
    cache.put(cache_key, payload)

    log_event("offer_tool_succeeded", shop=shop, call_job_id=call_job_id, tool_call_id=tool_call_id,
              offer_type=payload["offer_type"], code=payload["code"], sms_message_id=payload["sms_message_id"])
    return ToolResult.success(payload)


def _claim_tool_call(shop: str, call_job_id: str, tool_call_id: str):
    """Returns the claimed log id, or a ToolResult when another delivery owns/owned it."""
    row = ToolCallLog(shop=shop, call_job_id=call_job_id, tool_call_id=tool_call_id, status=TOOL_CALL_PROCESSING)
    db.session.add(row)
    try:
        db.session.commit()
        return row.id
    except IntegrityError:
        db.session.rollback()

    existing = ToolCallLog.query.filter_by(call_job_id=call_job_id, tool_call_id=tool_call_id).one()
    if existing.status == TOOL_CALL_SUCCEEDED and existing.result:
        return ToolResult.success(existing.result, source="tool_log")
    if existing.status == TOOL_CALL_FAILED:
        res = db.session.execute(
            update(ToolCallLog)
            .where(ToolCallLog.id == existing.id, ToolCallLog.status == TOOL_CALL_FAILED)
            .values(status=TOOL_CALL_PROCESSING, retries=ToolCallLog.retries + 1, error=None)
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
        if res.rowcount == 1:
            return existing.id
    return ToolResult.failure("This tool call is already being processed.", "duplicate_in_progress")


def _finish_claim(log_id: int, status: str, result: Optional[Dict[str, Any]] = None,
                  error: Optional[str] = None) -> None:
    db.session.execute(
        update(ToolCallLog)
        .where(ToolCallLog.id == log_id)
        .values(status=status, result=result, error=safe_str(error, 800) if error else None,
                processed_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    db.session.commit()


def _meets_minimum(settings: ShopSettings, checkout: Checkout) -> bool:
    if settings.min_cart_value_for_discount is None:
        return True
    return Decimal(str(checkout.value or 0)) >= Decimal(str(settings.min_cart_value_for_discount))


def _execute_offer(job: CallJob, offer_type: str, percent: Optional[int], tool_call_id: str, now: datetime, *,
                   shopify: Optional[ShopifyAdminClient], sms: Optional[BrevoSmsClient],
                   code_factory: Callable[[Optional[str]], str]):
    settings = ShopSettings.for_shop(job.shop)

    if not settings.followup_sms_enabled:
        raise OfferRejected("SMS follow-up is disabled for this shop.", "sms_disabled")

    checkout = Checkout.query.filter_by(shop=job.shop, checkout_id=job.checkout_id).one_or_none()
    if checkout is None:
        raise OfferRejected("Checkout not found.", "checkout_not_found")
    if not checkout.recovery_url:
        raise OfferRejected("Missing recovery checkout URL.", "missing_checkout_url")

    to = (job.phone or "").strip()
    if not to.startswith("+"):
        raise OfferRejected("Missing/invalid E.164 recipient on CallJob.", "invalid_recipient")

    validity_hours = settings.coupon_validity_hours_effective
    max_percent = settings.max_discount_percent_effective

    if offer_type == OFFER_DISCOUNT:
        if not settings.discount_enabled:
            raise OfferRejected("Discounts are disabled for this shop.", "discount_disabled")
        if not _meets_minimum(settings, checkout):
            raise OfferRejected("Cart total does not meet the minimum value for discount.", "below_minimum")
        if not percent or percent <= 0:
            raise OfferRejected("A positive discountPercent is required.", "invalid_percent")
        if percent > max_percent:
            raise OfferRejected(f"Requested discountPercent exceeds the max of {max_percent}.", "percent_too_high")
    elif offer_type == OFFER_FREE_SHIPPING:
        if not settings.free_shipping_enabled:
            raise OfferRejected("Free shipping offers are disabled for this shop.", "free_shipping_disabled")
        if not _meets_minimum(settings, checkout):
            raise OfferRejected("Cart total does not meet the minimum value for offer.", "below_minimum")

    sms = sms or BrevoSmsClient.from_config(settings.brevo_sms_sender)

    offer_code = node_id = None
    if offer_type in (OFFER_DISCOUNT, OFFER_FREE_SHIPPING):
        label = "discount" if offer_type == OFFER_DISCOUNT else "free shipping"
        try:
            shopify = shopify or client_for_shop(job.shop)
            customer_gid = shopify.find_customer_gid_by_email(checkout.email)
            offer_code, node_id = create_offer_code(
                shopify, offer_type,
                prefix=settings.coupon_prefix,
                percent=percent,
                validity_hours=validity_hours,
                now=now,
                customer_gid=customer_gid,
                min_subtotal=settings.min_cart_value_for_discount,
                make=code_factory,
            )
        except ShopifyError as e:
            raise ShopifyError(f"Could not create Shopify {label} code: {e}") from e

    variables = {
        "shop": job.shop,
        "shop_name": job.shop,
        "customer_name": (checkout.customer_name or "").strip() or "Customer",
        "checkout_id": str(checkout.checkout_id),
        "checkout_link": checkout.recovery_url,
        "discount_link": checkout.recovery_url,
        "offer_code": offer_code or "",
        "percent": str(percent) if offer_type == OFFER_DISCOUNT else "",
        "validity_hours": str(validity_hours),
    }
    text = build_sms_text(variables, has_offer=bool(offer_code),
                          template_offer=settings.sms_template_offer,
                          template_no_offer=settings.sms_template_no_offer)
    message_id = sms.send(to, text) or None

    payload = {
        "ok": True,
        "sms_sent": True,
        "sms_message_id": message_id,
        "offer_type": offer_type,
        "code": offer_code,
        "discount_percent": percent if offer_type == OFFER_DISCOUNT else None,
    }
    updates = {
        "offer_type": offer_type,
        "offer_code": offer_code,
        "discount_percent": payload["discount_percent"],
        "shopify_discount_node_id": node_id,
        "checkout_link": checkout.recovery_url,
        "coupon_validity_hours": validity_hours,
        "sms_enabled": True,
        "sms_text": text,
        "sms_sent_at": now.isoformat(),
        "sms_message_sid": message_id,
        "last_tool_call_id": tool_call_id,
        "last_requested_type": offer_type,
    }
    return payload, updates
