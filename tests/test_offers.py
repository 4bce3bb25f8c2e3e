import time
from datetime import datetime, timedelta

import pytest

from checkout_recovery.errors import DuplicateDiscountCodeError
from checkout_recovery.extensions import db
from checkout_recovery.models import CallJob, ToolCallLog
from checkout_recovery.services.offers import handle_tool_call, normalize_offer_type
from checkout_recovery.services.tool_cache import ToolResultCache

SHOP = "demo-store.myshopify.com"
NOW = datetime(2026, 1, 6, 10, 0)

OFFER_SETTINGS = {
    "followup_sms_enabled": True,
    "discount_enabled": True,
    "free_shipping_enabled": True,
    "max_discount_percent": 15,
    "coupon_prefix": "save",
    "coupon_validity_hours": 48,
}


class FakeShopify:
    def __init__(self, duplicates=0):
        self.duplicates = duplicates
        self.attempted = []
        self.created = []

    def find_customer_gid_by_email(self, email):
        return "gid://shopify/Customer/1" if email else None

    def create_discount_code(self, code, percent, starts_at, ends_at=None, customer_gid=None, min_subtotal=None):
        self.attempted.append(code)
        if len(self.attempted) <= self.duplicates:
            raise DuplicateDiscountCodeError([{"field": ["code"], "message": "Code must be unique."}])
        self.created.append({"code": code, "percent": percent, "starts_at": starts_at, "ends_at": ends_at,
                             "customer_gid": customer_gid})
        return f"gid://shopify/DiscountCodeNode/{len(self.created)}"

    def create_free_shipping_code(self, code, starts_at, ends_at=None, customer_gid=None, min_subtotal=None):
        self.attempted.append(code)
        self.created.append({"code": code, "free_shipping": True})
        return "gid://shopify/DiscountCodeNode/fs"


class FakeSms:
    def __init__(self):
        self.sent = []

    def send(self, to, body):
        self.sent.append((to, body))
        return f"msg-{len(self.sent)}"


def _codes(*codes):
    it = iter(codes)
    return lambda prefix: next(it)


def _call(tool_call_id, offer_type, percent=None, **kw):
    kw.setdefault("cache", ToolResultCache())
    kw.setdefault("now", NOW)
    return handle_tool_call(SHOP, "job-1", tool_call_id, offer_type, percent, **kw)


def _meta():
    return db.session.get(CallJob, "job-1", populate_existing=True).meta


def test_normalize_offer_type():
    assert normalize_offer_type("DISCOUNT") == "discount"
    assert normalize_offer_type(" free_shipping ") == "free_shipping"
    assert normalize_offer_type("something") == "link_only"
    assert normalize_offer_type(None) == "link_only"


def test_link_only_sends_checkout_link(ctx, seed):
    seed(settings=OFFER_SETTINGS)
    sms = FakeSms()

    res = _call("tc-1", "link_only", sms=sms)

    assert res.ok and res.source == "fresh"
    assert res.payload == {
        "ok": True, "sms_sent": True, "sms_message_id": "msg-1",
        "offer_type": "link_only", "code": None, "discount_percent": None,
    }
    assert sms.sent == [("+4915112345678", "Checkout: https://demo-store.example/checkouts/chk-1/recover")]
    offer = _meta()["offer"]
    assert offer["sms_message_sid"] == "msg-1"
    assert offer["last_tool_call_id"] == "tc-1"
    assert offer["sms_sent_at"] == NOW.isoformat()
    log = ToolCallLog.query.filter_by(call_job_id="job-1", tool_call_id="tc-1").one()
    assert log.status == "succeeded"
    assert log.result["sms_message_id"] == "msg-1"


def test_discount_code_retries_on_collision(ctx, seed):
    seed(settings=OFFER_SETTINGS)
    shopify = FakeShopify(duplicates=3)
    sms = FakeSms()

    res = _call("tc-d", "discount", 10, shopify=shopify, sms=sms,
                code_factory=_codes("SAVE1001", "SAVE1002", "SAVE1003", "SAVE1004", "SAVE1005"))

    assert res.ok
    assert res.payload["code"] == "SAVE1004"
    assert res.payload["discount_percent"] == 10
    assert shopify.attempted == ["SAVE1001", "SAVE1002", "SAVE1003", "SAVE1004"]
    created = shopify.created[0]
    assert created["starts_at"] == "2026-01-06T10:00:00Z"
    assert created["ends_at"] == "2026-01-08T10:00:00Z"
    assert created["customer_gid"] == "gid://shopify/Customer/1"
    assert "SAVE1004" in sms.sent[0][1]
    offer = _meta()["offer"]
    assert offer["offer_code"] == "SAVE1004"
    assert offer["shopify_discount_node_id"] == "gid://shopify/DiscountCodeNode/1"


def test_discount_collisions_exhausted(ctx, seed):
    seed(settings=OFFER_SETTINGS)
    shopify = FakeShopify(duplicates=100)
    sms = FakeSms()

    res = _call("tc-x", "discount", 10, shopify=shopify, sms=sms)

    assert not res.ok
    assert "Could not create Shopify discount code" in res.error
    assert len(shopify.attempted) == 8
    assert sms.sent == []
    assert ToolCallLog.query.filter_by(tool_call_id="tc-x").one().status == "failed"


def test_free_shipping_offer(ctx, seed):
    seed(settings=OFFER_SETTINGS)
    res = _call("tc-fs", "free_shipping", shopify=FakeShopify(), sms=FakeSms(), code_factory=_codes("SAVE2000"))
    assert res.ok
    assert res.payload["offer_type"] == "free_shipping"
    assert res.payload["code"] == "SAVE2000"
    assert res.payload["discount_percent"] is None


def test_cache_hit_skips_everything(ctx, seed):
    seed(settings=OFFER_SETTINGS)
    cache = ToolResultCache()
    sms = FakeSms()

    first = _call("tc-c", "link_only", sms=sms, cache=cache)
    second = _call("tc-c", "link_only", sms=sms, cache=cache)

    assert second.source == "cache"
    assert second.payload == first.payload
    assert len(sms.sent) == 1


def test_durable_record_absorbs_repeat_without_cache(ctx, seed):
    seed(settings=OFFER_SETTINGS)
    sms = FakeSms()

    _call("tc-a", "discount", 10, shopify=FakeShopify(), sms=sms, code_factory=_codes("SAVE3000"))
    # another delivery asks for the same offer under a new tool call id, on a cold cache
    again = _call("tc-b", "discount", 10, shopify=FakeShopify(), sms=sms,
                  now=NOW + timedelta(minutes=2))

    assert again.ok and again.source == "offer_record"
    assert again.payload["code"] == "SAVE3000"
    assert len(sms.sent) == 1


class NoIdSms(FakeSms):
    def send(self, to, body):
        super().send(to, body)
        return None


def test_durable_record_works_without_provider_message_id(ctx, seed):
    seed(settings=OFFER_SETTINGS)
    sms = NoIdSms()

    first = _call("tc-a", "link_only", sms=sms)
    again = _call("tc-b", "link_only", sms=sms, now=NOW + timedelta(minutes=1))

    assert first.payload["sms_message_id"] is None
    assert again.ok and again.source == "offer_record"
    assert len(sms.sent) == 1


def test_different_percent_is_a_new_offer(ctx, seed):
    seed(settings=OFFER_SETTINGS)
    sms = FakeSms()

    _call("tc-a", "discount", 10, shopify=FakeShopify(), sms=sms, code_factory=_codes("SAVE3000"))
    again = _call("tc-b", "discount", 15, shopify=FakeShopify(), sms=sms, code_factory=_codes("SAVE3001"))

    assert again.source == "fresh"
    assert again.payload["code"] == "SAVE3001"
    assert len(sms.sent) == 2


def test_old_offer_record_is_not_reused(ctx, seed):
    seed(settings=OFFER_SETTINGS)
    sms = FakeSms()

    _call("tc-a", "link_only", sms=sms)
    later = _call("tc-b", "link_only", sms=sms, now=NOW + timedelta(minutes=6))

    assert later.source == "fresh"
    assert len(sms.sent) == 2


def test_claimed_tool_call_is_reported_in_progress(ctx, seed):
    seed(settings=OFFER_SETTINGS)
    db.session.add(ToolCallLog(shop=SHOP, call_job_id="job-1", tool_call_id="tc-busy", status="processing"))
    db.session.commit()
    sms = FakeSms()

    res = _call("tc-busy", "link_only", sms=sms)

    assert not res.ok
    assert res.code == "duplicate_in_progress"
    assert sms.sent == []


def test_succeeded_tool_call_returns_stored_result(ctx, seed):
    seed(settings=OFFER_SETTINGS)
    stored = {"ok": True, "sms_sent": True, "sms_message_id": "msg-old", "offer_type": "link_only",
              "code": None, "discount_percent": None}
    db.session.add(ToolCallLog(shop=SHOP, call_job_id="job-1", tool_call_id="tc-done",
                               status="succeeded", result=stored))
    db.session.commit()

    res = _call("tc-done", "link_only", sms=FakeSms())

    assert res.ok and res.source == "tool_log"
    assert res.payload == stored


def test_failed_tool_call_can_be_retried(ctx, seed):
    seed(settings=OFFER_SETTINGS)
    db.session.add(ToolCallLog(shop=SHOP, call_job_id="job-1", tool_call_id="tc-again",
                               status="failed", error="Brevo SMS failed HTTP 500"))
    db.session.commit()

    res = _call("tc-again", "link_only", sms=FakeSms())

    assert res.ok
    log = ToolCallLog.query.filter_by(tool_call_id="tc-again").one()
    assert log.status == "succeeded"
    assert log.retries == 1
    assert log.error is None


def test_unknown_job(ctx, seed):
    seed(settings=OFFER_SETTINGS)
    res = handle_tool_call(SHOP, "job-missing", "tc-1", "link_only", cache=ToolResultCache(), sms=FakeSms())
    assert not res.ok
    assert res.code == "job_not_found"


@pytest.mark.parametrize("settings, offer_type, percent, code", [
    ({**OFFER_SETTINGS, "followup_sms_enabled": False}, "link_only", None, "sms_disabled"),
    ({**OFFER_SETTINGS, "discount_enabled": False}, "discount", 10, "discount_disabled"),
    (OFFER_SETTINGS, "discount", 0, "invalid_percent"),
    (OFFER_SETTINGS, "discount", 20, "percent_too_high"),
    ({**OFFER_SETTINGS, "min_cart_value_for_discount": 100}, "discount", 10, "below_minimum"),
    ({**OFFER_SETTINGS, "free_shipping_enabled": False}, "free_shipping", None, "free_shipping_disabled"),
])
def test_policy_gates(ctx, seed, settings, offer_type, percent, code):
    seed(settings=settings)
    shopify, sms = FakeShopify(), FakeSms()

    res = _call("tc-gate", offer_type, percent, shopify=shopify, sms=sms)

    assert not res.ok
    assert res.code == code
    assert shopify.attempted == []
    assert sms.sent == []
    assert ToolCallLog.query.filter_by(tool_call_id="tc-gate").one().status == "failed"


def test_missing_recovery_url(ctx, seed):
    seed(settings=OFFER_SETTINGS, recovery_url=None)
    res = _call("tc-1", "link_only", sms=FakeSms())
    assert res.code == "missing_checkout_url"


def test_missing_recipient(ctx, seed):
    seed(settings=OFFER_SETTINGS, phone=None)
    res = _call("tc-1", "link_only", sms=FakeSms())
    assert res.code == "invalid_recipient"


class SlowSms(FakeSms):
    def send(self, to, body):
        time.sleep(0.2)
        return super().send(to, body)


def test_concurrent_deliveries_of_one_tool_call_send_one_sms(file_app, seed, run_concurrently):
    with file_app.app_context():
        seed(settings=OFFER_SETTINGS)
    sms = SlowSms()

    # separate caches, as two worker processes would have
    results = run_concurrently(lambda: _call("tc-race", "link_only", sms=sms))

    assert len(sms.sent) == 1
    fresh = [r for r in results if r.ok and r.source == "fresh"]
    assert len(fresh) == 1
    other = next(r for r in results if r is not fresh[0])
    assert other.code == "duplicate_in_progress" or other.source in ("tool_log", "offer_record")
    with file_app.app_context():
        assert ToolCallLog.query.filter_by(tool_call_id="tc-race").count() == 1
        assert _meta()["offer"]["last_tool_call_id"] == "tc-race"
