from flask import request, jsonify, current_app

from . import bp
from checkout_recovery.extensions import limiter
from checkout_recovery.observability import log_event
from checkout_recovery.security import secrets_match
from checkout_recovery.services.dispatcher import run_sweep
from checkout_recovery.services.metering import apply_billing_for_call
from checkout_recovery.services.webhook_events import VapiEvent, run_tool_calls
from checkout_recovery.utils.helpers import utcnow


def _unauthorized():
    return jsonify({"error": "unauthorized"}), 401


def _bearer_token() -> str:
    auth = request.headers.get("Authorization") or ""
    if auth.lower().startswith("bearer "):
        return auth[7:].strip()
    return ""


@bp.post("/run-calls")
@limiter.limit("30 per minute")
def run_calls():
    """Periodic trigger for the call dispatcher (cron / scheduler)."""
    want = current_app.config.get("RUN_CALLS_SECRET") or ""
    if want and not secrets_match(want, request.headers.get("X-Run-Calls-Secret")):
        return _unauthorized()

    now = utcnow()
    result = run_sweep(now=now, batch_limit=int(current_app.config.get("RUN_CALLS_BATCH_LIMIT") or 25))
    return jsonify({"ok": True, "now": now.isoformat() + "Z", **result.to_dict()}), 200


@bp.post("/apply-billing")
@limiter.limit("120 per minute")
def apply_billing():
    if not secrets_match(current_app.config.get("INTERNAL_API_SECRET"), request.headers.get("X-Internal-Secret")):
        return _unauthorized()

    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        return jsonify({"error": "bad_json"}), 400

    shop = str(body.get("shop") or "").strip()
    call_job_id = str(body.get("callJobId") or "").strip()
    if not shop or not call_job_id:
        return jsonify({"error": "missing_shop_or_call_job_id"}), 400

    result = apply_billing_for_call(
        shop,
        call_job_id,
        body.get("connectedSeconds") or 0,
        answered=bool(body.get("answered")),
        voicemail=bool(body.get("voicemail")),
    )
    return jsonify({
        "ok": True,
        "outcome": result.outcome,
        "minutes_billed": result.minutes_billed,
        "amount_cents": result.amount_cents,
    }), 200


@bp.route("/vapi-tools", methods=["GET", "POST"])
@limiter.limit("300 per minute")
def vapi_tools():
    """Tool-call only endpoint for assistants configured with a dedicated tool server."""
    cfg = current_app.config
    internal_ok = secrets_match(cfg.get("INTERNAL_API_SECRET"), request.headers.get("X-Internal-Secret"))
    if not internal_ok:
        bearer = cfg.get("VAPI_TOOL_BEARER_TOKEN") or ""
        secret = cfg.get("VAPI_WEBHOOK_SECRET") or ""
        if bearer and not secrets_match(bearer, _bearer_token()):
            return _unauthorized()
        if secret and not secrets_match(secret, request.args.get("secret")):
            return _unauthorized()

    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        return jsonify({"error": "bad_request"}), 400

    event = VapiEvent.from_payload(payload)
    if event.type and event.type != "tool-calls":
        return jsonify({"ok": True, "ignored": event.type}), 200

    results = run_tool_calls(event)
    log_event("vapi_tools", shop=event.shop, call_job_id=event.call_job_id, count=len(results))
    return jsonify({"results": results}), 200
