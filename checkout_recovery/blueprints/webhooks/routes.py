from flask import request, jsonify, current_app

from . import bp
from checkout_recovery.extensions import limiter
from checkout_recovery.observability import log_event
from checkout_recovery.security import secrets_match
from checkout_recovery.services.webhook_events import VapiEvent, dispatch_event


@bp.post("/vapi")
@limiter.limit("600 per minute")
def vapi_webhook():
    """
    Vapi -> /webhooks/vapi?secret=...
    Verifies the shared secret, then routes by message type.
    """
    if not secrets_match(current_app.config.get("VAPI_WEBHOOK_SECRET"), request.args.get("secret")):
        return jsonify({"error": "unauthorized"}), 401

    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        return jsonify({"error": "bad_request"}), 400

    event = VapiEvent.from_payload(payload)
    body, status = dispatch_event(event)

    log_event("vapi_webhook", type=event.type, shop=event.shop, call_job_id=event.call_job_id, status=status)
    return jsonify(body), status
