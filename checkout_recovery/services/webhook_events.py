"""
Call-provider webhook events.

Each event type has its own handler; EVENT_HANDLERS maps the type string to
it. Handlers return a (body, status) pair so the blueprint stays thin.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from checkout_recovery.errors import RecoveryError
from checkout_recovery.models.call_job import STATUS_CALLING, STATUS_COMPLETED
from checkout_recovery.observability import log_event
from checkout_recovery.services import jobs
from checkout_recovery.services.metering import apply_billing_for_call
from checkout_recovery.services.offer_record import OFFER_LINK_ONLY
from checkout_recovery.services.offers import handle_tool_call
from checkout_recovery.utils.helpers import safe_str

OFFER_TOOLS = ("send_checkout_offer", "send_checkout_sms")

# endedReason fragments that mean nobody (human) picked up
NO_ANSWER_MARKERS = ("did-not-answer", "no-answer", "busy", "voicemail", "machine", "failed", "error")

HandlerResult = Tuple[Dict[str, Any], int]


@dataclass
class VapiEvent:
    type: str
    message: Dict[str, Any]
    call: Dict[str, Any]
    shop: str = ""
    call_job_id: str = ""
    checkout_id: str = ""
    payload: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "VapiEvent":
        msg = payload.get("message") if isinstance(payload.get("message"), dict) else payload
        call = msg.get("call") or payload.get("call") or {}
        metadata = (
            call.get("metadata")
            or msg.get("metadata")
            or payload.get("metadata")
            or (payload.get("assistant") or {}).get("metadata")
            or {}
        )
        return cls(
            type=str(msg.get("type") or msg.get("messageType") or msg.get("event") or "").strip(),
            message=msg,
            call=call if isinstance(call, dict) else {},
            shop=str(metadata.get("shop") or "").strip(),
            call_job_id=str(metadata.get("callJobId") or "").strip(),
            checkout_id=str(metadata.get("checkoutId") or "").strip(),
            payload=payload,
        )

    @property
    def has_job(self) -> bool:
        return bool(self.shop and self.call_job_id)


# --- extraction helpers ---

def _seconds_between(start, end) -> int:
    if not start or not end:
        return 0
    try:
        s = datetime.fromisoformat(str(start).replace("Z", "+00:00"))
        e = datetime.fromisoformat(str(end).replace("Z", "+00:00"))
    except ValueError:
        return 0
    return max(0, int((e - s).total_seconds()))


def extract_connected_seconds(msg: Dict[str, Any], call: Dict[str, Any], artifact: Dict[str, Any]) -> int:
    for raw in (msg.get("durationSeconds"), msg.get("duration_seconds"),
                call.get("durationSeconds"), call.get("duration_seconds")):
        try:
            value = float(raw)
        except (TypeError, ValueError):
            continue
        if value == value and value > 0:
            return int(value)

    def first(*keys):
        for src in (msg, call, artifact):
            for k in keys:
                if src.get(k):
                    return src.get(k)
        return None

    return _seconds_between(first("startedAt", "startAt"), first("endedAt", "endAt"))


def detect_voicemail(ended_reason: str, msg: Dict[str, Any], call: Dict[str, Any], artifact: Dict[str, Any]) -> bool:
    r = (ended_reason or "").lower()
    if "voicemail" in r or "machine" in r:
        return True
    for flag in ((msg.get("analysis") or {}).get("voicemail"), call.get("voicemail"), artifact.get("voicemail")):
        if isinstance(flag, bool):
            return flag
    return False


def detect_answered(ended_reason: str, msg: Dict[str, Any], connected_seconds: int) -> bool:
    explicit = (msg.get("analysis") or {}).get("answered")
    if isinstance(explicit, bool):
        return explicit
    r = (ended_reason or "").lower()
    if any(marker in r for marker in NO_ANSWER_MARKERS):
        return False
    return connected_seconds > 0


def _parse_args(raw) -> Dict[str, Any]:
    if not raw:
        return {}
    if isinstance(raw, str):
        try:
            parsed = json.loads(raw)
        except ValueError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return raw if isinstance(raw, dict) else {}


def normalize_tool_calls(msg: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Flatten toolCallList / toolCalls[].function / toolWithToolCallList[].toolCall."""
    out: List[Dict[str, Any]] = []

    for tc in msg.get("toolCallList") or []:
        tc = tc or {}
        out.append({
            "id": str(tc.get("id") or "").strip(),
            "name": str(tc.get("name") or "").strip(),
            "arguments": tc.get("arguments") or tc.get("parameters") or {},
        })

    for tc in msg.get("toolCalls") or []:
        tc = tc or {}
        fn = tc.get("function") or {}
        out.append({
            "id": str(tc.get("id") or "").strip(),
            "name": str(tc.get("name") or fn.get("name") or "").strip(),
            "arguments": tc.get("arguments") or fn.get("arguments") or tc.get("parameters") or {},
        })

    for tw in msg.get("toolWithToolCallList") or []:
        tw = tw or {}
        tc = tw.get("toolCall") or {}
        fn = tc.get("function") or {}
        out.append({
            "id": str(tc.get("id") or "").strip(),
            "name": str(tw.get("name") or tc.get("name") or fn.get("name") or "").strip(),
            "arguments": tc.get("arguments") or fn.get("arguments") or tc.get("parameters") or {},
        })

    return [{**tc, "arguments": _parse_args(tc["arguments"])} for tc in out if tc["id"] and tc["name"]]


# --- handlers ---

def handle_status_update(event: VapiEvent) -> HandlerResult:
    status = str(event.message.get("status") or "").strip().lower()
    new_status = None
    if status in ("in-progress", "connected"):
        new_status = STATUS_CALLING
    elif status == "ended":
        new_status = STATUS_COMPLETED
    jobs.update_job_if_active(event.shop, event.call_job_id, status=new_status, outcome=f"VAPI_STATUS: {status}")
    return {"ok": True}, 200


def handle_transcript(event: VapiEvent) -> HandlerResult:
    msg = event.message
    is_final = str(msg.get("transcriptType") or "") == "final" or 'transcriptType="final"' in event.type
    transcript = safe_str(msg.get("transcript"), 20000)
    if is_final and transcript:
        jobs.update_job_if_active(event.shop, event.call_job_id, transcript=transcript,
                                  outcome="VAPI_TRANSCRIPT_FINAL_RECEIVED")
    return {"ok": True}, 200


def handle_end_of_call_report(event: VapiEvent) -> HandlerResult:
    msg, call = event.message, event.call
    artifact = msg.get("artifact") or {}
    ended_reason = safe_str(msg.get("endedReason"), 200)
    transcript = safe_str(artifact.get("transcript") or msg.get("transcript"), 20000)
    recording = artifact.get("recording") or {}
    recording_url = (
        (recording.get("url") or recording.get("downloadUrl") or recording.get("recordingUrl"))
        if isinstance(recording, dict) else None
    ) or artifact.get("recordingUrl") or msg.get("recordingUrl")

    jobs.update_job_if_active(
        event.shop, event.call_job_id,
        status=STATUS_COMPLETED,
        ended_reason=ended_reason or None,
        transcript=transcript or None,
        recording_url=safe_str(recording_url, 2000) if recording_url else None,
        outcome="VAPI_END_OF_CALL_REPORT",
    )

    connected = extract_connected_seconds(msg, call, artifact)
    voicemail = detect_voicemail(ended_reason, msg, call, artifact)
    answered = detect_answered(ended_reason, msg, connected)

    try:
        result = apply_billing_for_call(event.shop, event.call_job_id, connected, answered, voicemail)
    except Exception as e:
        jobs.update_job_if_active(event.shop, event.call_job_id, outcome=f"BILLING_ERROR: {e}")
        log_event("billing_failed", level="error", shop=event.shop, call_job_id=event.call_job_id,
                  connected_seconds=connected, error=str(e))
        # non-2xx so the provider redelivers the report
        return {"ok": False, "error": "billing_failed"}, 500

    return {"ok": True, "billing": result.outcome}, 200


def _tool_result(name: str, tool_call_id: str, *, result: Optional[Dict[str, Any]] = None,
                 error: Optional[str] = None) -> Dict[str, Any]:
    out: Dict[str, Any] = {"name": name, "toolCallId": tool_call_id}
    if error is not None:
        out["error"] = safe_str(error, 800)
    else:
        out["result"] = json.dumps(result)
    return out


def run_tool_calls(event: VapiEvent) -> List[Dict[str, Any]]:
    results: List[Dict[str, Any]] = []
    for tc in normalize_tool_calls(event.message):
        name, tc_id, args = tc["name"], tc["id"], tc["arguments"]

        if name not in OFFER_TOOLS:
            results.append(_tool_result(name, tc_id, result={"ok": True, "ignored": True}))
            continue
        if not event.shop:
            results.append(_tool_result(name, tc_id, error="Missing shop in metadata."))
            continue
        if not event.call_job_id:
            results.append(_tool_result(name, tc_id, error="Missing callJobId in metadata."))
            continue
        if name == "send_checkout_offer" and args.get("sendSms") is False:
            results.append(_tool_result(name, tc_id, error="Tool called with sendSms=false."))
            continue

        offer_type = OFFER_LINK_ONLY if name == "send_checkout_sms" else args.get("offerType")
        try:
            res = handle_tool_call(event.shop, event.call_job_id, tc_id, offer_type, args.get("discountPercent"))
        except RecoveryError as e:
            results.append(_tool_result(name, tc_id, error=str(e)))
            continue

        if res.ok:
            results.append(_tool_result(name, tc_id, result=res.payload))
        else:
            results.append(_tool_result(name, tc_id, error=res.error))
    return results


def handle_tool_calls(event: VapiEvent) -> HandlerResult:
    return {"results": run_tool_calls(event)}, 200


def handle_other(event: VapiEvent) -> HandlerResult:
    jobs.update_job_if_active(event.shop, event.call_job_id, outcome=f"VAPI_EVENT: {event.type or 'unknown'}")
    return {"ok": True}, 200


EVENT_HANDLERS: Dict[str, Callable[[VapiEvent], HandlerResult]] = {
    "status-update": handle_status_update,
    "transcript": handle_transcript,
    "end-of-call-report": handle_end_of_call_report,
    "tool-calls": handle_tool_calls,
}


def handler_for(event_type: str) -> Callable[[VapiEvent], HandlerResult]:
    if event_type in EVENT_HANDLERS:
        return EVENT_HANDLERS[event_type]
    if event_type.startswith("transcript"):
        return handle_transcript
    return handle_other


def dispatch_event(event: VapiEvent) -> HandlerResult:
    if not event.has_job:
        return {"ok": True, "ignored": "missing_metadata"}, 200
    return handler_for(event.type)(event)
