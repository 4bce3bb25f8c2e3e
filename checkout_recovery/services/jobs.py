"""
Job Store access. Every status transition goes through a single UPDATE so
that concurrent sweeps and webhook deliveries never both win.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import case, update

from checkout_recovery.extensions import db
from checkout_recovery.models import CallJob
from checkout_recovery.models.call_job import (
    STATUS_QUEUED, STATUS_CALLING, STATUS_FAILED, TERMINAL_STATUSES,
)
from checkout_recovery.utils.helpers import safe_str


def _execute(stmt) -> int:
    res = db.session.execute(stmt.execution_options(synchronize_session=False))
    db.session.commit()
    return res.rowcount or 0


def claim_job(job_id: str) -> bool:
    """QUEUED -> CALLING and attempts += 1, only if the row is still QUEUED."""
    stmt = (
        update(CallJob)
        .where(CallJob.id == job_id, CallJob.status == STATUS_QUEUED)
        .values(status=STATUS_CALLING, attempts=CallJob.attempts + 1, outcome=None)
    )
    return _execute(stmt) == 1


def mark_started(job_id: str, provider_call_id: str | None, provider: str = "vapi") -> int:
    stmt = (
        update(CallJob)
        .where(CallJob.id == job_id)
        .values(
            status=STATUS_CALLING,
            provider=provider,
            provider_call_id=provider_call_id or None,
            outcome="VAPI_CALL_STARTED",
        )
    )
    return _execute(stmt)


def fail_if_queued(job_id: str, outcome: str) -> bool:
    """QUEUED -> FAILED without a claim; False when another sweep got there first."""
    stmt = (
        update(CallJob)
        .where(CallJob.id == job_id, CallJob.status == STATUS_QUEUED)
        .values(status=STATUS_FAILED, outcome=safe_str(outcome, 2000))
    )
    return _execute(stmt) == 1


def mark_failed(job_id: str, outcome: str) -> int:
    stmt = (
        update(CallJob)
        .where(CallJob.id == job_id)
        .values(status=STATUS_FAILED, outcome=safe_str(outcome, 2000))
    )
    return _execute(stmt)


def requeue(job_id: str, scheduled_for: datetime, outcome: str) -> int:
    stmt = (
        update(CallJob)
        .where(CallJob.id == job_id, CallJob.status == STATUS_CALLING)
        .values(status=STATUS_QUEUED, scheduled_for=scheduled_for, outcome=safe_str(outcome, 2000))
    )
    return _execute(stmt)


def current_attempts(job_id: str) -> int:
    return int(db.session.query(CallJob.attempts).filter(CallJob.id == job_id).scalar() or 0)


def update_job_if_active(shop: str, job_id: str, *, status: Optional[str] = None, **fields: Any) -> int:
    """
    Webhook-driven update scoped to (shop, job). A requested status change is
    ignored for jobs already COMPLETED/FAILED; other fields are still written.
    """
    values: Dict[str, Any] = dict(fields)
    if "outcome" in values and values["outcome"] is not None:
        values["outcome"] = safe_str(values["outcome"], 2000)
    if status is not None:
        values["status"] = case(
            (CallJob.status.in_(TERMINAL_STATUSES), CallJob.status),
            else_=status,
        )
    if not values:
        return 0
    stmt = update(CallJob).where(CallJob.id == job_id, CallJob.shop == shop).values(**values)
    return _execute(stmt)


def merge_job_meta(job: CallJob, patch: Dict[str, Any]) -> Dict[str, Any]:
    """Additive top-level merge; the caller commits."""
    merged = {**(job.meta or {}), **patch}
    job.meta = merged  # reassign so the JSON column is flagged dirty
    return merged


def get_job(shop: str, job_id: str) -> Optional[CallJob]:
    return CallJob.query.filter_by(id=job_id, shop=shop).one_or_none()
