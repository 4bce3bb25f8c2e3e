"""
Call dispatcher: one sweep over due QUEUED jobs.

Safe to run concurrently; the conditional claim in jobs.claim_job decides
which sweep owns a job.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Callable, Optional

from flask import current_app

from checkout_recovery.errors import PermanentCallError
from checkout_recovery.extensions import db
from checkout_recovery.models import CallJob, ShopSettings
from checkout_recovery.models.call_job import STATUS_QUEUED
from checkout_recovery.observability import log_event
from checkout_recovery.services import jobs
from checkout_recovery.services.call_provider import start_call_for_job
from checkout_recovery.services.call_window import next_retry_at
from checkout_recovery.utils.helpers import as_naive_utc, utcnow

DEFAULT_BATCH_LIMIT = 25
SKIPPED_DISABLED = "SKIPPED: AUTOMATION_DISABLED"

StartCall = Callable[[CallJob, ShopSettings], Optional[str]]


@dataclass
class SweepResult:
    processed: int = 0
    started: int = 0
    failed: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


def due_jobs(now: datetime, batch_limit: int) -> list[tuple[str, str]]:
    """(job id, shop) pairs, oldest due first."""
    rows = (
        db.session.query(CallJob.id, CallJob.shop)
        .filter(CallJob.status == STATUS_QUEUED, CallJob.scheduled_for <= now)
        .order_by(CallJob.scheduled_for.asc())
        .limit(batch_limit)
        .all()
    )
    db.session.commit()
    return [(r[0], r[1]) for r in rows]


def run_sweep(now: Optional[datetime] = None, batch_limit: int = DEFAULT_BATCH_LIMIT,
              start_call: Optional[StartCall] = None) -> SweepResult:
    now = as_naive_utc(now) if now is not None else utcnow()
    start_call = start_call or start_call_for_job
    result = SweepResult()

    for job_id, shop in due_jobs(now, max(1, int(batch_limit))):
        settings = ShopSettings.for_shop(shop)
        if not settings.enabled:
            if jobs.fail_if_queued(job_id, SKIPPED_DISABLED):
                result.processed += 1
                result.failed += 1
                log_event("call_job_skipped", level="warning", call_job_id=job_id, shop=shop,
                          reason="automation_disabled")
            continue

        if not jobs.claim_job(job_id):
            continue  # another sweep owns it
        result.processed += 1

        job = db.session.get(CallJob, job_id, populate_existing=True)

        try:
            provider_call_id = start_call(job, settings)
        except PermanentCallError as e:
            db.session.rollback()
            jobs.mark_failed(job_id, f"ERROR: {e}")
            result.failed += 1
            log_event("call_start_rejected", level="warning", call_job_id=job_id, shop=settings.shop, error=str(e))
            continue
        except Exception as e:
            db.session.rollback()
            current_app.logger.exception("call start failed for job %s", job_id)
            if _handle_start_failure(job_id, settings, now, e):
                result.failed += 1
            continue

        jobs.mark_started(job_id, provider_call_id)
        result.started += 1

    log_event("call_sweep", now=now.isoformat(), batch_limit=batch_limit, **result.to_dict())
    return result


def _handle_start_failure(job_id: str, settings: ShopSettings, now: datetime, error: Exception) -> bool:
    """Fail the job when attempts are exhausted, otherwise requeue inside the call window. True if failed."""
    attempts = jobs.current_attempts(job_id)
    if attempts >= settings.max_attempts_effective:
        jobs.mark_failed(job_id, f"ERROR: {error}")
        log_event("call_job_failed", level="warning", call_job_id=job_id, attempts=attempts, error=str(error))
        return True

    retry_minutes = settings.retry_minutes_effective
    next_at = next_retry_at(
        now, retry_minutes,
        settings.call_window_start, settings.call_window_end, settings.call_timezone,
    )
    jobs.requeue(job_id, next_at, f"RETRY_SCHEDULED in {retry_minutes}m")
    log_event("call_job_requeued", call_job_id=job_id, attempts=attempts, next_at=next_at.isoformat())
    return False
