from uuid import uuid4

from sqlalchemy import func, text, CheckConstraint, Index
from checkout_recovery.extensions import db

STATUS_QUEUED = "QUEUED"
STATUS_CALLING = "CALLING"
STATUS_COMPLETED = "COMPLETED"
STATUS_FAILED = "FAILED"

JOB_STATUSES = (STATUS_QUEUED, STATUS_CALLING, STATUS_COMPLETED, STATUS_FAILED)
TERMINAL_STATUSES = (STATUS_COMPLETED, STATUS_FAILED)


class CallJob(db.Model):
    __tablename__ = "call_jobs"

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid4()))
    shop = db.Column(db.String(255), nullable=False, index=True)
    checkout_id = db.Column(db.String(255), nullable=False, index=True)

    status = db.Column(db.String(16), nullable=False, server_default=text("'QUEUED'"), default=STATUS_QUEUED)
    attempts = db.Column(db.Integer, nullable=False, server_default=text("0"), default=0)
    scheduled_for = db.Column(db.DateTime, nullable=False)

    provider = db.Column(db.String(32), nullable=True)
    provider_call_id = db.Column(db.String(128), nullable=True, index=True)
    phone = db.Column(db.String(32), nullable=True)

    outcome = db.Column(db.String(2000), nullable=True)  # human-readable last event
    ended_reason = db.Column(db.String(200), nullable=True)
    transcript = db.Column(db.Text, nullable=True)
    recording_url = db.Column(db.String(2000), nullable=True)

    # Offer / phone / billing metadata; merged key-by-key, never replaced wholesale
    meta = db.Column(db.JSON, nullable=False, default=dict)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint("status IN ('QUEUED','CALLING','COMPLETED','FAILED')", name="ck_call_jobs_status"),
        CheckConstraint("attempts >= 0", name="ck_call_jobs_attempts_nonneg"),
        Index("ix_call_jobs_status_scheduled_for", "status", "scheduled_for"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def __repr__(self) -> str:
        return f"<CallJob id={self.id} shop={self.shop!r} status={self.status} attempts={self.attempts}>"
