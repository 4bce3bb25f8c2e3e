from sqlalchemy import func, text, UniqueConstraint
from checkout_recovery.extensions import db

TOOL_CALL_PROCESSING = "processing"
TOOL_CALL_SUCCEEDED = "succeeded"
TOOL_CALL_FAILED = "failed"


class ToolCallLog(db.Model):
    """Durable claim per (job, tool call id); the unique constraint is the lock."""
    __tablename__ = "tool_call_logs"

    id = db.Column(db.Integer, primary_key=True)
    shop = db.Column(db.String(255), nullable=False, index=True)
    call_job_id = db.Column(db.String(36), nullable=False)
    tool_call_id = db.Column(db.String(120), nullable=False)

    status = db.Column(db.String(16), nullable=False, server_default=text("'processing'"), default=TOOL_CALL_PROCESSING)
    result = db.Column(db.JSON, nullable=True)
    error = db.Column(db.String(800), nullable=True)
    retries = db.Column(db.Integer, nullable=False, server_default=text("0"), default=0)

    processed_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("call_job_id", "tool_call_id", name="uq_tool_call_logs_job_tool_call"),
    )

    def __repr__(self) -> str:
        return f"<ToolCallLog job={self.call_job_id} tool_call={self.tool_call_id} status={self.status}>"
