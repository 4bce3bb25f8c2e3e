from sqlalchemy import func, text, Index
from checkout_recovery.extensions import db


class CallCharge(db.Model):
    """One row per billed call job; written in the transaction that bills the call, never after."""
    __tablename__ = "call_charges"

    id = db.Column(db.Integer, primary_key=True)
    shop = db.Column(db.String(255), db.ForeignKey("shop_billing.shop", ondelete="CASCADE"), nullable=False)
    call_job_id = db.Column(db.String(36), nullable=False, unique=True, index=True)

    connected_seconds = db.Column(db.Integer, nullable=False)
    minutes_billed = db.Column(db.Integer, nullable=False)
    amount_cents = db.Column(db.Integer, nullable=False, server_default=text("0"))
    currency_code = db.Column(db.String(3), nullable=False)

    usage_record_id = db.Column(db.String(255), nullable=True)  # null when nothing was charged externally
    idempotency_key = db.Column(db.String(255), nullable=False, unique=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())

    billing = db.relationship("ShopBilling", back_populates="charges")

    __table_args__ = (
        Index("ix_call_charges_shop_created_at", "shop", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<CallCharge call_job_id={self.call_job_id} minutes={self.minutes_billed} amount_cents={self.amount_cents}>"
