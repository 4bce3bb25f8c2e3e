from sqlalchemy import func, UniqueConstraint
from checkout_recovery.extensions import db


class Checkout(db.Model):
    """Abandoned checkout snapshot, written by the checkout webhooks (outside this core)."""
    __tablename__ = "checkouts"

    id = db.Column(db.Integer, primary_key=True)
    shop = db.Column(db.String(255), nullable=False, index=True)
    checkout_id = db.Column(db.String(255), nullable=False)

    email = db.Column(db.String(320), nullable=True)
    phone = db.Column(db.String(32), nullable=True)
    customer_name = db.Column(db.String(255), nullable=True)

    value = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    currency = db.Column(db.String(3), nullable=False, default="EUR")
    recovery_url = db.Column(db.String(2000), nullable=True)
    raw = db.Column(db.JSON, nullable=False, default=dict)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("shop", "checkout_id", name="uq_checkouts_shop_checkout_id"),
    )

    def __repr__(self) -> str:
        return f"<Checkout shop={self.shop!r} checkout_id={self.checkout_id!r} value={self.value}>"
