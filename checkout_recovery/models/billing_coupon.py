from sqlalchemy import func, text, CheckConstraint, Index
from checkout_recovery.extensions import db

KIND_PERCENT = "PERCENT"
KIND_AMOUNT = "AMOUNT"


class BillingCoupon(db.Model):
    __tablename__ = "billing_coupons"

    code = db.Column(db.String(64), primary_key=True)  # stored normalised (upper, no spaces)
    is_active = db.Column(db.Boolean, nullable=False, server_default=text("true"), default=True)

    kind = db.Column(db.String(16), nullable=False, server_default=text("'PERCENT'"), default=KIND_PERCENT)
    value = db.Column(db.Numeric(10, 2), nullable=False)
    duration_intervals = db.Column(db.Integer, nullable=True)  # null: one interval
    applies_to_plan = db.Column(db.String(16), nullable=True)

    starts_at = db.Column(db.DateTime, nullable=True)
    expires_at = db.Column(db.DateTime, nullable=True)

    max_total_uses = db.Column(db.Integer, nullable=True)
    max_uses_per_shop = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        CheckConstraint("kind IN ('PERCENT','AMOUNT')", name="ck_billing_coupons_kind"),
    )

    def __repr__(self) -> str:
        return f"<BillingCoupon code={self.code!r} kind={self.kind} value={self.value}>"


class BillingCouponRedemption(db.Model):
    __tablename__ = "billing_coupon_redemptions"

    id = db.Column(db.Integer, primary_key=True)
    coupon_code = db.Column(db.String(64), db.ForeignKey("billing_coupons.code", ondelete="CASCADE"), nullable=False)
    shop = db.Column(db.String(255), nullable=False)
    plan = db.Column(db.String(16), nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        Index("ix_billing_coupon_redemptions_code_shop", "coupon_code", "shop"),
    )
