from sqlalchemy import func, text, CheckConstraint
from checkout_recovery.extensions import db

PLAN_FREE = "FREE"
PLAN_STARTER = "STARTER"
PLAN_PRO = "PRO"
PLAN_SCALE = "SCALE"
PLAN_PAYG = "PAYG"

BILLING_NONE = "NONE"
BILLING_PENDING = "PENDING"
BILLING_ACTIVE = "ACTIVE"
BILLING_CANCELLED = "CANCELLED"


class ShopBilling(db.Model):
    __tablename__ = "shop_billing"

    shop = db.Column(db.String(255), primary_key=True)
    plan = db.Column(db.String(16), nullable=False, server_default=text("'FREE'"), default=PLAN_FREE)
    status = db.Column(db.String(16), nullable=False, server_default=text("'NONE'"), default=BILLING_NONE)
    currency_code = db.Column(db.String(3), nullable=False, server_default=text("'EUR'"), default="EUR")

    subscription_id = db.Column(db.String(255), nullable=True)
    usage_line_item_id = db.Column(db.String(255), nullable=True)
    recurring_line_item_id = db.Column(db.String(255), nullable=True)

    current_period_start = db.Column(db.DateTime, nullable=True)
    current_period_end = db.Column(db.DateTime, nullable=True)

    # Quota buckets; only ever increase (included resets with a new cycle, free never resets)
    included_seconds_used = db.Column(db.Integer, nullable=False, server_default=text("0"), default=0)
    free_seconds_used = db.Column(db.Integer, nullable=False, server_default=text("0"), default=0)

    pending_plan = db.Column(db.String(16), nullable=True)
    pending_coupon_code = db.Column(db.String(64), nullable=True)
    pending_coupon_percent = db.Column(db.Numeric(6, 2), nullable=True)
    pending_coupon_intervals = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    charges = db.relationship("CallCharge", back_populates="billing", lazy="dynamic")

    __table_args__ = (
        CheckConstraint("plan IN ('FREE','STARTER','PRO','SCALE','PAYG')", name="ck_shop_billing_plan"),
        CheckConstraint("status IN ('NONE','PENDING','ACTIVE','CANCELLED')", name="ck_shop_billing_status"),
        CheckConstraint("included_seconds_used >= 0", name="ck_shop_billing_included_nonneg"),
        CheckConstraint("free_seconds_used >= 0", name="ck_shop_billing_free_nonneg"),
    )

    def __repr__(self) -> str:
        return f"<ShopBilling shop={self.shop!r} plan={self.plan} status={self.status}>"
