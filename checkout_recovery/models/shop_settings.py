from sqlalchemy import func, text
from checkout_recovery.extensions import db
from checkout_recovery.utils.helpers import clamp

SETTINGS_DEFAULTS = {
    "enabled": True,
    "call_window_start": "09:00",
    "call_window_end": "19:00",
    "call_timezone": "UTC",
    "retry_minutes": 180,
    "max_attempts": 2,
    "followup_sms_enabled": False,
    "discount_enabled": False,
    "max_discount_percent": 10,
    "min_cart_value_for_discount": None,
    "free_shipping_enabled": False,
    "coupon_prefix": None,
    "coupon_validity_hours": 24,
    "sms_template_offer": None,
    "sms_template_no_offer": None,
    "brevo_sms_sender": None,
    "vapi_assistant_id": None,
    "vapi_phone_number_id": None,
}


class ShopSettings(db.Model):
    """Merchant configuration. Authored by the admin UI; this core only reads it."""
    __tablename__ = "shop_settings"

    shop = db.Column(db.String(255), primary_key=True)
    enabled = db.Column(db.Boolean, nullable=False, server_default=text("true"), default=True)

    # Call scheduling
    call_window_start = db.Column(db.String(5), nullable=False, server_default=text("'09:00'"), default="09:00")
    call_window_end = db.Column(db.String(5), nullable=False, server_default=text("'19:00'"), default="19:00")
    call_timezone = db.Column(db.String(64), nullable=False, server_default=text("'UTC'"), default="UTC")
    retry_minutes = db.Column(db.Integer, nullable=False, server_default=text("180"), default=180)
    max_attempts = db.Column(db.Integer, nullable=False, server_default=text("2"), default=2)

    # Offer playbook
    followup_sms_enabled = db.Column(db.Boolean, nullable=False, server_default=text("false"), default=False)
    discount_enabled = db.Column(db.Boolean, nullable=False, server_default=text("false"), default=False)
    max_discount_percent = db.Column(db.Integer, nullable=False, server_default=text("10"), default=10)
    min_cart_value_for_discount = db.Column(db.Numeric(12, 2), nullable=True)
    free_shipping_enabled = db.Column(db.Boolean, nullable=False, server_default=text("false"), default=False)
    coupon_prefix = db.Column(db.String(32), nullable=True)
    coupon_validity_hours = db.Column(db.Integer, nullable=False, server_default=text("24"), default=24)
    sms_template_offer = db.Column(db.String(1000), nullable=True)
    sms_template_no_offer = db.Column(db.String(1000), nullable=True)

    # Per-shop provider overrides
    brevo_sms_sender = db.Column(db.String(32), nullable=True)
    vapi_assistant_id = db.Column(db.String(64), nullable=True)
    vapi_phone_number_id = db.Column(db.String(64), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    @classmethod
    def for_shop(cls, shop: str) -> "ShopSettings":
        """Stored row, or an unsaved instance carrying the defaults."""
        row = db.session.get(cls, shop)
        if row is not None:
            return row
        return cls(shop=shop, **SETTINGS_DEFAULTS)

    @property
    def max_attempts_effective(self) -> int:
        return int(clamp(self.max_attempts if self.max_attempts is not None else 2, 1, 10))

    @property
    def retry_minutes_effective(self) -> int:
        return int(clamp(self.retry_minutes if self.retry_minutes is not None else 180, 1, 7 * 24 * 60))

    @property
    def max_discount_percent_effective(self) -> int:
        return int(clamp(self.max_discount_percent if self.max_discount_percent is not None else 10, 0, 50))

    @property
    def coupon_validity_hours_effective(self) -> int:
        return int(clamp(self.coupon_validity_hours or 24, 1, 168))

    def __repr__(self) -> str:
        return f"<ShopSettings shop={self.shop!r} window={self.call_window_start}-{self.call_window_end}>"
