from sqlalchemy import func
from checkout_recovery.extensions import db


class ShopSession(db.Model):
    """Offline Admin API token per shop; written by the install/OAuth flow, read-only here."""
    __tablename__ = "shop_sessions"

    id = db.Column(db.Integer, primary_key=True)
    shop = db.Column(db.String(255), nullable=False, unique=True, index=True)
    access_token = db.Column(db.String(255), nullable=False)
    scope = db.Column(db.String(1000), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())

    def __repr__(self) -> str:
        return f"<ShopSession shop={self.shop!r}>"
