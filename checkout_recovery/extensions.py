from flask import request
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

db = SQLAlchemy()
migrate = Migrate()


def _rate_limit_key():
    # Key: the shop named in a JSON body; otherwise client IP
    payload = request.get_json(silent=True)
    shop = payload.get("shop") if isinstance(payload, dict) else None
    if shop:
        return f"shop:{shop}"
    return get_remote_address()

# Storage is configured in create_app() via limiter.init_app(...).
limiter = Limiter(key_func=_rate_limit_key)
