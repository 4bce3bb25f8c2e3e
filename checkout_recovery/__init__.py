import os
from flask import Flask, jsonify

# Load .env only for local/dev. In prod, env vars come from the platform.
if os.getenv("APP_ENV", "development") != "production":
    from dotenv import load_dotenv
    load_dotenv(".env", override=True)


from .config import get_config
from .extensions import db, migrate, limiter
from .security import init_security
from .observability import init_logging, init_sentry


def create_app(config_object=None):
    app = Flask(__name__)

    # ---- Rate limiting storage ----
    app_env = (os.getenv("APP_ENV", "development") or "development").lower()
    use_redis = app_env in ("staging", "production")
    storage_uri = os.environ.get("REDIS_URL") if use_redis else "memory://"
    if use_redis and not storage_uri:
        # Hard fail in stage/prod so we never silently run without RL storage
        raise RuntimeError("REDIS_URL is required in staging/production for rate limiting")
    app.config["RATELIMIT_STORAGE_URI"] = storage_uri
    app.config.setdefault("RATELIMIT_HEADERS_ENABLED", True)

    app.config.from_object(config_object or get_config())

    # --- Required env validation for prod-like envs ---
    def _require(name: str):
        val = os.getenv(name) or app.config.get(name)
        if not val:
            raise RuntimeError(f"Missing required environment variable: {name}")
        return val

    if app_env in ("staging", "production"):
        _require("SECRET_KEY")
        _require("DATABASE_URL")
        _require("INTERNAL_API_SECRET")
        _require("VAPI_WEBHOOK_SECRET")

    init_logging(app)
    init_sentry(app)
    if app_env in ("staging", "production"):
        init_security(app)

    db.init_app(app)
    migrate.init_app(app, db, directory="migrations")
    limiter.init_app(app)

    from .blueprints.api import bp as api_bp
    from .blueprints.webhooks import bp as webhooks_bp

    app.register_blueprint(api_bp)
    app.register_blueprint(webhooks_bp)

    @app.get("/healthz")
    @limiter.exempt
    def healthz():
        return {"status": "ok"}, 200

    @app.errorhandler(404)
    def not_found(e):
        return {"error": "not_found", "code": 404}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "method_not_allowed", "code": 405}, 405

    @app.errorhandler(500)
    def server_error(e):
        return {"error": "internal_error", "code": 500}, 500

    # 429 Too Many Requests with Retry-After
    @app.errorhandler(429)
    def too_many_requests(e):
        retry_after = getattr(e, "retry_after", None)
        headers = {}
        payload = {"error": "rate_limited", "code": 429}
        if retry_after is not None:
            headers["Retry-After"] = str(int(retry_after))
            payload["retry_after"] = int(retry_after)
        return jsonify(payload), 429, headers

    from .cli import register_cli
    register_cli(app)

    if not app.config.get("VAPI_API_KEY"):
        app.logger.warning("VAPI_API_KEY missing; the call dispatcher cannot start calls")

    return app
