import os

from dotenv import dotenv_values

class BaseConfig:
    # Secrets (env in prod; dev/test may use defaults)
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-not-secure")

    # Database (env in prod; dev/test may use default)
    _ENV_FALLBACK = dotenv_values(".env")
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL") or _ENV_FALLBACK.get("DATABASE_URL") or "sqlite:///:memory:"
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Logging / misc
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Flask-Limiter default: off globally; prefer per-route limits
    RATELIMIT_DEFAULT = None

    # Used to build the webhook URL handed to the call provider
    APP_BASE_URL = os.getenv("APP_BASE_URL", "http://localhost:5000")

    # --- Internal endpoints ---
    INTERNAL_API_SECRET = os.getenv("INTERNAL_API_SECRET", "")
    RUN_CALLS_SECRET = os.getenv("RUN_CALLS_SECRET", "")
    RUN_CALLS_BATCH_LIMIT = int(os.getenv("RUN_CALLS_BATCH_LIMIT", "25"))

    # --- Vapi (call provider) ---
    VAPI_API_KEY = os.getenv("VAPI_API_KEY")
    VAPI_API_BASE = os.getenv("VAPI_API_BASE", "https://api.vapi.ai")
    VAPI_SERVER_URL = os.getenv("VAPI_SERVER_URL")
    VAPI_WEBHOOK_SECRET = os.getenv("VAPI_WEBHOOK_SECRET", "")
    VAPI_TOOL_BEARER_TOKEN = os.getenv("VAPI_TOOL_BEARER_TOKEN", "")
    VAPI_ASSISTANT_ID = os.getenv("VAPI_ASSISTANT_ID")
    VAPI_PHONE_NUMBER_ID = os.getenv("VAPI_PHONE_NUMBER_ID")
    VAPI_TIMEOUT_SECONDS = float(os.getenv("VAPI_TIMEOUT_SECONDS", "15"))

    # --- Shopify (billing + discount codes) ---
    SHOPIFY_API_VERSION = os.getenv("SHOPIFY_API_VERSION", "2025-07")
    SHOPIFY_TIMEOUT_SECONDS = float(os.getenv("SHOPIFY_TIMEOUT_SECONDS", "20"))
    SHOPIFY_BILLING_TEST = (os.getenv("SHOPIFY_BILLING_TEST", "false").lower() == "true")

    # --- Brevo (SMS) ---
    BREVO_API_KEY = os.getenv("BREVO_API_KEY") or os.getenv("BREVO_SMS_API_KEY")
    BREVO_API_BASE = os.getenv("BREVO_API_BASE", "https://api.brevo.com")
    BREVO_SMS_SENDER = os.getenv("BREVO_SMS_SENDER", "")
    BREVO_SMS_TYPE = os.getenv("BREVO_SMS_TYPE", "transactional")
    BREVO_SMS_TAG = os.getenv("BREVO_SMS_TAG", "checkout-recovery")

    # Process-local tool result cache (best-effort only)
    TOOL_RESULT_CACHE_TTL_SECONDS = int(os.getenv("TOOL_RESULT_CACHE_TTL_SECONDS", "600"))
    TOOL_RESULT_CACHE_MAXSIZE = int(os.getenv("TOOL_RESULT_CACHE_MAXSIZE", "500"))

class DevelopmentConfig(BaseConfig):
    DEBUG = True
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "DEBUG")

class ProductionConfig(BaseConfig):
    DEBUG = False
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "WARNING")
    # Required in production; create_app() fails fast when these are empty
    SECRET_KEY = os.environ.get("SECRET_KEY", "")
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", "")

class TestingConfig(BaseConfig):
    TESTING = True
    DEBUG = True
    RATELIMIT_ENABLED = False
    INTERNAL_API_SECRET = "test-internal-secret"
    RUN_CALLS_SECRET = "test-run-calls-secret"
    VAPI_WEBHOOK_SECRET = "test-webhook-secret"
    SQLALCHEMY_DATABASE_URI = os.environ.get("TEST_DATABASE_URL", "sqlite:///:memory:")

_ENV_MAP = {
    "development": DevelopmentConfig,
    "production": ProductionConfig,
    "testing": TestingConfig,
}

def get_config():
    env = os.environ.get("APP_ENV", "development").lower()
    return _ENV_MAP.get(env, DevelopmentConfig)
