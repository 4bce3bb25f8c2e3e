import hmac

from flask_talisman import Talisman


def init_security(app):
    """
    Production/staging transport security. Every route here is a JSON
    endpoint called by machines, so no CSP or frame policy is needed.
    """
    Talisman(
        app,
        content_security_policy=None,
        force_https=True,
        strict_transport_security=True,
        session_cookie_secure=True,
        frame_options="DENY",
        referrer_policy="no-referrer",
    )


def secrets_match(expected: str | None, got: str | None) -> bool:
    """Constant-time compare; an unset expected secret never matches."""
    if not expected or not got:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), got.encode("utf-8"))
