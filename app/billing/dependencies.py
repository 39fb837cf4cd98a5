import hmac

from fastapi import Header

from app.core.config import get_settings
from app.core.exceptions import UnauthorizedException


def require_webhook_secret(authorization: str = Header(default="", alias="Authorization")) -> str:
    """
    Billing provider auth via shared bearer secret.

    If REVENUECAT_WEBHOOK_SECRET is not configured, webhooks are accepted
    unauthenticated (local development only).
    """
    settings = get_settings()
    expected = (settings.REVENUECAT_WEBHOOK_SECRET or "").strip()
    if not expected:
        return "unauthenticated"

    provided = (authorization or "").strip()
    if not hmac.compare_digest(provided.encode("utf-8"), f"Bearer {expected}".encode("utf-8")):
        raise UnauthorizedException("Invalid webhook authorization")
    return "webhook_secret"
