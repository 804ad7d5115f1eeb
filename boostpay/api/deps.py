"""
Shared FastAPI dependencies: service construction and operator auth.
Tests swap these out through app.dependency_overrides.
"""
import hmac
import logging
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import APIKeyHeader

from boostpay.config import Settings, get_settings
from boostpay.database import get_session_factory
from boostpay.services.replay_guard import ReplayGuard
from boostpay.services.webhook_store import WebhookEventStore

logger = logging.getLogger(__name__)

_admin_key_header = APIKeyHeader(name="X-Admin-Key", auto_error=False)


def get_webhook_store(settings: Settings = Depends(get_settings)) -> WebhookEventStore:
    return WebhookEventStore.from_settings(get_session_factory(), settings)


def get_replay_guard(settings: Settings = Depends(get_settings)) -> ReplayGuard:
    return ReplayGuard(
        get_session_factory(),
        max_age_seconds=settings.webhook_max_age_seconds,
        clock_skew_seconds=settings.webhook_clock_skew_seconds,
    )


async def require_admin_api_key(
    api_key: Optional[str] = Depends(_admin_key_header),
    settings: Settings = Depends(get_settings),
) -> None:
    """403 on a missing or wrong X-Admin-Key; 503 when ADMIN_API_KEY is not configured."""
    if not settings.admin_api_key:
        logger.warning("Admin endpoint access refused - ADMIN_API_KEY not set")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin API not configured",
        )

    if not api_key or not hmac.compare_digest(api_key, settings.admin_api_key):
        logger.warning("Admin endpoint access refused - invalid API key")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")


async def require_cron_secret(
    authorization: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> None:
    """Bearer CRON_SECRET check; open when no secret is configured."""
    if not settings.cron_secret:
        if settings.app_env == "production":
            logger.warning("CRON_SECRET not set in production - cron endpoint is unauthenticated")
        return

    expected = f"Bearer {settings.cron_secret}"
    if not authorization or not hmac.compare_digest(authorization, expected):
        logger.warning("Cron endpoint access refused - invalid bearer token")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
