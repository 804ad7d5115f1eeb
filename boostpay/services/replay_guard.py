"""
Replay protection for gateway callbacks.

A callback is accepted only if:
1. Its gateway timestamp is inside the freshness window (default: no more than
   60s in the future, no older than 5 minutes). A missing timestamp is rejected.
2. No webhook_events row exists yet for (provider, event_id), whatever its status.

Both rejections are answered with the provider's success envelope so the
gateway stops retrying; nothing is stored or processed.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from boostpay.models.webhook_event import WebhookEvent

logger = logging.getLogger(__name__)

DEFAULT_MAX_AGE_SECONDS = 300
DEFAULT_CLOCK_SKEW_SECONDS = 60


@dataclass(frozen=True)
class ReplayValidationResult:
    valid: bool
    is_duplicate: bool = False
    error: Optional[str] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReplayGuard:
    """Timestamp-window and duplicate-event check, shared by all providers."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        max_age_seconds: int = DEFAULT_MAX_AGE_SECONDS,
        clock_skew_seconds: int = DEFAULT_CLOCK_SKEW_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._session_factory = session_factory
        self.max_age = timedelta(seconds=max_age_seconds)
        self.clock_skew = timedelta(seconds=clock_skew_seconds)
        self._clock = clock

    def is_timestamp_fresh(self, gateway_timestamp: Optional[datetime]) -> bool:
        if gateway_timestamp is None:
            logger.warning("Webhook timestamp missing or unparseable")
            return False

        if gateway_timestamp.tzinfo is None:
            gateway_timestamp = gateway_timestamp.replace(tzinfo=timezone.utc)

        now = self._clock()
        if gateway_timestamp > now + self.clock_skew:
            logger.warning(
                "Webhook timestamp is in the future: ts=%s now=%s",
                gateway_timestamp.isoformat(), now.isoformat(),
            )
            return False

        age = now - gateway_timestamp
        if age > self.max_age:
            logger.warning(
                "Webhook timestamp is too old: age_seconds=%d max=%d",
                int(age.total_seconds()), int(self.max_age.total_seconds()),
            )
            return False

        return True

    async def find_existing(self, provider: str, event_id: str) -> Optional[str]:
        """Status of an existing row for (provider, event_id), or None."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(WebhookEvent.status).where(
                    WebhookEvent.provider == provider,
                    WebhookEvent.event_id == event_id,
                )
            )
            return result.scalar_one_or_none()

    async def validate(
        self,
        provider: str,
        event_id: str,
        gateway_timestamp: Optional[datetime],
    ) -> ReplayValidationResult:
        if not self.is_timestamp_fresh(gateway_timestamp):
            return ReplayValidationResult(
                valid=False, error="Webhook timestamp is invalid or too old",
            )

        try:
            existing_status = await self.find_existing(provider, event_id)
        except SQLAlchemyError as e:
            # The unique key and the atomic claim still prevent double processing
            logger.error(
                "Duplicate check failed, allowing webhook: %s", str(e),
                extra={"provider": provider, "event_id": event_id},
            )
            return ReplayValidationResult(valid=True)

        if existing_status is not None:
            logger.info(
                "Duplicate webhook detected: status=%s", existing_status,
                extra={"provider": provider, "event_id": event_id},
            )
            return ReplayValidationResult(
                valid=False, is_duplicate=True, error="Duplicate webhook event",
            )

        return ReplayValidationResult(valid=True)
