"""
Webhook event store - durable log of gateway callbacks with processing status
and retry bookkeeping.

Concurrency is handled entirely in the database:
- (provider, event_id) is unique, so a callback is stored at most once
- an event is claimed with a conditional UPDATE ... WHERE status='pending',
  so exactly one worker or request processes it at a time
- reconciliation and the 'completed' mark commit in one transaction

No in-process locks or module-level state; build one store per app (or per test).
"""
import logging
from datetime import datetime, timezone, timedelta
from typing import Awaitable, Callable, Optional

from sqlalchemy import select, update, delete, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from boostpay.models.webhook_event import (
    WebhookEvent,
    STATUSES,
    STATUS_PENDING,
    STATUS_PROCESSING,
    STATUS_COMPLETED,
    STATUS_FAILED,
)
from boostpay.schemas.webhook_payloads import PaymentOutcome
from boostpay.services.reconciliation import (
    AmountMismatchError,
    ReconciliationError,
    ReconciliationResult,
    IndeterminatePaymentError,
    reconcile_event,
)
from boostpay.utils.alerting import AlertType, send_alert
from boostpay.utils.logging import get_correlation_id

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_RETRY_BASE_SECONDS = 30
DEFAULT_RETRY_MAX_DELAY_SECONDS = 3600
DEFAULT_PROCESSING_TIMEOUT_SECONDS = 300

MAX_ERROR_MESSAGE_LENGTH = 2000

Reconciler = Callable[[AsyncSession, str, dict], Awaitable[ReconciliationResult]]


class WebhookEventNotFound(LookupError):
    pass


class WebhookEventNotRetryable(Exception):
    def __init__(self, status: str):
        super().__init__(f"Webhook event is {status}")
        self.status = status


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WebhookEventStore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_base_seconds: int = DEFAULT_RETRY_BASE_SECONDS,
        retry_max_delay_seconds: int = DEFAULT_RETRY_MAX_DELAY_SECONDS,
        processing_timeout_seconds: int = DEFAULT_PROCESSING_TIMEOUT_SECONDS,
        reconciler: Reconciler = reconcile_event,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._session_factory = session_factory
        self.max_attempts = max_attempts
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_delay_seconds = retry_max_delay_seconds
        self.processing_timeout = timedelta(seconds=processing_timeout_seconds)
        self._reconciler = reconciler
        self._clock = clock

    @classmethod
    def from_settings(cls, session_factory, settings) -> "WebhookEventStore":
        return cls(
            session_factory,
            max_attempts=settings.webhook_max_attempts,
            retry_base_seconds=settings.webhook_retry_base_seconds,
            retry_max_delay_seconds=settings.webhook_retry_max_delay_seconds,
            processing_timeout_seconds=settings.webhook_processing_timeout_seconds,
        )

    def retry_delay(self, attempts: int) -> timedelta:
        """Exponential backoff after the Nth failed attempt: base * 2^(N-1), capped."""
        exponent = max(attempts - 1, 0)
        delay = min(self.retry_base_seconds * (2 ** exponent), self.retry_max_delay_seconds)
        return timedelta(seconds=delay)

    @staticmethod
    def _event_filter(provider: str, event_id: str):
        return (WebhookEvent.provider == provider, WebhookEvent.event_id == event_id)

    async def get_event(self, provider: str, event_id: str) -> Optional[WebhookEvent]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(WebhookEvent).where(*self._event_filter(provider, event_id))
            )
            return result.scalar_one_or_none()

    async def store_webhook_event(
        self,
        provider: str,
        event_type: str,
        event_id: str,
        payload: dict,
    ) -> WebhookEvent:
        """Insert a pending event, or return the row a concurrent delivery already stored."""
        async with self._session_factory() as db:
            event = WebhookEvent(
                provider=provider,
                event_type=event_type,
                event_id=event_id,
                payload=payload,
                status=STATUS_PENDING,
                attempts=0,
                correlation_id=get_correlation_id(),
            )
            db.add(event)
            try:
                await db.commit()
                logger.info(
                    "Webhook event stored", extra={"provider": provider, "event_id": event_id},
                )
                return event
            except IntegrityError:
                await db.rollback()
                logger.info(
                    "Webhook event already stored by a concurrent delivery",
                    extra={"provider": provider, "event_id": event_id},
                )

        existing = await self.get_event(provider, event_id)
        if existing is None:
            raise RuntimeError(f"Webhook event {provider}:{event_id} vanished after conflict")
        return existing

    async def _claim(self, provider: str, event_id: str) -> bool:
        now = self._clock()
        async with self._session_factory() as db:
            result = await db.execute(
                update(WebhookEvent)
                .where(
                    *self._event_filter(provider, event_id),
                    WebhookEvent.status == STATUS_PENDING,
                    WebhookEvent.attempts < self.max_attempts,
                )
                .values(
                    status=STATUS_PROCESSING,
                    attempts=WebhookEvent.attempts + 1,
                    last_attempt_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            return result.rowcount == 1

    async def process_webhook_event(self, provider: str, event_id: str) -> bool:
        """
        Claim and reconcile one event.
        Returns True when the event reached 'completed', False when it was not
        found, not claimable (already claimed or finished), or the attempt failed.
        """
        log_extra = {"provider": provider, "event_id": event_id}

        if not await self._claim(provider, event_id):
            logger.info("Webhook event not claimable", extra=log_extra)
            return False

        try:
            async with self._session_factory() as db:
                result = await db.execute(
                    select(WebhookEvent).where(*self._event_filter(provider, event_id))
                )
                event = result.scalar_one()

                outcome = await self._reconciler(db, provider, event.payload)

                now = self._clock()
                event.status = STATUS_COMPLETED
                event.outcome = outcome.outcome.value
                event.processed_at = now
                event.next_retry_at = None
                event.error_message = outcome.detail
                event.error_kind = None
                event.updated_at = now
                await db.commit()
        except Exception as e:
            await self._record_failure(provider, event_id, e)
            return False

        logger.info(
            "Webhook event completed: outcome=%s", outcome.outcome.value, extra=log_extra,
        )
        return True

    async def _record_failure(self, provider: str, event_id: str, error: Exception) -> None:
        """Bookkeeping after a failed attempt, in its own transaction."""
        log_extra = {"provider": provider, "event_id": event_id}
        if isinstance(error, ReconciliationError):
            kind = error.kind
        else:
            kind = "transient"

        now = self._clock()
        async with self._session_factory() as db:
            result = await db.execute(
                select(WebhookEvent).where(*self._event_filter(provider, event_id))
            )
            event = result.scalar_one_or_none()
            if event is None or event.status != STATUS_PROCESSING:
                logger.warning("Failed event no longer in processing state", extra=log_extra)
                return

            event.error_message = f"{type(error).__name__}: {error}"[:MAX_ERROR_MESSAGE_LENGTH]
            event.error_kind = kind
            event.updated_at = now
            if isinstance(error, IndeterminatePaymentError):
                event.outcome = PaymentOutcome.PENDING.value

            exhausted = event.attempts >= self.max_attempts
            if exhausted:
                event.status = STATUS_FAILED
                event.next_retry_at = None
            else:
                event.status = STATUS_PENDING
                event.next_retry_at = now + self.retry_delay(event.attempts)

            attempts = event.attempts
            next_retry_at = event.next_retry_at
            await db.commit()

        if isinstance(error, AmountMismatchError) and attempts == 1:
            await send_alert(
                AlertType.AMOUNT_MISMATCH,
                f"Payment webhook {provider}:{event_id} does not match its booking: {error}",
                extra={"provider": provider},
            )

        if exhausted:
            logger.error(
                "Webhook event exhausted retries (%d/%d): %s",
                attempts, self.max_attempts, str(error), extra=log_extra,
            )
            await send_alert(
                AlertType.DEAD_LETTER_EXHAUSTED,
                f"Payment webhook {provider}:{event_id} failed {attempts} times and needs review",
                extra={"error_kind": kind, "error": str(error)[:200]},
            )
        else:
            logger.warning(
                "Webhook event attempt %d/%d failed (%s), retry at %s: %s",
                attempts, self.max_attempts, kind, next_retry_at.isoformat(), str(error),
                extra=log_extra,
            )

    async def find_due_events(self, limit: int) -> list[tuple[str, str]]:
        """(provider, event_id) of pending events whose retry time has come, oldest first."""
        now = self._clock()
        async with self._session_factory() as db:
            result = await db.execute(
                select(WebhookEvent.provider, WebhookEvent.event_id)
                .where(
                    WebhookEvent.status == STATUS_PENDING,
                    WebhookEvent.attempts < self.max_attempts,
                    (WebhookEvent.next_retry_at.is_(None)) | (WebhookEvent.next_retry_at <= now),
                )
                .order_by(WebhookEvent.created_at)
                .limit(limit)
            )
            return [(row.provider, row.event_id) for row in result.all()]

    async def reset_stale_processing(self, older_than: Optional[timedelta] = None) -> int:
        """
        Return events stuck in 'processing' (crashed or timed-out attempt) to the sweep.
        Out-of-budget events go straight to 'failed'.
        """
        now = self._clock()
        cutoff = now - (older_than if older_than is not None else self.processing_timeout)
        stale = (
            WebhookEvent.status == STATUS_PROCESSING,
            WebhookEvent.last_attempt_at < cutoff,
        )

        async with self._session_factory() as db:
            requeued = await db.execute(
                update(WebhookEvent)
                .where(*stale, WebhookEvent.attempts < self.max_attempts)
                .values(
                    status=STATUS_PENDING,
                    next_retry_at=now,
                    error_message="Processing attempt timed out",
                    error_kind="transient",
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            exhausted = await db.execute(
                update(WebhookEvent)
                .where(*stale, WebhookEvent.attempts >= self.max_attempts)
                .values(
                    status=STATUS_FAILED,
                    next_retry_at=None,
                    error_message="Processing attempt timed out",
                    error_kind="transient",
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()

        count = requeued.rowcount + exhausted.rowcount
        if count:
            logger.warning(
                "Reset %d stale processing webhook events (%d requeued, %d failed)",
                count, requeued.rowcount, exhausted.rowcount,
            )
        return count

    async def cleanup_old_webhooks(self, days_old: int = 30) -> int:
        """Delete completed and failed events older than the threshold."""
        cutoff = self._clock() - timedelta(days=days_old)
        async with self._session_factory() as db:
            result = await db.execute(
                delete(WebhookEvent)
                .where(
                    WebhookEvent.status.in_([STATUS_COMPLETED, STATUS_FAILED]),
                    WebhookEvent.created_at < cutoff,
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()

        deleted = result.rowcount
        logger.info("Cleaned up %d webhook events older than %d days", deleted, days_old)
        return deleted

    async def retry_event(self, provider: str, event_id: str) -> WebhookEvent:
        """
        Operator-triggered retry: reset to pending, due now, error cleared.
        A failed event that used its whole budget gets one more attempt.
        """
        now = self._clock()
        async with self._session_factory() as db:
            result = await db.execute(
                select(WebhookEvent).where(*self._event_filter(provider, event_id))
            )
            event = result.scalar_one_or_none()
            if event is None:
                raise WebhookEventNotFound(f"{provider}:{event_id}")
            if event.status in (STATUS_COMPLETED, STATUS_PROCESSING):
                raise WebhookEventNotRetryable(event.status)

            event.status = STATUS_PENDING
            event.next_retry_at = now
            event.error_message = None
            event.error_kind = None
            event.updated_at = now
            if event.attempts >= self.max_attempts:
                event.attempts = self.max_attempts - 1
            await db.commit()

        logger.info(
            "Webhook event queued for manual retry",
            extra={"provider": provider, "event_id": event_id},
        )
        return event

    async def list_events(
        self,
        status: Optional[str] = None,
        provider: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[WebhookEvent], int]:
        filters = []
        if status:
            filters.append(WebhookEvent.status == status)
        if provider:
            filters.append(WebhookEvent.provider == provider)

        async with self._session_factory() as db:
            total = (await db.execute(
                select(func.count(WebhookEvent.id)).where(*filters)
            )).scalar_one()
            result = await db.execute(
                select(WebhookEvent)
                .where(*filters)
                .order_by(WebhookEvent.created_at.desc())
                .limit(limit)
                .offset(offset)
            )
            return list(result.scalars().all()), total

    async def status_counts(self) -> dict[str, int]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(WebhookEvent.status, func.count(WebhookEvent.id))
                .group_by(WebhookEvent.status)
            )
            counts = {status: 0 for status in STATUSES}
            for status, count in result.all():
                counts[status] = count
        counts["total"] = sum(counts.values())
        return counts
