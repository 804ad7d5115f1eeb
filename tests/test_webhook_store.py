"""
Tests for boostpay/services/webhook_store.py - idempotent storage, atomic claim,
retry bookkeeping and dead-lettering.
"""
import asyncio
from datetime import datetime, timezone, timedelta

import pytest
from sqlalchemy import select, func, update

from boostpay.models import Booking, Payment
from boostpay.models.webhook_event import (
    WebhookEvent,
    STATUS_PENDING,
    STATUS_PROCESSING,
    STATUS_COMPLETED,
    STATUS_FAILED,
)
from boostpay.schemas.webhook_payloads import PaymentOutcome
from boostpay.services.reconciliation import (
    AmountMismatchError,
    BookingNotFoundError,
    ReconciliationResult,
    find_booking,
    normalize,
    record_payment,
)
from boostpay.services.webhook_store import (
    WebhookEventNotFound,
    WebhookEventNotRetryable,
    WebhookEventStore,
)
from boostpay.utils.alerting import AlertType
from boostpay.utils.timestamps import ensure_aware
from conftest import build_momo_payload


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def _result(outcome=PaymentOutcome.SUCCEEDED) -> ReconciliationResult:
    return ReconciliationResult(outcome=outcome, booking_id="b-1")


async def _ok_reconciler(db, provider, payload):
    return _result()


async def _missing_booking(db, provider, payload):
    raise BookingNotFoundError("No booking for payment reference BK-1001")


async def _store_momo(store, event_id="momo_BK-1001_1", payload=None):
    return await store.store_webhook_event(
        "momo", "payment_notification", event_id, payload or build_momo_payload(),
    )


async def _update(session_factory, event_id: str, **values) -> None:
    async with session_factory() as session:
        await session.execute(
            update(WebhookEvent).where(WebhookEvent.event_id == event_id).values(**values)
        )
        await session.commit()


async def _count(session_factory, model) -> int:
    async with session_factory() as session:
        return (await session.execute(select(func.count(model.id)))).scalar_one()


@pytest.fixture
def clock():
    return FakeClock(datetime.now(timezone.utc))


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------

class TestStoreWebhookEvent:
    async def test_new_event_is_pending(self, store):
        event = await _store_momo(store)
        assert event.status == STATUS_PENDING
        assert event.attempts == 0
        assert event.next_retry_at is None
        assert event.payload["orderId"] == "BK-1001"

    async def test_duplicate_returns_existing_row(self, store, session_factory):
        first = await _store_momo(store)
        second = await _store_momo(store, payload={"different": True})
        assert second.id == first.id
        assert second.payload["orderId"] == "BK-1001"
        assert await _count(session_factory, WebhookEvent) == 1

    async def test_concurrent_inserts_yield_one_row(self, store, session_factory):
        rows = await asyncio.gather(*[_store_momo(store) for _ in range(3)])
        assert len({row.id for row in rows}) == 1
        assert await _count(session_factory, WebhookEvent) == 1

    async def test_same_event_id_distinct_per_provider(self, store, session_factory):
        await store.store_webhook_event("momo", "payment_notification", "shared", {})
        await store.store_webhook_event("zalopay", "payment_notification", "shared", {})
        assert await _count(session_factory, WebhookEvent) == 2


# ---------------------------------------------------------------------------
# Processing
# ---------------------------------------------------------------------------

class TestProcessWebhookEvent:
    async def test_success_marks_completed(self, session_factory, make_booking):
        await make_booking()
        store = WebhookEventStore(session_factory)
        await _store_momo(store)

        assert await store.process_webhook_event("momo", "momo_BK-1001_1") is True

        event = await store.get_event("momo", "momo_BK-1001_1")
        assert event.status == STATUS_COMPLETED
        assert event.outcome == "succeeded"
        assert event.attempts == 1
        assert event.processed_at is not None
        assert event.error_message is None

        async with session_factory() as session:
            booking = (await session.execute(select(Booking))).scalar_one()
        assert booking.status == "confirmed"
        assert await _count(session_factory, Payment) == 1

    async def test_completed_event_not_reprocessed(self, session_factory):
        calls = []

        async def reconciler(db, provider, payload):
            calls.append(provider)
            return _result()

        store = WebhookEventStore(session_factory, reconciler=reconciler)
        await _store_momo(store)
        assert await store.process_webhook_event("momo", "momo_BK-1001_1") is True
        assert await store.process_webhook_event("momo", "momo_BK-1001_1") is False
        assert calls == ["momo"]

    async def test_unknown_event_returns_false(self, store):
        assert await store.process_webhook_event("momo", "nope") is False

    async def test_concurrent_processing_claims_once(self, session_factory):
        calls = []

        async def slow_reconciler(db, provider, payload):
            calls.append(provider)
            await asyncio.sleep(0.05)
            return _result()

        store = WebhookEventStore(session_factory, reconciler=slow_reconciler)
        await _store_momo(store)

        results = await asyncio.gather(
            *[store.process_webhook_event("momo", "momo_BK-1001_1") for _ in range(4)]
        )
        assert results.count(True) == 1
        assert len(calls) == 1

        event = await store.get_event("momo", "momo_BK-1001_1")
        assert event.attempts == 1

    async def test_gateway_failure_completes_with_failed_outcome(self, session_factory, make_booking):
        await make_booking()
        store = WebhookEventStore(session_factory)
        await _store_momo(store, payload=build_momo_payload(result_code=1006))

        assert await store.process_webhook_event("momo", "momo_BK-1001_1") is True

        event = await store.get_event("momo", "momo_BK-1001_1")
        assert event.status == STATUS_COMPLETED
        assert event.outcome == "failed"
        assert event.error_message == "Transaction denied by user."

    async def test_pending_gateway_outcome_recorded(self, session_factory, make_booking, mock_alert):
        await make_booking()
        store = WebhookEventStore(session_factory)
        await _store_momo(store, payload=build_momo_payload(result_code=1000))

        assert await store.process_webhook_event("momo", "momo_BK-1001_1") is False

        event = await store.get_event("momo", "momo_BK-1001_1")
        assert event.status == STATUS_PENDING
        assert event.outcome == "pending"
        assert event.error_kind == "transient"

    async def test_partial_reconciliation_rolled_back(self, session_factory, make_booking, mock_alert):
        """A crash after the payment insert leaves no Payment and an untouched booking."""
        await make_booking()

        async def crash_after_payment(db, provider, payload):
            notification = normalize(provider, payload)
            booking = await find_booking(db, notification.order_ref)
            await record_payment(db, booking, notification)
            raise RuntimeError("connection reset during booking update")

        store = WebhookEventStore(session_factory, reconciler=crash_after_payment)
        await _store_momo(store)

        assert await store.process_webhook_event("momo", "momo_BK-1001_1") is False

        assert await _count(session_factory, Payment) == 0
        async with session_factory() as session:
            booking = (await session.execute(select(Booking))).scalar_one()
        assert booking.payment_status == "pending"

        event = await store.get_event("momo", "momo_BK-1001_1")
        assert event.status == STATUS_PENDING
        assert "connection reset" in event.error_message

    async def test_permanent_error_recorded_as_permanent(self, session_factory, make_booking, mock_alert):
        await make_booking(total_amount=999)
        store = WebhookEventStore(session_factory)
        await _store_momo(store)

        await store.process_webhook_event("momo", "momo_BK-1001_1")

        event = await store.get_event("momo", "momo_BK-1001_1")
        assert event.error_kind == "permanent"
        assert event.error_message.startswith(AmountMismatchError.__name__)
        assert mock_alert.await_args.args[0] == AlertType.AMOUNT_MISMATCH


# ---------------------------------------------------------------------------
# Retry bookkeeping
# ---------------------------------------------------------------------------

class TestRetryBookkeeping:
    def test_retry_delay_doubles_and_caps(self, store):
        assert store.retry_delay(1) == timedelta(seconds=30)
        assert store.retry_delay(2) == timedelta(seconds=60)
        assert store.retry_delay(4) == timedelta(seconds=240)
        assert store.retry_delay(20) == timedelta(seconds=3600)

    async def test_first_failure_schedules_backoff(self, session_factory, clock, mock_alert):
        store = WebhookEventStore(session_factory, reconciler=_missing_booking, clock=clock)
        await _store_momo(store)

        assert await store.process_webhook_event("momo", "momo_BK-1001_1") is False

        event = await store.get_event("momo", "momo_BK-1001_1")
        assert event.status == STATUS_PENDING
        assert event.attempts == 1
        assert ensure_aware(event.next_retry_at) == clock.now + timedelta(seconds=30)
        assert "No booking" in event.error_message
        mock_alert.assert_not_called()

    async def test_not_due_until_backoff_elapses(self, session_factory, clock, mock_alert):
        store = WebhookEventStore(session_factory, reconciler=_missing_booking, clock=clock)
        await _store_momo(store)
        await store.process_webhook_event("momo", "momo_BK-1001_1")

        assert await store.find_due_events(10) == []
        clock.advance(seconds=31)
        assert await store.find_due_events(10) == [("momo", "momo_BK-1001_1")]

    async def test_later_attempt_succeeds(self, session_factory, make_booking, clock, mock_alert):
        store = WebhookEventStore(session_factory, clock=clock)
        await _store_momo(store)

        # Booking does not exist yet on the first attempt
        assert await store.process_webhook_event("momo", "momo_BK-1001_1") is False

        await make_booking()
        clock.advance(seconds=31)
        assert await store.process_webhook_event("momo", "momo_BK-1001_1") is True

        event = await store.get_event("momo", "momo_BK-1001_1")
        assert event.status == STATUS_COMPLETED
        assert event.attempts == 2
        assert event.next_retry_at is None

    async def test_exhausts_after_max_attempts(self, session_factory, clock, mock_alert):
        store = WebhookEventStore(session_factory, reconciler=_missing_booking, clock=clock)
        await _store_momo(store)

        for _ in range(5):
            assert await store.process_webhook_event("momo", "momo_BK-1001_1") is False
            clock.advance(hours=2)

        event = await store.get_event("momo", "momo_BK-1001_1")
        assert event.status == STATUS_FAILED
        assert event.attempts == 5
        assert event.next_retry_at is None

        mock_alert.assert_awaited_once()
        assert mock_alert.await_args.args[0] == AlertType.DEAD_LETTER_EXHAUSTED

        # A sixth attempt is never made
        assert await store.process_webhook_event("momo", "momo_BK-1001_1") is False
        event = await store.get_event("momo", "momo_BK-1001_1")
        assert event.attempts == 5
        assert await store.find_due_events(10) == []

    async def test_due_events_oldest_first_and_limited(self, session_factory):
        store = WebhookEventStore(session_factory)
        base = datetime.now(timezone.utc) - timedelta(minutes=10)
        for i in range(3):
            await _store_momo(store, event_id=f"momo_BK_{i}", payload={"i": i})
            await _update(session_factory, f"momo_BK_{i}", created_at=base - timedelta(minutes=i))

        assert await store.find_due_events(2) == [("momo", "momo_BK_2"), ("momo", "momo_BK_1")]


# ---------------------------------------------------------------------------
# Stale processing / cleanup
# ---------------------------------------------------------------------------

class TestMaintenance:
    async def test_stale_processing_requeued(self, session_factory, clock):
        store = WebhookEventStore(session_factory, clock=clock)
        await _store_momo(store)
        await _update(
            session_factory, "momo_BK-1001_1",
            status=STATUS_PROCESSING, attempts=1,
            last_attempt_at=clock.now - timedelta(minutes=10),
        )

        assert await store.reset_stale_processing() == 1

        event = await store.get_event("momo", "momo_BK-1001_1")
        assert event.status == STATUS_PENDING
        assert event.error_message == "Processing attempt timed out"
        assert await store.find_due_events(10) == [("momo", "momo_BK-1001_1")]

    async def test_recent_processing_left_alone(self, session_factory, clock):
        store = WebhookEventStore(session_factory, clock=clock)
        await _store_momo(store)
        await _update(
            session_factory, "momo_BK-1001_1",
            status=STATUS_PROCESSING, attempts=1,
            last_attempt_at=clock.now - timedelta(seconds=30),
        )

        assert await store.reset_stale_processing() == 0
        event = await store.get_event("momo", "momo_BK-1001_1")
        assert event.status == STATUS_PROCESSING

    async def test_stale_processing_out_of_budget_fails(self, session_factory, clock):
        store = WebhookEventStore(session_factory, clock=clock)
        await _store_momo(store)
        await _update(
            session_factory, "momo_BK-1001_1",
            status=STATUS_PROCESSING, attempts=5,
            last_attempt_at=clock.now - timedelta(minutes=10),
        )

        assert await store.reset_stale_processing() == 1
        event = await store.get_event("momo", "momo_BK-1001_1")
        assert event.status == STATUS_FAILED

    async def test_cleanup_removes_only_old_finished_events(self, session_factory, clock):
        store = WebhookEventStore(session_factory, clock=clock)
        old = clock.now - timedelta(days=45)
        for event_id, status, created_at in [
            ("old_done", STATUS_COMPLETED, old),
            ("old_failed", STATUS_FAILED, old),
            ("old_pending", STATUS_PENDING, old),
            ("new_done", STATUS_COMPLETED, clock.now),
        ]:
            await _store_momo(store, event_id=event_id, payload={"id": event_id})
            await _update(session_factory, event_id, status=status, created_at=created_at)

        assert await store.cleanup_old_webhooks(days_old=30) == 2

        remaining, total = await store.list_events()
        assert total == 2
        assert {e.event_id for e in remaining} == {"old_pending", "new_done"}


# ---------------------------------------------------------------------------
# Operator retry / listing
# ---------------------------------------------------------------------------

class TestOperatorActions:
    async def test_retry_exhausted_event_gets_one_more_attempt(self, session_factory, clock, mock_alert):
        store = WebhookEventStore(session_factory, reconciler=_missing_booking, clock=clock)
        await _store_momo(store)
        for _ in range(5):
            await store.process_webhook_event("momo", "momo_BK-1001_1")

        event = await store.retry_event("momo", "momo_BK-1001_1")
        assert event.status == STATUS_PENDING
        assert event.attempts == 4
        assert event.error_message is None
        assert await store.find_due_events(10) == [("momo", "momo_BK-1001_1")]

        store._reconciler = _ok_reconciler
        assert await store.process_webhook_event("momo", "momo_BK-1001_1") is True

    async def test_retry_unknown_event(self, store):
        with pytest.raises(WebhookEventNotFound):
            await store.retry_event("momo", "missing")

    @pytest.mark.parametrize("status", [STATUS_COMPLETED, STATUS_PROCESSING])
    async def test_retry_refused_for_completed_or_in_flight(self, store, session_factory, status):
        await _store_momo(store)
        await _update(session_factory, "momo_BK-1001_1", status=status)

        with pytest.raises(WebhookEventNotRetryable) as exc_info:
            await store.retry_event("momo", "momo_BK-1001_1")
        assert exc_info.value.status == status

    async def test_list_filters_and_counts(self, store, session_factory):
        await _store_momo(store, event_id="a")
        await _store_momo(store, event_id="b")
        await store.store_webhook_event("vnpay", "payment_notification", "c", {})
        await _update(session_factory, "b", status=STATUS_FAILED)

        failed, total = await store.list_events(status=STATUS_FAILED)
        assert total == 1
        assert failed[0].event_id == "b"

        momo, total = await store.list_events(provider="momo", limit=1)
        assert total == 2
        assert len(momo) == 1

        counts = await store.status_counts()
        assert counts == {
            "pending": 2, "processing": 0, "completed": 0, "failed": 1, "total": 3,
        }

    async def test_from_settings(self, session_factory, test_settings):
        test_settings.webhook_max_attempts = 3
        store = WebhookEventStore.from_settings(session_factory, test_settings)
        assert store.max_attempts == 3
        assert store.retry_base_seconds == test_settings.webhook_retry_base_seconds
