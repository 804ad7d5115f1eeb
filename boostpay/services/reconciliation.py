"""
Payment reconciliation - applies a verified gateway outcome to Booking and Payment.

Runs inside the caller's transaction and never commits. On success the
Payment insert and the Booking advance land together or not at all.

Outcomes:
- succeeded: amount checked, Payment created (or reused for the same gateway
  transaction), Booking pending -> confirmed, payment_status -> completed
- failed: payment_status pending -> failed; a completed payment is never downgraded
- succeeded on a cancelled or refunded booking: nothing changes, recorded as a
  permanent error for an operator to refund or reopen by hand
- pending: no mutation, raises a transient error so the sweep retries later
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from boostpay.models.booking import Booking
from boostpay.models.payment import Payment
from boostpay.schemas.webhook_payloads import (
    PaymentNotification,
    PaymentOutcome,
    notification_from_event,
)

logger = logging.getLogger(__name__)


class ReconciliationError(Exception):
    """Base class for reconciliation failures recorded on the webhook event."""
    transient = True

    @property
    def kind(self) -> str:
        return "transient" if self.transient else "permanent"


class BookingNotFoundError(ReconciliationError):
    # May race with booking creation, so worth retrying
    transient = True


class IndeterminatePaymentError(ReconciliationError):
    transient = True


class AmountMismatchError(ReconciliationError):
    transient = False


class UnsupportedProviderError(ReconciliationError):
    transient = False


class ClosedBookingError(ReconciliationError):
    transient = False


# A success callback never reopens these
CLOSED_BOOKING_STATUSES = frozenset({"cancelled", "refunded"})
PAYABLE_PAYMENT_STATUSES = frozenset({"pending", "failed"})


@dataclass
class ReconciliationResult:
    outcome: PaymentOutcome
    booking_id: str
    payment_id: Optional[str] = None
    created_payment: bool = False
    detail: Optional[str] = None


async def find_booking(db: AsyncSession, order_ref: str) -> Optional[Booking]:
    result = await db.execute(
        select(Booking).where(Booking.payment_reference == order_ref)
    )
    return result.scalar_one_or_none()


async def _find_payment(
    db: AsyncSession, method: str, gateway_transaction_id: str,
) -> Optional[Payment]:
    result = await db.execute(
        select(Payment).where(
            Payment.payment_method == method,
            Payment.gateway_transaction_id == gateway_transaction_id,
        )
    )
    return result.scalar_one_or_none()


async def record_payment(
    db: AsyncSession, booking: Booking, notification: PaymentNotification,
) -> tuple[Payment, bool]:
    """Create the Payment for this gateway transaction, or return the existing one."""
    existing = await _find_payment(
        db, notification.provider, notification.gateway_transaction_id,
    )
    if existing is not None:
        return existing, False

    payment = Payment(
        booking_id=booking.id,
        amount=notification.amount,
        payment_method=notification.provider,
        gateway_transaction_id=notification.gateway_transaction_id,
        status="completed",
        gateway_response=notification.raw,
        paid_at=notification.paid_at or datetime.now(timezone.utc),
    )
    db.add(payment)
    await db.flush()
    return payment, True


async def advance_booking(db: AsyncSession, booking: Booking) -> None:
    """Mark the booking paid; only a pending booking moves to confirmed."""
    if booking.status == "pending":
        booking.status = "confirmed"
        booking.confirmed_at = datetime.now(timezone.utc)
    if booking.payment_status in PAYABLE_PAYMENT_STATUSES:
        booking.payment_status = "completed"
    await db.flush()


def normalize(provider: str, payload: dict) -> PaymentNotification:
    try:
        return notification_from_event(provider, payload)
    except ValidationError as e:
        raise UnsupportedProviderError(
            f"Stored {provider} payload failed validation: {e.error_count()} error(s)"
        ) from e
    except ValueError as e:
        raise UnsupportedProviderError(str(e)) from e


async def reconcile(
    db: AsyncSession, notification: PaymentNotification,
) -> ReconciliationResult:
    """Apply one normalized notification. Raises ReconciliationError subclasses."""
    log_extra = {
        "provider": notification.provider,
        "order_ref": notification.order_ref,
    }

    booking = await find_booking(db, notification.order_ref)
    if booking is None:
        raise BookingNotFoundError(
            f"No booking for payment reference {notification.order_ref}"
        )
    log_extra["booking_id"] = str(booking.id)

    if notification.outcome == PaymentOutcome.PENDING:
        raise IndeterminatePaymentError(
            f"Payment still processing at gateway (code {notification.result_code})"
        )

    if notification.outcome == PaymentOutcome.FAILED:
        reason = notification.message or f"Gateway result code {notification.result_code}"
        if booking.payment_status == "pending":
            booking.payment_status = "failed"
            await db.flush()
        logger.info(
            "Payment failed at gateway: code=%s", notification.result_code,
            extra=log_extra,
        )
        return ReconciliationResult(
            outcome=PaymentOutcome.FAILED,
            booking_id=str(booking.id),
            detail=reason,
        )

    if booking.status in CLOSED_BOOKING_STATUSES or booking.payment_status == "refunded":
        raise ClosedBookingError(
            f"Payment received for {booking.status} booking "
            f"(payment_status={booking.payment_status})"
        )

    if notification.amount != booking.total_amount:
        raise AmountMismatchError(
            f"Amount mismatch: paid {notification.amount} VND, "
            f"booking total {booking.total_amount} VND"
        )

    payment, created = await record_payment(db, booking, notification)
    await advance_booking(db, booking)

    logger.info(
        "Payment reconciled: payment=%s created=%s",
        str(payment.id)[:8], created,
        extra=log_extra,
    )
    return ReconciliationResult(
        outcome=PaymentOutcome.SUCCEEDED,
        booking_id=str(booking.id),
        payment_id=str(payment.id),
        created_payment=created,
    )


async def reconcile_event(
    db: AsyncSession, provider: str, payload: dict,
) -> ReconciliationResult:
    """Normalize a stored webhook payload and reconcile it."""
    return await reconcile(db, normalize(provider, payload))
