"""
Payment model - one row per settled gateway transaction.
Immutable once completed; (payment_method, gateway_transaction_id) is the
idempotency key for reconciliation.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Integer, DateTime, ForeignKey, UniqueConstraint, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship
from boostpay.database import Base


class Payment(Base):
    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    booking_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("bookings.id"), nullable=False
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)  # VND
    payment_method: Mapped[str] = mapped_column(String(20), nullable=False)  # momo, vnpay, zalopay
    gateway_transaction_id: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="completed")
    gateway_response: Mapped[Optional[dict]] = mapped_column(JSONB)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )

    booking: Mapped["Booking"] = relationship(back_populates="payments")

    __table_args__ = (
        UniqueConstraint(
            "payment_method", "gateway_transaction_id",
            name="uq_payments_method_gateway_txn",
        ),
        Index("ix_payments_booking_id", "booking_id"),
    )

    def __repr__(self) -> str:
        return f"<Payment {self.payment_method}:{self.gateway_transaction_id} {self.amount} VND>"
