"""
Booking model - a customer's boosting order.
Owned by the booking subsystem; payment reconciliation only advances
status and payment_status.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Integer, DateTime, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship
from boostpay.database import Base


class Booking(Base):
    __tablename__ = "bookings"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    booking_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)

    # Order reference sent to the gateway (orderId / vnp_TxnRef / app_trans_id)
    payment_reference: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    total_amount: Mapped[int] = mapped_column(Integer, nullable=False)  # VND, no minor unit

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="pending"
    )  # pending, confirmed, in_progress, completed, cancelled, refunded
    payment_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="pending"
    )  # pending, completed, failed, refunded
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )

    payments: Mapped[list["Payment"]] = relationship(back_populates="booking")

    __table_args__ = (
        Index("ix_bookings_status", "status"),
        Index("ix_bookings_payment_status", "payment_status"),
    )

    def __repr__(self) -> str:
        return f"<Booking {self.booking_number} status={self.status} payment={self.payment_status}>"
