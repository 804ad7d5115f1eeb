"""
SQLAlchemy ORM models.
"""
from boostpay.models.booking import Booking
from boostpay.models.payment import Payment
from boostpay.models.webhook_event import WebhookEvent

__all__ = [
    "Booking",
    "Payment",
    "WebhookEvent",
]
