"""
JSON logging for the webhook pipeline.

One JSON object per line. Each request (and each worker sweep) carries a
correlation id in a ContextVar so a callback can be followed from ingress
through reconciliation. Gateway secrets are masked before any handler sees
the record.
"""
import json
import logging
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Iterable, Optional

correlation_id_ctx: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Promoted to top-level keys when passed via `extra=`
PAYMENT_LOG_FIELDS = ("provider", "event_id", "booking_id", "order_ref", "error_code")

REDACTED = "***"


def get_correlation_id() -> Optional[str]:
    return correlation_id_ctx.get()


def set_correlation_id(cid: str) -> None:
    correlation_id_ctx.set(cid)


def generate_correlation_id() -> str:
    """32-char hex id for a request or sweep."""
    return uuid.uuid4().hex


class SecretRedactionFilter(logging.Filter):
    """Replaces configured secret values in the rendered message and traceback."""

    def __init__(self, secrets: Iterable[str] = ()):
        super().__init__()
        # Longest first so a secret containing another is masked whole
        self._secrets = sorted({s for s in secrets if s}, key=len, reverse=True)

    def filter(self, record: logging.LogRecord) -> bool:
        if not self._secrets:
            return True
        message = record.getMessage()
        redacted = self.redact(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        if record.exc_info and record.exc_info[0] is not None:
            # Cached where Formatter.format looks for it
            record.exc_text = self.redact(
                record.exc_text or logging.Formatter().formatException(record.exc_info)
            )
        return True

    def redact(self, text: str) -> str:
        for secret in self._secrets:
            text = text.replace(secret, REDACTED)
        return text


class StructuredJsonFormatter(logging.Formatter):
    """
    {"timestamp": "...", "level": "INFO", "correlation_id": "...",
     "module": "boostpay.api.webhooks", "message": "...", "provider": "momo", ...}
    """

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc)
            .strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
            "level": record.levelname,
            "correlation_id": get_correlation_id(),
            "module": record.name,
            "message": record.getMessage(),
        }
        entry.update(
            (field, getattr(record, field))
            for field in PAYMENT_LOG_FIELDS
            if getattr(record, field, None) is not None
        )
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = record.exc_text or self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def configure_structured_logging(log_level: str = "INFO", secrets: Iterable[str] = ()) -> None:
    """
    Route every logger through one JSON stream handler on the root logger.
    Call once from create_app(), before the first log call.
    """
    handler = logging.StreamHandler()
    handler.setFormatter(StructuredJsonFormatter())
    handler.addFilter(SecretRedactionFilter(secrets))

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for name in ("uvicorn.access", "sqlalchemy.engine", "httpcore", "httpx"):
        logging.getLogger(name).setLevel(logging.WARNING)
