"""
Operator alerting - surfaces payment events that need a human.

Alert channels:
1. Structured log (always) - at ERROR/CRITICAL level
2. Webhook (configurable) - Discord/Slack URL via ALERT_WEBHOOK_URL env var

Rate limiting: per-type cooldowns stored in Redis (survives restarts), with
an in-memory fallback when Redis is unavailable.
"""
import logging
import time
from typing import Optional

logger = logging.getLogger(__name__)

ALERT_COOLDOWN_SECONDS = 300  # 5 minutes (default)

# Forged callbacks tend to arrive in bursts
ALERT_COOLDOWN_OVERRIDES: dict[str, int] = {
    "webhook_signature_invalid": 900,
}

# In-memory fallback when Redis is down (alert_type -> expiry monotonic time)
_local_cooldowns: dict[str, float] = {}


class AlertType:
    """Alert type constants."""
    WEBHOOK_SIGNATURE_INVALID = "webhook_signature_invalid"
    DEAD_LETTER_EXHAUSTED = "dead_letter_exhausted"
    AMOUNT_MISMATCH = "amount_mismatch"
    WORKER_ERROR = "worker_error"


def _get_cooldown_seconds(alert_type: str) -> int:
    return ALERT_COOLDOWN_OVERRIDES.get(alert_type, ALERT_COOLDOWN_SECONDS)


async def send_alert(
    alert_type: str,
    message: str,
    correlation_id: Optional[str] = None,
    severity: str = "error",
    extra: Optional[dict] = None,
) -> bool:
    """
    Send an alert through all configured channels.
    Returns False when suppressed by the per-type cooldown.
    """
    if not await _acquire_cooldown(alert_type):
        return False

    from boostpay.utils.logging import get_correlation_id
    cid = correlation_id or get_correlation_id()

    log_message = f"ALERT [{alert_type}]: {message}"
    if cid:
        log_message += f" (correlation_id={cid})"

    if severity == "critical":
        logger.critical(log_message)
    else:
        logger.error(log_message)

    await _send_webhook_alert(alert_type, message, severity, cid, extra)
    return True


async def _acquire_cooldown(alert_type: str) -> bool:
    """
    Atomically check-and-set alert cooldown. Returns True if alert should be sent.
    Uses Redis SET NX EX; falls back to an in-memory dict when Redis is unavailable.
    """
    cooldown = _get_cooldown_seconds(alert_type)

    try:
        from boostpay.utils.redis_client import get_redis
        redis = await get_redis()
        acquired = await redis.set(
            f"boostpay:alert_cooldown:{alert_type}", "1", nx=True, ex=cooldown,
        )
        return bool(acquired)
    except Exception as e:
        logger.debug("Alert cooldown Redis check failed, using in-memory fallback: %s", str(e))
        now = time.monotonic()
        if now < _local_cooldowns.get(alert_type, 0):
            return False
        _local_cooldowns[alert_type] = now + cooldown
        return True


async def _send_webhook_alert(
    alert_type: str,
    message: str,
    severity: str,
    correlation_id: Optional[str],
    extra: Optional[dict],
) -> None:
    """Send alert to configured webhook (Discord/Slack)."""
    from boostpay.config import get_settings
    webhook_url = get_settings().alert_webhook_url
    if not webhook_url:
        return

    import httpx

    prefix = {"critical": "[CRITICAL]", "warning": "[WARN]"}.get(severity, "[ERROR]")
    content = f"{prefix} **{alert_type}**\n{message}"
    if correlation_id:
        content += f"\n`correlation_id: {correlation_id}`"
    for key, val in (extra or {}).items():
        content += f"\n`{key}: {val}`"

    try:
        async with httpx.AsyncClient(timeout=5.0) as client:
            response = await client.post(webhook_url, json={"content": content})
            response.raise_for_status()
    except httpx.HTTPError as e:
        # Alert delivery must never break payment processing
        logger.warning("Failed to send webhook alert: %s", str(e))
