"""
Webhook retry worker - re-attempts pending payment webhooks with backoff.

process_pending_webhooks() is an idempotent sweep: the cron endpoint calls it,
and so does the optional in-process loop (WEBHOOK_WORKERS_ENABLED). Running
both, or several replicas, is safe because each event is claimed atomically.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from boostpay.services.webhook_store import WebhookEventStore
from boostpay.utils.alerting import AlertType, send_alert
from boostpay.utils.logging import generate_correlation_id, set_correlation_id

logger = logging.getLogger(__name__)

CLEANUP_INTERVAL_SECONDS = 24 * 60 * 60
HEARTBEAT_TTL_SECONDS = 300
HEARTBEAT_KEY_PREFIX = "boostpay:worker_health:"

RETRY_WORKER = "webhook_retry"
CLEANUP_WORKER = "webhook_cleanup"
WORKER_NAMES = (RETRY_WORKER, CLEANUP_WORKER)


async def _heartbeat(worker_name: str, ttl_seconds: int = HEARTBEAT_TTL_SECONDS) -> None:
    """Store heartbeat timestamp in Redis; the key expires if the loop dies."""
    try:
        from boostpay.utils.redis_client import get_redis
        redis = await get_redis()
        await redis.set(
            f"{HEARTBEAT_KEY_PREFIX}{worker_name}",
            datetime.now(timezone.utc).isoformat(),
            ex=ttl_seconds,
        )
    except Exception as e:
        logger.debug("Heartbeat write failed for %s: %s", worker_name, str(e))


async def process_pending_webhooks(
    store: WebhookEventStore,
    batch_size: int = 10,
) -> dict[str, int]:
    """
    Reclaim stale attempts, then process up to batch_size due events, oldest first.
    Returns counts: processed, succeeded, failed.
    """
    stats = {"processed": 0, "succeeded": 0, "failed": 0}

    await store.reset_stale_processing()

    due = await store.find_due_events(batch_size)
    for provider, event_id in due:
        stats["processed"] += 1
        if await store.process_webhook_event(provider, event_id):
            stats["succeeded"] += 1
        else:
            stats["failed"] += 1

    if stats["processed"]:
        logger.info(
            "Webhook sweep: processed=%d succeeded=%d failed=%d",
            stats["processed"], stats["succeeded"], stats["failed"],
        )
    return stats


async def run_webhook_retry_worker(
    store: WebhookEventStore,
    interval_seconds: int = 60,
    batch_size: int = 10,
) -> None:
    """Retry loop. Runs until cancelled."""
    logger.info("Webhook retry worker started (interval=%ds)", interval_seconds)

    while True:
        set_correlation_id(generate_correlation_id())
        try:
            await process_pending_webhooks(store, batch_size)
        except Exception as e:
            logger.error("Webhook retry worker error: %s", str(e), exc_info=True)
            await send_alert(AlertType.WORKER_ERROR, f"Webhook retry sweep failed: {e}")

        await _heartbeat(RETRY_WORKER, max(HEARTBEAT_TTL_SECONDS, interval_seconds * 3))
        await asyncio.sleep(interval_seconds)


async def run_webhook_cleanup_worker(
    store: WebhookEventStore,
    retention_days: int = 30,
    interval_seconds: int = CLEANUP_INTERVAL_SECONDS,
) -> None:
    """Daily cleanup loop. Runs until cancelled."""
    logger.info("Webhook cleanup worker started (retention=%dd)", retention_days)

    while True:
        set_correlation_id(generate_correlation_id())
        try:
            await store.cleanup_old_webhooks(retention_days)
        except Exception as e:
            logger.error("Webhook cleanup worker error: %s", str(e), exc_info=True)

        await _heartbeat(CLEANUP_WORKER, interval_seconds * 2)
        await asyncio.sleep(interval_seconds)


def start_webhook_workers(
    store: WebhookEventStore,
    settings,
    tasks: Optional[list] = None,
) -> list[asyncio.Task]:
    """Create the retry and cleanup tasks. Caller owns cancellation."""
    tasks = tasks if tasks is not None else []
    tasks.append(asyncio.create_task(run_webhook_retry_worker(
        store,
        interval_seconds=settings.webhook_retry_interval_seconds,
        batch_size=settings.webhook_retry_batch_size,
    )))
    tasks.append(asyncio.create_task(run_webhook_cleanup_worker(
        store,
        retention_days=settings.webhook_retention_days,
    )))
    return tasks
