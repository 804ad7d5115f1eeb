"""
Cron trigger for webhook jobs.
An external scheduler calls GET /api/v1/cron/webhooks every minute; roughly
one call in ten also purges old completed/failed events.
"""
import logging
import random

from fastapi import APIRouter, Depends, Response
from fastapi.responses import JSONResponse

from boostpay.api.deps import get_webhook_store, require_cron_secret
from boostpay.config import Settings, get_settings
from boostpay.services.webhook_store import WebhookEventStore
from boostpay.workers.webhook_retry_worker import process_pending_webhooks

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/cron", tags=["cron"])

CLEANUP_PROBABILITY = 0.1


def _should_cleanup() -> bool:
    return random.random() < CLEANUP_PROBABILITY


@router.get("/webhooks", dependencies=[Depends(require_cron_secret)])
async def run_webhook_jobs(
    settings: Settings = Depends(get_settings),
    store: WebhookEventStore = Depends(get_webhook_store),
):
    try:
        stats = await process_pending_webhooks(store, settings.webhook_retry_batch_size)
        if _should_cleanup():
            await store.cleanup_old_webhooks(settings.webhook_retention_days)
    except Exception as e:
        logger.error("Cron webhook processing failed: %s", str(e), exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"success": False, "message": "Webhook processing failed"},
        )

    return {
        "success": True,
        "message": "Webhook processing completed",
        **stats,
    }


@router.head("/webhooks")
async def webhook_jobs_probe():
    """Uptime probe for the cron target."""
    return Response(status_code=200)
