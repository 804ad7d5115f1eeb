"""
Admin webhook monitor - inspect stored gateway events and requeue failures.
All routes require the X-Admin-Key header.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from boostpay.api.deps import get_webhook_store, require_admin_api_key
from boostpay.models.webhook_event import PROVIDERS, STATUSES
from boostpay.schemas.api_responses import (
    WebhookEventListResponse,
    WebhookRetryRequest,
    WebhookRetryResponse,
)
from boostpay.services.webhook_store import (
    WebhookEventNotFound,
    WebhookEventNotRetryable,
    WebhookEventStore,
)

logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/api/v1/admin/webhooks",
    tags=["admin"],
    dependencies=[Depends(require_admin_api_key)],
)


@router.get("", response_model=WebhookEventListResponse)
async def list_webhook_events(
    status: Optional[str] = Query(default=None),
    provider: Optional[str] = Query(default=None),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    store: WebhookEventStore = Depends(get_webhook_store),
):
    if status and status not in STATUSES:
        raise HTTPException(status_code=400, detail=f"Unknown status: {status}")
    if provider and provider not in PROVIDERS:
        raise HTTPException(status_code=400, detail=f"Unknown provider: {provider}")

    events, total = await store.list_events(
        status=status, provider=provider, limit=limit, offset=offset,
    )
    stats = await store.status_counts()
    return {
        "webhooks": [event.to_dict() for event in events],
        "total": total,
        "stats": stats,
    }


@router.post("/retry", response_model=WebhookRetryResponse)
async def retry_webhook_event(
    body: WebhookRetryRequest,
    store: WebhookEventStore = Depends(get_webhook_store),
):
    try:
        event = await store.retry_event(body.provider, body.event_id)
    except WebhookEventNotFound:
        raise HTTPException(status_code=404, detail="Webhook event not found")
    except WebhookEventNotRetryable as e:
        raise HTTPException(status_code=409, detail=f"Webhook event is {e.status}")

    logger.info(
        "Manual webhook retry requested",
        extra={"provider": body.provider, "event_id": body.event_id},
    )
    return {
        "success": True,
        "message": "Webhook queued for retry",
        "webhook": event.to_dict(),
    }
