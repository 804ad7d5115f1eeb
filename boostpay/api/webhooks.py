"""
Payment gateway webhook endpoints (MoMo, VNPay, ZaloPay IPN).

Each request passes, in order:
1. Rate limiting (per IP, fail-open)
2. Signature validation - rejected with the provider's error envelope, nothing stored
3. Replay protection - stale or already-seen events get the provider's success
   envelope and are not processed again
4. Durable storage in webhook_events
5. One bounded synchronous processing attempt; anything unfinished is left
   to the retry sweep

The gateway always gets its provider-specific envelope, never a bare 500.
"""
import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from boostpay.api.deps import get_replay_guard, get_webhook_store
from boostpay.api.webhook_sources import (
    parse_momo_body,
    parse_zalopay_data,
    read_vnpay_params,
    read_zalopay_fields,
)
from boostpay.config import Settings, get_settings
from boostpay.schemas.webhook_payloads import (
    MoMoWebhookPayload,
    ProviderPayload,
    VNPayWebhookParams,
    ZaloPayCallbackData,
)
from boostpay.services.replay_guard import ReplayGuard, ReplayValidationResult
from boostpay.services.webhook_store import WebhookEventStore
from boostpay.utils.alerting import AlertType, send_alert
from boostpay.utils.rate_limiter import check_webhook_rate_limit
from boostpay.utils.webhook_signatures import (
    verify_momo_signature,
    verify_vnpay_signature,
    verify_zalopay_mac,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])

EVENT_TYPE = "payment_notification"

# Rejections still speak each gateway's protocol
RATE_LIMITED_BODIES = {
    "momo": {"message": "Too many requests"},
    "vnpay": {"RspCode": "99", "Message": "Too many requests"},
    "zalopay": {"return_code": 0, "return_message": "Too many requests"},
}


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def _rate_limited(request: Request, provider: str) -> Optional[JSONResponse]:
    """429 in the provider's envelope when the caller is over its limit, else None."""
    allowed, retry_after = await check_webhook_rate_limit(_client_ip(request), provider)
    if allowed:
        return None
    return JSONResponse(
        status_code=429,
        content=RATE_LIMITED_BODIES[provider],
        headers={"Retry-After": str(retry_after or 60)},
    )


async def _reject_signature(request: Request, provider: str) -> None:
    """Log and alert on a forged or corrupted callback. Detail stays server-side."""
    client_ip = _client_ip(request)
    logger.warning(
        "Invalid webhook signature: ip=%s", client_ip, extra={"provider": provider},
    )
    await send_alert(
        AlertType.WEBHOOK_SIGNATURE_INVALID,
        f"Rejected {provider} webhook with invalid signature",
        severity="warning",
        extra={"provider": provider, "ip": client_ip},
    )


def _replay_message(result: ReplayValidationResult) -> str:
    return "Already processed" if result.is_duplicate else "Invalid request"


async def _process_now(
    store: WebhookEventStore, provider: str, event_id: str, timeout: float,
) -> bool:
    """
    One synchronous attempt, bounded by timeout. The event is already stored,
    so any failure here is picked up by the retry sweep.
    """
    log_extra = {"provider": provider, "event_id": event_id}
    try:
        return await asyncio.wait_for(
            store.process_webhook_event(provider, event_id), timeout=timeout,
        )
    except asyncio.TimeoutError:
        logger.warning("Synchronous processing timed out after %.1fs", timeout, extra=log_extra)
    except Exception as e:
        logger.error("Synchronous processing error: %s", str(e), extra=log_extra, exc_info=True)
    return False


async def _accept(
    provider: str,
    payload: ProviderPayload,
    stored_payload: dict,
    guard: ReplayGuard,
    store: WebhookEventStore,
    settings: Settings,
) -> ReplayValidationResult:
    """Replay check, durable store, synchronous attempt. Shared by all providers."""
    event_id = payload.event_id
    log_extra = {"provider": provider, "event_id": event_id}

    replay = await guard.validate(provider, event_id, payload.gateway_timestamp)
    if not replay.valid:
        logger.warning(
            "Webhook rejected by replay protection: %s (duplicate=%s)",
            replay.error, replay.is_duplicate, extra=log_extra,
        )
        return replay

    await store.store_webhook_event(provider, EVENT_TYPE, event_id, stored_payload)

    processed = await _process_now(
        store, provider, event_id, settings.webhook_sync_timeout_seconds,
    )
    if not processed:
        logger.warning("Webhook processing deferred to retry sweep", extra=log_extra)
    return replay


@router.post("/momo")
async def momo_webhook(
    request: Request,
    settings: Settings = Depends(get_settings),
    guard: ReplayGuard = Depends(get_replay_guard),
    store: WebhookEventStore = Depends(get_webhook_store),
):
    """MoMo IPN. JSON body; resultCode 0 in the response means 'received'."""
    limited = await _rate_limited(request, "momo")
    if limited is not None:
        return limited

    try:
        raw = parse_momo_body(await request.body())
        if raw is None or not verify_momo_signature(
            settings.momo_access_key, settings.momo_secret_key, raw,
        ):
            await _reject_signature(request, "momo")
            return JSONResponse(status_code=400, content={"message": "Invalid signature"})

        payload = MoMoWebhookPayload.model_validate(raw)
        replay = await _accept("momo", payload, raw, guard, store, settings)
        if not replay.valid:
            return {"message": _replay_message(replay), "resultCode": 0}

        return {"message": "Webhook received", "resultCode": 0}
    except Exception as e:
        logger.error("MoMo webhook error: %s", str(e), exc_info=True, extra={"provider": "momo"})
        return JSONResponse(status_code=500, content={"message": "Internal server error"})


@router.api_route("/vnpay", methods=["GET", "POST"])
async def vnpay_webhook(
    request: Request,
    settings: Settings = Depends(get_settings),
    guard: ReplayGuard = Depends(get_replay_guard),
    store: WebhookEventStore = Depends(get_webhook_store),
):
    """VNPay IPN. Query string (GET) or query plus form fields (POST)."""
    limited = await _rate_limited(request, "vnpay")
    if limited is not None:
        return limited

    try:
        params = await read_vnpay_params(request)
        if not verify_vnpay_signature(settings.vnpay_hash_secret, params):
            await _reject_signature(request, "vnpay")
            return {"RspCode": "97", "Message": "Invalid signature"}

        stored = {
            key: value for key, value in params.items()
            if key not in ("vnp_SecureHash", "vnp_SecureHashType")
        }
        payload = VNPayWebhookParams.model_validate(stored)
        replay = await _accept("vnpay", payload, stored, guard, store, settings)
        if not replay.valid:
            return {"RspCode": "00", "Message": _replay_message(replay)}

        return {"RspCode": "00", "Message": "success"}
    except Exception as e:
        logger.error("VNPay webhook error: %s", str(e), exc_info=True, extra={"provider": "vnpay"})
        return {"RspCode": "99", "Message": "Internal server error"}


@router.post("/zalopay")
async def zalopay_webhook(
    request: Request,
    settings: Settings = Depends(get_settings),
    guard: ReplayGuard = Depends(get_replay_guard),
    store: WebhookEventStore = Depends(get_webhook_store),
):
    """ZaloPay callback. Form (or JSON) fields `data` (JSON string) and `mac`."""
    limited = await _rate_limited(request, "zalopay")
    if limited is not None:
        return limited

    try:
        data, mac = await read_zalopay_fields(request)
        if not data or not mac:
            return JSONResponse(
                status_code=400,
                content={"return_code": 2, "return_message": "Missing data or mac"},
            )

        if not verify_zalopay_mac(settings.zalopay_key2, data, mac):
            await _reject_signature(request, "zalopay")
            return JSONResponse(
                status_code=400,
                content={"return_code": -1, "return_message": "Invalid MAC"},
            )

        parsed = parse_zalopay_data(data)
        payload = ZaloPayCallbackData.model_validate(parsed)
        replay = await _accept("zalopay", payload, parsed, guard, store, settings)
        if not replay.valid:
            return {"return_code": 1, "return_message": _replay_message(replay)}

        return {"return_code": 1, "return_message": "success"}
    except Exception as e:
        logger.error("ZaloPay webhook error: %s", str(e), exc_info=True, extra={"provider": "zalopay"})
        return JSONResponse(
            status_code=500,
            content={"return_code": 0, "return_message": "Internal server error"},
        )
