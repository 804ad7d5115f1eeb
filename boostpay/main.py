"""
BoostPay - payment webhook ingestion and reconciliation for MoMo, VNPay and ZaloPay.
Main FastAPI application entry point.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from boostpay.config import get_settings
from boostpay.api.router import api_router
from boostpay.utils.logging import (
    configure_structured_logging,
    generate_correlation_id,
    set_correlation_id,
)

logger = logging.getLogger("boostpay")


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Injects a correlation ID into every request context and response header."""

    async def dispatch(self, request: Request, call_next) -> Response:
        cid = request.headers.get("X-Correlation-ID") or generate_correlation_id()
        set_correlation_id(cid[:64])
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = cid[:64]
        return response


def _init_sentry(settings) -> None:
    if not settings.sentry_dsn:
        return
    import sentry_sdk
    try:
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            traces_sample_rate=0.1,
            environment=settings.app_env,
            send_default_pii=False,
        )
        logger.info("Sentry initialized")
    except Exception as e:
        logger.warning("Sentry initialization failed: %s", str(e))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    settings = get_settings()
    logger.info("BoostPay starting up (env=%s)", settings.app_env)

    missing = [
        name for name, value in (
            ("MOMO_SECRET_KEY", settings.momo_secret_key),
            ("VNPAY_HASH_SECRET", settings.vnpay_hash_secret),
            ("ZALOPAY_KEY2", settings.zalopay_key2),
        )
        if not value
    ]
    if missing:
        logger.warning(
            "Gateway secrets not set: %s - callbacks from these providers will be rejected",
            ", ".join(missing),
        )
    if not settings.cron_secret:
        logger.warning("CRON_SECRET not set - the cron endpoint accepts unauthenticated calls")

    _init_sentry(settings)

    worker_tasks: list[asyncio.Task] = []
    if settings.webhook_workers_enabled:
        from boostpay.database import get_session_factory
        from boostpay.services.webhook_store import WebhookEventStore
        from boostpay.workers.webhook_retry_worker import start_webhook_workers

        store = WebhookEventStore.from_settings(get_session_factory(), settings)
        start_webhook_workers(store, settings, worker_tasks)
        logger.info("Webhook retry and cleanup workers started")
    else:
        logger.info("In-process webhook workers disabled (WEBHOOK_WORKERS_ENABLED=false)")

    yield

    logger.info("BoostPay shutting down - stopping %d workers...", len(worker_tasks))
    for task in worker_tasks:
        task.cancel()
    if worker_tasks:
        await asyncio.gather(*worker_tasks, return_exceptions=True)

    from boostpay.database import dispose_engine
    from boostpay.utils.redis_client import close_redis
    await close_redis()
    await dispose_engine()
    logger.info("BoostPay shutdown complete")


def create_app() -> FastAPI:
    """Application factory."""
    settings = get_settings()

    configure_structured_logging(
        settings.log_level,
        secrets=(
            settings.momo_secret_key,
            settings.vnpay_hash_secret,
            settings.zalopay_key2,
            settings.admin_api_key,
            settings.cron_secret,
        ),
    )

    application = FastAPI(
        title="BoostPay",
        description="Payment webhook ingestion and reconciliation",
        version="1.0.0",
        lifespan=lifespan,
    )

    application.add_middleware(CorrelationIdMiddleware)
    application.include_router(api_router)

    return application


app = create_app()
