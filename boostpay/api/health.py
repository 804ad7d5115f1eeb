"""
Health endpoints for the load balancer and uptime monitoring.

- GET /health       - liveness, 200 whenever the process serves requests
- GET /health/ready - database (required) and Redis (optional) connectivity
- GET /health/deep  - readiness plus webhook backlog and worker heartbeats
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from boostpay.api.deps import get_webhook_store
from boostpay.config import Settings, get_settings
from boostpay.database import get_db
from boostpay.services.webhook_store import WebhookEventStore
from boostpay.workers.webhook_retry_worker import (
    CLEANUP_INTERVAL_SECONDS,
    CLEANUP_WORKER,
    HEARTBEAT_KEY_PREFIX,
    RETRY_WORKER,
    WORKER_NAMES,
)

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])

VERSION = "1.0.0"

HEARTBEAT_STALE_SECONDS = 180


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


async def _database_ok(db: AsyncSession) -> bool:
    try:
        await db.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error("Database health check failed: %s", str(e))
        return False


async def _redis_ok() -> bool:
    try:
        from boostpay.utils.redis_client import get_redis
        redis = await get_redis()
        await redis.ping()
        return True
    except Exception as e:
        logger.warning("Redis health check failed: %s", str(e))
        return False


async def _worker_heartbeats() -> dict[str, Optional[str]]:
    """Last heartbeat per worker, None when missing or Redis is unreachable."""
    beats: dict[str, Optional[str]] = {name: None for name in WORKER_NAMES}
    try:
        from boostpay.utils.redis_client import get_redis
        redis = await get_redis()
        for name in WORKER_NAMES:
            beats[name] = await redis.get(f"{HEARTBEAT_KEY_PREFIX}{name}")
    except Exception as e:
        logger.warning("Worker heartbeat read failed: %s", str(e))
    return beats


def _heartbeat_fresh(value: Optional[str], now: datetime, max_age_seconds: int) -> bool:
    if not value:
        return False
    try:
        beat = datetime.fromisoformat(value)
    except ValueError:
        return False
    return (now - beat).total_seconds() <= max_age_seconds


@router.get("/health")
async def health_check():
    return {"status": "healthy", "timestamp": _now_iso(), "version": VERSION}


@router.get("/health/ready")
async def readiness_check(db: AsyncSession = Depends(get_db)):
    """
    The database is required to accept webhooks. Redis only backs rate limiting
    and alert cooldowns, so losing it reports 'degraded' with a 200.
    """
    checks = {"database": await _database_ok(db), "redis": await _redis_ok()}

    if not checks["database"]:
        return JSONResponse(
            status_code=503,
            content={"status": "unavailable", "checks": checks, "timestamp": _now_iso()},
        )
    return {
        "status": "ready" if checks["redis"] else "degraded",
        "checks": checks,
        "timestamp": _now_iso(),
    }


@router.get("/health/deep")
async def deep_health_check(
    db: AsyncSession = Depends(get_db),
    store: WebhookEventStore = Depends(get_webhook_store),
    settings: Settings = Depends(get_settings),
):
    """
    Readiness plus the webhook backlog (events by status) and, when the
    in-process workers are enabled, whether each loop is still beating.
    Dead-lettered events make the status 'attention' so monitors page someone.
    """
    checks = {"database": await _database_ok(db), "redis": await _redis_ok()}
    if not checks["database"]:
        return JSONResponse(
            status_code=503,
            content={"status": "unavailable", "checks": checks, "timestamp": _now_iso()},
        )

    backlog = await store.status_counts()
    body = {"checks": checks, "webhooks": backlog, "timestamp": _now_iso()}

    issues = []
    if backlog["failed"]:
        issues.append(f"{backlog['failed']} webhook events need manual review")

    if settings.webhook_workers_enabled:
        now = datetime.now(timezone.utc)
        beats = await _worker_heartbeats()
        max_age = {
            RETRY_WORKER: max(HEARTBEAT_STALE_SECONDS, settings.webhook_retry_interval_seconds * 3),
            CLEANUP_WORKER: CLEANUP_INTERVAL_SECONDS * 2,
        }
        workers = {
            name: {
                "last_heartbeat": value,
                "healthy": _heartbeat_fresh(value, now, max_age[name]),
            }
            for name, value in beats.items()
        }
        body["workers"] = workers
        issues.extend(
            f"worker {name} heartbeat is stale" for name, info in workers.items()
            if not info["healthy"]
        )

    if not checks["redis"]:
        issues.append("redis unreachable")

    body["status"] = "attention" if issues else "ok"
    body["issues"] = issues
    return body
