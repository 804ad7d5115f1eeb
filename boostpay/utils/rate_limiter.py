"""
Redis-based rate limiter for webhook endpoints.
Sliding window counter per client IP. Fails open: a Redis outage must never
cause a gateway callback to be dropped.
"""
import logging
import time
from typing import Optional

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60


async def check_rate_limit(
    key: str,
    limit: int,
    window: int = WINDOW_SECONDS,
) -> tuple[bool, Optional[int]]:
    """
    Check if a request is within rate limits using a Redis sorted-set window.

    Returns: (allowed, retry_after_seconds)
    """
    try:
        from boostpay.utils.redis_client import get_redis
        redis = await get_redis()

        redis_key = f"boostpay:ratelimit:{key}"
        now = time.time()
        window_start = now - window

        pipe = redis.pipeline()
        pipe.zremrangebyscore(redis_key, 0, window_start)
        pipe.zadd(redis_key, {f"{now:.6f}": now})
        pipe.zcard(redis_key)
        pipe.zrange(redis_key, 0, 0, withscores=True)
        pipe.expire(redis_key, window + 1)
        results = await pipe.execute()

        request_count = results[2]
        if request_count > limit:
            oldest = results[3]
            oldest_score = oldest[0][1] if oldest else now
            retry_after = int(oldest_score + window - now) + 1
            logger.warning(
                "Rate limit exceeded: key=%s count=%d limit=%d",
                key, request_count, limit,
            )
            return False, max(retry_after, 1)

        return True, None
    except Exception as e:
        logger.warning("Rate limiter Redis error: %s. Allowing request.", str(e))
        return True, None


async def check_webhook_rate_limit(
    client_ip: str,
    provider: str,
) -> tuple[bool, Optional[int]]:
    """Per-IP limit for a provider's webhook endpoint."""
    from boostpay.config import get_settings
    limit = get_settings().webhook_rate_limit_per_minute
    return await check_rate_limit(f"webhook:{provider}:{client_ip}", limit)
