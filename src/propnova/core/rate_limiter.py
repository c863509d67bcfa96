"""Fixed-window rate limiting using Redis."""

from redis.asyncio import Redis

from propnova.core.config import get_settings
from propnova.core.exceptions import RateLimitError


async def check_rate_limit(
    redis_client: Redis,
    key: str,
    limit: int | None = None,
    window_seconds: int | None = None,
) -> None:
    """Count a hit against ``key`` and raise once the window is full.

    Args:
        redis_client: Redis client instance
        key: Bucket identifier (already namespaced by the caller)
        limit: Maximum hits per window (defaults to settings.checkout_rate_limit)
        window_seconds: Window length (defaults to settings.checkout_rate_window_seconds)

    Raises:
        RateLimitError: If the limit is exceeded
    """
    settings = get_settings()
    if limit is None:
        limit = settings.checkout_rate_limit
    if window_seconds is None:
        window_seconds = settings.checkout_rate_window_seconds

    bucket = f"rate_limit:{key}"
    current_count = await redis_client.get(bucket)

    if current_count is None:
        await redis_client.setex(bucket, window_seconds, 1)
        return

    if int(current_count) >= limit:
        raise RateLimitError(retry_after=window_seconds, limit=limit)

    await redis_client.incr(bucket)
