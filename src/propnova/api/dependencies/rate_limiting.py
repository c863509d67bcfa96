"""Rate limiting dependencies for API endpoints."""

from typing import Annotated

from fastapi import Depends
from redis.asyncio import Redis

from propnova.api.dependencies.tenant import CurrentTenant
from propnova.core.rate_limiter import check_rate_limit
from propnova.core.redis import get_redis


async def rate_limit_checkout(
    tenant: CurrentTenant,
    redis_client: Annotated[Redis, Depends(get_redis)],
) -> None:
    """Throttle checkout and top-up initiation per tenant."""
    await check_rate_limit(redis_client, f"checkout:{tenant.tenant_id}")
