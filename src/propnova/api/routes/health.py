"""Health check endpoints."""

from fastapi import APIRouter, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel

from propnova.billing.plans import CATALOG_VERSION
from propnova.core.database import check_database_connection
from propnova.core.redis import check_redis_connection

router = APIRouter()


class HealthResponse(BaseModel):
    status: str
    version: str
    catalog_version: str


class ReadinessResponse(BaseModel):
    status: str
    database: bool
    redis: bool


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Liveness probe."""
    return HealthResponse(status="healthy", version="0.1.0", catalog_version=CATALOG_VERSION)


@router.get(
    "/health/ready",
    response_model=ReadinessResponse,
    responses={status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ReadinessResponse}},
)
async def readiness_check() -> ReadinessResponse | JSONResponse:
    """Readiness probe.

    The billing store is required; Redis only backs rate limiting, so its
    loss degrades the service without failing readiness.
    """
    db_ok = await check_database_connection()
    redis_ok = await check_redis_connection()

    body = ReadinessResponse(
        status="ready" if db_ok and redis_ok else ("degraded" if db_ok else "unavailable"),
        database=db_ok,
        redis=redis_ok,
    )
    if not db_ok:
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=body.model_dump())
    return body


@router.get("/metrics")
async def metrics() -> Response:
    """Prometheus exposition."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
