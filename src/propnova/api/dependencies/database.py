"""Database and service dependencies."""

from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from propnova.billing.entitlements import EntitlementGateway
from propnova.billing.service import BillingService
from propnova.core.database import get_session


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Request-scoped database session."""
    async for session in get_session():
        yield session


def get_billing_service(db: Annotated[AsyncSession, Depends(get_db)]) -> BillingService:
    return BillingService(db)


def get_entitlement_gateway(
    service: Annotated[BillingService, Depends(get_billing_service)],
) -> EntitlementGateway:
    return service.entitlements
