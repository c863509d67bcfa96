"""Current-tenant summary route."""

from typing import Annotated

from fastapi import APIRouter, Depends

from propnova.api.dependencies.database import get_billing_service
from propnova.api.dependencies.tenant import CurrentTenant
from propnova.billing.schemas import SummaryResponse
from propnova.billing.service import BillingService

router = APIRouter()


@router.get("/summary", response_model=SummaryResponse)
async def get_summary(
    tenant: CurrentTenant,
    service: Annotated[BillingService, Depends(get_billing_service)],
) -> SummaryResponse:
    """Plan and usage for the caller's organization. Pure read."""
    summary = await service.summary(tenant.tenant_id)
    return SummaryResponse.from_summary(summary)
