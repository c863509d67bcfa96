"""Billing and subscription API routes."""

import asyncio
from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse

from propnova.api.dependencies.database import get_billing_service, get_entitlement_gateway
from propnova.api.dependencies.rate_limiting import rate_limit_checkout
from propnova.api.dependencies.tenant import CurrentTenant
from propnova.billing.entitlements import EntitlementGateway
from propnova.billing.plans import get_catalog
from propnova.billing.reconciler import ReconcileOutcome
from propnova.billing.schemas import (
    CancelResponse,
    CheckoutResponse,
    PlanResponse,
    QuotaCheckRequest,
    QuotaCheckResponse,
    ReconcileResponse,
    ReturnResponse,
    SubscribeRequest,
    SubscriptionEnvelope,
    SubscriptionResponse,
    TopUpRequest,
    TrialRequest,
    UsageResponse,
)
from propnova.billing.service import BillingService

router = APIRouter()

Service = Annotated[BillingService, Depends(get_billing_service)]


@router.get("/plans", response_model=list[PlanResponse])
async def list_plans() -> list[PlanResponse]:
    """Plan catalog, cheapest first."""
    return [PlanResponse.from_plan(plan) for plan in get_catalog().list_plans()]


@router.get("/subscription", response_model=SubscriptionEnvelope)
async def get_subscription(tenant: CurrentTenant, service: Service) -> SubscriptionEnvelope:
    """Canonical entitlement read. Never changes state."""
    summary = await service.summary(tenant.tenant_id)
    return SubscriptionEnvelope.from_summary(summary)


@router.post(
    "/subscribe",
    response_model=CheckoutResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limit_checkout)],
)
async def subscribe(
    body: SubscribeRequest,
    tenant: CurrentTenant,
    service: Service,
) -> CheckoutResponse:
    """Start a plan checkout and return the gateway handoff."""
    redirect = await service.subscribe(
        tenant.tenant_id,
        body.plan_id,
        return_url=body.return_url,
        cancel_url=body.cancel_url,
    )
    return CheckoutResponse.from_redirect(redirect)


@router.post(
    "/checkout/{plan_id}",
    response_model=CheckoutResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limit_checkout)],
)
async def checkout(plan_id: str, tenant: CurrentTenant, service: Service) -> CheckoutResponse:
    """Path-style checkout used by the web client; same as ``/subscribe``."""
    redirect = await service.subscribe(tenant.tenant_id, plan_id)
    return CheckoutResponse.from_redirect(redirect)


@router.post(
    "/ai-topup",
    response_model=CheckoutResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limit_checkout)],
)
async def ai_topup(body: TopUpRequest, tenant: CurrentTenant, service: Service) -> CheckoutResponse:
    """Start a checkout for AI generation credits."""
    redirect = await service.topup(
        tenant.tenant_id,
        body.credits,
        return_url=body.return_url,
        cancel_url=body.cancel_url,
    )
    return CheckoutResponse.from_redirect(redirect)


@router.post("/checkout/{session_id}/abandon", response_model=SubscriptionResponse)
async def abandon_checkout(
    session_id: str,
    tenant: CurrentTenant,
    service: Service,
) -> SubscriptionResponse:
    """The user cancelled on the gateway page."""
    view = await service.abandon(tenant.tenant_id, session_id)
    return SubscriptionResponse.from_view(view)


@router.post("/cancel", response_model=CancelResponse)
async def cancel(tenant: CurrentTenant, service: Service) -> CancelResponse:
    """Cancel at the end of the current period."""
    view = await service.cancel(tenant.tenant_id)
    return CancelResponse(ok=True, subscription=SubscriptionResponse.from_view(view))


@router.post("/trial", response_model=SubscriptionResponse, status_code=status.HTTP_201_CREATED)
async def start_trial(body: TrialRequest, tenant: CurrentTenant, service: Service) -> SubscriptionResponse:
    view = await service.start_trial(tenant.tenant_id, body.plan_id)
    return SubscriptionResponse.from_view(view)


@router.get("/usage", response_model=UsageResponse)
async def get_usage(tenant: CurrentTenant, service: Service) -> UsageResponse:
    summary = await service.summary(tenant.tenant_id)
    return UsageResponse.from_summary(summary)


@router.post("/quota/check", response_model=QuotaCheckResponse)
async def check_quota(
    body: QuotaCheckRequest,
    tenant: CurrentTenant,
    entitlements: Annotated[EntitlementGateway, Depends(get_entitlement_gateway)],
) -> QuotaCheckResponse:
    """Would ``amount`` more of this resource be allowed right now?"""
    quota = await entitlements.can_consume(tenant.tenant_id, body.resource_type, body.amount)
    return QuotaCheckResponse.from_status(quota)


@router.get("/return", response_model=ReturnResponse)
async def payment_return(
    tenant: CurrentTenant,
    service: Service,
    session_id: Annotated[str | None, Query(alias="sessionId")] = None,
) -> ReturnResponse:
    """Single non-blocking status check for the gateway return page."""
    result = await service.return_status(tenant.tenant_id, session_id)
    return ReturnResponse.from_status(result)


@router.get(
    "/reconcile",
    response_model=ReconcileResponse,
    responses={status.HTTP_202_ACCEPTED: {"model": ReconcileResponse}},
)
async def reconcile(
    request: Request,
    tenant: CurrentTenant,
    service: Service,
    session_id: Annotated[str | None, Query(alias="sessionId")] = None,
) -> ReconcileResponse | JSONResponse:
    """Wait (bounded) for the payment to resolve.

    Answers 202 when the budget runs out unresolved; the notification may
    still land later.
    """
    cancel = asyncio.Event()
    watcher = asyncio.create_task(_cancel_on_disconnect(request, cancel))
    try:
        result = await service.reconcile(tenant.tenant_id, session_id, cancel=cancel)
    finally:
        watcher.cancel()

    body = ReconcileResponse.from_result(result)
    if result.outcome is ReconcileOutcome.TIMED_OUT:
        return JSONResponse(
            status_code=status.HTTP_202_ACCEPTED,
            content=body.model_dump(mode="json", by_alias=True),
        )
    return body


async def _cancel_on_disconnect(request: Request, cancel: asyncio.Event) -> None:
    while not cancel.is_set():
        if await request.is_disconnected():
            cancel.set()
            return
        await asyncio.sleep(0.5)
