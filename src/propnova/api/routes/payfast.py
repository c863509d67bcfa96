"""Inbound PayFast payment notifications (ITN)."""

from typing import Annotated

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import PlainTextResponse

from propnova.api.dependencies.database import get_billing_service
from propnova.billing.service import BillingService, ConfirmationStatus
from propnova.core.logging import bind_contextvars, get_logger

router = APIRouter()

logger = get_logger(__name__)


@router.post("/notify", response_class=PlainTextResponse)
async def payfast_notify(
    request: Request,
    service: Annotated[BillingService, Depends(get_billing_service)],
) -> PlainTextResponse:
    """Apply a gateway notification.

    Answers 200 whenever redelivery would be pointless (applied, failed or
    already settled), 400 when the payload fails verification. A gateway
    validation outage surfaces as 503 so the gateway retries.
    """
    form = await request.form()
    payload = {key: str(value) for key, value in form.items()}
    bind_contextvars(session_id=payload.get("m_payment_id"))

    result = await service.handle_confirmation(payload)
    logger.info(
        "payment_notification_handled",
        status=result.status.value,
        tenant_id=result.tenant_id,
        reason=result.reason,
    )

    if result.status is ConfirmationStatus.REJECTED:
        return PlainTextResponse("REJECTED", status_code=status.HTTP_400_BAD_REQUEST)
    return PlainTextResponse("OK", status_code=status.HTTP_200_OK)
