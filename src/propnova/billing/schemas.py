"""Pydantic schemas for the billing API.

Wire names are camelCase; Python attributes stay snake_case.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from propnova.billing.entitlements import QuotaStatus
from propnova.billing.gateway import CheckoutRedirect, format_amount
from propnova.billing.models import PaymentSessionStatus, SubscriptionStatus
from propnova.billing.plans import Plan, ResourceType
from propnova.billing.reconciler import ReconcileResult
from propnova.billing.service import BillingSummary, ReturnStatus
from propnova.billing.state_machine import SubscriptionView
from propnova.billing.usage import UsageSnapshot


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ============================================================================
# Requests
# ============================================================================


class SubscribeRequest(CamelModel):
    """Schema for starting a plan checkout."""

    plan_id: str = Field(..., min_length=1, max_length=50)
    return_url: str | None = Field(None, max_length=2048)
    cancel_url: str | None = Field(None, max_length=2048)


class TopUpRequest(CamelModel):
    """Schema for buying AI generation credits."""

    credits: int
    return_url: str | None = Field(None, max_length=2048)
    cancel_url: str | None = Field(None, max_length=2048)


class TrialRequest(CamelModel):
    plan_id: str = Field(..., min_length=1, max_length=50)


class QuotaCheckRequest(CamelModel):
    resource_type: ResourceType
    amount: int = Field(1, ge=1)


# ============================================================================
# Responses
# ============================================================================


class PlanResponse(CamelModel):
    id: str
    name: str
    price: str
    price_minor: int
    currency: str
    period: str
    description: str
    features: list[str]
    limits: dict[str, int]

    @classmethod
    def from_plan(cls, plan: Plan) -> "PlanResponse":
        return cls(
            id=plan.id,
            name=plan.name,
            price=format_amount(plan.price_minor),
            price_minor=plan.price_minor,
            currency=plan.currency,
            period=plan.period,
            description=plan.description,
            features=list(plan.features),
            limits={rt.value: limit for rt, limit in plan.limits.items()},
        )


class CheckoutForm(CamelModel):
    action: str
    fields: dict[str, str]


class CheckoutResponse(CamelModel):
    """Gateway handoff. Clients render ``redirectHtml`` or follow ``redirect``."""

    session_id: str
    redirect: str
    redirect_html: str
    payload: CheckoutForm
    reissued: bool = False

    @classmethod
    def from_redirect(cls, redirect: CheckoutRedirect) -> "CheckoutResponse":
        return cls(
            session_id=redirect.session_id,
            redirect=redirect.redirect_url,
            redirect_html=redirect.redirect_html,
            payload=CheckoutForm(action=redirect.form_action, fields=redirect.form_fields),
            reissued=redirect.reissued,
        )


class SubscriptionResponse(CamelModel):
    tenant_id: str
    status: SubscriptionStatus
    plan_id: str
    entitled_plan_id: str
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    trial_ends_at: datetime | None = None
    activated_at: datetime | None = None
    cancelled_at: datetime | None = None
    pending_session_id: str | None = None

    @classmethod
    def from_view(cls, view: SubscriptionView) -> "SubscriptionResponse":
        return cls(
            tenant_id=view.tenant_id,
            status=view.status,
            plan_id=view.plan_id,
            entitled_plan_id=view.entitled_plan_id,
            current_period_start=view.current_period_start,
            current_period_end=view.current_period_end,
            trial_ends_at=view.trial_ends_at,
            activated_at=view.activated_at,
            cancelled_at=view.cancelled_at,
            pending_session_id=view.pending_session_id,
        )


class OrganizationResponse(CamelModel):
    id: str
    plan: PlanResponse


class SubscriptionEnvelope(CamelModel):
    """Canonical entitlement read."""

    subscription: SubscriptionResponse
    organization: OrganizationResponse

    @classmethod
    def from_summary(cls, summary: BillingSummary) -> "SubscriptionEnvelope":
        return cls(
            subscription=SubscriptionResponse.from_view(summary.subscription),
            organization=OrganizationResponse(
                id=summary.subscription.tenant_id,
                plan=PlanResponse.from_plan(summary.plan),
            ),
        )


class CancelResponse(CamelModel):
    ok: bool = True
    subscription: SubscriptionResponse


class UsageItem(CamelModel):
    used: int
    limit: int
    remaining: int
    unlimited: bool
    top_up_balance: int = 0

    @classmethod
    def from_snapshot(cls, snapshot: UsageSnapshot, top_up_balance: int = 0) -> "UsageItem":
        return cls(
            used=snapshot.used,
            limit=snapshot.limit,
            remaining=snapshot.remaining,
            unlimited=snapshot.is_unlimited,
            top_up_balance=top_up_balance,
        )


class UsageBreakdown(CamelModel):
    properties: UsageItem
    ai_generations: UsageItem
    saved_listings: UsageItem

    @classmethod
    def from_summary(cls, summary: BillingSummary) -> "UsageBreakdown":
        items = {
            rt.value: UsageItem.from_snapshot(snap, summary.top_up_balances.get(rt, 0))
            for rt, snap in summary.usage.items()
        }
        return cls(**items)


class UsageResponse(CamelModel):
    plan_id: str
    period_start: datetime
    reset_at: datetime
    usage: UsageBreakdown
    top_up_balance: int

    @classmethod
    def from_summary(cls, summary: BillingSummary) -> "UsageResponse":
        return cls(
            plan_id=summary.plan.id,
            period_start=summary.period_start,
            reset_at=summary.reset_at,
            usage=UsageBreakdown.from_summary(summary),
            top_up_balance=summary.top_up_balances.get(ResourceType.AI_GENERATIONS, 0),
        )


class SummaryResponse(CamelModel):
    """What ``/me/summary`` returns; the return page polls this."""

    plan: PlanResponse
    status: SubscriptionStatus
    usage: UsageBreakdown
    reset_at: datetime

    @classmethod
    def from_summary(cls, summary: BillingSummary) -> "SummaryResponse":
        return cls(
            plan=PlanResponse.from_plan(summary.plan),
            status=summary.subscription.status,
            usage=UsageBreakdown.from_summary(summary),
            reset_at=summary.reset_at,
        )


class QuotaCheckResponse(CamelModel):
    resource_type: ResourceType
    allowed: bool
    used: int
    limit: int
    remaining: int
    remaining_top_up: int

    @classmethod
    def from_status(cls, status: QuotaStatus) -> "QuotaCheckResponse":
        return cls(
            resource_type=status.resource_type,
            allowed=status.allowed,
            used=status.used,
            limit=status.limit,
            remaining=status.remaining,
            remaining_top_up=status.top_up_balance,
        )


class ReturnResponse(CamelModel):
    """Non-blocking activation check for the gateway return page."""

    outcome: str
    status: SubscriptionStatus
    plan_id: str
    session_status: PaymentSessionStatus | None = None

    @classmethod
    def from_status(cls, result: ReturnStatus) -> "ReturnResponse":
        return cls(
            outcome=result.label,
            status=result.probe.status,
            plan_id=result.probe.plan_id,
            session_status=result.probe.session_status,
        )


class ReconcileResponse(CamelModel):
    outcome: str
    attempts: int
    elapsed_seconds: float
    status: SubscriptionStatus | None = None
    plan_id: str | None = None
    session_status: PaymentSessionStatus | None = None
    message: str | None = None

    @classmethod
    def from_result(cls, result: ReconcileResult) -> "ReconcileResponse":
        probe = result.last_probe
        return cls(
            outcome=result.outcome.value,
            attempts=result.attempts,
            elapsed_seconds=result.elapsed_seconds,
            status=probe.status if probe else None,
            plan_id=probe.plan_id if probe else None,
            session_status=probe.session_status if probe else None,
            message=None if result.is_resolved else result.to_error().user_message,
        )
