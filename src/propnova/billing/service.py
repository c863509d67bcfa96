"""Billing orchestration: checkouts, confirmations and entitlement reads."""

import asyncio
import enum
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from propnova.billing.entitlements import EntitlementGateway
from propnova.billing.gateway import (
    CheckoutRedirect,
    ConfirmationOutcome,
    PaymentGatewayAdapter,
    VerifiedConfirmation,
)
from propnova.billing.ledger import TopUpLedger
from propnova.billing.locks import TenantLockRegistry, get_tenant_locks, tenant_unit_of_work
from propnova.billing.models import (
    PaymentKind,
    PaymentSession,
    PaymentSessionStatus,
)
from propnova.billing.plans import Plan, PlanCatalog, ResourceType, get_catalog
from propnova.billing.reconciler import (
    ActivationProbe,
    ActivationReconciler,
    ReconcileOutcome,
    ReconcileResult,
    classify,
)
from propnova.billing.sessions import PaymentSessionStore
from propnova.billing.state_machine import SubscriptionStateMachine, SubscriptionView
from propnova.billing.usage import UsageCounterStore, UsageSnapshot
from propnova.core import clock
from propnova.core.config import Settings, get_settings
from propnova.core.exceptions import (
    CheckoutInProgressError,
    IllegalTransitionError,
    InvalidTopUpError,
    PaymentSessionNotFoundError,
    SignatureInvalidError,
    StaleConfirmationError,
    ValidationError,
)
from propnova.core.logging import LoggerMixin
from propnova.core.metrics import track_checkout, track_confirmation


class ConfirmationStatus(str, enum.Enum):
    """How an inbound confirmation was handled."""

    CONFIRMED = "confirmed"
    FAILED = "failed"
    STALE = "stale"
    REJECTED = "rejected"

    @property
    def applied(self) -> bool:
        return self in (ConfirmationStatus.CONFIRMED, ConfirmationStatus.FAILED)


@dataclass(frozen=True)
class ConfirmationResult:
    status: ConfirmationStatus
    session_id: str | None
    tenant_id: str | None = None
    kind: PaymentKind | None = None
    reason: str | None = None


@dataclass(frozen=True)
class BillingSummary:
    """Everything the UI shows about a tenant's billing state."""

    subscription: SubscriptionView
    plan: Plan
    usage: dict[ResourceType, UsageSnapshot]
    top_up_balances: dict[ResourceType, int] = field(default_factory=dict)

    @property
    def period_start(self) -> datetime:
        return next(iter(self.usage.values())).period_start

    @property
    def reset_at(self) -> datetime:
        return next(iter(self.usage.values())).period_end


@dataclass(frozen=True)
class ReturnStatus:
    """Single non-blocking check for the gateway return page."""

    outcome: ReconcileOutcome | None
    probe: ActivationProbe

    @property
    def label(self) -> str:
        return "pending" if self.outcome is None else self.outcome.value


class BillingService(LoggerMixin):
    """Coordinates the subscription state machine, payment gateway and meters.

    Every write runs under the tenant's lock and commits before the lock is
    released. Reads derive effective state without persisting anything.
    """

    def __init__(
        self,
        db: AsyncSession,
        *,
        settings: Settings | None = None,
        catalog: PlanCatalog | None = None,
        locks: TenantLockRegistry | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.db = db
        self.settings = settings or get_settings()
        self.catalog = catalog or get_catalog()
        self.locks = locks or get_tenant_locks()

        self.sessions = PaymentSessionStore(db, self.settings)
        self.usage = UsageCounterStore(db, self.settings)
        self.ledger = TopUpLedger(db)
        self.state_machine = SubscriptionStateMachine(
            db,
            catalog=self.catalog,
            settings=self.settings,
            usage=self.usage,
            sessions=self.sessions,
        )
        self.gateway = PaymentGatewayAdapter(
            settings=self.settings,
            catalog=self.catalog,
            sessions=self.sessions,
            http_client=http_client,
        )
        self.entitlements = EntitlementGateway(
            db,
            settings=self.settings,
            catalog=self.catalog,
            locks=self.locks,
            state_machine=self.state_machine,
        )

    # ------------------------------------------------------------------
    # Checkout initiation
    # ------------------------------------------------------------------

    async def subscribe(
        self,
        tenant_id: str,
        plan_id: str,
        *,
        return_url: str | None = None,
        cancel_url: str | None = None,
    ) -> CheckoutRedirect:
        """Start (or resume) a checkout for ``plan_id``.

        Raises:
            PlanNotFoundError: Unknown plan
            ValidationError: The free plan was requested
            CheckoutInProgressError: Another checkout is open for the tenant
        """
        plan = self.catalog.get_plan(plan_id)
        if plan.is_free:
            raise ValidationError("The free plan cannot be purchased", field="plan_id", value=plan_id)

        async with tenant_unit_of_work(self.db, tenant_id, self.locks):
            subscription = await self.state_machine.get_or_create(tenant_id)
            await self.state_machine.settle(subscription)

            open_session = await self.sessions.get_open_session(tenant_id)
            if open_session is not None:
                if open_session.kind is PaymentKind.SUBSCRIBE and open_session.plan_id == plan.id:
                    redirect = self.gateway.render(
                        open_session,
                        return_url=return_url,
                        cancel_url=cancel_url,
                        reissued=True,
                    )
                else:
                    raise CheckoutInProgressError(open_session.id)
            else:
                await self.state_machine.request_subscribe(subscription, plan)
                redirect = await self.gateway.build_checkout(
                    tenant_id, plan, return_url=return_url, cancel_url=cancel_url
                )

        if not redirect.reissued:
            track_checkout(PaymentKind.SUBSCRIBE.value)
        self.logger.info(
            "checkout_initiated",
            tenant_id=tenant_id,
            plan_id=plan.id,
            session_id=redirect.session_id,
            reissued=redirect.reissued,
        )
        return redirect

    async def topup(
        self,
        tenant_id: str,
        credits: int,
        *,
        return_url: str | None = None,
        cancel_url: str | None = None,
    ) -> CheckoutRedirect:
        """Start (or resume) a checkout for AI generation credits."""
        low, high = self.settings.topup_min_credits, self.settings.topup_max_credits
        if not low <= credits <= high:
            raise InvalidTopUpError(
                f"Credits must be between {low} and {high}",
                field="credits",
                value=credits,
                constraint=f"{low}..{high}",
            )

        async with tenant_unit_of_work(self.db, tenant_id, self.locks):
            subscription = await self.state_machine.get_or_create(tenant_id)
            await self.state_machine.settle(subscription)

            open_session = await self.sessions.get_open_session(tenant_id)
            if open_session is not None:
                if open_session.kind is PaymentKind.TOPUP and open_session.credits == credits:
                    redirect = self.gateway.render(
                        open_session,
                        return_url=return_url,
                        cancel_url=cancel_url,
                        reissued=True,
                    )
                else:
                    raise CheckoutInProgressError(open_session.id)
            else:
                redirect = await self.gateway.build_topup(
                    tenant_id, credits, return_url=return_url, cancel_url=cancel_url
                )

        if not redirect.reissued:
            track_checkout(PaymentKind.TOPUP.value)
        self.logger.info(
            "topup_initiated",
            tenant_id=tenant_id,
            credits=credits,
            session_id=redirect.session_id,
            reissued=redirect.reissued,
        )
        return redirect

    async def abandon(self, tenant_id: str, session_id: str) -> SubscriptionView:
        """The user backed out on the gateway page."""
        async with tenant_unit_of_work(self.db, tenant_id, self.locks):
            session = await self._tenant_session(tenant_id, session_id)
            subscription = await self.state_machine.get_or_create(tenant_id)
            await self.state_machine.settle(subscription)

            await self.sessions.refresh(session)
            if not session.is_terminal and await self.sessions.settle(
                session,
                PaymentSessionStatus.FAILED,
                failure_reason="abandoned_by_user",
            ):
                if session.kind is PaymentKind.SUBSCRIBE:
                    await self.state_machine.payment_failed(subscription, session)

        return await self.state_machine.current_view(tenant_id)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def cancel(self, tenant_id: str) -> SubscriptionView:
        """Cancel at period end."""
        async with tenant_unit_of_work(self.db, tenant_id, self.locks):
            subscription = await self.state_machine.get_or_create(tenant_id)
            await self.state_machine.settle(subscription)
            await self.state_machine.request_cancel(subscription)
        return await self.state_machine.current_view(tenant_id)

    async def start_trial(self, tenant_id: str, plan_id: str) -> SubscriptionView:
        plan = self.catalog.get_plan(plan_id)
        async with tenant_unit_of_work(self.db, tenant_id, self.locks):
            subscription = await self.state_machine.get_or_create(tenant_id)
            await self.state_machine.settle(subscription)
            await self.state_machine.start_trial(subscription, plan)
        return await self.state_machine.current_view(tenant_id)

    # ------------------------------------------------------------------
    # Confirmation
    # ------------------------------------------------------------------

    async def handle_confirmation(self, payload: Mapping[str, str]) -> ConfirmationResult:
        """Verify and apply a gateway notification, at most once per session.

        Rejected and stale notifications are returned as results. Only
        GatewayUnavailableError escapes, so the gateway redelivers.
        """
        try:
            verified = await self.gateway.verify_confirmation(payload)
        except SignatureInvalidError as e:
            track_confirmation("unknown", ConfirmationStatus.REJECTED.value)
            return ConfirmationResult(
                status=ConfirmationStatus.REJECTED,
                session_id=e.session_id,
                reason=e.reason,
            )

        session = verified.session
        stale: StaleConfirmationError | None = None
        async with tenant_unit_of_work(self.db, session.tenant_id, self.locks):
            try:
                status = await self._apply_confirmation(verified)
            except StaleConfirmationError as e:
                stale = e

        if stale is not None:
            self.logger.debug(
                "confirmation_stale",
                session_id=stale.session_id,
                session_status=stale.status,
            )
            track_confirmation(session.kind.value, ConfirmationStatus.STALE.value)
            return ConfirmationResult(
                status=ConfirmationStatus.STALE,
                session_id=session.id,
                tenant_id=session.tenant_id,
                kind=session.kind,
                reason=stale.status,
            )

        track_confirmation(session.kind.value, status.value)
        return ConfirmationResult(
            status=status,
            session_id=session.id,
            tenant_id=session.tenant_id,
            kind=session.kind,
        )

    async def _apply_confirmation(self, verified: VerifiedConfirmation) -> ConfirmationStatus:
        session = await self.sessions.refresh(verified.session)
        self._ensure_open(session, verified)

        subscription = await self.state_machine.get_or_create(session.tenant_id)
        await self.state_machine.settle(subscription)
        # settle() may have expired this very session
        self._ensure_open(session, verified)

        if verified.outcome is ConfirmationOutcome.FAILED:
            if not await self._settle_session(session, PaymentSessionStatus.FAILED, verified):
                raise StaleConfirmationError(session.id, session.status.value)
            if session.kind is PaymentKind.SUBSCRIBE:
                await self.state_machine.payment_failed(subscription, session)
            return ConfirmationStatus.FAILED

        if session.kind is PaymentKind.TOPUP:
            if not await self._settle_session(session, PaymentSessionStatus.CONFIRMED, verified):
                raise StaleConfirmationError(session.id, session.status.value)
            await self.ledger.credit(session.tenant_id, ResourceType.AI_GENERATIONS, session.credits or 0)
            return ConfirmationStatus.CONFIRMED

        # Confirmed even when activation below is refused.
        if not await self._settle_session(session, PaymentSessionStatus.CONFIRMED, verified):
            raise StaleConfirmationError(session.id, session.status.value)
        try:
            async with self.db.begin_nested():
                await self.state_machine.activate(subscription, session)
        except IllegalTransitionError as e:
            self.logger.warning(
                "confirmed_payment_needs_review",
                tenant_id=session.tenant_id,
                session_id=session.id,
                gateway_ref=verified.gateway_ref,
                from_status=e.from_status,
            )
            await self.db.refresh(subscription)
            raise StaleConfirmationError(session.id, subscription.status.value) from e
        return ConfirmationStatus.CONFIRMED

    async def _settle_session(
        self,
        session: PaymentSession,
        status: PaymentSessionStatus,
        verified: VerifiedConfirmation,
    ) -> bool:
        return await self.sessions.settle(
            session,
            status,
            gateway_ref=verified.gateway_ref,
            failure_reason=None
            if status is PaymentSessionStatus.CONFIRMED
            else f"gateway_{verified.payment_status.lower()}",
            payload=verified.payload,
        )

    def _ensure_open(self, session: PaymentSession, verified: VerifiedConfirmation) -> None:
        if not session.is_terminal:
            return
        if (
            session.status is PaymentSessionStatus.EXPIRED
            and verified.outcome is ConfirmationOutcome.CONFIRMED
        ):
            self.logger.warning(
                "late_payment_for_expired_session",
                tenant_id=session.tenant_id,
                session_id=session.id,
                gateway_ref=verified.gateway_ref,
            )
        raise StaleConfirmationError(session.id, session.status.value)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_subscription(self, tenant_id: str) -> SubscriptionView:
        return await self.state_machine.current_view(tenant_id)

    async def summary(self, tenant_id: str) -> BillingSummary:
        """Effective plan, status and usage. Pure read."""
        now = clock.utcnow()
        view = await self.state_machine.current_view(tenant_id, now)
        plan = self.catalog.get_plan(view.entitled_plan_id)

        usage: dict[ResourceType, UsageSnapshot] = {}
        balances: dict[ResourceType, int] = {}
        for resource_type in ResourceType:
            usage[resource_type] = await self.usage.peek(
                tenant_id,
                resource_type,
                plan,
                view.usage_anchor,
                now,
                rebase=view.limits_stale,
            )
            balances[resource_type] = await self.ledger.balance(tenant_id, resource_type)

        return BillingSummary(subscription=view, plan=plan, usage=usage, top_up_balances=balances)

    async def probe(self, tenant_id: str, session_id: str | None = None) -> ActivationProbe:
        """One side-effect-free read for the reconciler."""
        now = clock.utcnow()
        view = await self.state_machine.current_view(tenant_id, now)
        session_status = None
        if session_id is not None:
            session = await self._tenant_session(tenant_id, session_id)
            session_status = session.status
            if self.sessions.is_stale(session, now):
                session_status = PaymentSessionStatus.EXPIRED
        return ActivationProbe(
            status=view.status,
            plan_id=view.plan_id,
            session_status=session_status,
        )

    async def return_status(self, tenant_id: str, session_id: str | None = None) -> ReturnStatus:
        probe = await self.probe(tenant_id, session_id)
        return ReturnStatus(
            outcome=classify(probe, expect_session=session_id is not None),
            probe=probe,
        )

    async def reconcile(
        self,
        tenant_id: str,
        session_id: str | None = None,
        *,
        reconciler: ActivationReconciler | None = None,
        cancel: asyncio.Event | None = None,
    ) -> ReconcileResult:
        """Poll until the session resolves or the budget is spent."""
        if session_id is not None:
            await self._tenant_session(tenant_id, session_id)
        reconciler = reconciler or ActivationReconciler(self.settings)
        return await reconciler.run(
            lambda: self.probe(tenant_id, session_id),
            expect_session=session_id is not None,
            cancel=cancel,
        )

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def sweep_expired_sessions(self, now: datetime | None = None) -> int:
        """Expire abandoned checkouts and settle their tenants.

        Returns:
            Number of tenants settled
        """
        now = now or clock.utcnow()
        tenant_ids = await self.sessions.list_stale_tenants(now)
        for tenant_id in tenant_ids:
            async with tenant_unit_of_work(self.db, tenant_id, self.locks):
                subscription = await self.state_machine.get_or_create(tenant_id)
                await self.state_machine.settle(subscription, now)

        if tenant_ids:
            self.logger.info("expired_sessions_swept", tenants=len(tenant_ids))
        return len(tenant_ids)

    async def _tenant_session(self, tenant_id: str, session_id: str) -> PaymentSession:
        session = await self.sessions.get(session_id)
        if session is None or session.tenant_id != tenant_id:
            raise PaymentSessionNotFoundError(
                resource_type="payment_session",
                resource_id=session_id,
            )
        return session

