"""Subscription lifecycle state machine."""

from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from propnova.billing.models import (
    PaymentKind,
    PaymentSession,
    Subscription,
    SubscriptionStatus,
)
from propnova.billing.plans import FREE_PLAN_ID, Plan, PlanCatalog, get_catalog
from propnova.billing.sessions import PaymentSessionStore
from propnova.billing.usage import UsageCounterStore
from propnova.core import clock
from propnova.core.config import Settings, get_settings
from propnova.core.exceptions import (
    ConcurrentModificationError,
    IllegalTransitionError,
    ValidationError,
)
from propnova.core.logging import LoggerMixin
from propnova.core.metrics import track_transition

S = SubscriptionStatus

# Every legal status edge. Anything else is an IllegalTransition.
TRANSITIONS: dict[SubscriptionStatus, frozenset[SubscriptionStatus]] = {
    S.FREE: frozenset({S.PENDING, S.TRIALING}),
    S.PENDING: frozenset({S.ACTIVE, S.FREE}),
    S.ACTIVE: frozenset({S.ACTIVE, S.CANCELLED, S.EXPIRED}),
    S.TRIALING: frozenset({S.ACTIVE, S.FREE, S.PENDING, S.CANCELLED}),
    S.CANCELLED: frozenset({S.FREE, S.PENDING, S.ACTIVE}),
    S.EXPIRED: frozenset({S.PENDING, S.ACTIVE}),
}

# Statuses under which the subscribed plan (not free) is in force.
ENTITLED_STATUSES = frozenset({S.ACTIVE, S.TRIALING, S.CANCELLED})


@dataclass(frozen=True)
class SubscriptionView:
    """Effective subscription state at a point in time.

    Derived purely from the stored row, the open payment session and the
    clock; computing it never writes.
    """

    tenant_id: str
    status: SubscriptionStatus
    plan_id: str
    entitled_plan_id: str
    usage_anchor: datetime
    current_period_start: datetime | None
    current_period_end: datetime | None
    trial_ends_at: datetime | None
    activated_at: datetime | None
    cancelled_at: datetime | None
    created_at: datetime
    pending_session_id: str | None = None
    limits_stale: bool = False

    @property
    def is_paid_entitlement(self) -> bool:
        return self.entitled_plan_id != FREE_PLAN_ID


class SubscriptionStateMachine(LoggerMixin):
    """Owns a tenant's plan id and lifecycle status.

    Time-driven transitions (trial end, cancellation taking effect, renewal
    lapse, abandoned checkout) are applied lazily by ``settle``; callers must
    hold the tenant's lock around any mutating call.
    """

    def __init__(
        self,
        db: AsyncSession,
        *,
        catalog: PlanCatalog | None = None,
        settings: Settings | None = None,
        usage: UsageCounterStore | None = None,
        sessions: PaymentSessionStore | None = None,
    ) -> None:
        self.db = db
        self.catalog = catalog or get_catalog()
        self.settings = settings or get_settings()
        self.usage = usage or UsageCounterStore(db, self.settings)
        self.sessions = sessions or PaymentSessionStore(db, self.settings)

    @property
    def period(self) -> timedelta:
        return timedelta(days=self.settings.billing_period_days)

    @property
    def grace(self) -> timedelta:
        return timedelta(days=self.settings.renewal_grace_days)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def load(self, tenant_id: str) -> Subscription | None:
        """Read the stored row without creating it."""
        result = await self.db.execute(
            select(Subscription)
            .where(Subscription.tenant_id == tenant_id)
            .execution_options(populate_existing=True),
        )
        return result.scalar_one_or_none()

    async def get_or_create(self, tenant_id: str) -> Subscription:
        """Return the tenant's subscription, creating a ``free`` row on first sight."""
        subscription = await self.load(tenant_id)
        if subscription is not None:
            return subscription

        now = clock.utcnow()
        subscription = Subscription(
            tenant_id=tenant_id,
            plan_id=FREE_PLAN_ID,
            status=S.FREE,
            usage_anchor=now,
            trial_used=False,
            created_at=now,
            updated_at=now,
        )
        try:
            async with self.db.begin_nested():
                self.db.add(subscription)
        except IntegrityError:
            subscription = await self.load(tenant_id)
            if subscription is None:
                raise
            return subscription

        self.logger.info("tenant_observed", tenant_id=tenant_id)
        return subscription

    def derive_status(
        self,
        subscription: Subscription,
        now: datetime,
        open_session: PaymentSession | None = None,
    ) -> SubscriptionStatus:
        """Status the row should have at ``now``, before persisting.

        A trial or cancellation that runs out while a subscribe checkout is
        still open lands in ``pending`` so the payment can still activate.
        """
        status = subscription.status
        if status is S.CANCELLED:
            if subscription.current_period_end is None or subscription.current_period_end <= now:
                return self._lapse_target(open_session, now)
        elif status is S.TRIALING:
            if subscription.trial_ends_at is None or subscription.trial_ends_at <= now:
                return self._lapse_target(open_session, now)
        elif status is S.ACTIVE:
            if (
                subscription.current_period_end is not None
                and subscription.current_period_end + self.grace <= now
            ):
                return S.EXPIRED
        elif status is S.PENDING:
            if open_session is None or self.sessions.is_stale(open_session, now):
                return S.FREE
        return status

    def _lapse_target(self, open_session: PaymentSession | None, now: datetime) -> SubscriptionStatus:
        if (
            open_session is not None
            and open_session.kind is PaymentKind.SUBSCRIBE
            and not self.sessions.is_stale(open_session, now)
        ):
            return S.PENDING
        return S.FREE

    def view(
        self,
        subscription: Subscription,
        now: datetime,
        open_session: PaymentSession | None = None,
    ) -> SubscriptionView:
        """Effective state at ``now``. Pure."""
        status = self.derive_status(subscription, now, open_session)
        lapsed = status is not subscription.status and status in (S.FREE, S.PENDING)
        plan_id = FREE_PLAN_ID if status is S.FREE or lapsed else subscription.plan_id
        entitled = plan_id if status in ENTITLED_STATUSES else FREE_PLAN_ID
        stored_entitled = (
            subscription.plan_id if subscription.status in ENTITLED_STATUSES else FREE_PLAN_ID
        )
        pending_session_id = None
        if open_session is not None and not self.sessions.is_stale(open_session, now):
            pending_session_id = open_session.id
        return SubscriptionView(
            tenant_id=subscription.tenant_id,
            status=status,
            plan_id=plan_id,
            entitled_plan_id=entitled,
            usage_anchor=subscription.usage_anchor,
            current_period_start=subscription.current_period_start,
            current_period_end=subscription.current_period_end,
            trial_ends_at=subscription.trial_ends_at,
            activated_at=subscription.activated_at,
            cancelled_at=subscription.cancelled_at,
            created_at=subscription.created_at,
            pending_session_id=pending_session_id,
            limits_stale=stored_entitled != entitled,
        )

    async def current_view(self, tenant_id: str, now: datetime | None = None) -> SubscriptionView:
        """Canonical read of a tenant's entitlement state. Never writes.

        A tenant that was never observed reads as ``free``.
        """
        now = now or clock.utcnow()
        subscription = await self.load(tenant_id)
        if subscription is None:
            return SubscriptionView(
                tenant_id=tenant_id,
                status=S.FREE,
                plan_id=FREE_PLAN_ID,
                entitled_plan_id=FREE_PLAN_ID,
                usage_anchor=now,
                current_period_start=None,
                current_period_end=None,
                trial_ends_at=None,
                activated_at=None,
                cancelled_at=None,
                created_at=now,
            )
        open_session = await self.sessions.get_open_session(tenant_id)
        return self.view(subscription, now, open_session)

    def entitled_plan(self, subscription: Subscription) -> Plan:
        """Plan whose limits apply to the (already settled) row."""
        if subscription.status in ENTITLED_STATUSES:
            return self.catalog.get_plan(subscription.plan_id)
        return self.catalog.free_plan

    # ------------------------------------------------------------------
    # Writes (caller holds the tenant lock)
    # ------------------------------------------------------------------

    async def settle(self, subscription: Subscription, now: datetime | None = None) -> Subscription:
        """Persist any time-driven transition that is due."""
        now = now or clock.utcnow()

        expired_sessions = await self.sessions.expire_stale(subscription.tenant_id, now)
        open_session = await self.sessions.get_open_session(subscription.tenant_id)
        target = self.derive_status(subscription, now, open_session)
        if target is subscription.status:
            return subscription

        previous_plan = self.entitled_plan(subscription)
        reason = {
            S.EXPIRED: "renewal_not_confirmed",
            S.FREE: {
                S.CANCELLED: "cancellation_effective",
                S.TRIALING: "trial_ended",
                S.PENDING: "checkout_expired" if expired_sessions else "checkout_abandoned",
            }.get(subscription.status, "lapsed"),
            S.PENDING: "lapsed_with_open_checkout",
        }.get(target, "settled")

        self._transition(subscription, target, reason=reason)
        if target in (S.FREE, S.PENDING):
            subscription.plan_id = FREE_PLAN_ID
            subscription.trial_ends_at = None
        await self._flush()
        await self._sync_limits(subscription, previous_plan, now)
        return subscription

    async def request_subscribe(self, subscription: Subscription, plan: Plan) -> Subscription:
        """Record intent to pay for ``plan``.

        ``free``/``expired`` tenants become ``pending``; tenants already on a
        paid plan keep their status until the payment is confirmed.
        """
        if plan.is_free:
            raise ValidationError(
                "The free plan cannot be purchased",
                field="plan_id",
                value=plan.id,
            )

        if subscription.status in (S.FREE, S.EXPIRED):
            self._transition(subscription, S.PENDING, reason="checkout_started")
            await self._flush()
        elif subscription.status is S.PENDING:
            pass
        else:
            self.logger.info(
                "plan_change_requested",
                tenant_id=subscription.tenant_id,
                current_plan=subscription.plan_id,
                requested_plan=plan.id,
                status=subscription.status.value,
            )
        return subscription

    async def start_trial(self, subscription: Subscription, plan: Plan) -> Subscription:
        """Start the one-off free trial of a paid plan."""
        if plan.is_free:
            raise ValidationError("Trials are only available for paid plans", field="plan_id")
        if subscription.trial_used:
            raise IllegalTransitionError(
                subscription.status.value,
                S.TRIALING.value,
                reason="Trial already used",
            )

        now = clock.utcnow()
        previous_plan = self.entitled_plan(subscription)
        self._transition(subscription, S.TRIALING, reason="trial_started")
        subscription.plan_id = plan.id
        subscription.trial_used = True
        subscription.trial_ends_at = now + timedelta(days=self.settings.trial_days)
        await self._flush()
        await self._sync_limits(subscription, previous_plan, now)
        return subscription

    async def activate(self, subscription: Subscription, session: PaymentSession) -> Subscription:
        """Apply a confirmed subscribe payment.

        A payment for the plan already in force, before its period ends, is a
        renewal and extends the period; anything else starts a new period on the
        paid plan.
        """
        if session.kind is not PaymentKind.SUBSCRIBE or session.plan_id is None:
            raise ValueError("activate() requires a subscribe session")

        now = clock.utcnow()
        plan = self.catalog.get_plan(session.plan_id)
        previous_plan = self.entitled_plan(subscription)
        period_end = subscription.current_period_end
        is_renewal = (
            subscription.status in (S.ACTIVE, S.CANCELLED)
            and subscription.plan_id == plan.id
            and period_end is not None
            and period_end > now
        )

        self._transition(subscription, S.ACTIVE, reason="renewal" if is_renewal else "payment_confirmed")
        if is_renewal and period_end is not None:
            subscription.current_period_end = max(now, period_end) + self.period
        else:
            subscription.current_period_start = now
            subscription.current_period_end = now + self.period
        subscription.plan_id = plan.id
        subscription.activated_at = now
        subscription.cancelled_at = None
        subscription.trial_ends_at = None
        subscription.gateway_ref = session.gateway_ref
        await self._flush()
        await self._sync_limits(subscription, previous_plan, now)
        return subscription

    async def payment_failed(self, subscription: Subscription, session: PaymentSession) -> Subscription:
        """Apply a failed subscribe payment. Only a ``pending`` tenant moves."""
        if subscription.status is S.PENDING:
            self._transition(subscription, S.FREE, reason="payment_failed")
            subscription.plan_id = FREE_PLAN_ID
            await self._flush()
        else:
            self.logger.info(
                "plan_change_payment_failed",
                tenant_id=subscription.tenant_id,
                session_id=session.id,
                status=subscription.status.value,
            )
        return subscription

    async def request_cancel(self, subscription: Subscription) -> Subscription:
        """Cancel at period end; entitlements last until then."""
        now = clock.utcnow()
        if subscription.status is S.TRIALING:
            subscription.current_period_end = subscription.trial_ends_at
        self._transition(subscription, S.CANCELLED, reason="cancel_requested")
        subscription.cancelled_at = now
        await self._flush()
        return subscription

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _transition(
        self,
        subscription: Subscription,
        to_status: SubscriptionStatus,
        *,
        reason: str,
    ) -> None:
        from_status = subscription.status
        if to_status not in TRANSITIONS[from_status]:
            self.logger.error(
                "illegal_transition",
                tenant_id=subscription.tenant_id,
                from_status=from_status.value,
                to_status=to_status.value,
                reason=reason,
            )
            raise IllegalTransitionError(from_status.value, to_status.value)

        subscription.status = to_status
        track_transition(from_status.value, to_status.value)
        self.logger.info(
            "subscription_transition",
            tenant_id=subscription.tenant_id,
            from_status=from_status.value,
            to_status=to_status.value,
            plan_id=subscription.plan_id,
            reason=reason,
        )

    async def _flush(self) -> None:
        try:
            await self.db.flush()
        except StaleDataError as exc:
            raise ConcurrentModificationError() from exc

    async def _sync_limits(self, subscription: Subscription, previous: Plan, now: datetime) -> None:
        current = self.entitled_plan(subscription)
        if current.id != previous.id:
            await self.usage.apply_plan_limits(
                subscription.tenant_id,
                current,
                subscription.usage_anchor,
                now,
            )
