"""Quota checks and consumption for metered resources."""

import enum
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from propnova.billing.ledger import TopUpLedger
from propnova.billing.locks import TenantLockRegistry, get_tenant_locks, tenant_unit_of_work
from propnova.billing.plans import PlanCatalog, ResourceType, get_catalog, supports_top_up
from propnova.billing.state_machine import SubscriptionStateMachine
from propnova.billing.usage import UsageCounterStore
from propnova.core import clock
from propnova.core.config import Settings, get_settings
from propnova.core.exceptions import QuotaExceededError, ValidationError
from propnova.core.logging import LoggerMixin
from propnova.core.metrics import track_consume


class ConsumeSource(str, enum.Enum):
    """Which balance paid for a consumption."""

    PERIODIC = "periodic"
    TOP_UP = "top_up"


@dataclass(frozen=True)
class QuotaStatus:
    """Answer to "could this tenant consume ``amount`` right now?"."""

    resource_type: ResourceType
    allowed: bool
    used: int
    limit: int
    top_up_balance: int
    period_start: datetime
    period_end: datetime
    plan_id: str

    @property
    def is_unlimited(self) -> bool:
        return self.limit < 0

    @property
    def remaining(self) -> int:
        """Periodic headroom plus top-up credits (-1 for unlimited)."""
        if self.is_unlimited:
            return -1
        return max(0, self.limit - self.used) + self.top_up_balance


@dataclass(frozen=True)
class ConsumeResult:
    """Outcome of a consume call. Denial is a value, not an exception."""

    resource_type: ResourceType
    amount: int
    allowed: bool
    source: ConsumeSource | None
    used: int
    limit: int
    top_up_balance: int

    @property
    def quota_exceeded(self) -> bool:
        return not self.allowed

    def to_error(self) -> QuotaExceededError:
        return QuotaExceededError(
            self.resource_type.value,
            used=self.used,
            limit=self.limit,
            top_up_balance=self.top_up_balance,
        )

    def raise_for_quota(self) -> "ConsumeResult":
        """Raise QuotaExceededError for denied results, else return self."""
        if not self.allowed:
            raise self.to_error()
        return self


class EntitlementGateway(LoggerMixin):
    """Gatekeeper that features call before doing metered work.

    ``consume`` re-checks and increments as one unit under the tenant's lock
    and commits before returning, so a denied call has no side effects and
    an allowed one is durable.
    """

    def __init__(
        self,
        db: AsyncSession,
        *,
        settings: Settings | None = None,
        catalog: PlanCatalog | None = None,
        locks: TenantLockRegistry | None = None,
        state_machine: SubscriptionStateMachine | None = None,
    ) -> None:
        self.db = db
        self.settings = settings or get_settings()
        self.catalog = catalog or get_catalog()
        self.locks = locks or get_tenant_locks()
        self.usage = UsageCounterStore(db, self.settings)
        self.ledger = TopUpLedger(db)
        self.state_machine = state_machine or SubscriptionStateMachine(
            db,
            catalog=self.catalog,
            settings=self.settings,
            usage=self.usage,
        )

    async def can_consume(
        self,
        tenant_id: str,
        resource_type: ResourceType,
        amount: int = 1,
    ) -> QuotaStatus:
        """Read-only quota check. Never writes."""
        self._check_amount(amount)
        now = clock.utcnow()

        view = await self.state_machine.current_view(tenant_id, now)
        plan = self.catalog.get_plan(view.entitled_plan_id)
        snapshot = await self.usage.peek(
            tenant_id, resource_type, plan, view.usage_anchor, now, rebase=view.limits_stale
        )
        top_up = await self.ledger.balance(tenant_id, resource_type)

        allowed = (
            snapshot.is_unlimited
            or snapshot.used + amount <= snapshot.limit
            or (supports_top_up(resource_type) and top_up >= amount)
        )
        return QuotaStatus(
            resource_type=resource_type,
            allowed=allowed,
            used=snapshot.used,
            limit=snapshot.limit,
            top_up_balance=top_up,
            period_start=snapshot.period_start,
            period_end=snapshot.period_end,
            plan_id=plan.id,
        )

    async def consume(
        self,
        tenant_id: str,
        resource_type: ResourceType,
        amount: int = 1,
    ) -> ConsumeResult:
        """Take ``amount`` from the periodic quota, else from top-up credits.

        The whole amount comes from one source; a request that fits in
        neither is denied with QUOTA_EXCEEDED semantics and changes nothing.
        """
        self._check_amount(amount)

        async with tenant_unit_of_work(self.db, tenant_id, self.locks):
            now = clock.utcnow()
            subscription = await self.state_machine.get_or_create(tenant_id)
            await self.state_machine.settle(subscription, now)
            plan = self.state_machine.entitled_plan(subscription)

            counter = await self.usage.current(
                tenant_id, resource_type, plan, subscription.usage_anchor, now
            )
            source: ConsumeSource | None = None
            if await self.usage.try_increment(counter, amount):
                source = ConsumeSource.PERIODIC
            elif await self.ledger.try_debit(tenant_id, resource_type, amount):
                source = ConsumeSource.TOP_UP

            top_up = await self.ledger.balance(tenant_id, resource_type)
            result = ConsumeResult(
                resource_type=resource_type,
                amount=amount,
                allowed=source is not None,
                source=source,
                used=counter.used,
                limit=counter.limit,
                top_up_balance=top_up,
            )

        if result.allowed:
            track_consume(resource_type.value, result.source.value, "allowed")
            self.logger.debug(
                "quota_consumed",
                tenant_id=tenant_id,
                resource_type=resource_type.value,
                amount=amount,
                source=result.source.value,
                used=result.used,
                limit=result.limit,
                top_up_balance=top_up,
            )
        else:
            track_consume(resource_type.value, "none", "exceeded")
            self.logger.info(
                "quota_exceeded",
                tenant_id=tenant_id,
                resource_type=resource_type.value,
                amount=amount,
                used=result.used,
                limit=result.limit,
                top_up_balance=top_up,
            )
        return result

    @staticmethod
    def _check_amount(amount: int) -> None:
        if amount < 1:
            raise ValidationError(
                "Amount must be at least 1",
                field="amount",
                value=amount,
                constraint="ge=1",
            )
