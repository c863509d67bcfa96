"""Periodic usage counters with lazy period rollover."""

from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import case, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from propnova.billing.models import UsageCounter
from propnova.billing.plans import Plan, ResourceType
from propnova.core.config import Settings, get_settings
from propnova.core.logging import LoggerMixin


@dataclass(frozen=True)
class UsageSnapshot:
    """Point-in-time view of one counter."""

    resource_type: ResourceType
    period_start: datetime
    period_end: datetime
    used: int
    limit: int

    @property
    def is_unlimited(self) -> bool:
        return self.limit < 0

    @property
    def remaining(self) -> int:
        if self.is_unlimited:
            return -1
        return max(0, self.limit - self.used)


def rebased_limit(new_limit: int, used: int) -> int:
    """Limit a counter gets on a plan change: never below what is used."""
    if new_limit < 0:
        return new_limit
    return max(new_limit, used)


class UsageCounterStore(LoggerMixin):
    """Owns the ``usage_counters`` rows.

    A tenant's periods are anchored at its ``usage_anchor`` and roll every
    ``billing_period_days``; the row for a new period is created on first
    touch, so rollover needs no scheduler and is safe to race.
    """

    def __init__(self, db: AsyncSession, settings: Settings | None = None) -> None:
        self.db = db
        self.settings = settings or get_settings()

    @property
    def period(self) -> timedelta:
        return timedelta(days=self.settings.billing_period_days)

    def period_start_for(self, anchor: datetime, now: datetime) -> datetime:
        """Start of the period containing ``now``."""
        if now < anchor:
            return anchor
        elapsed = (now - anchor) // self.period
        return anchor + elapsed * self.period

    async def _select(
        self,
        tenant_id: str,
        resource_type: ResourceType,
        period_start: datetime,
    ) -> UsageCounter | None:
        result = await self.db.execute(
            select(UsageCounter).where(
                UsageCounter.tenant_id == tenant_id,
                UsageCounter.resource_type == resource_type,
                UsageCounter.period_start == period_start,
            )
            .execution_options(populate_existing=True),
        )
        return result.scalar_one_or_none()

    async def current(
        self,
        tenant_id: str,
        resource_type: ResourceType,
        plan: Plan,
        anchor: datetime,
        now: datetime,
    ) -> UsageCounter:
        """Current-period counter, rolling over to a fresh row if needed.

        A new row takes its limit from ``plan``; existing rows keep the limit
        they were created with.
        """
        period_start = self.period_start_for(anchor, now)
        counter = await self._select(tenant_id, resource_type, period_start)
        if counter is not None:
            return counter

        counter = UsageCounter(
            tenant_id=tenant_id,
            resource_type=resource_type,
            period_start=period_start,
            used=0,
            limit=plan.limit_for(resource_type),
        )
        try:
            async with self.db.begin_nested():
                self.db.add(counter)
        except IntegrityError:
            # Lost the race to create this period's row
            counter = await self._select(tenant_id, resource_type, period_start)
            if counter is None:
                raise
            return counter

        self.logger.debug(
            "usage_period_rolled",
            tenant_id=tenant_id,
            resource_type=resource_type.value,
            period_start=period_start.isoformat(),
            limit=counter.limit,
        )
        return counter

    async def peek(
        self,
        tenant_id: str,
        resource_type: ResourceType,
        plan: Plan,
        anchor: datetime,
        now: datetime,
        *,
        rebase: bool = False,
    ) -> UsageSnapshot:
        """Read the current period without creating rows.

        With ``rebase`` an existing row is reported with the limits
        ``apply_plan_limits`` would give it under ``plan``.
        """
        period_start = self.period_start_for(anchor, now)
        counter = await self._select(tenant_id, resource_type, period_start)
        if counter is None:
            used, limit = 0, plan.limit_for(resource_type)
        elif rebase:
            used, limit = counter.used, rebased_limit(plan.limit_for(resource_type), counter.used)
        else:
            used, limit = counter.used, counter.limit
        return UsageSnapshot(
            resource_type=resource_type,
            period_start=period_start,
            period_end=period_start + self.period,
            used=used,
            limit=limit,
        )

    async def try_increment(self, counter: UsageCounter, amount: int) -> bool:
        """Atomically add ``amount`` if it stays within the limit.

        The bound is evaluated by the database in the same statement as the
        increment, so two writers can never both take the last slot.
        """
        result = await self.db.execute(
            update(UsageCounter)
            .where(
                UsageCounter.id == counter.id,
                (UsageCounter.limit < 0) | (UsageCounter.used + amount <= UsageCounter.limit),
            )
            .values(used=UsageCounter.used + amount)
            .execution_options(synchronize_session=False),
        )
        await self.db.refresh(counter)
        return result.rowcount == 1

    async def apply_plan_limits(
        self,
        tenant_id: str,
        plan: Plan,
        anchor: datetime,
        now: datetime,
    ) -> None:
        """Re-limit the current period's counters to ``plan``.

        ``used`` is kept. A limit lower than what has already been used is
        clamped to ``used`` so the counter is exhausted, not overdrawn.
        """
        for resource_type in ResourceType:
            counter = await self.current(tenant_id, resource_type, plan, anchor, now)
            new_limit = plan.limit_for(resource_type)
            if new_limit < 0:
                limit_expr = new_limit
            else:
                limit_expr = case(
                    (UsageCounter.used > new_limit, UsageCounter.used),
                    else_=new_limit,
                )
            await self.db.execute(
                update(UsageCounter)
                .where(UsageCounter.id == counter.id)
                .values({UsageCounter.limit: limit_expr})
                .execution_options(synchronize_session=False),
            )
            await self.db.refresh(counter)

        self.logger.info(
            "usage_limits_applied",
            tenant_id=tenant_id,
            plan_id=plan.id,
        )
