"""Top-up credit balances."""

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from propnova.billing.models import TopUpCredit
from propnova.billing.plans import ResourceType, supports_top_up
from propnova.core.logging import LoggerMixin


class TopUpLedger(LoggerMixin):
    """Non-expiring credits, consumed only after the periodic quota runs out.

    Balances rise only through confirmed top-up payments and fall only
    through consumption; plan changes never touch them.
    """

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def _select(self, tenant_id: str, resource_type: ResourceType) -> TopUpCredit | None:
        result = await self.db.execute(
            select(TopUpCredit).where(
                TopUpCredit.tenant_id == tenant_id,
                TopUpCredit.resource_type == resource_type,
            )
            .execution_options(populate_existing=True),
        )
        return result.scalar_one_or_none()

    async def _get_or_create(self, tenant_id: str, resource_type: ResourceType) -> TopUpCredit:
        row = await self._select(tenant_id, resource_type)
        if row is not None:
            return row

        row = TopUpCredit(tenant_id=tenant_id, resource_type=resource_type, balance=0)
        try:
            async with self.db.begin_nested():
                self.db.add(row)
        except IntegrityError:
            row = await self._select(tenant_id, resource_type)
            if row is None:
                raise
        return row

    async def balance(self, tenant_id: str, resource_type: ResourceType) -> int:
        """Current balance (0 when the tenant never bought credits)."""
        if not supports_top_up(resource_type):
            return 0
        row = await self._select(tenant_id, resource_type)
        return row.balance if row is not None else 0

    async def credit(self, tenant_id: str, resource_type: ResourceType, credits: int) -> int:
        """Add purchased credits and return the new balance."""
        if credits <= 0:
            raise ValueError("credits must be positive")
        if not supports_top_up(resource_type):
            raise ValueError(f"{resource_type.value} does not support top-ups")

        row = await self._get_or_create(tenant_id, resource_type)
        await self.db.execute(
            update(TopUpCredit)
            .where(TopUpCredit.id == row.id)
            .values(balance=TopUpCredit.balance + credits)
            .execution_options(synchronize_session=False),
        )
        await self.db.refresh(row)

        self.logger.info(
            "topup_credited",
            tenant_id=tenant_id,
            resource_type=resource_type.value,
            credits=credits,
            balance=row.balance,
        )
        return row.balance

    async def try_debit(self, tenant_id: str, resource_type: ResourceType, amount: int) -> bool:
        """Atomically take ``amount`` credits if the balance covers it."""
        if not supports_top_up(resource_type):
            return False
        result = await self.db.execute(
            update(TopUpCredit)
            .where(
                TopUpCredit.tenant_id == tenant_id,
                TopUpCredit.resource_type == resource_type,
                TopUpCredit.balance >= amount,
            )
            .values(balance=TopUpCredit.balance - amount)
            .execution_options(synchronize_session=False),
        )
        return result.rowcount == 1
