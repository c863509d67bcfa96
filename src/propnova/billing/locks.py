"""Per-tenant write serialization."""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncSession


class _TenantLock:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0


class TenantLockRegistry:
    """Hands out one asyncio.Lock per tenant.

    Subscription transitions and quota writes for the same tenant run one at a
    time within a process; different tenants never contend. Cross-process
    safety comes from the conditional updates and version column in the
    store, not from this registry.

    A tenant's lock lives only while someone holds or waits on it.
    """

    def __init__(self) -> None:
        self._locks: dict[str, _TenantLock] = {}

    def tracked_tenants(self) -> int:
        """Number of tenants with a live lock."""
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, tenant_id: str) -> AsyncIterator[None]:
        """Hold the tenant's lock for the duration of the block."""
        entry = self._locks.get(tenant_id)
        if entry is None:
            entry = self._locks[tenant_id] = _TenantLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[tenant_id]

    def is_held(self, tenant_id: str) -> bool:
        entry = self._locks.get(tenant_id)
        return entry is not None and entry.lock.locked()


_registry = TenantLockRegistry()


def get_tenant_locks() -> TenantLockRegistry:
    """The process-wide lock registry."""
    return _registry


@asynccontextmanager
async def tenant_unit_of_work(
    db: AsyncSession,
    tenant_id: str,
    locks: TenantLockRegistry | None = None,
) -> AsyncIterator[None]:
    """Serialize a tenant's write and commit it before releasing the lock.

    Rolls back and re-raises on any error, so a failed operation leaves no
    partial increment or transition behind.
    """
    registry = locks or get_tenant_locks()
    async with registry.hold(tenant_id):
        try:
            yield
            await db.commit()
        except BaseException:
            await db.rollback()
            raise
