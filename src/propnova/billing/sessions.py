"""Payment session persistence."""

from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from propnova.billing.models import PaymentKind, PaymentSession, PaymentSessionStatus
from propnova.core import clock
from propnova.core.config import Settings, get_settings
from propnova.core.exceptions import CheckoutInProgressError
from propnova.core.logging import LoggerMixin


class PaymentSessionStore(LoggerMixin):
    """Reads and settles payment sessions.

    Settling is a compare-and-set on ``status = 'initiated'`` so a session
    reaches a terminal state exactly once even under duplicate delivery.
    """

    def __init__(self, db: AsyncSession, settings: Settings | None = None) -> None:
        self.db = db
        self.settings = settings or get_settings()

    @property
    def ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.payment_session_ttl_minutes)

    def is_stale(self, session: PaymentSession, now: datetime) -> bool:
        """An initiated session older than the TTL can no longer be paid."""
        return (
            session.status is PaymentSessionStatus.INITIATED
            and session.created_at + self.ttl <= now
        )

    async def get(self, session_id: str) -> PaymentSession | None:
        result = await self.db.execute(
            select(PaymentSession)
            .where(PaymentSession.id == session_id)
            .execution_options(populate_existing=True),
        )
        return result.scalar_one_or_none()

    async def refresh(self, session: PaymentSession) -> PaymentSession:
        """Re-read a session's row, bypassing the identity map."""
        await self.db.refresh(session)
        return session

    async def get_open_session(self, tenant_id: str) -> PaymentSession | None:
        """The tenant's non-terminal session, if any (at most one exists)."""
        result = await self.db.execute(
            select(PaymentSession)
            .where(
                PaymentSession.tenant_id == tenant_id,
                PaymentSession.status == PaymentSessionStatus.INITIATED,
            )
            .order_by(PaymentSession.created_at.desc())
            .limit(1)
            .execution_options(populate_existing=True),
        )
        return result.scalar_one_or_none()

    async def create(
        self,
        tenant_id: str,
        kind: PaymentKind,
        amount_minor: int,
        currency: str,
        *,
        plan_id: str | None = None,
        credits: int | None = None,
    ) -> PaymentSession:
        now = clock.utcnow()
        session = PaymentSession(
            tenant_id=tenant_id,
            kind=kind,
            plan_id=plan_id,
            credits=credits,
            amount_minor=amount_minor,
            currency=currency,
            status=PaymentSessionStatus.INITIATED,
            created_at=now,
            updated_at=now,
        )
        try:
            async with self.db.begin_nested():
                self.db.add(session)
        except IntegrityError as e:
            # Another writer opened a checkout for this tenant first
            existing = await self.get_open_session(tenant_id)
            raise CheckoutInProgressError(existing.id if existing else "unknown") from e

        self.logger.info(
            "payment_session_created",
            tenant_id=tenant_id,
            session_id=session.id,
            kind=kind.value,
            amount_minor=amount_minor,
        )
        return session

    async def settle(
        self,
        session: PaymentSession,
        status: PaymentSessionStatus,
        *,
        gateway_ref: str | None = None,
        failure_reason: str | None = None,
        payload: dict[str, str] | None = None,
    ) -> bool:
        """Move an initiated session to a terminal status.

        Returns:
            False if the session had already been settled by someone else
        """
        if not status.is_terminal:
            raise ValueError("settle() requires a terminal status")

        now = clock.utcnow()
        result = await self.db.execute(
            update(PaymentSession)
            .where(
                PaymentSession.id == session.id,
                PaymentSession.status == PaymentSessionStatus.INITIATED,
            )
            .values(
                status=status,
                settled_at=now,
                updated_at=now,
                gateway_ref=gateway_ref,
                failure_reason=failure_reason,
                confirmation_payload=payload,
            )
            .execution_options(synchronize_session=False),
        )
        await self.refresh(session)

        if result.rowcount != 1:
            return False

        self.logger.info(
            "payment_session_settled",
            tenant_id=session.tenant_id,
            session_id=session.id,
            status=status.value,
            failure_reason=failure_reason,
        )
        return True

    async def expire_stale(self, tenant_id: str, now: datetime) -> list[PaymentSession]:
        """Expire the tenant's initiated sessions that outlived the TTL."""
        result = await self.db.execute(
            select(PaymentSession).where(
                PaymentSession.tenant_id == tenant_id,
                PaymentSession.status == PaymentSessionStatus.INITIATED,
                PaymentSession.created_at <= now - self.ttl,
            ),
        )
        expired: list[PaymentSession] = []
        for session in result.scalars().all():
            if await self.settle(
                session,
                PaymentSessionStatus.EXPIRED,
                failure_reason="session_ttl_elapsed",
            ):
                expired.append(session)
        return expired

    async def list_stale_tenants(self, now: datetime, limit: int = 500) -> list[str]:
        """Tenants holding initiated sessions past the TTL."""
        result = await self.db.execute(
            select(PaymentSession.tenant_id)
            .where(
                PaymentSession.status == PaymentSessionStatus.INITIATED,
                PaymentSession.created_at <= now - self.ttl,
            )
            .distinct()
            .limit(limit),
        )
        return list(result.scalars().all())
