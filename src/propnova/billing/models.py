"""Billing persistence models."""

import enum
from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Enum,
    Index,
    Integer,
    String,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from propnova.billing.plans import FREE_PLAN_ID, ResourceType
from propnova.models.base import Base, TimestampMixin, UTCDateTime

JSONType = JSON().with_variant(JSONB(), "postgresql")


class SubscriptionStatus(str, enum.Enum):
    """Externally visible subscription status."""

    FREE = "free"
    PENDING = "pending"
    ACTIVE = "active"
    TRIALING = "trialing"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class PaymentKind(str, enum.Enum):
    """What a payment session pays for."""

    SUBSCRIBE = "subscribe"
    TOPUP = "topup"


class PaymentSessionStatus(str, enum.Enum):
    """Payment session lifecycle. Every state but INITIATED is terminal."""

    INITIATED = "initiated"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self is not PaymentSessionStatus.INITIATED


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [e.value for e in enum_cls]


class Subscription(Base, TimestampMixin):
    """A tenant's single subscription row.

    Created implicitly as ``free`` the first time a tenant is observed and
    mutated only through SubscriptionStateMachine.
    """

    __tablename__ = "subscriptions"

    id: Mapped[UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=uuid4,
    )
    tenant_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        unique=True,
        index=True,
    )
    plan_id: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default=FREE_PLAN_ID,
    )
    status: Mapped[SubscriptionStatus] = mapped_column(
        Enum(SubscriptionStatus, values_callable=_enum_values),
        nullable=False,
        default=SubscriptionStatus.FREE,
        index=True,
    )
    usage_anchor: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
    )
    activated_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )
    cancelled_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )
    current_period_start: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )
    current_period_end: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
        index=True,
    )
    trial_ends_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )
    trial_used: Mapped[bool] = mapped_column(
        default=False,
        nullable=False,
    )
    gateway_ref: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
    )
    version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return (
            f"Subscription(tenant_id={self.tenant_id!r}, plan_id={self.plan_id!r}, "
            f"status={self.status.value})"
        )


class UsageCounter(Base, TimestampMixin):
    """Per-tenant, per-resource, per-period consumption counter."""

    __tablename__ = "usage_counters"
    __table_args__ = (
        UniqueConstraint("tenant_id", "resource_type", "period_start"),
        CheckConstraint("used >= 0", name="used_non_negative"),
        CheckConstraint("quota_limit < 0 OR used <= quota_limit", name="used_within_limit"),
    )

    id: Mapped[UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=uuid4,
    )
    tenant_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        index=True,
    )
    resource_type: Mapped[ResourceType] = mapped_column(
        Enum(ResourceType, values_callable=_enum_values),
        nullable=False,
    )
    period_start: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
    )
    used: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )
    limit: Mapped[int] = mapped_column(
        "quota_limit",
        Integer,
        nullable=False,
    )

    @property
    def is_unlimited(self) -> bool:
        return self.limit < 0

    @property
    def remaining(self) -> int:
        """Remaining periodic capacity (-1 for unlimited)."""
        if self.is_unlimited:
            return -1
        return max(0, self.limit - self.used)


class TopUpCredit(Base, TimestampMixin):
    """Non-expiring purchased credits for a single resource."""

    __tablename__ = "topup_credits"
    __table_args__ = (
        UniqueConstraint("tenant_id", "resource_type"),
        CheckConstraint("balance >= 0", name="balance_non_negative"),
    )

    id: Mapped[UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=uuid4,
    )
    tenant_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        index=True,
    )
    resource_type: Mapped[ResourceType] = mapped_column(
        Enum(ResourceType, values_callable=_enum_values),
        nullable=False,
    )
    balance: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )


class PaymentSession(Base, TimestampMixin):
    """Correlates a checkout or top-up initiation with its confirmation.

    Moves from ``initiated`` to a terminal state exactly once; a confirmation
    for a terminal session is a no-op.
    """

    __tablename__ = "payment_sessions"
    __table_args__ = (
        Index(
            "ix_payment_sessions_open_per_tenant",
            "tenant_id",
            unique=True,
            postgresql_where=text("status = 'initiated'"),
            sqlite_where=text("status = 'initiated'"),
        ),
    )

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4()),
    )
    tenant_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        index=True,
    )
    kind: Mapped[PaymentKind] = mapped_column(
        Enum(PaymentKind, values_callable=_enum_values),
        nullable=False,
    )
    plan_id: Mapped[str | None] = mapped_column(
        String(50),
        nullable=True,
    )
    credits: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
    )
    amount_minor: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    currency: Mapped[str] = mapped_column(
        String(3),
        nullable=False,
    )
    status: Mapped[PaymentSessionStatus] = mapped_column(
        Enum(PaymentSessionStatus, values_callable=_enum_values),
        nullable=False,
        default=PaymentSessionStatus.INITIATED,
        index=True,
    )
    gateway_ref: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
    )
    settled_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )
    failure_reason: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    confirmation_payload: Mapped[dict[str, Any] | None] = mapped_column(
        JSONType,
        nullable=True,
    )

    @property
    def session_id(self) -> str:
        return self.id

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal
