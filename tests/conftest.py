"""Test configuration and fixtures."""

from __future__ import annotations

import os

os.environ.setdefault("PAYFAST_PASSPHRASE", "jt7NOE43FZPn")
os.environ.setdefault("RECONCILE_INTERVAL_SECONDS", "0.01")
os.environ.setdefault("RECONCILE_DEADLINE_SECONDS", "2.0")
os.environ.setdefault("RECONCILE_READ_TIMEOUT_SECONDS", "1.0")

from collections.abc import AsyncGenerator, Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from propnova.api.dependencies.database import get_db
from propnova.api.main import app
from propnova.billing.gateway import format_amount, generate_signature
from propnova.billing.locks import TenantLockRegistry
from propnova.billing.models import PaymentSession
from propnova.billing.service import BillingService
from propnova.core import clock
from propnova.core.config import Settings, get_settings
from propnova.core.redis import get_redis
from propnova.core.security import create_access_token
from propnova.models.base import Base

START = datetime(2025, 1, 1, 9, 0, tzinfo=UTC)


class FrozenClock:
    """Controllable replacement for ``clock.utcnow``."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def frozen_clock(monkeypatch: pytest.MonkeyPatch) -> FrozenClock:
    fake = FrozenClock(START)
    monkeypatch.setattr(clock, "utcnow", fake)
    return fake


@pytest.fixture
def settings() -> Settings:
    return get_settings()


def _enable_sqlite_savepoints(engine: AsyncEngine) -> None:
    """Let SQLAlchemy, not pysqlite, emit BEGIN so SAVEPOINT works."""

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection: Any, _record: Any) -> None:
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN")


@pytest_asyncio.fixture(scope="function")
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """Fresh file-backed SQLite database per test."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}",
        echo=False,
        poolclass=NullPool,
    )
    _enable_sqlite_savepoints(engine)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture(scope="function")
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def locks() -> TenantLockRegistry:
    return TenantLockRegistry()


@pytest.fixture
def service(db_session: AsyncSession, locks: TenantLockRegistry, settings: Settings) -> BillingService:
    return BillingService(db_session, settings=settings, locks=locks)


class StatefulRedisMock:
    """A stateful Redis mock that actually tracks values."""

    def __init__(self) -> None:
        self._data: dict[str, str | int] = {}

    async def get(self, key: str) -> str | None:
        value = self._data.get(key)
        return None if value is None else str(value)

    async def setex(self, key: str, seconds: int, value: str | int) -> bool:
        self._data[key] = value
        return True

    async def incr(self, key: str) -> int:
        self._data[key] = int(self._data.get(key, 0)) + 1
        return int(self._data[key])

    async def delete(self, *keys: str) -> int:
        return sum(1 for key in keys if self._data.pop(key, None) is not None)

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        pass


@pytest.fixture
def redis_client() -> StatefulRedisMock:
    return StatefulRedisMock()


@pytest_asyncio.fixture(scope="function")
async def client(
    session_factory: async_sessionmaker[AsyncSession],
    redis_client: StatefulRedisMock,
) -> AsyncGenerator[AsyncClient, None]:
    """Test client; every request gets its own session, like production."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def override_get_redis() -> StatefulRedisMock:
        return redis_client

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = override_get_redis

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers() -> Callable[..., dict[str, str]]:
    def _headers(tenant_id: str = "org-1", subject: str = "user-1") -> dict[str, str]:
        token = create_access_token({"sub": subject, "org_id": tenant_id})
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture
def sign_notification(settings: Settings) -> Callable[..., dict[str, str]]:
    """Build a gateway notification for a session, signed like the gateway does."""
    def _sign(
        session: PaymentSession,
        payment_status: str = "COMPLETE",
        *,
        amount_minor: int | None = None,
        pf_payment_id: str = "1089250",
        **overrides: str,
    ) -> dict[str, str]:
        payload = {
            "m_payment_id": session.id,
            "pf_payment_id": pf_payment_id,
            "payment_status": payment_status,
            "item_name": "Propnova",
            "item_description": "",
            "amount_gross": format_amount(
                session.amount_minor if amount_minor is None else amount_minor
            ),
            "amount_fee": "-2.28",
            "amount_net": "96.72",
            "custom_str1": session.tenant_id,
            "custom_str2": session.kind.value,
            "merchant_id": settings.payfast_merchant_id,
        }
        payload.update(overrides)
        payload["signature"] = generate_signature(
            payload, settings.payfast_passphrase, include_blank=True
        )
        return payload

    return _sign
