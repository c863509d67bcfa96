"""Tests for the HTTP surface."""

from collections.abc import Callable
from unittest.mock import AsyncMock

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from propnova.billing.models import PaymentSession
from propnova.core.security import create_access_token

BILLING = "/api/v1/billing"
NOTIFY = f"{BILLING}/payfast/notify"

Headers = Callable[..., dict[str, str]]


async def load_session(
    session_factory: async_sessionmaker[AsyncSession], session_id: str
) -> PaymentSession:
    async with session_factory() as db:
        session = await db.get(PaymentSession, session_id)
        assert session is not None
        return session


class TestHealth:
    async def test_liveness(self, client: AsyncClient) -> None:
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["catalog_version"] == "2025-01"

    async def test_ready(self, client: AsyncClient, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(
            "propnova.api.routes.health.check_database_connection", AsyncMock(return_value=True)
        )
        monkeypatch.setattr(
            "propnova.api.routes.health.check_redis_connection", AsyncMock(return_value=True)
        )

        response = await client.get("/health/ready")

        assert response.status_code == 200
        assert response.json() == {"status": "ready", "database": True, "redis": True}

    async def test_degraded_without_redis(
        self, client: AsyncClient, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(
            "propnova.api.routes.health.check_database_connection", AsyncMock(return_value=True)
        )
        monkeypatch.setattr(
            "propnova.api.routes.health.check_redis_connection", AsyncMock(return_value=False)
        )

        response = await client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["status"] == "degraded"

    async def test_unavailable_without_database(
        self, client: AsyncClient, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(
            "propnova.api.routes.health.check_database_connection", AsyncMock(return_value=False)
        )
        monkeypatch.setattr(
            "propnova.api.routes.health.check_redis_connection", AsyncMock(return_value=True)
        )

        response = await client.get("/health/ready")

        assert response.status_code == 503
        assert response.json()["status"] == "unavailable"

    async def test_metrics_exposition(self, client: AsyncClient) -> None:
        await client.get(f"{BILLING}/plans")
        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "propnova_request_total" in response.text


class TestPlansAndAuth:
    async def test_list_plans_is_public(self, client: AsyncClient) -> None:
        response = await client.get(f"{BILLING}/plans")

        assert response.status_code == 200
        plans = response.json()
        assert [plan["id"] for plan in plans] == ["free", "starter", "growth", "enterprise"]
        growth = plans[2]
        assert growth["price"] == "299.00"
        assert growth["priceMinor"] == 29900
        assert growth["limits"]["ai_generations"] == 200

    async def test_missing_token_is_rejected(self, client: AsyncClient) -> None:
        response = await client.get(f"{BILLING}/subscription")

        assert response.status_code == 401
        body = response.json()
        assert body["success"] is False
        assert body["error"]["code"] == "PN2000"

    async def test_garbage_token_is_rejected(self, client: AsyncClient) -> None:
        response = await client.get(
            f"{BILLING}/subscription", headers={"Authorization": "Bearer not-a-jwt"}
        )
        assert response.status_code == 401

    async def test_new_tenant_reads_as_free(
        self, client: AsyncClient, auth_headers: Headers
    ) -> None:
        response = await client.get(f"{BILLING}/subscription", headers=auth_headers("org-9"))

        assert response.status_code == 200
        data = response.json()
        assert data["subscription"]["status"] == "free"
        assert data["subscription"]["tenantId"] == "org-9"
        assert data["organization"]["plan"]["id"] == "free"

    async def test_personal_account_is_its_own_tenant(self, client: AsyncClient) -> None:
        token = create_access_token({"sub": "solo-user"})
        response = await client.get(
            f"{BILLING}/subscription", headers={"Authorization": f"Bearer {token}"}
        )

        assert response.json()["subscription"]["tenantId"] == "solo-user"


class TestCheckoutFlow:
    async def test_subscribe_then_notify_activates(
        self,
        client: AsyncClient,
        auth_headers: Headers,
        session_factory: async_sessionmaker[AsyncSession],
        sign_notification,
    ) -> None:
        headers = auth_headers("org-1")
        response = await client.post(
            f"{BILLING}/subscribe", json={"planId": "growth"}, headers=headers
        )

        assert response.status_code == 201
        checkout = response.json()
        assert checkout["payload"]["fields"]["amount"] == "299.00"
        assert checkout["redirect"].startswith(checkout["payload"]["action"])
        assert "<form" in checkout["redirectHtml"]

        pending = await client.get(f"{BILLING}/subscription", headers=headers)
        assert pending.json()["subscription"]["status"] == "pending"
        assert pending.json()["subscription"]["pendingSessionId"] == checkout["sessionId"]

        session = await load_session(session_factory, checkout["sessionId"])
        notify = await client.post(NOTIFY, data=sign_notification(session))
        assert notify.status_code == 200
        assert notify.text == "OK"

        summary = await client.get("/api/v1/me/summary", headers=headers)
        assert summary.status_code == 200
        data = summary.json()
        assert data["status"] == "active"
        assert data["plan"]["id"] == "growth"
        assert data["usage"]["aiGenerations"]["limit"] == 200

        replay = await client.post(NOTIFY, data=sign_notification(session))
        assert replay.status_code == 200

    async def test_path_style_checkout(self, client: AsyncClient, auth_headers: Headers) -> None:
        response = await client.post(f"{BILLING}/checkout/starter", headers=auth_headers())

        assert response.status_code == 201
        assert response.json()["payload"]["fields"]["amount"] == "99.00"

    async def test_tampered_notification_is_refused(
        self,
        client: AsyncClient,
        auth_headers: Headers,
        session_factory: async_sessionmaker[AsyncSession],
        sign_notification,
    ) -> None:
        headers = auth_headers("org-1")
        checkout = (
            await client.post(f"{BILLING}/subscribe", json={"planId": "growth"}, headers=headers)
        ).json()
        payload = sign_notification(await load_session(session_factory, checkout["sessionId"]))
        payload["amount_gross"] = "0.01"

        response = await client.post(NOTIFY, data=payload)

        assert response.status_code == 400
        assert response.text == "REJECTED"
        status = await client.get(f"{BILLING}/subscription", headers=headers)
        assert status.json()["subscription"]["status"] == "pending"

    async def test_conflicting_checkout(self, client: AsyncClient, auth_headers: Headers) -> None:
        headers = auth_headers("org-1")
        await client.post(f"{BILLING}/subscribe", json={"planId": "growth"}, headers=headers)

        response = await client.post(
            f"{BILLING}/subscribe", json={"planId": "starter"}, headers=headers
        )

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "PN7003"

    async def test_unknown_plan(self, client: AsyncClient, auth_headers: Headers) -> None:
        response = await client.post(
            f"{BILLING}/subscribe", json={"planId": "platinum"}, headers=auth_headers()
        )

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "PN5001"

    async def test_abandon_checkout(self, client: AsyncClient, auth_headers: Headers) -> None:
        headers = auth_headers("org-1")
        checkout = (
            await client.post(f"{BILLING}/subscribe", json={"planId": "growth"}, headers=headers)
        ).json()

        response = await client.post(
            f"{BILLING}/checkout/{checkout['sessionId']}/abandon", headers=headers
        )

        assert response.status_code == 200
        assert response.json()["status"] == "free"

    async def test_checkout_is_rate_limited(
        self, client: AsyncClient, auth_headers: Headers
    ) -> None:
        headers = auth_headers("org-1")
        for _ in range(5):
            response = await client.post(
                f"{BILLING}/subscribe", json={"planId": "growth"}, headers=headers
            )
            assert response.status_code == 201

        response = await client.post(
            f"{BILLING}/subscribe", json={"planId": "growth"}, headers=headers
        )

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "60"
        assert response.json()["error"]["code"] == "PN8000"


class TestTopUp:
    async def test_invalid_credit_amount(self, client: AsyncClient, auth_headers: Headers) -> None:
        response = await client.post(
            f"{BILLING}/ai-topup", json={"credits": 5}, headers=auth_headers()
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "PN4002"

    async def test_topup_credits_after_notification(
        self,
        client: AsyncClient,
        auth_headers: Headers,
        session_factory: async_sessionmaker[AsyncSession],
        sign_notification,
    ) -> None:
        headers = auth_headers("org-1")
        checkout = (
            await client.post(f"{BILLING}/ai-topup", json={"credits": 100}, headers=headers)
        ).json()
        assert checkout["payload"]["fields"]["custom_str2"] == "topup"

        session = await load_session(session_factory, checkout["sessionId"])
        await client.post(NOTIFY, data=sign_notification(session))

        usage = (await client.get(f"{BILLING}/usage", headers=headers)).json()
        assert usage["topUpBalance"] == 100
        assert usage["usage"]["aiGenerations"]["topUpBalance"] == 100
        assert usage["planId"] == "free"


class TestEntitlementEndpoints:
    async def test_quota_check(self, client: AsyncClient, auth_headers: Headers) -> None:
        response = await client.post(
            f"{BILLING}/quota/check",
            json={"resourceType": "ai_generations", "amount": 3},
            headers=auth_headers(),
        )

        assert response.status_code == 200
        data = response.json()
        assert data["allowed"] is True
        assert data["limit"] == 8
        assert data["remaining"] == 8
        assert data["remainingTopUp"] == 0

    async def test_quota_check_rejects_zero_amount(
        self, client: AsyncClient, auth_headers: Headers
    ) -> None:
        response = await client.post(
            f"{BILLING}/quota/check",
            json={"resourceType": "ai_generations", "amount": 0},
            headers=auth_headers(),
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "PN4000"

    async def test_cancel_on_free_is_conflict(
        self, client: AsyncClient, auth_headers: Headers
    ) -> None:
        response = await client.post(f"{BILLING}/cancel", headers=auth_headers())

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "PN8002"

    async def test_trial(self, client: AsyncClient, auth_headers: Headers) -> None:
        headers = auth_headers("org-1")
        response = await client.post(f"{BILLING}/trial", json={"planId": "growth"}, headers=headers)

        assert response.status_code == 201
        assert response.json()["status"] == "trialing"
        assert response.json()["entitledPlanId"] == "growth"

        cancelled = await client.post(f"{BILLING}/cancel", headers=headers)
        assert cancelled.status_code == 200
        assert cancelled.json()["subscription"]["status"] == "cancelled"


class TestActivationPolling:
    async def test_return_is_pending_then_activated(
        self,
        client: AsyncClient,
        auth_headers: Headers,
        session_factory: async_sessionmaker[AsyncSession],
        sign_notification,
    ) -> None:
        headers = auth_headers("org-1")
        checkout = (
            await client.post(f"{BILLING}/subscribe", json={"planId": "growth"}, headers=headers)
        ).json()
        url = f"{BILLING}/return"
        params = {"sessionId": checkout["sessionId"]}

        pending = await client.get(url, params=params, headers=headers)
        assert pending.json()["outcome"] == "pending"
        assert pending.json()["sessionStatus"] == "initiated"

        session = await load_session(session_factory, checkout["sessionId"])
        await client.post(NOTIFY, data=sign_notification(session))

        done = await client.get(url, params=params, headers=headers)
        assert done.json()["outcome"] == "activated"
        assert done.json()["status"] == "active"

    async def test_reconcile_resolved(
        self,
        client: AsyncClient,
        auth_headers: Headers,
        session_factory: async_sessionmaker[AsyncSession],
        sign_notification,
    ) -> None:
        headers = auth_headers("org-1")
        checkout = (
            await client.post(f"{BILLING}/subscribe", json={"planId": "growth"}, headers=headers)
        ).json()
        session = await load_session(session_factory, checkout["sessionId"])
        await client.post(NOTIFY, data=sign_notification(session, "FAILED"))

        response = await client.get(
            f"{BILLING}/reconcile", params={"sessionId": checkout["sessionId"]}, headers=headers
        )

        assert response.status_code == 200
        assert response.json()["outcome"] == "failed"

    async def test_reconcile_times_out_with_202(
        self, client: AsyncClient, auth_headers: Headers
    ) -> None:
        headers = auth_headers("org-1")
        checkout = (
            await client.post(f"{BILLING}/subscribe", json={"planId": "growth"}, headers=headers)
        ).json()

        response = await client.get(
            f"{BILLING}/reconcile", params={"sessionId": checkout["sessionId"]}, headers=headers
        )

        assert response.status_code == 202
        data = response.json()
        assert data["outcome"] == "timed_out"
        assert data["attempts"] == 10
        assert data["message"]

    async def test_reconcile_foreign_session(
        self, client: AsyncClient, auth_headers: Headers
    ) -> None:
        checkout = (
            await client.post(
                f"{BILLING}/subscribe", json={"planId": "growth"}, headers=auth_headers("org-1")
            )
        ).json()

        response = await client.get(
            f"{BILLING}/reconcile",
            params={"sessionId": checkout["sessionId"]},
            headers=auth_headers("org-2"),
        )

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "PN5002"
