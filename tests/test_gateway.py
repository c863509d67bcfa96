"""Tests for the PayFast gateway adapter."""

import hashlib
from collections.abc import Callable

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from propnova.billing.gateway import (
    CHECKOUT_FIELD_ORDER,
    SIGNATURE_FIELD,
    ConfirmationOutcome,
    PaymentGatewayAdapter,
    format_amount,
    generate_signature,
    parse_amount,
)
from propnova.billing.models import PaymentKind, PaymentSession, PaymentSessionStatus
from propnova.billing.plans import get_catalog
from propnova.billing.sessions import PaymentSessionStore
from propnova.core.config import Settings
from propnova.core.exceptions import GatewayUnavailableError, SignatureInvalidError


@pytest.fixture
def sessions(db_session: AsyncSession, settings: Settings) -> PaymentSessionStore:
    return PaymentSessionStore(db_session, settings)


@pytest.fixture
def adapter(sessions: PaymentSessionStore, settings: Settings) -> PaymentGatewayAdapter:
    return PaymentGatewayAdapter(settings=settings, sessions=sessions)


@pytest.fixture
async def growth_session(sessions: PaymentSessionStore) -> PaymentSession:
    plan = get_catalog().get_plan("growth")
    return await sessions.create(
        "org-1", PaymentKind.SUBSCRIBE, plan.price_minor, plan.currency, plan_id=plan.id
    )


def validating_adapter(
    sessions: PaymentSessionStore,
    settings: Settings,
    handler: Callable[[httpx.Request], httpx.Response],
) -> PaymentGatewayAdapter:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return PaymentGatewayAdapter(
        settings=settings.model_copy(update={"payfast_validate_notifications": True}),
        sessions=sessions,
        http_client=client,
    )


class TestAmounts:
    @pytest.mark.parametrize(
        "minor,expected",
        [(9900, "99.00"), (29905, "299.05"), (100, "1.00"), (7, "0.07")],
    )
    def test_format_amount(self, minor: int, expected: str) -> None:
        assert format_amount(minor) == expected

    def test_parse_amount(self) -> None:
        assert parse_amount("299.00") == 29900
        assert parse_amount(" 0.5 ") == 50

    def test_parse_amount_rejects_fractional_cents(self) -> None:
        with pytest.raises(ArithmeticError):
            parse_amount("1.005")


class TestSignature:
    def test_signature_matches_gateway_algorithm(self) -> None:
        fields = {"merchant_id": "10000100", "amount": "99.00", "item_name": "Growth plan"}
        raw = "merchant_id=10000100&amount=99.00&item_name=Growth+plan&passphrase=jt7NOE43FZPn"

        assert generate_signature(fields, "jt7NOE43FZPn") == hashlib.md5(raw.encode()).hexdigest()

    def test_blank_fields_and_signature_are_skipped(self) -> None:
        with_blank = {"a": "1", "b": "", "signature": "abc"}
        assert generate_signature(with_blank) == generate_signature({"a": "1"})

    def test_include_blank_signs_empty_fields(self) -> None:
        fields = {"a": "1", "b": ""}
        expected = hashlib.md5(b"a=1&b=").hexdigest()
        assert generate_signature(fields, include_blank=True) == expected

    def test_passphrase_changes_signature(self) -> None:
        fields = {"a": "1"}
        assert generate_signature(fields, "one") != generate_signature(fields, "two")


class TestCheckoutRendering:
    async def test_render_orders_and_signs_fields(
        self,
        adapter: PaymentGatewayAdapter,
        growth_session: PaymentSession,
        settings: Settings,
    ) -> None:
        redirect = adapter.render(growth_session)
        fields = redirect.form_fields

        signed = [key for key in fields if key != SIGNATURE_FIELD]
        assert signed == [key for key in CHECKOUT_FIELD_ORDER if key in fields]
        assert fields["m_payment_id"] == growth_session.id
        assert fields["amount"] == "299.00"
        assert fields["custom_str1"] == "org-1"
        assert fields["custom_str2"] == "subscribe"
        assert fields["notify_url"] == settings.payfast_notify_url
        assert fields[SIGNATURE_FIELD] == generate_signature(
            {k: v for k, v in fields.items() if k != SIGNATURE_FIELD},
            settings.payfast_passphrase,
        )

    async def test_redirect_artifacts(
        self, adapter: PaymentGatewayAdapter, growth_session: PaymentSession, settings: Settings
    ) -> None:
        redirect = adapter.render(growth_session, return_url="https://app.test/done")

        assert redirect.session_id == growth_session.id
        assert redirect.redirect_url.startswith(settings.payfast_process_url + "?")
        assert "return_url=https%3A%2F%2Fapp.test%2Fdone" in redirect.redirect_url
        assert f'action="{settings.payfast_process_url}"' in redirect.redirect_html
        assert f'value="{growth_session.id}"' in redirect.redirect_html
        assert redirect.reissued is False

    async def test_settled_session_cannot_be_rendered(
        self,
        adapter: PaymentGatewayAdapter,
        sessions: PaymentSessionStore,
        growth_session: PaymentSession,
    ) -> None:
        await sessions.settle(growth_session, PaymentSessionStatus.FAILED)

        with pytest.raises(ValueError):
            adapter.render(growth_session)

    async def test_build_topup_prices_credits(
        self, adapter: PaymentGatewayAdapter, settings: Settings
    ) -> None:
        redirect = await adapter.build_topup("org-2", 100)

        assert redirect.form_fields["amount"] == format_amount(100 * settings.topup_unit_price_minor)
        assert redirect.form_fields["custom_str2"] == "topup"
        assert redirect.form_fields["item_name"] == "100 AI generation credits"


class TestVerifyConfirmation:
    async def test_valid_complete_notification(
        self,
        adapter: PaymentGatewayAdapter,
        growth_session: PaymentSession,
        sign_notification,
    ) -> None:
        verified = await adapter.verify_confirmation(sign_notification(growth_session))

        assert verified.session_id == growth_session.id
        assert verified.outcome is ConfirmationOutcome.CONFIRMED
        assert verified.gateway_ref == "1089250"

    @pytest.mark.parametrize("payment_status", ["FAILED", "CANCELLED"])
    async def test_unsuccessful_statuses_map_to_failed(
        self,
        adapter: PaymentGatewayAdapter,
        growth_session: PaymentSession,
        sign_notification,
        payment_status: str,
    ) -> None:
        verified = await adapter.verify_confirmation(
            sign_notification(growth_session, payment_status)
        )
        assert verified.outcome is ConfirmationOutcome.FAILED

    async def test_tampered_payload_is_rejected(
        self,
        adapter: PaymentGatewayAdapter,
        growth_session: PaymentSession,
        sign_notification,
    ) -> None:
        payload = sign_notification(growth_session)
        payload["amount_gross"] = "1.00"

        with pytest.raises(SignatureInvalidError) as exc_info:
            await adapter.verify_confirmation(payload)
        assert exc_info.value.reason == "signature_mismatch"

    @pytest.mark.parametrize("signature", ["é" * 32, "ünïcödé", "0" * 31 + "ÿ"])
    async def test_non_ascii_signature_is_rejected(
        self,
        adapter: PaymentGatewayAdapter,
        growth_session: PaymentSession,
        sign_notification,
        signature: str,
    ) -> None:
        payload = sign_notification(growth_session)
        payload["signature"] = signature

        with pytest.raises(SignatureInvalidError) as exc_info:
            await adapter.verify_confirmation(payload)
        assert exc_info.value.reason == "signature_mismatch"

    async def test_missing_signature_is_rejected(
        self,
        adapter: PaymentGatewayAdapter,
        growth_session: PaymentSession,
        sign_notification,
    ) -> None:
        payload = sign_notification(growth_session)
        del payload["signature"]

        with pytest.raises(SignatureInvalidError):
            await adapter.verify_confirmation(payload)

    @pytest.mark.parametrize(
        "overrides,reason",
        [
            ({"merchant_id": "99999999"}, "merchant_mismatch"),
            ({"custom_str1": "org-evil"}, "tenant_mismatch"),
            ({"payment_status": "PENDING"}, "unknown_payment_status"),
            ({"amount_gross": "abc"}, "amount_unparseable"),
        ],
    )
    async def test_correctly_signed_but_inconsistent_payloads(
        self,
        adapter: PaymentGatewayAdapter,
        growth_session: PaymentSession,
        sign_notification,
        overrides: dict[str, str],
        reason: str,
    ) -> None:
        payload = sign_notification(growth_session, **overrides)

        with pytest.raises(SignatureInvalidError) as exc_info:
            await adapter.verify_confirmation(payload)
        assert exc_info.value.reason == reason

    async def test_amount_mismatch_is_rejected(
        self,
        adapter: PaymentGatewayAdapter,
        growth_session: PaymentSession,
        sign_notification,
    ) -> None:
        payload = sign_notification(growth_session, amount_minor=100)

        with pytest.raises(SignatureInvalidError) as exc_info:
            await adapter.verify_confirmation(payload)
        assert exc_info.value.reason == "amount_mismatch"

    async def test_unknown_session_is_rejected(
        self,
        adapter: PaymentGatewayAdapter,
        growth_session: PaymentSession,
        sign_notification,
    ) -> None:
        payload = sign_notification(growth_session, m_payment_id="no-such-session")

        with pytest.raises(SignatureInvalidError) as exc_info:
            await adapter.verify_confirmation(payload)
        assert exc_info.value.reason == "unknown_session"


class TestGatewayValidation:
    async def test_valid_postback_passes(
        self,
        sessions: PaymentSessionStore,
        settings: Settings,
        growth_session: PaymentSession,
        sign_notification,
    ) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, text="VALID")

        adapter = validating_adapter(sessions, settings, handler)
        verified = await adapter.verify_confirmation(sign_notification(growth_session))

        assert verified.outcome is ConfirmationOutcome.CONFIRMED
        assert len(seen) == 1
        assert str(seen[0].url) == settings.payfast_validate_url
        assert b"signature=" not in seen[0].content

    async def test_invalid_postback_rejects(
        self,
        sessions: PaymentSessionStore,
        settings: Settings,
        growth_session: PaymentSession,
        sign_notification,
    ) -> None:
        adapter = validating_adapter(
            sessions, settings, lambda request: httpx.Response(200, text="INVALID")
        )

        with pytest.raises(SignatureInvalidError) as exc_info:
            await adapter.verify_confirmation(sign_notification(growth_session))
        assert exc_info.value.reason == "gateway_validation_failed"

    async def test_unreachable_gateway_is_retryable(
        self,
        sessions: PaymentSessionStore,
        settings: Settings,
        growth_session: PaymentSession,
        sign_notification,
    ) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            raise httpx.ConnectError("connection refused", request=request)

        adapter = validating_adapter(sessions, settings, handler)

        with pytest.raises(GatewayUnavailableError):
            await adapter.verify_confirmation(sign_notification(growth_session))
        assert calls == 3
