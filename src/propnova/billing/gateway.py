"""PayFast payment gateway adapter.

Builds signed checkout payloads (the gateway expects a browser POST form,
so an auto-submitting HTML page is produced alongside the redirect URL) and
verifies inbound payment notifications against the stored PaymentSession
before anything is allowed to act on them.
"""

import enum
import hashlib
import hmac
from collections.abc import Mapping
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from html import escape
from typing import NoReturn
from urllib.parse import quote_plus, urlencode

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from propnova.billing.models import PaymentKind, PaymentSession
from propnova.billing.plans import Plan, PlanCatalog, get_catalog
from propnova.billing.sessions import PaymentSessionStore
from propnova.core.config import Settings, get_settings
from propnova.core.exceptions import GatewayUnavailableError, SignatureInvalidError
from propnova.core.logging import LoggerMixin
from propnova.core.retry import GATEWAY_VALIDATION_RETRY, retry_with_backoff

SIGNATURE_FIELD = "signature"

# Order matters: the gateway signs fields in the order they are posted.
CHECKOUT_FIELD_ORDER = (
    "merchant_id",
    "merchant_key",
    "return_url",
    "cancel_url",
    "notify_url",
    "m_payment_id",
    "amount",
    "item_name",
    "item_description",
    "custom_str1",
    "custom_str2",
)


class ConfirmationOutcome(str, enum.Enum):
    """What a verified notification says happened to the payment."""

    CONFIRMED = "confirmed"
    FAILED = "failed"


_PAYMENT_STATUS_OUTCOMES = {
    "COMPLETE": ConfirmationOutcome.CONFIRMED,
    "FAILED": ConfirmationOutcome.FAILED,
    "CANCELLED": ConfirmationOutcome.FAILED,
}


@dataclass(frozen=True)
class CheckoutRedirect:
    """Everything a client needs to hand the browser to the gateway."""

    session_id: str
    redirect_url: str
    form_action: str
    form_fields: dict[str, str]
    redirect_html: str
    reissued: bool = False


@dataclass(frozen=True)
class VerifiedConfirmation:
    """A notification that passed every check."""

    session: PaymentSession
    outcome: ConfirmationOutcome
    payment_status: str
    gateway_ref: str | None
    payload: dict[str, str] = field(default_factory=dict)

    @property
    def session_id(self) -> str:
        return self.session.id


def format_amount(amount_minor: int) -> str:
    """Minor units to the gateway's decimal string (9900 -> '99.00')."""
    return f"{amount_minor // 100}.{amount_minor % 100:02d}"


def parse_amount(value: str) -> int:
    """Gateway decimal string to minor units."""
    amount = Decimal(value.strip())
    minor = amount * 100
    if minor != minor.to_integral_value():
        raise InvalidOperation(value)
    return int(minor)


def generate_signature(
    fields: Mapping[str, str],
    passphrase: str = "",
    *,
    include_blank: bool = False,
) -> str:
    """MD5 over the url-encoded fields, in order, plus the passphrase.

    Checkout payloads omit blank fields; notifications are signed over every
    field they carry, so verification passes ``include_blank``.
    """
    parts = []
    for key, value in fields.items():
        if key == SIGNATURE_FIELD:
            continue
        value = "" if value is None else str(value).strip()
        if not value and not include_blank:
            continue
        parts.append(f"{key}={quote_plus(value)}")

    passphrase = passphrase.strip()
    if passphrase:
        parts.append(f"passphrase={quote_plus(passphrase)}")

    return hashlib.md5("&".join(parts).encode("utf-8")).hexdigest()


class PaymentGatewayAdapter(LoggerMixin):
    """Signs outbound checkouts and authenticates inbound confirmations."""

    def __init__(
        self,
        db: AsyncSession | None = None,
        *,
        settings: Settings | None = None,
        catalog: PlanCatalog | None = None,
        sessions: PaymentSessionStore | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.catalog = catalog or get_catalog()
        if sessions is None:
            if db is None:
                raise ValueError("Either db or sessions is required")
            sessions = PaymentSessionStore(db, self.settings)
        self.sessions = sessions
        self._http_client = http_client

    # ------------------------------------------------------------------
    # Signing
    # ------------------------------------------------------------------

    def generate_signature(
        self,
        fields: Mapping[str, str],
        *,
        include_blank: bool = False,
    ) -> str:
        return generate_signature(
            fields, self.settings.payfast_passphrase, include_blank=include_blank
        )

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    def describe(self, session: PaymentSession) -> tuple[str, str]:
        """Item name and description shown on the gateway page."""
        if session.kind is PaymentKind.TOPUP:
            return (
                f"{session.credits} AI generation credits",
                "One-off AI generation top-up",
            )
        plan = self.catalog.get_plan(session.plan_id or "")
        return (f"{plan.name} plan", plan.description)

    def default_return_url(self, session_id: str) -> str:
        return f"{self.settings.public_base_url.rstrip('/')}/billing/return?sessionId={session_id}"

    def default_cancel_url(self) -> str:
        return f"{self.settings.public_base_url.rstrip('/')}/billing?cancelled=1"

    def render(
        self,
        session: PaymentSession,
        *,
        return_url: str | None = None,
        cancel_url: str | None = None,
        reissued: bool = False,
    ) -> CheckoutRedirect:
        """Build the signed field set and redirect artifacts for a session."""
        if session.is_terminal:
            raise ValueError("Cannot render a checkout for a settled session")

        item_name, item_description = self.describe(session)
        values = {
            "merchant_id": self.settings.payfast_merchant_id,
            "merchant_key": self.settings.payfast_merchant_key,
            "return_url": return_url or self.default_return_url(session.id),
            "cancel_url": cancel_url or self.default_cancel_url(),
            "notify_url": self.settings.payfast_notify_url,
            "m_payment_id": session.id,
            "amount": format_amount(session.amount_minor),
            "item_name": item_name,
            "item_description": item_description,
            "custom_str1": session.tenant_id,
            "custom_str2": session.kind.value,
        }
        fields = {key: values[key] for key in CHECKOUT_FIELD_ORDER if values.get(key)}
        fields[SIGNATURE_FIELD] = self.generate_signature(fields)

        action = self.settings.payfast_process_url
        return CheckoutRedirect(
            session_id=session.id,
            redirect_url=f"{action}?{urlencode(fields)}",
            form_action=action,
            form_fields=fields,
            redirect_html=self._auto_submit_html(action, fields),
            reissued=reissued,
        )

    async def build_checkout(
        self,
        tenant_id: str,
        plan: Plan,
        *,
        return_url: str | None = None,
        cancel_url: str | None = None,
    ) -> CheckoutRedirect:
        """Open a subscribe session for ``plan`` and sign its checkout."""
        session = await self.sessions.create(
            tenant_id,
            PaymentKind.SUBSCRIBE,
            plan.price_minor,
            plan.currency,
            plan_id=plan.id,
        )
        return self.render(session, return_url=return_url, cancel_url=cancel_url)

    async def build_topup(
        self,
        tenant_id: str,
        credits: int,
        *,
        return_url: str | None = None,
        cancel_url: str | None = None,
    ) -> CheckoutRedirect:
        """Open a top-up session for ``credits`` and sign its checkout."""
        session = await self.sessions.create(
            tenant_id,
            PaymentKind.TOPUP,
            credits * self.settings.topup_unit_price_minor,
            self.settings.billing_currency,
            credits=credits,
        )
        return self.render(session, return_url=return_url, cancel_url=cancel_url)

    @staticmethod
    def _auto_submit_html(action: str, fields: Mapping[str, str]) -> str:
        inputs = "\n".join(
            f'    <input type="hidden" name="{escape(k)}" value="{escape(v)}">'
            for k, v in fields.items()
        )
        return (
            "<!DOCTYPE html>\n"
            "<html><head><meta charset=\"utf-8\"><title>Redirecting to payment</title></head>\n"
            "<body onload=\"document.forms[0].submit()\">\n"
            f'  <form action="{escape(action)}" method="post">\n'
            f"{inputs}\n"
            '    <noscript><button type="submit">Continue to payment</button></noscript>\n'
            "  </form>\n"
            "</body></html>\n"
        )

    # ------------------------------------------------------------------
    # Confirmation
    # ------------------------------------------------------------------

    async def verify_confirmation(self, payload: Mapping[str, str]) -> VerifiedConfirmation:
        """Authenticate a gateway notification.

        Raises:
            SignatureInvalidError: Signature, merchant, session, tenant or
                amount does not check out. Nothing may be applied.
            GatewayUnavailableError: Server-side validation could not reach
                the gateway; the notification should be redelivered.
        """
        data = {str(k): "" if v is None else str(v) for k, v in payload.items()}
        session_id = data.get("m_payment_id") or None

        received = data.get(SIGNATURE_FIELD, "")
        expected = self.generate_signature(data, include_blank=True)
        if not received or not hmac.compare_digest(
            received.lower().encode("utf-8"), expected.encode("utf-8")
        ):
            self._reject("signature_mismatch", session_id)

        if data.get("merchant_id") != self.settings.payfast_merchant_id:
            self._reject("merchant_mismatch", session_id)

        if session_id is None:
            self._reject("missing_session_id", None)
        session = await self.sessions.get(session_id)
        if session is None:
            self.logger.error("confirmation_unknown_session", session_id=session_id)
            raise SignatureInvalidError("unknown_session", session_id=session_id)

        tenant_ref = data.get("custom_str1")
        if tenant_ref and tenant_ref != session.tenant_id:
            self._reject("tenant_mismatch", session_id)

        try:
            amount_minor = parse_amount(data.get("amount_gross") or data.get("amount") or "")
        except (InvalidOperation, ValueError):
            self._reject("amount_unparseable", session_id)
        if amount_minor != session.amount_minor:
            self._reject("amount_mismatch", session_id)

        payment_status = data.get("payment_status", "").upper()
        outcome = _PAYMENT_STATUS_OUTCOMES.get(payment_status)
        if outcome is None:
            self._reject("unknown_payment_status", session_id)

        if self.settings.payfast_validate_notifications:
            await self._validate_with_gateway(data, session_id)

        return VerifiedConfirmation(
            session=session,
            outcome=outcome,
            payment_status=payment_status,
            gateway_ref=data.get("pf_payment_id") or None,
            payload=data,
        )

    def _reject(self, reason: str, session_id: str | None) -> NoReturn:
        self.logger.warning("confirmation_rejected", reason=reason, session_id=session_id)
        raise SignatureInvalidError(reason, session_id=session_id)

    async def _validate_with_gateway(self, data: Mapping[str, str], session_id: str) -> None:
        """Ask the gateway whether it really sent this notification."""
        body = urlencode({k: v for k, v in data.items() if k != SIGNATURE_FIELD})
        try:
            verdict = await self._post_validation(body)
        except (httpx.TransportError, httpx.HTTPStatusError) as e:
            self.logger.warning(
                "gateway_validation_unavailable",
                session_id=session_id,
                error=str(e),
            )
            raise GatewayUnavailableError(details={"session_id": session_id}) from e

        if verdict.strip().upper() != "VALID":
            self._reject("gateway_validation_failed", session_id)

    @retry_with_backoff(GATEWAY_VALIDATION_RETRY)
    async def _post_validation(self, body: str) -> str:
        headers = {"Content-Type": "application/x-www-form-urlencoded"}
        if self._http_client is not None:
            response = await self._http_client.post(
                self.settings.payfast_validate_url, content=body, headers=headers
            )
            response.raise_for_status()
            return response.text

        async with httpx.AsyncClient(timeout=self.settings.payfast_timeout_seconds) as client:
            response = await client.post(
                self.settings.payfast_validate_url, content=body, headers=headers
            )
            response.raise_for_status()
            return response.text
