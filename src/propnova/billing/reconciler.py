"""Bounded polling for payment activation.

The gateway notification is what activates a subscription. This loop only
watches already-settled server state so a returning browser can be told
"active", "failed" or "not verified yet"; it never causes activation.
"""

import asyncio
import enum
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from propnova.billing.models import PaymentSessionStatus, SubscriptionStatus
from propnova.core.config import Settings, get_settings
from propnova.core.exceptions import ReconciliationTimeoutError
from propnova.core.logging import LoggerMixin
from propnova.core.metrics import track_reconciliation


class ReconcileOutcome(str, enum.Enum):
    ACTIVATED = "activated"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class ActivationProbe:
    """One pure read of the tenant's billing state."""

    status: SubscriptionStatus
    plan_id: str
    session_status: PaymentSessionStatus | None = None


@dataclass(frozen=True)
class ReconcileResult:
    outcome: ReconcileOutcome
    attempts: int
    elapsed_seconds: float
    last_probe: ActivationProbe | None = None
    cancelled: bool = False

    @property
    def is_resolved(self) -> bool:
        return self.outcome is not ReconcileOutcome.TIMED_OUT

    def to_error(self) -> ReconciliationTimeoutError:
        return ReconciliationTimeoutError(
            details={"attempts": self.attempts, "cancelled": self.cancelled},
        )


ProbeFn = Callable[[], Awaitable[ActivationProbe]]


def classify(probe: ActivationProbe | None, *, expect_session: bool) -> ReconcileOutcome | None:
    """Terminal outcome shown by ``probe``, or None to keep polling."""
    if probe is None:
        return None

    if expect_session:
        if probe.session_status is PaymentSessionStatus.CONFIRMED:
            return ReconcileOutcome.ACTIVATED
        if probe.session_status in (PaymentSessionStatus.FAILED, PaymentSessionStatus.EXPIRED):
            return ReconcileOutcome.FAILED
        return None

    if probe.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING):
        return ReconcileOutcome.ACTIVATED
    return None


class ActivationReconciler(LoggerMixin):
    """Polls a read function until activation resolves or the budget runs out.

    Every read is bounded by ``reconcile_read_timeout_seconds``, the loop by
    ``reconcile_max_attempts`` and ``reconcile_deadline_seconds``. Setting
    ``cancel`` stops the loop early; cancelling the awaiting task works too.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        max_attempts: int | None = None,
        interval_seconds: float | None = None,
        deadline_seconds: float | None = None,
        read_timeout_seconds: float | None = None,
    ) -> None:
        settings = settings or get_settings()
        self.max_attempts = max_attempts or settings.reconcile_max_attempts
        self.interval_seconds = (
            settings.reconcile_interval_seconds if interval_seconds is None else interval_seconds
        )
        self.deadline_seconds = deadline_seconds or settings.reconcile_deadline_seconds
        self.read_timeout_seconds = read_timeout_seconds or settings.reconcile_read_timeout_seconds

    async def run(
        self,
        probe: ProbeFn,
        *,
        expect_session: bool = True,
        cancel: asyncio.Event | None = None,
    ) -> ReconcileResult:
        started = time.monotonic()
        deadline = started + self.deadline_seconds
        cancel = cancel or asyncio.Event()
        last: ActivationProbe | None = None
        attempts = 0
        cancelled = False

        while attempts < self.max_attempts:
            if cancel.is_set():
                cancelled = True
                break
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break

            attempts += 1
            try:
                last = await asyncio.wait_for(
                    probe(), timeout=min(self.read_timeout_seconds, remaining)
                )
            except TimeoutError:
                self.logger.warning("reconcile_read_timeout", attempt=attempts)
                last = None

            outcome = classify(last, expect_session=expect_session)
            if outcome is not None:
                return self._finish(outcome, attempts, started, last)

            if attempts >= self.max_attempts:
                break
            pause = min(self.interval_seconds, deadline - time.monotonic())
            if pause > 0:
                try:
                    await asyncio.wait_for(cancel.wait(), timeout=pause)
                except TimeoutError:
                    pass

        return self._finish(
            ReconcileOutcome.TIMED_OUT, attempts, started, last, cancelled=cancelled or cancel.is_set()
        )

    def _finish(
        self,
        outcome: ReconcileOutcome,
        attempts: int,
        started: float,
        last: ActivationProbe | None,
        *,
        cancelled: bool = False,
    ) -> ReconcileResult:
        result = ReconcileResult(
            outcome=outcome,
            attempts=attempts,
            elapsed_seconds=round(time.monotonic() - started, 3),
            last_probe=last,
            cancelled=cancelled,
        )
        track_reconciliation(outcome.value)
        log = self.logger.info if result.is_resolved else self.logger.warning
        log(
            "reconcile_finished",
            outcome=outcome.value,
            attempts=attempts,
            elapsed_seconds=result.elapsed_seconds,
            cancelled=cancelled,
        )
        return result
