"""Wall-clock access for billing period arithmetic.

All period, trial, grace and session-expiry decisions read time through
``utcnow`` so tests can pin it.
"""

from datetime import UTC, datetime


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)
