"""SQLAlchemy base and shared column types."""

from propnova.models.base import Base, TimestampMixin, UTCDateTime

__all__ = [
    "Base",
    "TimestampMixin",
    "UTCDateTime",
]
