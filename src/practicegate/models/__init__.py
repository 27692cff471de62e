"""SQLAlchemy base classes.

Domain models live beside their services in ``practicegate.billing.models``
and ``practicegate.exports.models``.
"""

from practicegate.models.base import Base, TimestampMixin, UTCDateTime, utcnow

__all__ = [
    "Base",
    "TimestampMixin",
    "UTCDateTime",
    "utcnow",
]
