"""
Common Schema Types
==================

Bounded Context: Shared Data Structures

This module defines common types used across detour event messages.

Design Principles:
- Immutability: frozen=True prevents accidental mutation
- Type Safety: All fields explicitly typed
- Serialization: to_dict() for JSON export
- Validation: Constructor validates invariants

Types:
- Timestamp: epoch-milliseconds wrapper (the wire format of every event)
"""

import time
from dataclasses import dataclass
from datetime import datetime, timezone


@dataclass(frozen=True)
class Timestamp:
    """
    Immutable epoch-milliseconds timestamp.

    Events travel with integer epoch-ms timestamps; this wrapper converts
    to and from datetimes and ISO 8601 for display.

    Attributes:
        value_ms: Milliseconds since the Unix epoch (UTC)

    Example:
        >>> ts = Timestamp(value_ms=1761319845123)
        >>> ts.to_iso()
        '2025-10-24T15:30:45.123000+00:00'
    """
    value_ms: int

    def __post_init__(self):
        """Validate invariants."""
        if self.value_ms < 0:
            raise ValueError(f"Timestamp must be >= 0, got {self.value_ms}")

    @classmethod
    def now(cls) -> 'Timestamp':
        """Create timestamp from current wall-clock time."""
        return cls(value_ms=int(time.time() * 1000))

    @classmethod
    def from_datetime(cls, dt: datetime) -> 'Timestamp':
        """Create timestamp from datetime object (naive means UTC)."""
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return cls(value_ms=int(dt.timestamp() * 1000))

    def to_datetime(self) -> datetime:
        """Convert to an aware UTC datetime."""
        return datetime.fromtimestamp(self.value_ms / 1000.0, tz=timezone.utc)

    def to_iso(self) -> str:
        """ISO 8601 representation (UTC)."""
        return self.to_datetime().isoformat()

    def to_dict(self) -> int:
        """Serialize to JSON (as epoch ms)."""
        return self.value_ms
