from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4


class Severity(str, Enum):
    """Severity levels for rules and the alerts they raise."""

    low = "low"
    medium = "medium"
    high = "high"
    critical = "critical"


class AlertStatus(str, Enum):
    """Alert lifecycle states. `resolved` is terminal."""

    active = "active"
    resolved = "resolved"


# PUBLIC_INTERFACE
def utc_now() -> datetime:
    """Return a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


# PUBLIC_INTERFACE
def new_id() -> str:
    """Return a fresh string id for rules and alerts."""
    return str(uuid4())
