"""
Time helpers.

Timestamps are stored as naive UTC so SQLite and PostgreSQL round-trip the
same values.
"""
import time
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current UTC time without tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def epoch_ms() -> int:
    """Current wall-clock time in integer milliseconds."""
    return int(time.time() * 1000)


def isoformat(value):
    if value is None:
        return None
    return value.isoformat()
