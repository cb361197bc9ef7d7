from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional


def to_epoch(value: Optional[datetime]) -> Optional[float]:
    """SQLite has no datetime type; store UTC epoch seconds."""

    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


def from_epoch(value: Optional[float]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(float(value), tz=timezone.utc)
