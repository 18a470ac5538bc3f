"""Time utilities for the types package.

Provides timestamp helpers used for responses, events and snapshot names.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def _datetime_to_iso(dt: Optional[datetime]) -> Optional[str]:
    """Convert datetime to ISO format string with Z suffix."""
    if dt is None:
        return None
    return dt.astimezone(timezone.utc).replace(tzinfo=None).isoformat() + "Z"


def compact_timestamp(dt: Optional[datetime] = None) -> str:
    """Format a datetime as a file-name-safe stamp, e.g. 20250101T120000Z."""
    dt = (dt or utc_now()).astimezone(timezone.utc)
    return dt.strftime("%Y%m%dT%H%M%SZ")
