"""Timezone helpers.

All timestamps are stored and compared in UTC. Admins enter draw dates in
the storefront's display timezone, so naive values coming from forms are
interpreted there before being converted.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from shopfront.shared.config import get_settings


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Return ``value`` as an aware UTC datetime.

    Naive values are assumed to already be UTC (some drivers drop the
    offset on read).
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def local_to_utc(value: datetime, tz_name: Optional[str] = None) -> datetime:
    """Convert an admin-entered timestamp to UTC.

    Values that carry an offset are trusted as-is; naive values are read in
    the display timezone.

    Example: ``2026-01-01T12:00`` in Asia/Shanghai -> ``2026-01-01T04:00Z``
    """
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc)
    zone = ZoneInfo(tz_name or get_settings().display_timezone)
    return value.replace(tzinfo=zone).astimezone(timezone.utc)
