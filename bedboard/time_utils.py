"""UTC timestamps for the provider table and the roster documents.

The ``providers`` table keeps ``lastBedUpdate`` and ``updatedAt`` as epoch
seconds in float columns; everything above the store works with aware
``datetime`` values in UTC.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(dt: datetime) -> datetime:
    # naive values are taken to be UTC already
    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt.astimezone(timezone.utc)


def timestamp_from_column(seconds: Optional[float]) -> Optional[datetime]:
    """Turn a stored epoch-seconds column into an aware UTC ``datetime``."""

    if seconds is None:
        return None
    return datetime.fromtimestamp(float(seconds), tz=timezone.utc)


def timestamp_to_column(dt: Optional[datetime]) -> Optional[float]:
    if dt is None:
        return None
    return _as_utc(dt).timestamp()


def isoformat_utc(dt: Optional[datetime]) -> Optional[str]:
    """Render ``dt`` to the second with a ``Z`` suffix, e.g. ``2025-03-14T09:30:00Z``."""

    if dt is None:
        return None
    return _as_utc(dt).replace(microsecond=0, tzinfo=None).isoformat() + "Z"


__all__ = [
    "utc_now",
    "timestamp_from_column",
    "timestamp_to_column",
    "isoformat_utc",
]
