from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from dateutil import parser as date_parser


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes are taken to be UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(val) -> Optional[datetime]:
    """
    ISO-8601 strings (offset optional), epoch seconds, or datetimes -> aware UTC.
    Returns None for anything unparseable.
    """
    if val is None:
        return None
    if isinstance(val, datetime):
        return as_utc(val)
    if isinstance(val, bool):
        return None
    if isinstance(val, (int, float)):
        try:
            return datetime.fromtimestamp(val, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    s = str(val).strip()
    if not s:
        return None
    try:
        return as_utc(date_parser.isoparse(s))
    except (ValueError, OverflowError):
        pass
    try:
        return as_utc(date_parser.parse(s))
    except (ValueError, OverflowError):
        return None


def isoformat_or_none(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
