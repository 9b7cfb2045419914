from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional


# Wire format used by the ESL cloud for action logs and button payloads
CLOUD_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


def utcnow() -> datetime:
    """Server-side 'now' in UTC (naive, canonical)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _as_naive_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def parse_iso_datetime(value: Optional[str]) -> Optional[datetime]:
    """
    ISO-8601 string -> UTC-naive datetime. None / "" -> None.

    Naive input is taken as UTC; a trailing "Z" or an offset is converted.
    """
    text = (value or "").strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return _as_naive_utc(datetime.fromisoformat(text))


def parse_cloud_datetime(value: Optional[str]) -> Optional[datetime]:
    """
    Parse a cloud timestamp ("YYYY-MM-DD HH:MM:SS", UTC) or an ISO-8601 string.

    Raises ValueError for non-empty strings in neither format.
    """
    text = "" if value is None else str(value).strip()
    if not text:
        return None
    try:
        return datetime.strptime(text, CLOUD_TIME_FORMAT)
    except ValueError:
        return parse_iso_datetime(text)


def format_cloud_datetime(dt: datetime) -> str:
    """Serialize a UTC datetime in the cloud's "YYYY-MM-DD HH:MM:SS" format."""
    return _as_naive_utc(dt).strftime(CLOUD_TIME_FORMAT)


def to_utc_z(dt: Optional[datetime]) -> Optional[str]:
    """ISO-8601 with a trailing 'Z', seconds precision. Naive input is UTC."""
    if dt is None:
        return None
    return _as_naive_utc(dt).replace(microsecond=0).isoformat() + "Z"
