from __future__ import annotations

from datetime import datetime, timezone


def utc_now_iso() -> str:
    return datetime.now(tz=timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def parse_iso8601(s: str | None) -> datetime | None:
    if not s:
        return None
    try:
        dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except (ValueError, TypeError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def days_between(start: str | None, end: str | None) -> float | None:
    """Fractional days from ``start`` to ``end``; None when either is unparseable."""
    a = parse_iso8601(start)
    b = parse_iso8601(end)
    if a is None or b is None:
        return None
    return (b - a).total_seconds() / 86400.0
