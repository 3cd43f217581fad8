from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from app.core.settings import settings


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    return utc_now().isoformat()


def local_tz() -> ZoneInfo:
    return ZoneInfo(settings.local_timezone)


def parse_iso(s: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 string into an aware UTC datetime (naive input is taken as UTC)."""
    if not s:
        return None
    try:
        t = str(s).strip()
        if not t:
            return None
        if t.endswith("Z"):
            t = t[:-1] + "+00:00"
        dt = datetime.fromisoformat(t)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)
    except Exception:
        return None


_GREEK_DATE_RE = re.compile(
    r"(\d{1,2})[/.-](\d{1,2})[/.-](\d{2,4})(?:\s+(\d{1,2}):(\d{2})(?::(\d{2}))?)?"
)


def parse_local_datetime(text: Optional[str]) -> Optional[datetime]:
    """
    Parse a "dd/mm/yyyy HH:MM[:SS]" timestamp as printed by Greek sources.

    The wall-clock time is interpreted in the configured local timezone
    (Europe/Athens by default) and returned as an aware UTC datetime.
    """
    if not text:
        return None
    m = _GREEK_DATE_RE.search(text)
    if not m:
        return None
    day, month, year, hour, minute, second = m.groups()
    y = int(year)
    if y < 100:
        y += 2000
    try:
        local = datetime(
            y,
            int(month),
            int(day),
            int(hour or 0),
            int(minute or 0),
            int(second or 0),
            tzinfo=local_tz(),
        )
    except ValueError:
        return None
    return local.astimezone(timezone.utc)


def age_seconds(ts: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    dt = parse_iso(ts)
    if dt is None:
        return None
    ref = now or utc_now()
    return (ref - dt).total_seconds()
