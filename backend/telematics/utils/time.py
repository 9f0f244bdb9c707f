from __future__ import annotations

import datetime as dt
from typing import Any, Optional


def utc_now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def ensure_utc(value: Optional[dt.datetime]) -> Optional[dt.datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)


def parse_vendor_time(value: Any) -> Optional[dt.datetime]:
    """Parse a GPS51 timestamp.

    GPS51 sends epoch milliseconds on most endpoints, but some firmware and
    proxies send epoch seconds, numeric strings or ISO-8601 strings.
    Returns None for anything unparseable or non-positive.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            value = float(text)
        except ValueError:
            try:
                parsed = dt.datetime.fromisoformat(text.replace("Z", "+00:00"))
            except ValueError:
                return None
            return ensure_utc(parsed)
    if isinstance(value, (int, float)):
        if value <= 0:
            return None
        seconds = value / 1000.0 if value > 1e11 else float(value)
        try:
            return dt.datetime.fromtimestamp(seconds, tz=dt.timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, dt.datetime):
        return ensure_utc(value)
    return None
