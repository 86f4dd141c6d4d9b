from __future__ import annotations

import os
from datetime import datetime, timezone


def expand_path(p: str) -> str:
    return os.path.expanduser(os.path.expandvars(p))


def iso_from_epoch(t: float) -> str:
    """Format a unix timestamp the way browsers do (``Date.toISOString``)."""
    dt = datetime.fromtimestamp(float(t), tz=timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def normalize_id(value, *, max_chars: int = 0) -> str | None:
    """Return a cleaned identifier (user, issue or message id) or None."""
    if isinstance(value, int) and not isinstance(value, bool):
        value = str(value)
    if not isinstance(value, str):
        return None

    s = value.strip()
    if not s:
        return None

    if max_chars and len(s) > int(max_chars):
        return None

    # Ids end up in room names and log lines.
    if "\n" in s or "\r" in s or "\x00" in s:
        return None

    return s


def normalize_text(value) -> str | None:
    """Trim a chat message body. Whitespace-only text is rejected."""
    if not isinstance(value, str):
        return None

    s = value.strip()
    return s or None


def parse_since(value) -> float | None:
    """Parse a history cursor.

    Accepts the ISO-8601 strings the hub sends out, or a number of
    milliseconds since the epoch. Raises ValueError for anything else.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError("since must be a timestamp")
    if isinstance(value, (int, float)):
        return float(value) / 1000.0
    if isinstance(value, str):
        s = value.strip()
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        dt = datetime.fromisoformat(s)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.timestamp()
    raise ValueError("since must be a timestamp")
