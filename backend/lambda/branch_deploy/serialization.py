"""serialization.py — Timestamp helpers and JSON encoding for run outputs."""
from __future__ import annotations

import datetime as dt
import json
from typing import Any, Optional

__all__ = [
    "_json_dumps",
    "_now_z",
    "_parse_ts",
    "_time_diff",
]


def _now_z() -> str:
    return dt.datetime.now(dt.timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _parse_ts(value: str) -> dt.datetime:
    """Parse an ISO 8601 timestamp (``Z`` or offset suffix) into an aware datetime."""
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = dt.datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed


def _time_diff(start: str, end: Optional[str] = None) -> str:
    """Elapsed time between two ISO timestamps as ``{d}d:{h}h:{m}m:{s}s``.

    ``end`` defaults to now. Negative spans (clock skew) clamp to zero.
    """
    end_dt = _parse_ts(end) if end else dt.datetime.now(dt.timezone.utc)
    seconds = max(0, int((end_dt - _parse_ts(start)).total_seconds()))
    minutes, secs = divmod(seconds, 60)
    hours, mins = divmod(minutes, 60)
    days, hrs = divmod(hours, 24)
    return f"{days}d:{hrs}h:{mins}m:{secs}s"


def _json_dumps(value: Any) -> str:
    return json.dumps(value, default=str, sort_keys=True)
