"""Shared timestamp normalization helpers."""
from __future__ import annotations

import re
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any

_DATE_ONLY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def utc_now_iso() -> str:
    return format_datetime_utc(datetime.now(timezone.utc))


def format_datetime_utc(value: datetime) -> str:
    dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _parse_datetime_token(token: str) -> datetime | None:
    cleaned = token.strip()
    if not cleaned:
        return None
    try:
        parsed = datetime.fromisoformat(cleaned.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def epoch_ms_to_iso(value: Any) -> str:
    """Convert a numeric millisecond timestamp into an ISO-8601 UTC string."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return ""
    try:
        return format_datetime_utc(datetime.fromtimestamp(float(value) / 1000.0, timezone.utc))
    except (OverflowError, OSError, ValueError):
        return ""


def normalize_iso_date(value: Any) -> str:
    """Convert mixed timestamp inputs (ISO strings, datetimes, epoch ms) into ISO strings."""
    if value is None or isinstance(value, bool):
        return ""
    if isinstance(value, datetime):
        return format_datetime_utc(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (int, float)):
        return epoch_ms_to_iso(value)
    if isinstance(value, str):
        token = value.strip()
        if not token:
            return ""
        if _DATE_ONLY_RE.match(token):
            try:
                return date.fromisoformat(token).isoformat()
            except ValueError:
                return ""
        parsed_dt = _parse_datetime_token(token)
        if parsed_dt:
            return format_datetime_utc(parsed_dt)
    return ""


def iso_to_epoch(value: Any) -> float:
    token = normalize_iso_date(value)
    if not token:
        return 0.0
    if _DATE_ONLY_RE.match(token):
        return datetime.fromisoformat(token).replace(tzinfo=timezone.utc).timestamp()
    parsed_dt = _parse_datetime_token(token)
    if not parsed_dt:
        return 0.0
    return parsed_dt.timestamp()


def seconds_between(start: Any, end: Any) -> float | None:
    """Elapsed seconds between two timestamps, rounded to 2 decimals; skew clamps to 0."""
    start_epoch = iso_to_epoch(start)
    end_epoch = iso_to_epoch(end)
    if not start_epoch or not end_epoch:
        return None
    elapsed = end_epoch - start_epoch
    if elapsed < 0:
        return 0.0
    return round(elapsed, 2)


def file_metadata_dates(path: Path) -> dict[str, str]:
    """Return normalized filesystem creation/modified timestamps."""
    try:
        stats = path.stat()
    except OSError:
        return {"createdAt": "", "updatedAt": ""}

    created = getattr(stats, "st_birthtime", None) or stats.st_ctime
    return {
        "createdAt": format_datetime_utc(datetime.fromtimestamp(float(created), timezone.utc)),
        "updatedAt": format_datetime_utc(datetime.fromtimestamp(float(stats.st_mtime), timezone.utc)),
    }
