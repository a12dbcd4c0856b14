"""UTC timestamps for job records.

Records hold ISO 8601 strings with a +00:00 offset so durations can be
computed without guessing the timezone.
"""

from datetime import datetime, timezone


def isonow() -> str:
    """Current UTC time, ISO 8601 with offset."""
    return datetime.now(timezone.utc).isoformat()


def _parse(iso_str: str) -> datetime:
    dt = datetime.fromisoformat(iso_str)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def seconds_between(start_iso: str, end_iso: str) -> float:
    """Elapsed seconds between two ISO timestamps (naive ones are read as UTC)."""
    return (_parse(end_iso) - _parse(start_iso)).total_seconds()
