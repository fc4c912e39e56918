import secrets
import time
from datetime import datetime, timezone, timedelta


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    """UTC timestamp like '2025-11-06T09:12:34.123456Z'.

    Microseconds are always rendered so stored timestamps compare correctly
    as plain strings.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


def parse_iso(value: str) -> datetime:
    """Parse an ISO timestamp; a trailing Z or a missing offset means UTC."""
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def now_iso() -> str:
    return to_iso(utc_now())


def iso_in_utc_from_seconds_from_now(seconds: int) -> str:
    """Return UTC ISO time `seconds` from now, with 'Z' suffix."""
    return to_iso(utc_now() + timedelta(seconds=seconds))


def new_job_id() -> str:
    # epoch nanoseconds + random suffix
    return f"notify_job_{time.time_ns()}_{secrets.token_hex(4)}"
