# backend/app/utils/time_utils.py

from datetime import datetime, timezone


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    """
    ISO-8601 UTC timestamp with microseconds, e.g.
    2025-03-12T08:15:30.123456+00:00

    Lexical order equals chronological order, which the store relies on
    for ORDER BY created_at.
    """
    return utc_now().isoformat(timespec="microseconds")


def parse_iso(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def clock_label(moment: datetime) -> str:
    """Short wall-clock label shown next to a turn (e.g. '08:15 AM')."""
    return moment.strftime("%I:%M %p")
