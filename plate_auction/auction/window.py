"""Recurring weekly auction window computation.

All arithmetic happens in UTC so the same instant always yields the same
boundaries, whatever time zone the caller lives in.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from ..transport.timestamps import ensure_utc, format_timestamp

WEEK = timedelta(days=7)


@dataclass(frozen=True)
class WindowSchedule:
    start_weekday: int = 0  # Monday
    start_hour: int = 1
    duration: timedelta = timedelta(days=6, hours=22)

    def __post_init__(self) -> None:
        if not 0 <= self.start_weekday <= 6:
            raise ValueError("start_weekday must be between 0 (Monday) and 6 (Sunday)")
        if not 0 <= self.start_hour <= 23:
            raise ValueError("start_hour must be between 0 and 23")
        if not timedelta(0) < self.duration < WEEK:
            raise ValueError("window duration must be positive and shorter than a week")

    @classmethod
    def from_config(cls, config) -> "WindowSchedule":
        return cls(
            start_weekday=config.start_weekday,
            start_hour=config.start_hour,
            duration=timedelta(hours=config.duration_hours),
        )


DEFAULT_SCHEDULE = WindowSchedule()


@dataclass(frozen=True)
class AuctionWindow:
    reference: datetime
    current_start: datetime
    current_end: datetime
    next_start: datetime
    next_end: datetime
    is_live: bool

    def as_dict(self) -> dict[str, object]:
        return {
            "reference": format_timestamp(self.reference),
            "current_start": format_timestamp(self.current_start),
            "current_end": format_timestamp(self.current_end),
            "next_start": format_timestamp(self.next_start),
            "next_end": format_timestamp(self.next_end),
            "is_live": self.is_live,
        }


def compute_window(
    reference: datetime, schedule: WindowSchedule = DEFAULT_SCHEDULE
) -> AuctionWindow:
    """Return the window of the auction week containing ``reference``.

    The week is anchored on ``schedule.start_weekday`` at midnight UTC, so a
    reference that falls on the start day but before ``start_hour`` belongs to
    the window starting later that same day (``is_live`` is then False).
    """
    ref = ensure_utc(reference)
    midnight = datetime(ref.year, ref.month, ref.day, tzinfo=timezone.utc)
    days_since_start = (midnight.weekday() - schedule.start_weekday) % 7
    current_start = midnight - timedelta(days=days_since_start) + timedelta(
        hours=schedule.start_hour
    )
    current_end = current_start + schedule.duration
    return AuctionWindow(
        reference=ref,
        current_start=current_start,
        current_end=current_end,
        next_start=current_start + WEEK,
        next_end=current_end + WEEK,
        is_live=current_start <= ref <= current_end,
    )


def upcoming_window(
    reference: datetime, schedule: WindowSchedule = DEFAULT_SCHEDULE
) -> tuple[datetime, datetime]:
    """Boundaries of the first window that has not started yet at ``reference``."""
    window = compute_window(reference, schedule)
    if ensure_utc(reference) < window.current_start:
        return window.current_start, window.current_end
    return window.next_start, window.next_end
