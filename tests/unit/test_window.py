"""Tests for weekly auction window computation."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from plate_auction.auction.window import WindowSchedule, compute_window, upcoming_window

UTC = timezone.utc


class TestComputeWindow:
    def test_midweek_reference_is_live(self):
        window = compute_window(datetime(2024, 6, 12, 12, 0, tzinfo=UTC))
        assert window.current_start == datetime(2024, 6, 10, 1, 0, tzinfo=UTC)
        assert window.current_end == datetime(2024, 6, 16, 23, 0, tzinfo=UTC)
        assert window.next_start == datetime(2024, 6, 17, 1, 0, tzinfo=UTC)
        assert window.next_end == datetime(2024, 6, 23, 23, 0, tzinfo=UTC)
        assert window.is_live is True

    def test_monday_before_start_hour_is_not_live(self):
        window = compute_window(datetime(2024, 6, 10, 0, 30, tzinfo=UTC))
        assert window.current_start == datetime(2024, 6, 10, 1, 0, tzinfo=UTC)
        assert window.is_live is False

    def test_sunday_after_close_is_not_live(self):
        window = compute_window(datetime(2024, 6, 16, 23, 30, tzinfo=UTC))
        assert window.current_end == datetime(2024, 6, 16, 23, 0, tzinfo=UTC)
        assert window.next_start == datetime(2024, 6, 17, 1, 0, tzinfo=UTC)
        assert window.is_live is False

    def test_boundaries_are_inclusive(self):
        assert compute_window(datetime(2024, 6, 10, 1, 0, tzinfo=UTC)).is_live is True
        assert compute_window(datetime(2024, 6, 16, 23, 0, tzinfo=UTC)).is_live is True

    def test_naive_reference_is_taken_as_utc(self):
        naive = compute_window(datetime(2024, 6, 12, 12, 0))
        aware = compute_window(datetime(2024, 6, 12, 12, 0, tzinfo=UTC))
        assert naive == aware

    def test_caller_offset_does_not_change_boundaries(self):
        # 00:30 Monday in UTC+2 is still 22:30 Sunday in UTC
        reference = datetime(2024, 6, 17, 0, 30, tzinfo=timezone(timedelta(hours=2)))
        window = compute_window(reference)
        assert window.current_start == datetime(2024, 6, 10, 1, 0, tzinfo=UTC)
        assert window.is_live is True

    def test_next_window_is_one_week_later(self):
        window = compute_window(datetime(2024, 2, 28, 9, 0, tzinfo=UTC))
        assert window.next_start - window.current_start == timedelta(days=7)
        assert window.current_end - window.current_start == timedelta(days=6, hours=22)

    def test_same_instant_gives_same_window(self):
        reference = datetime(2024, 6, 12, 12, 0, tzinfo=UTC)
        assert compute_window(reference) == compute_window(reference)

    def test_custom_schedule(self):
        schedule = WindowSchedule(start_weekday=4, start_hour=18, duration=timedelta(hours=48))
        live = compute_window(datetime(2024, 6, 15, 10, 0, tzinfo=UTC), schedule)
        assert live.current_start == datetime(2024, 6, 14, 18, 0, tzinfo=UTC)
        assert live.current_end == datetime(2024, 6, 16, 18, 0, tzinfo=UTC)
        assert live.is_live is True

        idle = compute_window(datetime(2024, 6, 13, 10, 0, tzinfo=UTC), schedule)
        assert idle.current_start == datetime(2024, 6, 7, 18, 0, tzinfo=UTC)
        assert idle.next_start == datetime(2024, 6, 14, 18, 0, tzinfo=UTC)
        assert idle.is_live is False

    def test_as_dict_uses_utc_designator(self):
        payload = compute_window(datetime(2024, 6, 12, 12, 0, tzinfo=UTC)).as_dict()
        assert payload["current_start"] == "2024-06-10T01:00:00Z"
        assert payload["is_live"] is True


class TestUpcomingWindow:
    def test_running_window_yields_next_week(self):
        start, end = upcoming_window(datetime(2024, 6, 12, 12, 0, tzinfo=UTC))
        assert start == datetime(2024, 6, 17, 1, 0, tzinfo=UTC)
        assert end == datetime(2024, 6, 23, 23, 0, tzinfo=UTC)

    def test_window_not_started_yet_is_used(self):
        start, _ = upcoming_window(datetime(2024, 6, 10, 0, 30, tzinfo=UTC))
        assert start == datetime(2024, 6, 10, 1, 0, tzinfo=UTC)


class TestWindowSchedule:
    @pytest.mark.parametrize(
        "kwargs",
        [
            {"start_weekday": 7},
            {"start_hour": 24},
            {"duration": timedelta(days=7)},
            {"duration": timedelta(0)},
        ],
    )
    def test_invalid_schedule_rejected(self, kwargs):
        with pytest.raises(ValueError):
            WindowSchedule(**kwargs)
