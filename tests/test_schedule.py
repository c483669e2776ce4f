"""Tests for frequency parsing and next-run computation."""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone

import pytest

from metricshub.core.errors import ScheduleConfigInvalid
from metricshub.scheduling.schedule import (
    ExecutionWindow,
    Schedule,
    compute_next_run,
    parse_frequency,
)

UTC = timezone.utc


def at(*args: int) -> datetime:
    return datetime(*args, tzinfo=UTC)


# ─────────────────────────────────────────────────────────────────────────────
# parse_frequency
# ─────────────────────────────────────────────────────────────────────────────

class TestParseFrequency:
    @pytest.mark.parametrize(
        "frequency, seconds",
        [
            ("24h", 86400),
            ("daily", 86400),
            ("hourly", 3600),
            ("weekly", 604800),
            ("30m", 1800),
            ("3d", 259200),
            ("900", 900),
            (7200, 7200),
        ],
    )
    def test_interval_forms(self, frequency, seconds):
        assert parse_frequency(frequency) == (seconds, None)

    def test_missing_frequency_defaults_to_daily(self):
        assert parse_frequency(None) == (86400, None)
        assert parse_frequency("") == (86400, None)

    def test_cron_expression(self):
        assert parse_frequency("0 6 * * 1-5") == (None, "0 6 * * 1-5")

    def test_invalid_cron_rejected(self):
        with pytest.raises(ScheduleConfigInvalid):
            parse_frequency("99 * * * *")

    def test_garbage_rejected(self):
        with pytest.raises(ScheduleConfigInvalid):
            parse_frequency("every now and then")

    def test_below_minimum_rejected(self):
        with pytest.raises(ScheduleConfigInvalid):
            parse_frequency("10s")


class TestScheduleValidation:
    def test_unknown_timezone(self):
        with pytest.raises(ScheduleConfigInvalid, match="timezone"):
            Schedule.from_frequency("24h", "Mars/Olympus_Mons")

    def test_inverted_date_window(self):
        window = ExecutionWindow(start_date=date(2026, 5, 1), end_date=date(2026, 4, 1))
        with pytest.raises(ScheduleConfigInvalid):
            Schedule.from_frequency("24h", "UTC", window)

    def test_empty_time_window(self):
        window = ExecutionWindow(start_time=time(9), end_time=time(9))
        with pytest.raises(ScheduleConfigInvalid):
            Schedule.from_frequency("1h", "UTC", window)


# ─────────────────────────────────────────────────────────────────────────────
# compute_next_run
# ─────────────────────────────────────────────────────────────────────────────

class TestIntervalSchedules:
    def test_first_slot_is_one_interval_out(self):
        s = Schedule.from_frequency("24h")
        assert compute_next_run(s, at(2024, 1, 1, 12)) == at(2024, 1, 2, 12)

    def test_advances_from_anchor(self):
        s = Schedule.from_frequency("24h")
        nxt = compute_next_run(s, at(2024, 1, 1, 0, 0, 1), anchor=at(2024, 1, 1))
        assert nxt == at(2024, 1, 2)

    def test_stalled_slots_are_skipped(self):
        s = Schedule.from_frequency("1h")
        # Three and a half hours late: one slot now, the missed ones are dropped
        nxt = compute_next_run(s, at(2024, 1, 1, 3, 30), anchor=at(2024, 1, 1))
        assert nxt == at(2024, 1, 1, 4)

    def test_result_strictly_after_now(self):
        s = Schedule.from_frequency("1h")
        nxt = compute_next_run(s, at(2024, 1, 1, 1), anchor=at(2024, 1, 1))
        assert nxt == at(2024, 1, 1, 2)

    def test_naive_now_rejected(self):
        with pytest.raises(ValueError):
            compute_next_run(Schedule.from_frequency("1h"), datetime(2024, 1, 1))


class TestCronSchedules:
    def test_weekday_morning(self):
        s = Schedule.from_frequency("0 6 * * 1-5")
        # Saturday → next Monday 06:00
        assert compute_next_run(s, at(2024, 1, 6, 12)) == at(2024, 1, 8, 6)

    def test_numeric_weekdays_count_from_sunday(self):
        s = Schedule.from_frequency("30 8 * * 0")
        # Monday 2024-01-01 → Sunday 2024-01-07
        assert compute_next_run(s, at(2024, 1, 1)) == at(2024, 1, 7, 8, 30)

    def test_evaluated_in_timezone(self):
        s = Schedule.from_frequency("0 9 * * *", "America/New_York")
        # 09:00 EST is 14:00 UTC in January
        assert compute_next_run(s, at(2024, 1, 10, 0)) == at(2024, 1, 10, 14)

    def test_fire_time_equal_to_now_is_excluded(self):
        s = Schedule.from_frequency("0 * * * *")
        assert compute_next_run(s, at(2024, 1, 1, 5)) == at(2024, 1, 1, 6)


class TestWindows:
    def test_interval_moves_to_window_opening(self):
        window = ExecutionWindow(start_time=time(8), end_time=time(18))
        s = Schedule.from_frequency("4h", "UTC", window)
        # 17:00 + 4h = 21:00 is outside, so the next day's 08:00
        nxt = compute_next_run(s, at(2024, 1, 1, 17), anchor=at(2024, 1, 1, 17))
        assert nxt == at(2024, 1, 2, 8)

    def test_window_wrapping_midnight(self):
        window = ExecutionWindow(start_time=time(22), end_time=time(2))
        s = Schedule.from_frequency("1h", "UTC", window)
        nxt = compute_next_run(s, at(2024, 1, 1, 23, 30), anchor=at(2024, 1, 1, 23))
        assert nxt == at(2024, 1, 2, 0)

    def test_before_start_date(self):
        window = ExecutionWindow(start_date=date(2024, 2, 1))
        s = Schedule.from_frequency("24h", "UTC", window)
        assert compute_next_run(s, at(2024, 1, 1)) == at(2024, 2, 1)

    def test_after_end_date_returns_none(self):
        window = ExecutionWindow(end_date=date(2024, 1, 1))
        s = Schedule.from_frequency("24h", "UTC", window)
        assert compute_next_run(s, at(2024, 1, 1, 12)) is None

    def test_cron_inside_window(self):
        window = ExecutionWindow(start_time=time(9), end_time=time(12))
        s = Schedule.from_frequency("0 * * * *", "UTC", window)
        nxt = compute_next_run(s, at(2024, 1, 1, 12, 30))
        assert nxt == at(2024, 1, 2, 9)
        assert nxt - at(2024, 1, 1, 12, 30) < timedelta(days=1)
