"""Normalized schedule value object and next-run computation.

A schedule is either a fixed interval or a five-field cron expression,
evaluated in an IANA timezone and optionally restricted to an execution
window (date range and/or time-of-day bounds).

``compute_next_run`` is pure: it touches neither the queue nor the database.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from apscheduler.triggers.cron import CronTrigger

from metricshub.core.errors import ScheduleConfigInvalid

DEFAULT_FREQUENCY = "24h"
MIN_INTERVAL_SECONDS = 60
_MAX_WINDOW_STEPS = 1000

# Named frequencies offered by the catalog
FREQUENCY_SECONDS: dict[str, int] = {
    "hourly": 3600,
    "1h": 3600,
    "2h": 7200,
    "4h": 14400,
    "6h": 21600,
    "8h": 28800,
    "12h": 43200,
    "24h": 86400,
    "daily": 86400,
    "weekly": 604800,
    "monthly": 2592000,
}

_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400, "w": 604800}
_DURATION_RE = re.compile(r"^(\d+)\s*([smhdw])$")


_DOW_NAMES = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")


def _normalize_dow(text: str) -> str:
    """Rewrite a numeric crontab weekday field (0/7 = Sunday) as weekday names.

    APScheduler numbers weekdays from Monday, so "1-5" must not reach it as-is.
    """
    if not any(c.isdigit() for c in text) or any(c.isalpha() for c in text):
        return text
    days: set[int] = set()
    for part in text.split(","):
        body, _, step_text = part.partition("/")
        step = int(step_text) if step_text else 1
        if body == "*":
            lo, hi = 0, 6
        elif "-" in body:
            lo_text, hi_text = body.split("-", 1)
            lo, hi = int(lo_text), int(hi_text)
        else:
            lo = int(body)
            hi = 6 if step_text else lo
        if not (0 <= lo <= 7 and 0 <= hi <= 7 and lo <= hi and step > 0):
            raise ValueError(f"Invalid day-of-week field '{text}'")
        days.update(d % 7 for d in range(lo, hi + 1, step))
    return ",".join(_DOW_NAMES[d] for d in sorted(days))


def cron_trigger(expr: str, tz: Any = "UTC") -> CronTrigger:
    """CronTrigger for a standard five-field crontab line."""
    fields = expr.split()
    if len(fields) != 5:
        raise ValueError(f"Wrong number of fields; got {len(fields)}, expected 5")
    minute, hour, day, month, dow = fields
    return CronTrigger(
        minute=minute,
        hour=hour,
        day=day,
        month=month,
        day_of_week=_normalize_dow(dow),
        timezone=tz,
    )


def validate_cron_expression(expr: str, tz: str = "UTC") -> str | None:
    """Return None if valid, error message if invalid."""
    try:
        cron_trigger(expr, tz)
        return None
    except (ValueError, TypeError) as e:
        return str(e)


def _zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ScheduleConfigInvalid(f"Unknown timezone '{name}'") from e


def parse_frequency(frequency: str | int | None) -> tuple[int | None, str | None]:
    """Resolve a frequency to ``(interval_seconds, cron_expression)``.

    Accepts named frequencies ("24h", "weekly"), durations ("30m", "3d"),
    plain seconds, or a five-field cron expression.
    """
    if frequency is None or frequency == "":
        frequency = DEFAULT_FREQUENCY

    if isinstance(frequency, int):
        seconds = frequency
    else:
        text = frequency.strip().lower()
        if len(text.split()) == 5:
            error = validate_cron_expression(frequency.strip())
            if error:
                raise ScheduleConfigInvalid(f"Invalid cron expression '{frequency}': {error}")
            return None, frequency.strip()
        if text in FREQUENCY_SECONDS:
            seconds = FREQUENCY_SECONDS[text]
        elif text.isdigit():
            seconds = int(text)
        else:
            match = _DURATION_RE.match(text)
            if not match:
                raise ScheduleConfigInvalid(f"Unrecognized frequency '{frequency}'")
            seconds = int(match.group(1)) * _UNIT_SECONDS[match.group(2)]

    if seconds < MIN_INTERVAL_SECONDS:
        raise ScheduleConfigInvalid(
            f"Frequency must be at least {MIN_INTERVAL_SECONDS}s, got {seconds}s"
        )
    return seconds, None


# ─────────────────────────────────────────────────────────────────────────────
# Value objects
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ExecutionWindow:
    """Dates are inclusive. Time-of-day bounds are [start, end); start > end wraps midnight."""

    start_date: date | None = None
    end_date: date | None = None
    start_time: time | None = None
    end_time: time | None = None

    @property
    def has_time_bounds(self) -> bool:
        return self.start_time is not None or self.end_time is not None

    def validate(self) -> None:
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ScheduleConfigInvalid("Window start_date is after end_date")
        if self.start_time is not None and self.start_time == self.end_time:
            raise ScheduleConfigInvalid("Window start and end times are identical")

    def contains_time(self, t: time) -> bool:
        start = self.start_time or time.min
        end = self.end_time
        if end is None:
            return t >= start
        if start <= end:
            return start <= t < end
        return t >= start or t < end

    def earliest_allowed(self, moment: datetime, tz: ZoneInfo) -> datetime | None:
        """Earliest instant at or after *moment* inside the window, or None once expired."""
        local = moment.astimezone(tz)
        if self.start_date and local.date() < self.start_date:
            local = datetime.combine(self.start_date, time.min, tzinfo=tz)

        if self.has_time_bounds and not self.contains_time(local.time()):
            opening = self.start_time or time.min
            day = local.date()
            if local.time() >= opening:
                day += timedelta(days=1)
            local = datetime.combine(day, opening, tzinfo=tz)

        if self.end_date and local.date() > self.end_date:
            return None
        return local.astimezone(timezone.utc)


@dataclass(frozen=True)
class Schedule:
    """Interval or cron schedule evaluated in ``timezone``."""

    timezone: str = "UTC"
    interval_seconds: int | None = None
    cron_expression: str | None = None
    window: ExecutionWindow = field(default_factory=ExecutionWindow)

    @classmethod
    def from_frequency(
        cls,
        frequency: str | int | None,
        timezone: str = "UTC",
        window: ExecutionWindow | None = None,
    ) -> Schedule:
        """Build and validate a schedule. Raises ScheduleConfigInvalid."""
        interval, cron = parse_frequency(frequency)
        schedule = cls(
            timezone=timezone or "UTC",
            interval_seconds=interval,
            cron_expression=cron,
            window=window or ExecutionWindow(),
        )
        schedule.validate()
        return schedule

    @property
    def tz(self) -> ZoneInfo:
        return _zone(self.timezone)

    def validate(self) -> None:
        _zone(self.timezone)
        if (self.interval_seconds is None) == (self.cron_expression is None):
            raise ScheduleConfigInvalid("Schedule needs exactly one of interval or cron expression")
        if self.interval_seconds is not None and self.interval_seconds < MIN_INTERVAL_SECONDS:
            raise ScheduleConfigInvalid(
                f"Frequency must be at least {MIN_INTERVAL_SECONDS}s, got {self.interval_seconds}s"
            )
        if self.cron_expression is not None:
            error = validate_cron_expression(self.cron_expression, tz=self.timezone)
            if error:
                raise ScheduleConfigInvalid(
                    f"Invalid cron expression '{self.cron_expression}': {error}"
                )
        self.window.validate()


# ─────────────────────────────────────────────────────────────────────────────
# Next-run computation
# ─────────────────────────────────────────────────────────────────────────────

def _cron_fire_at_or_after(schedule: Schedule, moment: datetime) -> datetime | None:
    trigger = cron_trigger(schedule.cron_expression, schedule.tz)
    # The trigger rounds up to whole seconds, so back off by 1µs to include `moment`
    fire = trigger.get_next_fire_time(None, moment - timedelta(microseconds=1))
    return fire.astimezone(timezone.utc) if fire else None


def _next_slot(schedule: Schedule, now: datetime, anchor: datetime | None) -> datetime | None:
    if schedule.cron_expression is not None:
        # Cron slots fall on whole seconds; the first candidate is the next whole second
        return _cron_fire_at_or_after(schedule, now.replace(microsecond=0) + timedelta(seconds=1))

    interval = timedelta(seconds=schedule.interval_seconds)
    if anchor is None:
        return now + interval
    # Smallest anchor + k*interval (k >= 1) strictly after now; stalled slots are skipped
    k = max(1, (now - anchor) // interval + 1)
    return anchor + k * interval


def compute_next_run(
    schedule: Schedule,
    now: datetime,
    anchor: datetime | None = None,
) -> datetime | None:
    """Return the next run instant strictly after *now*, in UTC.

    Args:
        schedule: Validated schedule.
        now: Current instant (timezone-aware).
        anchor: The slot just consumed (the previous ``next_run_at``).
            Interval schedules advance from it in whole intervals; when
            absent the first slot is ``now + interval``.

    Returns:
        The next slot, or None when the window has ended.
    """
    if now.tzinfo is None:
        raise ValueError("compute_next_run requires a timezone-aware 'now'")
    now = now.astimezone(timezone.utc)
    if anchor is not None:
        anchor = anchor.astimezone(timezone.utc)

    tz = schedule.tz
    candidate = _next_slot(schedule, now, anchor)
    for _ in range(_MAX_WINDOW_STEPS):
        if candidate is None:
            return None
        allowed = schedule.window.earliest_allowed(candidate, tz)
        if allowed is None or allowed == candidate:
            return allowed
        if schedule.cron_expression is None:
            # Interval schedules restart at the window opening
            return allowed
        candidate = _cron_fire_at_or_after(schedule, allowed)
    return None
