# Copyright 2026 The siazfs Authors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
#
"""Utility that snaps datetimes to the boundaries at which periodic snapshots become due.

The timing of a template specifies offsets within yearly, monthly and smaller cycles. These values are used by
``round_datetime_up_to_period_boundary`` to snap datetimes to the next boundary. Keeping the timing in a dataclass whose
field metadata carries the legal ranges simplifies argument handling and makes the rounding logic reusable.
"""

from __future__ import annotations
import argparse
import calendar
import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from siazfs_main.snapshots import PeriodKind
from siazfs_main.utils import ValidationError

# constants:
METADATA_MONTH = {"min": 1, "max": 12, "help": "The month within a year"}
METADATA_WEEKDAY = {"min": 0, "max": 6, "help": "The weekday within a week: 0=Sunday, 1=Monday, ..., 6=Saturday"}
METADATA_DAY = {"min": 1, "max": 31, "help": "The day within a month, clamped to the last day of shorter months"}
METADATA_HOUR = {"min": 0, "max": 23, "help": "The hour within a day"}
METADATA_MINUTE = {"min": 0, "max": 59, "help": "The minute within an hour"}


@dataclass(frozen=True)
class SnapshotTiming:
    """Offsets that define when each periodic snapshot becomes due."""

    # frequent: due at minutes 0, N, 2N, ... of every hour, where N = frequent_period
    frequent_period: int = field(default=15, metadata={"min": 1, "max": 60, "help": "The minutes between frequent snapshots"})

    # hourly: due once per hour at hourly_minute
    hourly_minute: int = field(default=0, metadata=METADATA_MINUTE)  # 0 <= x <= 59

    # daily: due once per day at daily_hour:daily_minute
    daily_hour: int = field(default=0, metadata=METADATA_HOUR)  # 0 <= x <= 23
    daily_minute: int = field(default=0, metadata=METADATA_MINUTE)  # 0 <= x <= 59

    # weekly: due once per week on weekly_weekday at weekly_hour:weekly_minute
    weekly_weekday: int = field(default=1, metadata=METADATA_WEEKDAY)  # 0 <= x <= 6
    weekly_hour: int = field(default=0, metadata=METADATA_HOUR)  # 0 <= x <= 23
    weekly_minute: int = field(default=0, metadata=METADATA_MINUTE)  # 0 <= x <= 59

    # monthly: due once per month on monthly_monthday at monthly_hour:monthly_minute
    monthly_monthday: int = field(default=1, metadata=METADATA_DAY)  # 1 <= x <= 31
    monthly_hour: int = field(default=0, metadata=METADATA_HOUR)  # 0 <= x <= 23
    monthly_minute: int = field(default=0, metadata=METADATA_MINUTE)  # 0 <= x <= 59

    # yearly: due once per year on yearly_monthday of yearly_month at yearly_hour:yearly_minute
    yearly_month: int = field(default=1, metadata=METADATA_MONTH)  # 1 <= x <= 12
    yearly_monthday: int = field(default=1, metadata=METADATA_DAY)  # 1 <= x <= 31
    yearly_hour: int = field(default=0, metadata=METADATA_HOUR)  # 0 <= x <= 23
    yearly_minute: int = field(default=0, metadata=METADATA_MINUTE)  # 0 <= x <= 59

    # False means that all boundaries are computed in UTC
    use_local_time: bool = field(default=True, metadata={"help": "Compute boundaries in the local timezone, not in UTC"})

    def __post_init__(self) -> None:
        for f in dataclasses.fields(self):
            value = getattr(self, f.name)
            if "min" in f.metadata and not f.metadata["min"] <= value <= f.metadata["max"]:
                raise ValidationError(f"{f.name} must be in [{f.metadata['min']}, {f.metadata['max']}] but got: {value}")

    @staticmethod
    def parse(args: argparse.Namespace) -> SnapshotTiming:
        """Creates a ``SnapshotTiming`` instance from parsed CLI arguments."""
        kwargs: dict[str, int | bool] = {f.name: getattr(args, f.name) for f in dataclasses.fields(SnapshotTiming)}
        return SnapshotTiming(**kwargs)  # type: ignore[arg-type]


def round_datetime_up_to_period_boundary(dt: datetime, period: PeriodKind, timing: SnapshotTiming) -> datetime:
    """Returns the smallest boundary of the given period that is greater than or equal to dt, computed on the wall-clock
    fields of dt and returned in the same timezone as dt, or as a naive datetime if dt is naive.

    If dt is already exactly on a boundary it is returned unchanged.
    Examples with default timing:
    frequent 14:00:00 --> 14:00:00
    frequent 14:05:01 --> 14:15:00
    frequent 14:51:00 with frequent_period=25 --> 15:00:00
    hourly   14:05:01 --> 15:00:00
    hourly   23:55:01 --> 00:00:00 on the next day
    daily    2024-01-31 00:00:01 --> 2024-02-01 00:00:00
    monthly  2024-01-31 12:00:00 with monthly_monthday=31 --> 2024-02-29 00:00:00
    """

    def with_time(base: datetime, hour: int, minute: int) -> datetime:
        return base.replace(hour=hour, minute=minute, second=0, microsecond=0)

    def clamped(year: int, month: int, monthday: int, hour: int, minute: int) -> datetime:
        last_day: int = calendar.monthrange(year, month)[1]  # last valid day of the month
        day: int = min(monthday, last_day)
        return dt.replace(year=year, month=month, day=day, hour=hour, minute=minute, second=0, microsecond=0)

    anchor: datetime
    if period is PeriodKind.FREQUENT:
        hour_start: datetime = dt.replace(minute=0, second=0, microsecond=0)
        step_micros: int = timing.frequent_period * 60 * 1_000_000
        delta: timedelta = dt - hour_start
        delta_micros: int = (delta.seconds * 1_000_000) + delta.microseconds
        remainder: int = delta_micros % step_micros
        if remainder == 0:
            return dt
        anchor = dt + timedelta(microseconds=step_micros - remainder)
        next_hour: datetime = hour_start + timedelta(hours=1)
        return min(anchor, next_hour)  # boundaries restart at minute 0 of every hour

    elif period is PeriodKind.HOURLY:
        anchor = dt.replace(minute=timing.hourly_minute, second=0, microsecond=0)
        return anchor if anchor >= dt else anchor + timedelta(hours=1)

    elif period is PeriodKind.DAILY:
        anchor = with_time(dt, timing.daily_hour, timing.daily_minute)
        return anchor if anchor >= dt else anchor + timedelta(days=1)

    elif period is PeriodKind.WEEKLY:
        anchor = with_time(dt, timing.weekly_hour, timing.weekly_minute)
        # Convert cron weekday (0=Sunday, 1=Monday, ..., 6=Saturday) to Python's weekday (0=Monday, ..., 6=Sunday)
        target_py_weekday: int = (timing.weekly_weekday - 1) % 7
        anchor = anchor + timedelta(days=(target_py_weekday - anchor.weekday()) % 7)
        return anchor if anchor >= dt else anchor + timedelta(weeks=1)

    elif period is PeriodKind.MONTHLY:
        anchor = clamped(dt.year, dt.month, timing.monthly_monthday, timing.monthly_hour, timing.monthly_minute)
        if anchor < dt:
            year, month = (dt.year + 1, 1) if dt.month == 12 else (dt.year, dt.month + 1)
            anchor = clamped(year, month, timing.monthly_monthday, timing.monthly_hour, timing.monthly_minute)
        return anchor

    elif period is PeriodKind.YEARLY:
        t = timing
        anchor = clamped(dt.year, t.yearly_month, t.yearly_monthday, t.yearly_hour, t.yearly_minute)
        if anchor < dt:
            anchor = clamped(dt.year + 1, t.yearly_month, t.yearly_monthday, t.yearly_hour, t.yearly_minute)
        return anchor

    else:
        raise ValueError(f"Snapshots of period {period.value} have no schedule")


def round_instant_up_to_period_boundary(dt: datetime, period: PeriodKind, timing: SnapshotTiming) -> datetime:
    """Returns the earliest boundary instant of the given period that is at or after the timezone-aware instant dt.

    With UTC timing all rounding happens in UTC. With local timing, periods of a day or longer are rounded on the naive
    local wall clock, and the resulting wall-clock time is mapped back to an instant with the UTC offset in force on the
    boundary date, so a daylight saving change neither repeats nor skips a calendar boundary. Frequent and hourly periods
    are rounded at the offset in force at dt itself, so the hour that repeats when daylight saving ends gets boundaries of
    its own.
    """
    assert dt.tzinfo is not None, "naive datetimes are not supported"
    if not timing.use_local_time:
        return round_datetime_up_to_period_boundary(dt.astimezone(timezone.utc), period, timing)
    local_dt: datetime = dt.astimezone()
    if period in (PeriodKind.FREQUENT, PeriodKind.HOURLY):
        return round_datetime_up_to_period_boundary(local_dt, period, timing)
    wall_clock: datetime = round_datetime_up_to_period_boundary(local_dt.replace(tzinfo=None), period, timing)
    return wall_clock.astimezone()  # applies the local daylight saving rules of the boundary date
