# Copyright 2024 Wolfgang Hoschek AT mac DOT com
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
"""Utility that snaps datetimes to calendar period boundaries.

Retention sub-intervals such as "one per day" or "one per 2 weeks" are delimited by these boundaries. Anchors fix where a
period starts (the weekday of a week, the hour of a day, etc). Multi-unit periods are aligned to a fixed epoch rather than to
the datetime being rounded, so that every datetime maps to the same sub-interval no matter which snapshot is looked at first.
"""

from __future__ import annotations
import argparse
import calendar
import dataclasses
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Final

# constants:
PERIOD_UNITS: Final[dict[str, timedelta | None]] = {  # None means calendar based, i.e. not of fixed length
    "yearly": None,
    "monthly": None,
    "weekly": timedelta(weeks=1),
    "daily": timedelta(days=1),
    "hourly": timedelta(hours=1),
    "minutely": timedelta(minutes=1),
    "secondly": timedelta(seconds=1),
}
_PERIOD_REGEX: Final[re.Pattern[str]] = re.compile(rf"([1-9][0-9]*)?\s*({'|'.join(PERIOD_UNITS.keys())})")
_EPOCH_SUNDAY: Final[datetime] = datetime(2000, 1, 2)  # a Sunday, midnight


@dataclass(frozen=True)
class PeriodAnchors:
    """Anchor offsets that define where calendar periods start."""

    weekly_weekday: int = field(default=0, metadata={"min": 0, "max": 6, "help": "0=Sunday, 1=Monday, ..., 6=Saturday"})
    daily_hour: int = field(default=0, metadata={"min": 0, "max": 23, "help": "The hour at which a day starts"})
    monthly_monthday: int = field(default=1, metadata={"min": 1, "max": 31, "help": "The day at which a month starts"})
    yearly_month: int = field(default=1, metadata={"min": 1, "max": 12, "help": "The month at which a year starts"})

    def __post_init__(self) -> None:
        for f in dataclasses.fields(self):
            value: int = getattr(self, f.name)
            if not f.metadata["min"] <= value <= f.metadata["max"]:
                raise ValueError(f"Invalid {f.name}: {value} must be in [{f.metadata['min']}, {f.metadata['max']}]")

    @staticmethod
    def parse(args: argparse.Namespace) -> PeriodAnchors:
        """Creates a ``PeriodAnchors`` instance from parsed CLI arguments."""
        kwargs: dict[str, int] = {f.name: getattr(args, f.name) for f in dataclasses.fields(PeriodAnchors)}
        return PeriodAnchors(**kwargs)


def parse_period(period: str) -> tuple[int, str]:
    """Example: Converts '2hourly' to (2, 'hourly') and 'weekly' to (1, 'weekly'); raises ValueError on anything else."""
    match = _PERIOD_REGEX.fullmatch(period.strip())
    if not match:
        raise ValueError(f"Invalid period: '{period}'. Expected e.g. daily, 2hourly, weekly or monthly")
    return int(match.group(1) or 1), match.group(2)


def round_datetime_up_to_duration_multiple(
    dt: datetime, duration_amount: int, duration_unit: str, anchors: PeriodAnchors
) -> datetime:
    """Returns the earliest period boundary that is greater than or equal to ``dt``, in the same timezone as ``dt``.

    Fixed length units are multiples of the unit after a Sunday 2000-01-02 epoch shifted by the anchors; months and years are
    counted from year zero, so that '3monthly' periods start in January, April, July and October.
    Examples with default anchors:
    14:00:00, 1 hourly --> 14:00:00
    14:05:01, 1 hourly --> 15:00:00
    15:05:01, 2 hourly --> 16:00:00
    23:55:01, 2 hourly --> 00:00:00 on the next day
    """
    if duration_amount <= 0:
        raise ValueError(f"Invalid period amount: {duration_amount}")
    if duration_unit not in PERIOD_UNITS:
        raise ValueError(f"Unsupported duration unit: {duration_unit}")

    unit_length: timedelta | None = PERIOD_UNITS[duration_unit]
    if unit_length is not None:
        epoch: datetime = _EPOCH_SUNDAY.replace(tzinfo=dt.tzinfo)
        if duration_unit == "weekly":
            epoch += timedelta(days=anchors.weekly_weekday, hours=anchors.daily_hour)
        elif duration_unit == "daily":
            epoch += timedelta(hours=anchors.daily_hour)
        period_micros: int = _micros(unit_length) * duration_amount
        remainder: int = _micros(dt - epoch) % period_micros
        return dt if remainder == 0 else dt + timedelta(microseconds=period_micros - remainder)

    if duration_unit == "monthly":

        def month_start(month_index: int) -> datetime:
            year, month = divmod(month_index, 12)
            day: int = min(anchors.monthly_monthday, calendar.monthrange(year, month + 1)[1])
            return datetime(year, month + 1, day, anchors.daily_hour, tzinfo=dt.tzinfo)

        index: int = dt.year * 12 + dt.month - 1
        if month_start(index) < dt:
            index += 1
        index += -index % duration_amount
        return month_start(index)

    # yearly
    def year_start(year: int) -> datetime:
        return datetime(year, anchors.yearly_month, 1, anchors.daily_hour, tzinfo=dt.tzinfo)

    year: int = dt.year
    if year_start(year) < dt:
        year += 1
    year += -year % duration_amount
    return year_start(year)


def next_period_boundary(dt: datetime, duration_amount: int, duration_unit: str, anchors: PeriodAnchors) -> datetime:
    """Returns the end of the period that contains ``dt``, i.e. the earliest boundary strictly greater than ``dt``.

    Periods are half-open, so a datetime exactly on a boundary belongs to the period that starts there.
    """
    return round_datetime_up_to_duration_multiple(dt + timedelta(microseconds=1), duration_amount, duration_unit, anchors)


def _micros(delta: timedelta) -> int:
    return (delta.days * 86400 + delta.seconds) * 1_000_000 + delta.microseconds
