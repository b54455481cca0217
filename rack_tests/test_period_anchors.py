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
"""Unit tests helpers that align times to fixed period anchors."""

from __future__ import (
    annotations,
)
import argparse
import unittest
from datetime import (
    datetime,
    timedelta,
    timezone,
)
from zoneinfo import (
    ZoneInfo,
)

from rack_main.period_anchors import (
    PeriodAnchors,
    next_period_boundary,
    parse_period,
    round_datetime_up_to_duration_multiple,
)


#############################################################################
def suite() -> unittest.TestSuite:
    test_cases = [
        TestRoundDatetimeUpToDurationMultiple,
        TestNextPeriodBoundary,
        TestPeriodAnchors,
        TestParsePeriod,
    ]
    return unittest.TestSuite(unittest.TestLoader().loadTestsFromTestCase(test_case) for test_case in test_cases)


def round_up(dt: datetime, amount: int, unit: str, anchors: PeriodAnchors | None = None) -> datetime:
    anchors = PeriodAnchors() if anchors is None else anchors
    return round_datetime_up_to_duration_multiple(dt, amount, unit, anchors)


#############################################################################
class TestRoundDatetimeUpToDurationMultiple(unittest.TestCase):

    def setUp(self) -> None:
        # Use a fixed timezone (e.g. Eastern Standard Time, UTC-5) for all tests.
        self.tz = timezone(timedelta(hours=-5))

    def test_hourly_examples(self) -> None:
        def make_dt(hour: int, minute: int, second: int) -> datetime:
            return datetime(2024, 11, 29, hour, minute, second, 0, tzinfo=self.tz)

        self.assertEqual(make_dt(14, 0, 0), round_up(make_dt(14, 0, 0), 1, "hourly"))
        self.assertEqual(make_dt(15, 0, 0), round_up(make_dt(14, 5, 1), 1, "hourly"))
        self.assertEqual(make_dt(16, 0, 0), round_up(make_dt(15, 5, 1), 1, "hourly"))
        self.assertEqual(make_dt(16, 0, 0), round_up(make_dt(14, 5, 1), 2, "hourly"))
        self.assertEqual(make_dt(16, 0, 0), round_up(make_dt(15, 0, 0), 2, "hourly"))
        self.assertEqual(make_dt(16, 0, 0), round_up(make_dt(16, 0, 0), 2, "hourly"))
        self.assertEqual(make_dt(18, 0, 0), round_up(make_dt(16, 5, 1), 2, "hourly"))
        self.assertEqual(datetime(2024, 11, 30, tzinfo=self.tz), round_up(make_dt(23, 55, 1), 1, "hourly"))
        self.assertEqual(datetime(2024, 11, 30, tzinfo=self.tz), round_up(make_dt(23, 55, 1), 2, "hourly"))

    def test_minutely_and_secondly(self) -> None:
        dt = datetime(2024, 1, 1, 10, 7, 30, 5, tzinfo=self.tz)
        self.assertEqual(datetime(2024, 1, 1, 10, 8, tzinfo=self.tz), round_up(dt, 1, "minutely"))
        self.assertEqual(datetime(2024, 1, 1, 10, 15, tzinfo=self.tz), round_up(dt, 15, "minutely"))
        self.assertEqual(datetime(2024, 1, 1, 10, 7, 31, tzinfo=self.tz), round_up(dt, 1, "secondly"))

    def test_daily(self) -> None:
        dt = datetime(2024, 1, 10, 12, tzinfo=self.tz)
        self.assertEqual(datetime(2024, 1, 11, tzinfo=self.tz), round_up(dt, 1, "daily"))
        self.assertEqual(datetime(2024, 1, 11, 6, tzinfo=self.tz), round_up(dt, 1, "daily", PeriodAnchors(daily_hour=6)))
        early = datetime(2024, 1, 10, 5, tzinfo=self.tz)
        self.assertEqual(datetime(2024, 1, 10, 6, tzinfo=self.tz), round_up(early, 1, "daily", PeriodAnchors(daily_hour=6)))

    def test_weekly(self) -> None:
        wednesday = datetime(2024, 1, 10, 12, tzinfo=self.tz)
        self.assertEqual(datetime(2024, 1, 14, tzinfo=self.tz), round_up(wednesday, 1, "weekly"))  # Sunday
        monday_anchor = PeriodAnchors(weekly_weekday=1)
        self.assertEqual(datetime(2024, 1, 15, tzinfo=self.tz), round_up(wednesday, 1, "weekly", monday_anchor))

    def test_multi_week_periods_are_aligned_to_a_fixed_epoch(self) -> None:
        results = {round_up(datetime(2024, 1, 1) + timedelta(days=i), 2, "weekly") for i in range(15)}
        self.assertEqual(2, len(results))
        for result in results:
            self.assertEqual(6, result.weekday())  # Sunday

    def test_monthly(self) -> None:
        self.assertEqual(datetime(2024, 2, 1, tzinfo=self.tz), round_up(datetime(2024, 1, 15, tzinfo=self.tz), 1, "monthly"))
        self.assertEqual(datetime(2024, 1, 1, tzinfo=self.tz), round_up(datetime(2024, 1, 1, tzinfo=self.tz), 1, "monthly"))
        self.assertEqual(datetime(2025, 1, 1), round_up(datetime(2024, 12, 31, 23), 1, "monthly"))

    def test_quarterly_periods_start_in_january_april_july_and_october(self) -> None:
        self.assertEqual(datetime(2024, 4, 1), round_up(datetime(2024, 2, 15), 3, "monthly"))
        self.assertEqual(datetime(2024, 4, 1), round_up(datetime(2024, 1, 1, 0, 0, 1), 3, "monthly"))
        self.assertEqual(datetime(2025, 1, 1), round_up(datetime(2024, 11, 2), 3, "monthly"))

    def test_monthly_monthday_is_capped_at_end_of_month(self) -> None:
        anchors = PeriodAnchors(monthly_monthday=31)
        self.assertEqual(datetime(2024, 2, 29), round_up(datetime(2024, 2, 10), 1, "monthly", anchors))
        self.assertEqual(datetime(2024, 3, 31), round_up(datetime(2024, 3, 1), 1, "monthly", anchors))

    def test_yearly(self) -> None:
        self.assertEqual(datetime(2025, 1, 1), round_up(datetime(2024, 6, 1), 1, "yearly"))
        self.assertEqual(datetime(2024, 1, 1), round_up(datetime(2024, 1, 1), 1, "yearly"))
        self.assertEqual(datetime(2026, 1, 1), round_up(datetime(2024, 6, 1), 2, "yearly"))
        self.assertEqual(datetime(2024, 7, 1), round_up(datetime(2024, 6, 1), 1, "yearly", PeriodAnchors(yearly_month=7)))

    def test_zoneinfo(self) -> None:
        tz = ZoneInfo("Europe/Berlin")
        self.assertEqual(datetime(2024, 3, 31, tzinfo=tz), round_up(datetime(2024, 3, 30, 13, tzinfo=tz), 1, "daily"))

    def test_invalid(self) -> None:
        with self.assertRaises(ValueError):
            round_up(datetime(2024, 1, 1), 0, "daily")
        with self.assertRaises(ValueError):
            round_up(datetime(2024, 1, 1), 1, "fortnightly")


#############################################################################
class TestNextPeriodBoundary(unittest.TestCase):

    def test_boundary_belongs_to_period_that_starts_there(self) -> None:
        anchors = PeriodAnchors()
        self.assertEqual(datetime(2024, 1, 2), next_period_boundary(datetime(2024, 1, 1), 1, "daily", anchors))
        self.assertEqual(datetime(2024, 1, 2), next_period_boundary(datetime(2024, 1, 1, 23, 59), 1, "daily", anchors))
        self.assertEqual(datetime(2024, 2, 1), next_period_boundary(datetime(2024, 1, 1), 1, "monthly", anchors))
        self.assertEqual(datetime(2025, 1, 1), next_period_boundary(datetime(2024, 1, 1), 1, "yearly", anchors))


#############################################################################
class TestPeriodAnchors(unittest.TestCase):

    def test_defaults(self) -> None:
        anchors = PeriodAnchors()
        self.assertEqual(PeriodAnchors(weekly_weekday=0, daily_hour=0, monthly_monthday=1, yearly_month=1), anchors)

    def test_out_of_range(self) -> None:
        for kwargs in ({"weekly_weekday": 7}, {"daily_hour": 24}, {"monthly_monthday": 0}, {"yearly_month": 13}):
            with self.subTest(kwargs=kwargs), self.assertRaises(ValueError):
                PeriodAnchors(**kwargs)

    def test_parse(self) -> None:
        args = argparse.Namespace(weekly_weekday=1, daily_hour=2, monthly_monthday=3, yearly_month=4)
        self.assertEqual(PeriodAnchors(1, 2, 3, 4), PeriodAnchors.parse(args))


#############################################################################
class TestParsePeriod(unittest.TestCase):

    def test_valid(self) -> None:
        self.assertEqual((1, "weekly"), parse_period("weekly"))
        self.assertEqual((2, "hourly"), parse_period("2hourly"))
        self.assertEqual((12, "monthly"), parse_period(" 12 monthly "))

    def test_invalid(self) -> None:
        for period in ("", "0daily", "-1daily", "fortnightly", "daily2", "all"):
            with self.subTest(period=period), self.assertRaises(ValueError):
                parse_period(period)
