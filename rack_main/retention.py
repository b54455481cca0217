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
"""Time-bucketed retention: decides which snapshots to keep, given their timestamps and the current time.

A retention policy is an ordered list of buckets. Each bucket covers a window of snapshot ages ``[start, end)`` and says how
densely snapshots within that window are kept: either all of them, or only the newest snapshot of each calendar period of
the bucket's granularity, e.g. one per day. Snapshots older than the last bucket, or within a gap between two buckets, are
not kept. The selection is a pure function of its inputs, so prune runs are reproducible given a fixed 'now'.

Example: now=2024-02-01T00:00, buckets (0, 2 days, all) and (2 days, 30 days, weekly), one snapshot per midnight from Jan 1
to Feb 1. Kept: Jan 30, Jan 31 and Feb 1 (all within 2 days; Jan 30 sits exactly on the boundary and thus falls into the
older bucket, where it is the newest snapshot of its week), plus the newest snapshot of each Sunday-based week that
intersects the weekly window: Jan 27, Jan 20, Jan 13 and Jan 6. Everything else is a prune candidate.
"""

from __future__ import (
    annotations,
)
from collections.abc import (
    Iterable,
    Mapping,
    Sequence,
)
from dataclasses import (
    dataclass,
)
from datetime import (
    datetime,
    timedelta,
    timezone,
)
from typing import (
    Final,
)

from rack_main.period_anchors import (
    PeriodAnchors,
    next_period_boundary,
    parse_period,
)
from rack_main.snapshot_names import (
    SnapshotName,
)

# constants:
KEEP_ALL: Final[str] = "all"
UNBOUNDED: Final[str] = "forever"
PLAN_UNIT_LENGTHS: Final[dict[str, timedelta]] = {  # nominal lengths; used only to size the windows of retention plans
    "secondly": timedelta(seconds=1),
    "minutely": timedelta(minutes=1),
    "hourly": timedelta(hours=1),
    "daily": timedelta(days=1),
    "weekly": timedelta(weeks=1),
    "monthly": timedelta(days=30.5),
    "yearly": timedelta(days=365),
}


#############################################################################
@dataclass(frozen=True)
class RetentionBucket:
    """Keeps snapshots whose age lies within ``[start, end)``, at the given granularity; ``end=None`` means unbounded."""

    start: timedelta
    end: timedelta | None
    granularity: str = KEEP_ALL

    def __post_init__(self) -> None:
        if self.start < timedelta(0):
            raise ValueError(f"Retention bucket must not start at a negative age: {self}")
        if self.end is not None and self.end <= self.start:
            raise ValueError(f"Retention bucket must end after it starts: {self}")
        if self.granularity != KEEP_ALL:
            parse_period(self.granularity)  # raises ValueError

    def contains(self, age: timedelta) -> bool:
        """Returns True if a snapshot of the given age falls into this bucket."""
        return self.start <= age and (self.end is None or age < self.end)

    def __str__(self) -> str:
        end: str = UNBOUNDED if self.end is None else str(self.end)
        return f"[{self.start}, {end}) {self.granularity}"


def validate_buckets(buckets: Sequence[RetentionBucket]) -> list[RetentionBucket]:
    """Checks that the buckets are ordered from most recent to oldest and don't overlap; returns them as a list."""
    if not buckets:
        raise ValueError("A retention policy needs at least one bucket")
    for bucket, successor in zip(buckets, buckets[1:]):
        if bucket.end is None:
            raise ValueError(f"Only the last retention bucket may be unbounded: {bucket}")
        if successor.start < bucket.end:
            raise ValueError(f"Retention buckets must be ordered and must not overlap: {bucket} vs. {successor}")
    return list(buckets)


def buckets_from_plan(plan: Mapping[str, int]) -> list[RetentionBucket]:
    """Converts a count based plan like {"hourly": 24, "daily": 7, "weekly": 4} into contiguous buckets.

    Each unit covers the ages up to ``count`` units, starting where the next finer unit stops; a unit whose span is already
    covered by finer units contributes nothing. Example: the plan above yields [0h, 24h) hourly, [1d, 7d) daily and
    [7d, 28d) weekly.
    """
    for unit, count in plan.items():
        if unit not in PLAN_UNIT_LENGTHS:
            raise ValueError(f"Invalid retention plan unit: '{unit}'. Must be one of {', '.join(PLAN_UNIT_LENGTHS)}")
        if not isinstance(count, int) or isinstance(count, bool) or count < 0:
            raise ValueError(f"Invalid retention plan count for '{unit}': {count!r}. Must be a non-negative integer")
    buckets: list[RetentionBucket] = []
    start: timedelta = timedelta(0)
    for unit, length in PLAN_UNIT_LENGTHS.items():  # finest first
        end: timedelta = length * plan.get(unit, 0)
        if end > start:
            buckets.append(RetentionBucket(start, end, unit))
            start = end
    return buckets


DEFAULT_RETENTION_BUCKETS: Final[tuple[RetentionBucket, ...]] = (
    RetentionBucket(timedelta(0), timedelta(days=1), KEEP_ALL),
    RetentionBucket(timedelta(days=1), timedelta(weeks=4), "daily"),
    RetentionBucket(timedelta(weeks=4), timedelta(days=91), "weekly"),
    RetentionBucket(timedelta(days=91), None, "monthly"),
)


#############################################################################
def select_to_keep(
    snapshots_newest_first: Iterable[SnapshotName],
    buckets: Sequence[RetentionBucket],
    now: datetime,
    keep_latest: int = 0,
    anchors: PeriodAnchors = PeriodAnchors(),  # noqa: B008 immutable
) -> set[SnapshotName]:
    """Returns the subset of the given snapshots that the retention policy keeps.

    Snapshots are (re)sorted newest first, so the first snapshot seen in a sub-interval is the one kept for it. Snapshots
    newer than ``now`` are always kept, as are the ``keep_latest`` newest snapshots.
    """
    snapshots: list[SnapshotName] = sorted(snapshots_newest_first, key=lambda s: s.timestamp, reverse=True)
    kept: set[SnapshotName] = set(snapshots[: max(0, keep_latest)])
    seen_periods: set[tuple[int, datetime]] = set()
    for snapshot in snapshots:
        age: timedelta = snapshot_age(now, snapshot.timestamp)
        if age < timedelta(0):
            kept.add(snapshot)
            continue
        i: int = next((i for i, bucket in enumerate(buckets) if bucket.contains(age)), -1)
        if i < 0:
            continue  # too old, or falls into a gap between buckets
        granularity: str = buckets[i].granularity
        if granularity == KEEP_ALL:
            kept.add(snapshot)
            continue
        amount, unit = parse_period(granularity)
        period_key = (i, next_period_boundary(snapshot.timestamp, amount, unit, anchors))
        if period_key not in seen_periods:
            seen_periods.add(period_key)
            kept.add(snapshot)
    return kept


def snapshot_age(now: datetime, timestamp: datetime) -> timedelta:
    """Returns the elapsed time between ``timestamp`` and ``now``.

    Aware datetimes are compared in UTC, so ages across DST transitions are exact. A naive datetime counts as local time of
    the host when the other one is aware; two naive datetimes are compared by wall clock.
    """
    if now.tzinfo is None and timestamp.tzinfo is None:
        return now - timestamp
    return now.astimezone(timezone.utc) - timestamp.astimezone(timezone.utc)


def prune_candidates(
    snapshots: Sequence[SnapshotName],
    buckets: Sequence[RetentionBucket],
    now: datetime,
    keep_latest: int = 0,
    anchors: PeriodAnchors = PeriodAnchors(),  # noqa: B008 immutable
) -> list[SnapshotName]:
    """Returns the snapshots that are not kept, in the order of ``snapshots``."""
    kept: set[SnapshotName] = select_to_keep(snapshots, buckets, now, keep_latest=keep_latest, anchors=anchors)
    return [snapshot for snapshot in snapshots if snapshot not in kept]
