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
"""Naming convention of the snapshots that rack creates and prunes: ``{prefix}-{YYYY-MM-DDTHH:MM:SS}``.

The timestamp is rendered zero-padded with a fixed width, so for a fixed prefix the lexicographic order of names equals the
chronological order of their timestamps. Parsing is lenient about a missing seconds field, and returns None for any name
that does not follow the convention, so foreign snapshots never interfere with pruning.
"""

from __future__ import (
    annotations,
)
import re
from datetime import (
    datetime,
    tzinfo,
)
from typing import (
    Final,
    NamedTuple,
)

from rack_main.utils import (
    SHELL_CHARS,
)

# constants:
SEPARATOR: Final[str] = "-"
_TIMESTAMP_REGEX: Final[re.Pattern[str]] = re.compile(r"(\d{4})-(\d\d)-(\d\d)T(\d\d):(\d\d)(?::(\d\d))?")


#############################################################################
class SnapshotName(NamedTuple):
    """The identity of a snapshot created by rack; sorts by timestamp for a fixed prefix."""

    prefix: str
    timestamp: datetime

    def __str__(self) -> str:
        return format_snapshot_name(self.prefix, self.timestamp)


def validate_prefix(prefix: str) -> str:
    """Raises ValueError unless ``prefix`` can be used as the leading part of a ZFS snapshot name."""
    if not prefix or any(c.isspace() or c in SHELL_CHARS or c in "/@" for c in prefix):
        raise ValueError(f"Invalid snapshot prefix: '{prefix}'")
    return prefix


def format_snapshot_name(prefix: str, timestamp: datetime) -> str:
    """Returns ``{prefix}-YYYY-MM-DDTHH:MM:SS``; the wall clock time of ``timestamp`` is used and sub-seconds are dropped."""
    validate_prefix(prefix)
    t = timestamp
    return (
        f"{prefix}{SEPARATOR}{t.year:04d}-{t.month:02d}-{t.day:02d}T{t.hour:02d}:{t.minute:02d}:{t.second:02d}"
    )


def parse_snapshot_name(name: str, expected_prefix: str, tz: tzinfo | None = None) -> SnapshotName | None:
    """Returns the identity encoded in ``name``, or None if ``name`` doesn't follow the convention for ``expected_prefix``.

    Accepts the seconds form ``caz-2024-01-01T00:00:00`` as well as the minute form ``caz-2024-01-01T00:00``. The returned
    timestamp carries the given ``tz``.
    """
    head: str = expected_prefix + SEPARATOR
    if not expected_prefix or not name.startswith(head):
        return None
    match = _TIMESTAMP_REGEX.fullmatch(name, len(head))
    if not match:
        return None
    year, month, day, hour, minute, second = match.groups()
    try:
        timestamp = datetime(
            int(year), int(month), int(day), int(hour), int(minute), int(second or 0), tzinfo=tz
        )
    except ValueError:
        return None  # e.g. month 13 or Feb 30
    return SnapshotName(expected_prefix, timestamp)
