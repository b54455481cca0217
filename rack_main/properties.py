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
"""Decides which properties of a source volume must be (re)applied to its destination counterpart."""

from __future__ import (
    annotations,
)
from collections.abc import (
    Iterable,
)
from typing import (
    Final,
)

from rack_main.volumes import (
    PropertyEntry,
    Volume,
)

# constants:
EXCLUDED_PROPERTIES: Final[frozenset[str]] = frozenset(["mountpoint"])  # a copy must never shadow the original's mount


def local_and_received(volume: Volume | None) -> list[PropertyEntry]:
    """Returns the properties of ``volume`` that were set locally or by a zfs receive, except excluded ones, sorted by name.

    A missing volume has no such properties.
    """
    if volume is None:
        return []
    return sorted(
        (
            entry
            for entry in volume.properties.values()
            if entry.provenance.is_explicit and entry.name not in EXCLUDED_PROPERTIES
        ),
        key=lambda entry: entry.name,
    )


def diff_properties(
    source_entries: Iterable[PropertyEntry], dest_entries: Iterable[PropertyEntry]
) -> list[PropertyEntry]:
    """Returns the source entries that must be set on the destination, in the order of ``source_entries``.

    An entry must be set if the destination lacks it, has a different value, or merely inherits or defaults to the value.
    Local and received count as the same explicit state: after ``zfs set`` a received source value shows up as local on the
    destination, and must not be set again on the next run. Properties that exist only on the destination are left alone.
    """
    dest_by_name: dict[str, PropertyEntry] = {entry.name: entry for entry in dest_entries}
    result: list[PropertyEntry] = []
    for entry in source_entries:
        dest = dest_by_name.get(entry.name)
        if dest is None or dest.value != entry.value or not dest.provenance.is_explicit:
            result.append(entry)
    return result
