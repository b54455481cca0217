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
"""Immutable in-memory model of a ZFS dataset subtree, its properties and its snapshots.

A tree is built once from the output of one ``zfs list`` and one ``zfs get`` invocation and is never mutated afterwards;
operations that change the pool simply reload a fresh tree when they need an up-to-date view.
"""

from __future__ import (
    annotations,
)
import enum
from collections import (
    defaultdict,
)
from collections.abc import (
    Iterable,
    Iterator,
    Mapping,
)
from dataclasses import (
    dataclass,
    field,
)
from types import (
    MappingProxyType,
)

from rack_main.utils import (
    dataset_paths,
    is_descendant,
    parent_dataset,
)


#############################################################################
class Provenance(enum.Enum):
    """Where the current value of a property comes from, as reported in the SOURCE column of ``zfs get``."""

    LOCAL = "local"
    INHERITED = "inherited"
    RECEIVED = "received"
    DEFAULT = "default"

    @staticmethod
    def from_zfs_source(source: str) -> Provenance | None:
        """Maps a zfs SOURCE column value to a Provenance; returns None for sources like '-', 'none' or 'temporary'."""
        if source.startswith("inherited"):  # 'inherited from tank/foo'
            return Provenance.INHERITED
        for provenance in Provenance:
            if source == provenance.value:
                return provenance
        return None

    @property
    def is_explicit(self) -> bool:
        """Returns True if the value was set on the volume itself, either locally or by a zfs receive."""
        return self in (Provenance.LOCAL, Provenance.RECEIVED)


@dataclass(frozen=True)
class PropertyEntry:
    """One property of a volume."""

    name: str
    value: str
    provenance: Provenance


@dataclass(frozen=True)
class Snapshot:
    """A snapshot of a volume; ``name`` is the part after the '@'."""

    name: str
    volume: str

    @property
    def path(self) -> str:
        return f"{self.volume}@{self.name}"


@dataclass(frozen=True)
class Volume:
    """A dataset with its direct children, its properties and its snapshots (oldest first)."""

    path: str
    children: tuple[Volume, ...] = ()
    properties: Mapping[str, PropertyEntry] = field(default_factory=lambda: MappingProxyType({}), compare=False)
    snapshots: tuple[Snapshot, ...] = ()

    @property
    def components(self) -> tuple[str, ...]:
        return tuple(self.path.split("/"))

    @property
    def name(self) -> str:
        """Returns the trailing path component."""
        return self.components[-1]

    def child(self, name: str) -> Volume | None:
        """Returns the direct child with the given trailing path component, if any."""
        for child in self.children:
            if child.name == name:
                return child
        return None

    def snapshot_names(self) -> list[str]:
        """Returns the names of the snapshots of this volume, oldest first."""
        return [snapshot.name for snapshot in self.snapshots]


def build_volume_tree(
    root_path: str,
    datasets: Iterable[str],
    snapshots: Iterable[str] = (),
    properties: Mapping[str, Iterable[PropertyEntry]] | None = None,
) -> Volume:
    """Assembles the immutable tree rooted at ``root_path``.

    ``datasets`` are dataset paths, ``snapshots`` are ``dataset@name`` paths in creation order, ``properties`` maps dataset
    paths to their entries. Items outside of ``root_path`` are ignored; an item whose parent is not among the datasets is
    an error, because the tree could not honor the parent/child invariant.
    """
    properties = {} if properties is None else properties
    paths: set[str] = {path for path in datasets if is_descendant(path, root_path)}
    if root_path not in paths:
        raise ValueError(f"Dataset listing does not contain the root: {root_path}")
    children_of: defaultdict[str, list[str]] = defaultdict(list)
    for path in paths:
        if path != root_path:
            parent: str = parent_dataset(path)
            if parent not in paths:
                raise ValueError(f"Dataset listing contains {path} but not its parent {parent}")
            children_of[parent].append(path)

    snapshots_of: defaultdict[str, list[Snapshot]] = defaultdict(list)
    for snapshot_path in snapshots:
        volume, _, name = snapshot_path.partition("@")
        if volume in paths and name:
            snapshots_of[volume].append(Snapshot(name=name, volume=volume))

    def build(path: str) -> Volume:
        entries: dict[str, PropertyEntry] = {entry.name: entry for entry in properties.get(path, ())}
        return Volume(
            path=path,
            children=tuple(build(child) for child in sorted(children_of[path])),
            properties=MappingProxyType(entries),
            snapshots=tuple(snapshots_of[path]),
        )

    return build(root_path)


def iter_volumes(tree: Volume) -> Iterator[Volume]:
    """Yields the volumes of the tree depth-first, parents before children, children in name order."""
    yield tree
    for child in tree.children:
        yield from iter_volumes(child)


def resolve_child(tree: Volume, relative_path: str) -> Volume | None:
    """Returns the descendant of ``tree`` at ``relative_path`` (e.g. '/foo/bar' or 'foo/bar'), or None if it is missing."""
    volume: Volume | None = tree
    for component in relative_path.split("/"):
        if component and volume is not None:
            volume = volume.child(component)
    return volume


def path_depth_gap(existing_paths: Iterable[str], dest_path: str) -> int:
    """Returns how many of the paths 'a', 'a/b', ..., ``dest_path`` do not exist.

    A result of 0 means ``dest_path`` exists; 1 means only ``dest_path`` itself is missing, i.e. it can be created now.
    """
    existing: frozenset[str] = frozenset(existing_paths)
    return sum(1 for path in dataset_paths(dest_path) if path not in existing)


def first_missing_ancestor(existing_paths: Iterable[str], dest_path: str) -> str | None:
    """Returns the shallowest missing path among 'a', 'a/b', ..., ``dest_path``, or None if all exist."""
    existing: frozenset[str] = frozenset(existing_paths)
    return next((path for path in dataset_paths(dest_path) if path not in existing), None)
