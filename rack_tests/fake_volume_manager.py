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
"""In-memory VolumeManager that behaves like a local ZFS pool; records every mutating call and can inject failures."""

from __future__ import (
    annotations,
)
import itertools
from dataclasses import (
    dataclass,
    field,
)
from typing import (
    Any,
)

from rack_main.errors import (
    SnapshotConflict,
    VolumeManagerError,
    VolumeNotFound,
)
from rack_main.utils import (
    is_descendant,
    parent_dataset,
)
from rack_main.volume_manager import (
    VolumeManager,
)
from rack_main.volumes import (
    PropertyEntry,
    Provenance,
    Volume,
    build_volume_tree,
)


@dataclass
class FakeVolume:
    properties: dict[str, PropertyEntry] = field(default_factory=dict)
    snapshots: list[tuple[str, int]] = field(default_factory=list)  # (name, guid), oldest first

    def guid_of(self, name: str) -> int | None:
        return next((guid for snap, guid in self.snapshots if snap == name), None)


#############################################################################
class FakeVolumeManager(VolumeManager):
    """Mutations are validated the way zfs validates them; in dry-run mode they are recorded but not applied.

    Failure targets: ``path`` for create_volume, ``path:property`` for set_property, and ``path@snapshot`` for
    replicate_snapshot (destination path), destroy_snapshot and create_snapshot.
    """

    def __init__(self, dry_run: bool = False) -> None:
        self.dry_run: bool = dry_run
        self.volumes: dict[str, FakeVolume] = {}
        self.calls: list[tuple[Any, ...]] = []
        self._failures: dict[tuple[str, str], tuple[int, bool]] = {}
        self._guids = itertools.count(1000)

    def add(self, path: str, snapshots: tuple[str, ...] = (), **properties: str | tuple[str, Provenance]) -> FakeVolume:
        """Test setup: adds a volume with fresh snapshots; a property value is LOCAL unless given with its provenance."""
        volume = FakeVolume()
        for name, value in properties.items():
            value, provenance = (value, Provenance.LOCAL) if isinstance(value, str) else value
            volume.properties[name] = PropertyEntry(name, value, provenance)
        volume.snapshots = [(snapshot, next(self._guids)) for snapshot in snapshots]
        self.volumes[path] = volume
        return volume

    def fail(self, method: str, target: str, times: int = 1_000_000, conflict: bool = False) -> None:
        """Makes the next ``times`` calls of ``method`` on ``target`` raise VolumeManagerError (or SnapshotConflict)."""
        self._failures[(method, target)] = (times, conflict)

    def snapshot_names(self, path: str) -> list[str]:
        return [name for name, _ in self.volumes[path].snapshots]

    def mutations(self, method: str) -> list[tuple[Any, ...]]:
        return [call for call in self.calls if call[0] == method]

    def _check_failure(self, method: str, target: str) -> None:
        times, conflict = self._failures.get((method, target), (0, False))
        if times > 0:
            self._failures[(method, target)] = (times - 1, conflict)
            if conflict:
                raise SnapshotConflict(target, "injected conflict")
            raise VolumeManagerError(target, f"injected {method} failure")

    def _volume(self, path: str) -> FakeVolume:
        volume = self.volumes.get(path)
        if volume is None:
            raise VolumeManagerError(path, f"cannot open '{path}': dataset does not exist")
        return volume

    def list_tree(self, root_path: str) -> Volume:
        if root_path not in self.volumes:
            raise VolumeNotFound(root_path)
        datasets = [path for path in self.volumes if is_descendant(path, root_path)]
        snapshots = [f"{path}@{name}" for path in datasets for name, _ in self.volumes[path].snapshots]
        properties = {path: list(self.volumes[path].properties.values()) for path in datasets}
        return build_volume_tree(root_path, datasets, snapshots, properties)

    def exists(self, path: str) -> bool:
        return path in self.volumes

    def create_volume(self, path: str) -> None:
        self.calls.append(("create_volume", path))
        self._check_failure("create_volume", path)
        if self.dry_run:
            return
        if path in self.volumes:
            raise VolumeManagerError(path, f"cannot create '{path}': dataset already exists")
        if parent_dataset(path) not in self.volumes:
            raise VolumeManagerError(path, f"cannot create '{path}': parent does not exist")
        self.volumes[path] = FakeVolume()

    def set_property(self, path: str, name: str, value: str) -> None:
        self.calls.append(("set_property", path, name, value))
        self._check_failure("set_property", f"{path}:{name}")
        if self.dry_run:
            return
        self._volume(path).properties[name] = PropertyEntry(name, value, Provenance.LOCAL)

    def replicate_snapshot(
        self, src_path: str, name: str, dst_path: str, base: str | None = None, force: bool = False
    ) -> bool:
        src_guid: int | None = self._volume(src_path).guid_of(name)
        dst = self.volumes.get(dst_path)
        if dst is not None and dst.guid_of(name) is not None:
            if dst.guid_of(name) == src_guid:
                return False
            raise SnapshotConflict(f"{dst_path}@{name}", f"differs from {src_path}@{name}")
        self.calls.append(("replicate_snapshot", src_path, name, dst_path, base))
        self._check_failure("replicate_snapshot", f"{dst_path}@{name}")
        if self.dry_run:
            return True
        dst = self._volume(dst_path)
        if src_guid is None:
            raise VolumeManagerError(f"{src_path}@{name}", "snapshot does not exist")
        if base is None:
            if dst.snapshots:
                raise VolumeManagerError(dst_path, "destination has snapshots; a full stream can't be received")
            if not force:
                raise VolumeManagerError(dst_path, "destination exists, must specify -F to overwrite it")
        elif not dst.snapshots or dst.snapshots[-1][0] != base:
            raise VolumeManagerError(dst_path, f"most recent snapshot does not match incremental source {base}")
        dst.snapshots.append((name, src_guid))
        return True

    def destroy_snapshot(self, path: str, name: str) -> None:
        self.calls.append(("destroy_snapshot", path, name))
        self._check_failure("destroy_snapshot", f"{path}@{name}")
        if self.dry_run:
            return
        volume = self._volume(path)
        if volume.guid_of(name) is None:
            raise VolumeManagerError(f"{path}@{name}", "could not find any snapshots to destroy")
        volume.snapshots = [(snap, guid) for snap, guid in volume.snapshots if snap != name]

    def create_snapshot(self, path: str, name: str, recursive: bool = False) -> None:
        self.calls.append(("create_snapshot", path, name, recursive))
        self._check_failure("create_snapshot", f"{path}@{name}")
        if self.dry_run:
            return
        self._volume(path)
        targets = [p for p in self.volumes if is_descendant(p, path)] if recursive else [path]
        if any(self.volumes[target].guid_of(name) is not None for target in targets):
            raise VolumeManagerError(f"{path}@{name}", "dataset already exists")
        for target in targets:
            self.volumes[target].snapshots.append((name, next(self._guids)))
