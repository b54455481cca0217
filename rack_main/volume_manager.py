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
"""The boundary between rack's algorithms and the volume-management subsystem, plus its implementation via the zfs CLI.

``VolumeManager`` is the abstract set of primitives that the clone and prune orchestrators rely on. ``ZfsVolumeManager``
implements them by running ``zfs`` commands on the local host. Every mutating primitive honors dry-run mode, in which it
only logs the command it would have executed. Failures of the zfs CLI surface as ``VolumeManagerError`` carrying the
dataset path and the stderr of the command.
"""

from __future__ import (
    annotations,
)
import abc
import logging
import shlex
import subprocess
from collections import (
    defaultdict,
)
from typing import (
    TYPE_CHECKING,
    Final,
)

from rack_main.commands import (
    run_command,
    try_command,
)
from rack_main.errors import (
    SnapshotConflict,
    VolumeManagerError,
    VolumeNotFound,
)
from rack_main.utils import (
    LOG_DEBUG,
    LOG_TRACE,
    stderr_to_str,
)
from rack_main.volumes import (
    PropertyEntry,
    Provenance,
    Volume,
    build_volume_tree,
)

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from rack_main.configuration import (
        Params,
    )

# constants:
PROPERTY_SOURCES: Final[str] = ",".join(provenance.value for provenance in Provenance)


#############################################################################
class VolumeManager(abc.ABC):
    """Primitives of the volume-management subsystem that rack builds upon."""

    @abc.abstractmethod
    def list_tree(self, root_path: str) -> Volume:
        """Loads the subtree rooted at ``root_path`` with properties and snapshots; raises VolumeNotFound if missing."""

    @abc.abstractmethod
    def exists(self, path: str) -> bool:
        """Returns True if the volume exists."""

    @abc.abstractmethod
    def create_volume(self, path: str) -> None:
        """Creates a single volume whose parent already exists; fails if the parent is missing or the path exists."""

    @abc.abstractmethod
    def set_property(self, path: str, name: str, value: str) -> None:
        """Sets a property on the volume; fails on unknown names, invalid values and read-only properties."""

    @abc.abstractmethod
    def replicate_snapshot(
        self, src_path: str, name: str, dst_path: str, base: str | None = None, force: bool = False
    ) -> bool:
        """Copies snapshot ``name`` of ``src_path`` to ``dst_path``, incrementally from snapshot ``base`` if given.

        A full stream (no ``base``) overwrites the existing destination volume only if ``force`` is set; otherwise the
        receive fails.

        Returns False without copying if the destination already has the identical snapshot, and raises SnapshotConflict if
        it has a different snapshot of the same name.
        """

    @abc.abstractmethod
    def destroy_snapshot(self, path: str, name: str) -> None:
        """Destroys the snapshot; fails if it is absent."""

    @abc.abstractmethod
    def create_snapshot(self, path: str, name: str, recursive: bool = False) -> None:
        """Takes a snapshot of the volume, and atomically of all its descendants if ``recursive``."""


#############################################################################
class ZfsVolumeManager(VolumeManager):
    """VolumeManager that runs the zfs CLI on the local host."""

    def __init__(self, p: Params) -> None:
        # immutable variables:
        self.p: Final[Params] = p

    def zfs(self, *args: str) -> list[str]:
        """Returns the command line for the given zfs subcommand, including the privilege elevation prefix if any."""
        return self.p.sudo_cmd + [self.p.zfs_program, *args]

    def list_tree(self, root_path: str) -> Volume:
        cmd = self.zfs("list", "-r", "-t", "filesystem,snapshot", "-Hp", "-o", "name", "-s", "createtxg", root_path)
        try:
            names: str | None = try_command(self.p, cmd, level=LOG_TRACE)
        except subprocess.CalledProcessError as e:
            raise VolumeManagerError(root_path, stderr_to_str(e.stderr).strip()) from e
        if names is None:
            raise VolumeNotFound(root_path)
        datasets, snapshots = parse_zfs_list_output(names)

        sources: str = PROPERTY_SOURCES
        cmd = self.zfs("get", "-r", "-t", "filesystem", "-Hp", "-o", "name,property,value,source", "-s", sources, "all")
        cmd.append(root_path)
        properties = parse_zfs_get_output(self._run(root_path, cmd, level=LOG_TRACE))
        return build_volume_tree(root_path, datasets, snapshots, properties)

    def exists(self, path: str) -> bool:
        cmd = self.zfs("list", "-t", "filesystem", "-Hp", "-o", "name", path)
        try:
            return try_command(self.p, cmd, level=LOG_TRACE) is not None
        except subprocess.CalledProcessError as e:
            raise VolumeManagerError(path, stderr_to_str(e.stderr).strip()) from e

    def create_volume(self, path: str) -> None:
        # without -p: the parent must already exist
        self._run(path, self.zfs("create", "-u", path), is_dry=self.p.dry_run)

    def set_property(self, path: str, name: str, value: str) -> None:
        self._run(path, self.zfs("set", f"{name}={value}", path), is_dry=self.p.dry_run)

    def replicate_snapshot(
        self, src_path: str, name: str, dst_path: str, base: str | None = None, force: bool = False
    ) -> bool:
        dst_guid: str | None = self._snapshot_guid(dst_path, name)
        if dst_guid is not None:
            src_guid: str | None = self._snapshot_guid(src_path, name)
            if src_guid == dst_guid:
                self.p.log.debug("Skipping already replicated snapshot: %s", f"{dst_path}@{name}")
                return False
            raise SnapshotConflict(f"{dst_path}@{name}", f"differs from {src_path}@{name} (guid {dst_guid} vs {src_guid})")

        send_cmd: list[str] = self.zfs("send")
        if base is not None:
            send_cmd += ["-i", f"{src_path}@{base}"]
        send_cmd.append(f"{src_path}@{name}")
        recv_cmd: list[str] = self.zfs("receive", "-u")
        if base is None and force:
            recv_cmd.append("-F")  # zfs refuses this anyway if the destination already has snapshots
        recv_cmd.append(dst_path)
        pipeline: str = f"{shlex.join(send_cmd)} | {shlex.join(recv_cmd)}"
        self._run(dst_path, ["sh", "-c", pipeline], is_dry=self.p.dry_run, level=logging.INFO)
        return True

    def destroy_snapshot(self, path: str, name: str) -> None:
        self._run(f"{path}@{name}", self.zfs("destroy", f"{path}@{name}"), is_dry=self.p.dry_run)

    def create_snapshot(self, path: str, name: str, recursive: bool = False) -> None:
        cmd: list[str] = self.zfs("snapshot")
        if recursive:
            cmd.append("-r")
        cmd.append(f"{path}@{name}")
        self._run(f"{path}@{name}", cmd, is_dry=self.p.dry_run, level=logging.INFO)

    def _snapshot_guid(self, path: str, name: str) -> str | None:
        """Returns the GUID of the given snapshot, or None if it (or its volume) does not exist."""
        cmd = self.zfs("list", "-t", "snapshot", "-Hp", "-o", "guid", f"{path}@{name}")
        try:
            guid: str | None = try_command(self.p, cmd, level=LOG_TRACE)
        except subprocess.CalledProcessError as e:
            raise VolumeManagerError(f"{path}@{name}", stderr_to_str(e.stderr).strip()) from e
        return None if guid is None else guid.strip()

    def _run(self, path: str, cmd: list[str], is_dry: bool = False, level: int = LOG_DEBUG) -> str:
        """Runs the command and translates CLI failures into VolumeManagerError."""
        try:
            return run_command(self.p, cmd, level=level, is_dry=is_dry, print_stderr=False)
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired) as e:
            raise VolumeManagerError(path, stderr_to_str(e.stderr).strip() or str(e)) from e


#############################################################################
def parse_zfs_list_output(output: str) -> tuple[list[str], list[str]]:
    """Splits the output of ``zfs list -o name`` into dataset paths and ``dataset@snapshot`` paths, preserving order."""
    datasets: list[str] = []
    snapshots: list[str] = []
    for line in output.splitlines():
        name: str = line.strip()
        if name:
            (snapshots if "@" in name else datasets).append(name)
    return datasets, snapshots


def parse_zfs_get_output(output: str) -> dict[str, list[PropertyEntry]]:
    """Parses the output of ``zfs get -Hp -o name,property,value,source`` into property entries per dataset.

    Rows of snapshots and rows with a source that is not a known provenance are dropped.
    """
    result: defaultdict[str, list[PropertyEntry]] = defaultdict(list)
    for line in output.splitlines():
        fields: list[str] = line.split("\t", 2)
        if len(fields) < 3 or "\t" not in fields[2]:
            continue  # e.g. continuation line of a user property value that contains a newline
        name, propname, rest = fields
        value, source = rest.rsplit("\t", 1)
        provenance: Provenance | None = Provenance.from_zfs_source(source)
        if "@" not in name and provenance is not None:
            result[name].append(PropertyEntry(propname, value, provenance))
    return dict(result)
