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
"""The core replication algorithm that makes a destination dataset tree a copy of a source dataset tree.

``clone()`` walks the source tree depth-first, parents before children. For each source dataset it creates the
corresponding destination dataset if it is missing (only ever one level below an existing one), replicates the missing
snapshots oldest first via incremental 'zfs send | zfs receive', and then sets the source's locally set or received
properties that differ on the destination. It never deletes anything, so re-running it is always safe, and a run over an
already replicated tree is a no-op.

Failures of a single dataset are recorded in the returned CloneReport and skip that dataset's subtree, while sibling
subtrees proceed. A missing destination ancestor is a HierarchyGap, which aborts the run before anything was changed.
"""

from __future__ import (
    annotations,
)
from collections.abc import (
    Iterable,
    Sequence,
)
from dataclasses import (
    dataclass,
    field,
)
from typing import (
    TYPE_CHECKING,
)

from rack_main.errors import (
    HierarchyGap,
    OperationFailure,
    PropertyApplyFailure,
    SnapshotConflict,
    SnapshotReplicateFailure,
    VolumeCreateFailure,
    VolumeManagerError,
    VolumeNotFound,
)
from rack_main.properties import (
    diff_properties,
    local_and_received,
)
from rack_main.retry import (
    Retry,
    RetryableError,
    run_with_retries,
)
from rack_main.utils import (
    is_descendant,
    parent_dataset,
    relativize_dataset,
)
from rack_main.volumes import (
    PropertyEntry,
    Snapshot,
    Volume,
    first_missing_ancestor,
    iter_volumes,
    path_depth_gap,
    resolve_child,
)

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from rack_main.rack import (
        Job,
    )
    from rack_main.volume_manager import (
        VolumeManager,
    )


#############################################################################
@dataclass
class CloneReport:
    """What a clone run did, or would have done in dry-run mode."""

    source: str
    destination: str
    created_volumes: list[str] = field(default_factory=list)
    replicated_snapshots: list[str] = field(default_factory=list)
    applied_properties: list[tuple[str, PropertyEntry]] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failures: list[OperationFailure] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failures

    @property
    def is_noop(self) -> bool:
        """Returns True if the run created no volume, replicated no snapshot and set no property."""
        return not (self.created_volumes or self.replicated_snapshots or self.applied_properties)


def clone(
    job: Job, manager: VolumeManager, src_root: str, dst_root: str, excludes: Iterable[str] = ()
) -> CloneReport:
    """Replicates the tree rooted at ``src_root`` into ``dst_root`` via ``manager``; see module docstring."""
    p, log = job.params, job.params.log
    report = CloneReport(source=src_root, destination=dst_root)
    src_tree: Volume = manager.list_tree(src_root)  # raises VolumeNotFound
    dst_tree: Volume | None = _load_dst_tree(manager, dst_root)
    existing: set[str] = set()  # destination datasets known to exist, or to be created in dry-run mode
    if dst_tree is not None:
        existing.update(volume.path for volume in iter_volumes(dst_tree))
    else:
        parent: str = parent_dataset(dst_root)
        if not parent:
            raise VolumeNotFound(dst_root)  # a pool can't be created by zfs create
        if manager.exists(parent):
            existing.update(_ancestors(dst_root))
        else:
            missing: str = next((x for x in _ancestors(dst_root) if not manager.exists(x)), parent)
            raise HierarchyGap(dst_root, missing)

    excluded: list[str] = [x for x in excludes if is_descendant(x, src_root)]
    for x in excludes:
        if x not in excluded:
            log.warning("Ignoring exclude that is not within %s: %s", src_root, x)
    log.info(p.dry("Cloning %s"), f"{src_root} --> {dst_root} ...")
    _clone_volume(job, manager, src_tree, src_root, dst_root, dst_tree, existing, excluded, report)
    return report


def _clone_volume(
    job: Job,
    manager: VolumeManager,
    src: Volume,
    src_root: str,
    dst_root: str,
    dst_tree: Volume | None,
    existing: set[str],
    excluded: Sequence[str],
    report: CloneReport,
) -> None:
    """Processes one source volume, then recurses into its children unless the volume failed."""
    p, log = job.params, job.params.log
    if any(is_descendant(src.path, x) for x in excluded):
        log.info("Excluding %s", src.path)
        return
    rel_path: str = relativize_dataset(src.path, src_root)
    dst_path: str = dst_root + rel_path
    dst: Volume | None = None if dst_tree is None else resolve_child(dst_tree, rel_path)

    if dst_path not in existing:
        gap: int = path_depth_gap(existing, dst_path)
        if gap != 1:
            raise HierarchyGap(dst_path, first_missing_ancestor(existing, dst_path) or dst_path)
        log.info(p.dry("Creating volume: %s"), dst_path)
        try:
            manager.create_volume(dst_path)
        except VolumeManagerError as e:
            log.error("Cannot create volume %s: %s", dst_path, e.message)
            report.failures.append(_failure(VolumeCreateFailure, dst_path, e))
            return
        existing.add(dst_path)
        report.created_volumes.append(dst_path)

    if not _replicate_snapshots(job, manager, src, dst, dst_path, report):
        return  # the subtree may depend on the missing snapshots
    _apply_properties(job, manager, src, dst, dst_path, report)
    for child in src.children:
        _clone_volume(job, manager, child, src_root, dst_root, dst_tree, existing, excluded, report)


def _replicate_snapshots(
    job: Job, manager: VolumeManager, src: Volume, dst: Volume | None, dst_path: str, report: CloneReport
) -> bool:
    """Replicates the source snapshots missing on the destination, oldest first; returns False on failure."""
    p, log = job.params, job.params.log
    dst_names: list[str] = [] if dst is None else dst.snapshot_names()
    steps, skipped = plan_snapshot_replication(src.snapshots, dst_names)
    force: bool = dst is None  # created by this run, so a full stream may replace its (empty) contents
    for snapshot in skipped:
        log.warning("Skipping %s because it is older than the latest common snapshot of %s", snapshot.path, dst_path)
        report.skipped.append(snapshot.path)
    for base, snapshot in steps:
        if base is None and not force:
            msg = "destination exists but shares no snapshot with the source; refusing to overwrite it with a full stream"
            log.error("Cannot replicate snapshot %s to %s: %s", snapshot.path, dst_path, msg)
            cause = VolumeManagerError(dst_path, msg)
            report.failures.append(_failure(SnapshotReplicateFailure, f"{dst_path}@{snapshot.name}", cause))
            return False
        log.info(p.dry("Replicating snapshot: %s"), f"{snapshot.path} --> {dst_path}")
        try:
            replicated: bool = run_with_retries(
                log, p.retry_policy, _replicate_snapshot, manager, src.path, snapshot.name, dst_path, base, force
            )
        except VolumeManagerError as e:
            log.error("Cannot replicate snapshot %s to %s: %s", snapshot.path, dst_path, e.message)
            report.failures.append(_failure(SnapshotReplicateFailure, f"{dst_path}@{snapshot.name}", e))
            return False
        if replicated:
            report.replicated_snapshots.append(f"{dst_path}@{snapshot.name}")
    return True


def _replicate_snapshot(
    manager: VolumeManager, src_path: str, name: str, dst_path: str, base: str | None, force: bool, retry: Retry
) -> bool:
    """Replicates a single snapshot; marks transport failures as retryable, but not content conflicts."""
    try:
        return manager.replicate_snapshot(src_path, name, dst_path, base=base, force=force)
    except SnapshotConflict:
        raise
    except VolumeManagerError as e:
        raise RetryableError(f"Replication of {src_path}@{name} failed (attempt {retry.count + 1})") from e


def plan_snapshot_replication(
    src_snapshots: Sequence[Snapshot], dst_names: Iterable[str]
) -> tuple[list[tuple[str | None, Snapshot]], list[Snapshot]]:
    """Returns the (incremental base, snapshot) steps that bring the destination up to date, plus the skipped snapshots.

    The first step starts from the newest snapshot that exists on both sides, each further step from its predecessor. Without
    a common snapshot the first step is a full copy (base None). Source snapshots older than the newest common snapshot that
    are missing on the destination can no longer be inserted into its history; they are returned as skipped.
    """
    dst_name_set: set[str] = set(dst_names)
    latest_common: int = -1
    for i, snapshot in enumerate(src_snapshots):
        if snapshot.name in dst_name_set:
            latest_common = i
    base: str | None = src_snapshots[latest_common].name if latest_common >= 0 else None
    steps: list[tuple[str | None, Snapshot]] = []
    for snapshot in src_snapshots[latest_common + 1 :]:
        steps.append((base, snapshot))
        base = snapshot.name
    skipped: list[Snapshot] = [s for s in src_snapshots[: max(0, latest_common)] if s.name not in dst_name_set]
    return steps, skipped


def _apply_properties(
    job: Job, manager: VolumeManager, src: Volume, dst: Volume | None, dst_path: str, report: CloneReport
) -> None:
    """Sets the properties that differ; a failing property does not prevent the others from being set."""
    p, log = job.params, job.params.log
    for entry in diff_properties(local_and_received(src), local_and_received(dst)):
        log.info(p.dry("Setting property: %s"), f"{dst_path}: {entry.name}={entry.value}")
        try:
            manager.set_property(dst_path, entry.name, entry.value)
        except VolumeManagerError as e:
            log.error("Cannot set property %s on %s: %s", entry.name, dst_path, e.message)
            report.failures.append(_failure(PropertyApplyFailure, dst_path, e, f"{entry.name}={entry.value}"))
            continue
        report.applied_properties.append((dst_path, entry))


def _load_dst_tree(manager: VolumeManager, dst_root: str) -> Volume | None:
    try:
        return manager.list_tree(dst_root)
    except VolumeNotFound:
        return None


def _ancestors(dataset: str) -> list[str]:
    """Example: 'a/b/c' --> ['a', 'a/b']."""
    parts: list[str] = dataset.split("/")
    return ["/".join(parts[:i]) for i in range(1, len(parts))]


def _failure(kind: type[OperationFailure], path: str, cause: VolumeManagerError, what: str = "") -> OperationFailure:
    failure: OperationFailure = kind(path, f"{what}: {cause.message}" if what else cause.message)
    failure.__cause__ = cause
    return failure
