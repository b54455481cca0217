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
"""Applies the retention policy to the snapshots of a dataset (tree); reports and optionally destroys what it doesn't keep.

Only snapshots whose names follow the '<prefix>-<timestamp>' convention of the active prefix are considered; all other
snapshots belong to other tools and are never touched. Unless ``really`` is set nothing is destroyed.
"""

from __future__ import (
    annotations,
)
import enum
from collections.abc import (
    Sequence,
)
from dataclasses import (
    dataclass,
    field,
)
from datetime import (
    datetime,
)
from typing import (
    TYPE_CHECKING,
)

from rack_main.errors import (
    SnapshotDestroyFailure,
    VolumeManagerError,
)
from rack_main.retention import (
    RetentionBucket,
    select_to_keep,
)
from rack_main.snapshot_names import (
    SnapshotName,
    parse_snapshot_name,
)
from rack_main.utils import (
    LOG_TRACE,
    list_formatter,
)
from rack_main.volumes import (
    Volume,
    iter_volumes,
)

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from rack_main.rack import (
        Job,
    )
    from rack_main.volume_manager import (
        VolumeManager,
    )


#############################################################################
class PruneAction(enum.Enum):
    """What happened to a prune candidate."""

    WOULD_DESTROY = "would destroy"
    DESTROYED = "destroyed"
    FAILED = "failed"


@dataclass(frozen=True)
class PruneItem:
    """A snapshot that the retention policy does not keep, and what was done about it."""

    volume: str
    name: str
    action: PruneAction
    failure: SnapshotDestroyFailure | None = None

    @property
    def path(self) -> str:
        return f"{self.volume}@{self.name}"

    def __str__(self) -> str:
        return f"{self.action.value}: {self.path}" + (f" ({self.failure})" if self.failure is not None else "")


@dataclass
class PruneReport:
    """The prune candidates of a run, in enumeration order (volumes depth-first, snapshots oldest first)."""

    volume: str
    items: list[PruneItem] = field(default_factory=list)
    kept: int = 0

    @property
    def failures(self) -> list[SnapshotDestroyFailure]:
        return [item.failure for item in self.items if item.failure is not None]

    @property
    def success(self) -> bool:
        return not self.failures


def prune(
    job: Job,
    manager: VolumeManager,
    volume: str,
    buckets: Sequence[RetentionBucket],
    now: datetime,
    really: bool,
    keep_latest: int = 0,
    recursive: bool = False,
) -> PruneReport:
    """Selects the prune candidates of ``volume`` (and of its descendants if ``recursive``) and, if ``really``, destroys
    them; a failed destroy is recorded and the remaining candidates are still processed."""
    p, log = job.params, job.params.log
    report = PruneReport(volume=volume)
    tree: Volume = manager.list_tree(volume)  # raises VolumeNotFound
    volumes: list[Volume] = list(iter_volumes(tree)) if recursive else [tree]
    for vol in volumes:
        # names that encode the same identity, e.g. minute and seconds form, share the fate of that identity
        matches: list[tuple[SnapshotName, str]] = []
        for snapshot in vol.snapshots:
            parsed: SnapshotName | None = parse_snapshot_name(snapshot.name, p.prefix, p.timezone)
            if parsed is not None:
                matches.append((parsed, snapshot.name))
        kept: set[SnapshotName] = select_to_keep(
            (parsed for parsed, _ in matches), buckets, now, keep_latest=keep_latest, anchors=p.anchors
        )
        candidates: list[str] = [name for parsed, name in matches if parsed not in kept]
        report.kept += len(matches) - len(candidates)
        log.debug("%s: %s snapshots with prefix %s, %s to prune", vol.path, len(matches), p.prefix, len(candidates))
        log.log(LOG_TRACE, "Prune candidates of %s: %s", vol.path, list_formatter(candidates))
        for name in candidates:
            if not really:
                log.info("Would destroy: %s", f"{vol.path}@{name}")
                report.items.append(PruneItem(vol.path, name, PruneAction.WOULD_DESTROY))
                continue
            log.info("Destroying: %s", f"{vol.path}@{name}")
            try:
                manager.destroy_snapshot(vol.path, name)
            except VolumeManagerError as e:
                log.error("Cannot destroy snapshot %s: %s", f"{vol.path}@{name}", e.message)
                failure = SnapshotDestroyFailure(f"{vol.path}@{name}", e.message)
                failure.__cause__ = e
                report.items.append(PruneItem(vol.path, name, PruneAction.FAILED, failure))
            else:
                report.items.append(PruneItem(vol.path, name, PruneAction.DESTROYED))
    return report
