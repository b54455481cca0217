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
"""Exceptions raised by rack.

Fatal errors (``VolumeNotFound``, ``HierarchyGap``, ``ConfigError``) propagate up to ``rack.Job.run_main()``. The per-item
failure kinds (``VolumeCreateFailure``, ``SnapshotReplicateFailure``, ``PropertyApplyFailure``, ``SnapshotDestroyFailure``)
are not raised across operation boundaries; they are collected into the clone and prune reports, with the underlying
``VolumeManagerError`` attached as ``__cause__``.
"""

from __future__ import (
    annotations,
)


class RackError(Exception):
    """Base class of all errors raised by rack."""


class ConfigError(RackError):
    """The YAML config file or a retention policy is malformed."""


#############################################################################
class VolumeNotFound(RackError):
    """The requested volume does not exist."""

    def __init__(self, path: str) -> None:
        super().__init__(f"Volume does not exist: {path}")
        self.path: str = path


class VolumeManagerError(RackError):
    """A zfs CLI command failed; carries the dataset it was operating on and the stderr of the command."""

    def __init__(self, path: str, message: str) -> None:
        super().__init__(f"{path}: {message}")
        self.path: str = path
        self.message: str = message


class SnapshotConflict(VolumeManagerError):
    """The destination already has a snapshot of the same name whose content differs from the source snapshot."""


#############################################################################
class HierarchyGap(RackError):
    """A destination volume cannot be created because an ancestor other than its direct parent is missing."""

    def __init__(self, path: str, missing_ancestor: str) -> None:
        super().__init__(f"Cannot create {path} because its ancestor {missing_ancestor} does not exist")
        self.path: str = path
        self.missing_ancestor: str = missing_ancestor


class OperationFailure(RackError):
    """Base class of the recoverable failures recorded in reports."""

    def __init__(self, path: str, message: str) -> None:
        super().__init__(f"{path}: {message}")
        self.path: str = path


class VolumeCreateFailure(OperationFailure):
    """A destination volume could not be created; its subtree was skipped."""


class SnapshotReplicateFailure(OperationFailure):
    """A snapshot could not be replicated; the remaining snapshots and the subtree of the volume were skipped."""


class PropertyApplyFailure(OperationFailure):
    """A property could not be set on a destination volume."""


class SnapshotDestroyFailure(OperationFailure):
    """A snapshot selected for pruning could not be destroyed."""
