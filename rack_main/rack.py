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
"""Main CLI entry point for taking, replicating and pruning ZFS snapshots of dataset trees.

Usage overview (see ``rack --help``)::

    rack snap tank/data                      # creates tank/data@caz-2024-02-01T00:00:00
    rack clone tank/data backup/data         # makes backup/data a copy of tank/data, incl. snapshots and properties
    rack prune backup/data --recursive       # reports what the retention policy would destroy
    rack prune backup/data --recursive --really

``main()`` parses the command line and hands off to ``Job.run_main()``, which sets up logging and the parameters, then
dispatches to ``run_clone()``, ``run_prune()`` or ``run_snap()``. Each command logs a summary of its report and exits with
status ``DIE_STATUS`` if any operation failed.
"""

from __future__ import (
    annotations,
)
import argparse
import os
import subprocess
import sys
from logging import (
    Logger,
)

from rack_main.argparse_cli import (
    CLONE,
    PRUNE,
    SNAP,
    argument_parser,
)
from rack_main.configuration import (
    LogParams,
    Params,
)
from rack_main.errors import (
    OperationFailure,
    RackError,
    VolumeManagerError,
)
from rack_main.loggers import (
    get_logger,
    get_simple_logger,
    reset_logger,
)
from rack_main.pruning import (
    PruneReport,
    prune,
)
from rack_main.replication import (
    CloneReport,
    clone,
)
from rack_main.snapshot_names import (
    format_snapshot_name,
)
from rack_main.utils import (
    DIE_STATUS,
    LOG_TRACE,
    PROG_NAME,
    die,
    list_formatter,
    xfinally,
)
from rack_main.volume_manager import (
    VolumeManager,
    ZfsVolumeManager,
)


#############################################################################
def main() -> None:
    """API for command line clients."""
    try:
        run_main(argument_parser().parse_args(), sys.argv)
    except subprocess.CalledProcessError as e:
        sys.exit(e.returncode)


def run_main(args: argparse.Namespace, sys_argv: list[str] | None = None, log: Logger | None = None) -> None:
    """API for Python clients; visible for testing; may become a public API eventually."""
    Job().run_main(args, sys_argv, log)


#############################################################################
class Job:
    """Executes one rack command against a volume manager."""

    def __init__(self, manager: VolumeManager | None = None) -> None:
        """``manager`` defaults to a ZfsVolumeManager; tests pass a fake."""
        self.params: Params
        self.manager: VolumeManager | None = manager
        self.clone_reports: list[CloneReport] = []
        self.prune_reports: list[PruneReport] = []
        self.snap_failures: list[VolumeManagerError] = []

    def run_main(self, args: argparse.Namespace, sys_argv: list[str] | None = None, log: Logger | None = None) -> None:
        """Sets up logging and parameters, runs the command, and translates fatal errors into SystemExit."""
        try:
            log_params = LogParams(args)
            is_own_log: bool = log is None
            log = get_logger(log_params, log=log)
        except BaseException as e:
            get_simple_logger(PROG_NAME).error("Log init: %s", e, exc_info=False if isinstance(e, SystemExit) else True)
            raise

        def cleanup() -> None:
            if is_own_log:
                reset_logger(log)

        def log_error_on_exit(error: object, status_code: object, exc_info: bool = False) -> None:
            log.error("%s%s", f"Exiting {PROG_NAME} with status code {status_code}. Cause: ", error, exc_info=exc_info)

        with xfinally(cleanup):  # runs cleanup() on exit, without masking exception raised in body of `with` block
            try:
                log.info("CLI arguments: %s %s", " ".join(sys_argv or []), f"[euid: {os.geteuid()}]")
                log.log(LOG_TRACE, "Parsed CLI arguments: %s", args)
                self.params = Params(args, log_params, log)
                self.manager = self.manager if self.manager is not None else ZfsVolumeManager(self.params)
                self.run_tasks()
            except subprocess.CalledProcessError as e:
                log_error_on_exit(e, e.returncode)
                raise
            except SystemExit as e:
                log_error_on_exit(e, e.code)
                raise
            except RackError as e:
                log_error_on_exit(e, DIE_STATUS)
                raise SystemExit(DIE_STATUS) from e
            except (subprocess.TimeoutExpired, UnicodeDecodeError) as e:
                log_error_on_exit(e, DIE_STATUS)
                raise SystemExit(DIE_STATUS) from e
            except BaseException as e:
                log_error_on_exit(e, DIE_STATUS, exc_info=True)
                raise SystemExit(DIE_STATUS) from e
            log.info("Success. Goodbye!")

    def run_tasks(self) -> None:
        """Dispatches to the selected command; dies if any operation of the command failed."""
        p = self.params
        if p.command == CLONE:
            self.run_clone()
            failures: list[OperationFailure] = [f for report in self.clone_reports for f in report.failures]
        elif p.command == PRUNE:
            self.run_prune()
            failures = [f for report in self.prune_reports for f in report.failures]
        else:
            assert p.command == SNAP, p.command
            self.run_snap()
            failures = []
        num_failures: int = len(failures) + len(self.snap_failures)
        if num_failures > 0:
            die(f"{num_failures} operation(s) failed; see the errors above")

    def run_clone(self) -> None:
        """Clones the SRC/DST pair from the command line, or else every non-skipped pair of the config file."""
        p, log, manager = self.params, self.params.log, self.manager
        assert manager is not None
        args = p.args
        if args.src is not None or args.dst is not None:
            if args.src is None or args.dst is None:
                die("clone requires both SRC_DATASET and DST_DATASET, or neither")
            pairs: list[tuple[str, str, list[str]]] = [(args.src, args.dst, args.exclude)]
        else:
            pairs = []
            for entry in p.config.clone:
                if entry.skip:
                    log.info("Skipping clone config entry: %s", entry.name)
                else:
                    pairs.append((entry.source, entry.dest, list(entry.exclude) + list(args.exclude)))
            if not pairs:
                die("Nothing to clone: specify SRC_DATASET and DST_DATASET, or configure 'clone.volumes'")
        for src, dst, excludes in pairs:
            report: CloneReport = clone(self, manager, src, dst, excludes)
            self.clone_reports.append(report)
            log.info(
                p.dry("Cloned %s"),
                f"{src} --> {dst}: {len(report.created_volumes)} volumes created, "
                f"{len(report.replicated_snapshots)} snapshots replicated, {len(report.applied_properties)} properties "
                f"set, {len(report.skipped)} snapshots skipped, {len(report.failures)} failures",
            )
            if report.skipped:
                log.warning("Skipped snapshots: %s", list_formatter(report.skipped))

    def run_prune(self) -> None:
        """Prunes the volumes from the command line, or else those of the config file."""
        p, log, manager = self.params, self.params.log, self.manager
        assert manager is not None
        volumes: list[str] = list(p.args.volumes) or list(p.config.prune.volumes)
        if not volumes:
            die("Nothing to prune: specify DATASET, or configure 'prune.volumes'")
        log.info("Retention policy: %s", list_formatter(p.retention_buckets, separator=", "))
        for volume in volumes:
            report: PruneReport = prune(
                self,
                manager,
                volume,
                p.retention_buckets,
                p.now,
                really=not p.dry_run,
                keep_latest=p.keep_latest,
                recursive=p.recursive,
            )
            self.prune_reports.append(report)
            num_candidates: int = len(report.items)
            if p.dry_run:
                msg: str = f"{num_candidates} snapshots would be destroyed, {report.kept} kept. Use --really to destroy."
            else:
                msg = f"{num_candidates - len(report.failures)} snapshots destroyed, {report.kept} kept, "
                msg += f"{len(report.failures)} failures"
            log.info("Pruned %s", f"{volume}: {msg}")

    def run_snap(self) -> None:
        """Takes a snapshot named after the prefix and the current time of each requested or configured volume."""
        p, log, manager = self.params, self.params.log, self.manager
        assert manager is not None
        volumes: list[str] = list(p.args.volumes) or list(p.config.snap.volumes)
        if not volumes:
            die("Nothing to snapshot: specify DATASET, or configure 'snap.volumes'")
        name: str = format_snapshot_name(p.prefix, p.now)
        for volume in volumes:
            log.info(p.dry("Creating snapshot: %s"), f"{volume}@{name}" + (" (recursive)" if p.recursive else ""))
            try:
                manager.create_snapshot(volume, name, recursive=p.recursive)
            except VolumeManagerError as e:
                log.error("Cannot create snapshot %s: %s", f"{volume}@{name}", e.message)
                self.snap_failures.append(e)


#############################################################################
if __name__ == "__main__":
    main()
