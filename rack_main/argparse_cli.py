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
"""Documentation, definition of input data and ArgumentParser used by the 'rack' CLI."""

from __future__ import annotations
import argparse
import dataclasses

from rack_main.argparse_actions import (
    CheckRange,
    DatasetAction,
    NonEmptyStringAction,
    RetentionBucketAction,
    RetentionPlanAction,
    SnapshotPrefixAction,
)
from rack_main.period_anchors import (
    PeriodAnchors,
)
from rack_main.retention import (
    DEFAULT_RETENTION_BUCKETS,
    UNBOUNDED,
)
from rack_main.utils import (
    DEFAULT_SNAPSHOT_PREFIX,
    ENV_VAR_PREFIX,
    PROG_NAME,
)

# constants:
__version__: str = "0.9.0"
CONFIG_FILE_DEFAULT: str = f".{PROG_NAME}.yaml"  # relative to the home directory
CLONE: str = "clone"
PRUNE: str = "prune"
SNAP: str = "snap"


def argument_parser() -> argparse.ArgumentParser:
    """Returns the CLI parser used by rack."""
    retention_plan_example: str = str({"hourly": 24, "daily": 7, "weekly": 4, "monthly": 12}).replace(" ", "")
    default_buckets: str = "\n".join(f"  {bucket}" for bucket in DEFAULT_RETENTION_BUCKETS)

    # fmt: off
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        prog=PROG_NAME,
        allow_abbrev=False,
        formatter_class=argparse.RawTextHelpFormatter,
        description=f"""
*{PROG_NAME} manages point-in-time ZFS snapshots of a tree of datasets, replicates that tree including its snapshot
history and its locally set or received properties to another location, and prunes snapshots that fall outside of a
retention policy.*

`{PROG_NAME} snap` takes a snapshot named `<prefix>-<YYYY-MM-DDTHH:MM:SS>`, e.g. `caz-2024-02-01T00:00:00`.

`{PROG_NAME} clone SRC DST` makes DST a copy of SRC: it walks the SRC tree depth-first, parents before children, creates
missing destination datasets one level at a time, replicates missing snapshots oldest first via incremental
'zfs send | zfs receive', and sets those properties whose source is 'local' or 'received' on SRC (except 'mountpoint').
It never deletes anything, and re-running it on an already replicated tree changes nothing. Without SRC and DST, every
entry of the config file's 'clone' section is processed.

`{PROG_NAME} prune VOLUME` computes which of the snapshots named with the active prefix to keep under a time bucketed
retention policy, and reports the rest. Only with --really does it destroy them. Snapshots named differently belong to
other tools and are never touched.

The config file ~/{CONFIG_FILE_DEFAULT} (YAML) can define the prefix, the clone pairs, the volumes to prune and to
snapshot, and the retention policy. Command line options take precedence over the config file.
""")

    parser.add_argument(
        "--prefix", action=SnapshotPrefixAction, default=None, metavar="STRING",
        help=f"The prefix of the names of the snapshots that {PROG_NAME} creates and prunes "
             f"(default: the config file's 'prefix', else '{DEFAULT_SNAPSHOT_PREFIX}').\n\n")
    parser.add_argument(
        "--config", action=NonEmptyStringAction, default=None, metavar="FILE",
        help=f"Path of the YAML config file (default: ~/{CONFIG_FILE_DEFAULT}). It is an error if an explicitly "
             "specified file does not exist, whereas a missing default file is treated as an empty config.\n\n")
    parser.add_argument(
        "--log-file", action=NonEmptyStringAction, default=None, metavar="FILE",
        help="Also append log output to this file.\n\n")
    parser.add_argument(
        "--timezone", default=None, type=str, metavar="TZSPEC",
        help="The timezone in which snapshot names are rendered and interpreted, e.g. 'UTC', '+0200' or "
             "'Europe/Berlin' (default: the local timezone of the host).\n\n")
    parser.add_argument(
        "--zfs-program", default="zfs", action=NonEmptyStringAction, metavar="STRING",
        help="The name or path of the zfs CLI (default: %(default)s).\n\n")
    parser.add_argument(
        "--sudo-program", default="sudo", action=NonEmptyStringAction, metavar="STRING",
        help="The name or path of the sudo CLI (default: %(default)s).\n\n")
    parser.add_argument(
        "--no-privilege-elevation", "-p", action="store_true",
        help="Do not attempt to run zfs commands as root via 'sudo -n' when running as a non-root user.\n\n")
    parser.add_argument(
        "--retries", type=int, min=0, default=2, action=CheckRange, metavar="INT",
        help="The maximum number of times a failed 'zfs send | zfs receive' is retried (default: %(default)s).\n\n")
    parser.add_argument(
        "--retry-min-sleep-secs", type=float, min=0, default=0.125, action=CheckRange, metavar="FLOAT",
        help="The minimum duration to sleep between retries (default: %(default)s).\n\n")
    parser.add_argument(
        "--retry-max-sleep-secs", type=float, min=0, default=5 * 60, action=CheckRange, metavar="FLOAT",
        help="The maximum duration to sleep between retries; the sleep duration doubles on each retry up to this cap "
             "(default: %(default)s).\n\n")
    parser.add_argument(
        "--verbose", "-v", action="count", default=0,
        help="Print verbose information. Specify twice to also print every zfs command that is executed or would be "
             "executed. ERROR, WARN, INFO, DEBUG, TRACE output lines are identified by [E], [W], [I], [D], [T] "
             "prefixes, respectively.\n\n")
    parser.add_argument(
        "--quiet", "-q", action="store_true",
        help="Suppress non-error, info, debug, and trace output.\n\n")
    parser.add_argument(
        "--version", action="version", version=f"{PROG_NAME}-{__version__}",
        help="Display version information and exit.\n\n")

    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND", required=True)

    clone_parser = subparsers.add_parser(
        CLONE, formatter_class=argparse.RawTextHelpFormatter,
        help="Replicate a dataset tree, including snapshots and properties, to another location.")
    clone_parser.add_argument(
        "src", nargs="?", default=None, action=DatasetAction, metavar="SRC_DATASET",
        help="The root of the source tree. If omitted, all non-skipped pairs of the config file are cloned.\n\n")
    clone_parser.add_argument(
        "dst", nargs="?", default=None, action=DatasetAction, metavar="DST_DATASET",
        help="The root of the destination tree. Its parent must exist.\n\n")
    clone_parser.add_argument(
        "--exclude", "-e", nargs="+", default=[], action=DatasetAction, metavar="SRC_DATASET",
        help="Skip the given source datasets and their descendants. Can be specified multiple times.\n\n")
    _add_dryrun_argument(clone_parser)

    prune_parser = subparsers.add_parser(
        PRUNE, formatter_class=argparse.RawTextHelpFormatter,
        help="Report, and with --really destroy, the snapshots that a retention policy doesn't keep.")
    prune_parser.add_argument(
        "volumes", nargs="*", default=[], action=DatasetAction, metavar="DATASET",
        help="The datasets whose snapshots to prune. If omitted, the volumes of the config file's 'prune' section.\n\n")
    prune_parser.add_argument(
        "--really", action="store_true",
        help="Actually destroy the snapshots that the retention policy doesn't keep. Without this flag prune only "
             "reports what it would destroy.\n\n")
    prune_parser.add_argument(
        "--recursive", "-r", action="store_true", default=None,
        help="Also prune the snapshots of all descendant datasets.\n\n")
    prune_parser.add_argument(
        "--retention-bucket", nargs=3, action=RetentionBucketAction, dest="retention_buckets", default=None,
        metavar=("START", "END", "GRANULARITY"),
        help="Keep snapshots whose age is within [START, END) at the given GRANULARITY: 'all' keeps every snapshot, a "
             "period such as 'hourly', 'daily', '2weekly', 'monthly' or 'yearly' keeps the newest snapshot of each "
             f"such calendar period. END may be '{UNBOUNDED}'. Specify once per bucket, ordered from the most recent "
             "to the oldest, e.g. --retention-bucket '0 days' '2 days' all --retention-bucket '2 days' '30 days' "
             "weekly. Snapshots older than every bucket are not kept. Default:\n\n"
             f"{default_buckets}\n\n")
    prune_parser.add_argument(
        "--retention-plan", action=RetentionPlanAction, dest="retention_buckets", default=None, metavar="DICT_STRING",
        help="Alternative to --retention-bucket that expresses the policy as period counts, e.g. "
             f"'{retention_plan_example}' keeps hourly snapshots for 24 hours, then daily ones up to 7 days, then "
             "weekly ones up to 4 weeks, then monthly ones up to 12 months.\n\n")
    prune_parser.add_argument(
        "--keep-latest", type=int, min=0, default=None, action=CheckRange, metavar="INT",
        help="Always keep the given number of most recent snapshots, regardless of the retention policy "
             "(default: the config file's 'keep_latest', else 0).\n\n")
    _add_now_argument(prune_parser)
    anchor_group = prune_parser.add_argument_group(
        "Period Anchors", "Where the calendar periods of the retention granularities start.")
    for f in dataclasses.fields(PeriodAnchors):
        min_, max_ = f.metadata.get("min"), f.metadata.get("max")
        anchor_group.add_argument(
            "--" + f.name.replace("_", "-"), type=int, min=min_, max=max_, default=f.default, action=CheckRange,
            metavar="INT", help=f"{f.metadata.get('help')} ({min_} ≤ x ≤ {max_}, default: %(default)s).\n\n")

    snap_parser = subparsers.add_parser(
        SNAP, formatter_class=argparse.RawTextHelpFormatter,
        help="Take a snapshot named '<prefix>-<timestamp>' of the given datasets.")
    snap_parser.add_argument(
        "volumes", nargs="*", default=[], action=DatasetAction, metavar="DATASET",
        help="The datasets to snapshot. If omitted, the volumes of the config file's 'snap' section.\n\n")
    snap_parser.add_argument(
        "--recursive", "-r", action="store_true", default=None,
        help="Atomically also snapshot all descendant datasets.\n\n")
    _add_now_argument(snap_parser)
    _add_dryrun_argument(snap_parser)
    # fmt: on
    return parser


def _add_dryrun_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--dryrun",
        "-n",
        action="store_true",
        help="Do a dry run (aka 'no-op') to print what operations would happen if the command were to be executed for "
        "real. No changes are made.\n\n",
    )


def _add_now_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--now",
        default=None,
        metavar="ISO8601",
        help="Use this point in time instead of the current time, e.g. '2024-02-01T00:00'; for reproducible runs. "
        f"The environment variable {ENV_VAR_PREFIX}now has the same effect.\n\n",
    )
