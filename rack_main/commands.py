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
"""Runs zfs CLI commands on the local host; logs each command and honors dry-run mode."""

from __future__ import (
    annotations,
)
import logging
import subprocess
import sys
from subprocess import (
    DEVNULL,
    PIPE,
    CompletedProcess,
)
from typing import (
    TYPE_CHECKING,
    Final,
)

from rack_main.utils import (
    list_formatter,
    stderr_to_str,
    subprocess_run,
    xprint,
)

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from rack_main.configuration import (
        Params,
    )

# constants:
DATASET_DOES_NOT_EXIST_ERRORS: Final[tuple[str, ...]] = (
    ": dataset does not exist",
    ": filesystem does not exist",  # solaris 11.4.0
    ": no such pool",
)


def run_command(
    p: Params,
    cmd: list[str],
    level: int = -1,
    is_dry: bool = False,
    check: bool = True,
    print_stdout: bool = False,
    print_stderr: bool = True,
) -> str:
    """Runs the given CLI cmd locally and returns its stdout; in dry-run mode only logs what would be executed."""
    level = level if level >= 0 else logging.INFO
    assert isinstance(cmd, list) and len(cmd) > 0
    log = p.log
    msg: str = "Would execute: %s" if is_dry else "Executing: %s"
    log.log(level, msg, list_formatter(cmd, lstrip=True))
    if is_dry:
        return ""
    try:
        process: CompletedProcess[str] = subprocess_run(
            cmd, stdin=DEVNULL, stdout=PIPE, stderr=PIPE, text=True, timeout=p.timeout_secs, check=check
        )
    except (subprocess.CalledProcessError, subprocess.TimeoutExpired, UnicodeDecodeError) as e:
        if not isinstance(e, UnicodeDecodeError):
            xprint(log, stderr_to_str(e.stdout), run=print_stdout, file=sys.stdout, end="")
            xprint(log, stderr_to_str(e.stderr), run=print_stderr, file=sys.stderr, end="")
        raise
    else:
        xprint(log, process.stdout, run=print_stdout, file=sys.stdout, end="")
        xprint(log, process.stderr, run=print_stderr, file=sys.stderr, end="")
        return process.stdout


def try_command(p: Params, cmd: list[str], level: int = -1, is_dry: bool = False) -> str | None:
    """Same as run_command() except it returns None if the dataset or pool that the cmd refers to does not exist."""
    try:
        return run_command(p, cmd, level=level, is_dry=is_dry, print_stderr=False)
    except subprocess.CalledProcessError as e:
        if is_dataset_missing(stderr_to_str(e.stderr)):
            return None
        raise


def is_dataset_missing(stderr: str) -> bool:
    """Returns True if the given zfs stderr output says that a dataset or pool does not exist."""
    return any(error in stderr for error in DATASET_DOES_NOT_EXIST_ERRORS)
