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
"""Collection of helper functions used across rack; includes environment variable parsing, subprocess execution, dataset
path arithmetic and time parsing.

Everything in this module relies only on the standard library so that the modules building on top of it stay small. Each
utility favors simple, predictable behavior.
"""

from __future__ import annotations
import argparse
import contextlib
import logging
import os
import re
import subprocess
import sys
import types
from datetime import (
    datetime,
    timedelta,
    timezone,
    tzinfo,
)
from typing import (
    Any,
    Callable,
    Final,
    Iterable,
    Iterator,
    NoReturn,
    TextIO,
    cast,
)

# constants:
PROG_NAME: Final[str] = "rack"
ENV_VAR_PREFIX: Final[str] = PROG_NAME + "_"
DIE_STATUS: Final[int] = 3
DEFAULT_SNAPSHOT_PREFIX: Final[str] = "caz"
LOG_STDERR: Final[int] = (logging.INFO + logging.WARNING) // 2  # custom log level is halfway in between
LOG_STDOUT: Final[int] = (LOG_STDERR + logging.INFO) // 2  # custom log level is halfway in between
LOG_DEBUG: Final[int] = logging.DEBUG
LOG_TRACE: Final[int] = logging.DEBUG // 2  # custom log level is halfway in between
SHELL_CHARS: Final[str] = '"' + "'`~!@#$%^&*()+={}[]|;<>?,\\"


def getenv_any(key: str, default: str | None = None) -> str | None:
    """All shell environment variable names used for configuration start with this prefix."""
    return os.getenv(ENV_VAR_PREFIX + key, default)


def getenv_int(key: str, default: int) -> int:
    """Returns environment variable ``key`` as int with ``default`` fallback."""
    return int(cast(str, getenv_any(key, str(default))))


def get_home_directory() -> str:
    """Reliably detects home dir without using HOME env var."""
    import pwd  # lazy import for startup perf

    # thread-safe version of: os.environ.pop('HOME', None); os.path.expanduser('~')
    return pwd.getpwuid(os.getuid()).pw_dir


def is_descendant(dataset: str, of_root_dataset: str) -> bool:
    """Returns True if ``dataset`` lies under ``of_root_dataset`` in the dataset hierarchy, or is the same."""
    return dataset == of_root_dataset or dataset.startswith(of_root_dataset + "/")


def dry(msg: str, is_dry_run: bool) -> str:
    """Prefix ``msg`` with 'Dry' when in dry-run mode."""
    return "Dry " + msg if is_dry_run else msg


def relativize_dataset(dataset: str, root_dataset: str) -> str:
    """Converts an absolute dataset path to one relative to ``root_dataset``.

    Example: root_dataset=tank/foo, dataset=tank/foo/bar/baz --> relative_path=/bar/baz.
    """
    assert is_descendant(dataset, root_dataset)
    return dataset[len(root_dataset) :]


def dataset_paths(dataset: str) -> Iterator[str]:
    """Enumerates all paths of a valid ZFS dataset name; Example: "a/b/c" --> yields "a", "a/b", "a/b/c"."""
    i: int = 0
    while i >= 0:
        i = dataset.find("/", i)
        if i < 0:
            yield dataset
        else:
            yield dataset[:i]
            i += 1


def parent_dataset(dataset: str) -> str:
    """Returns the parent path of the given dataset, or the empty string for a pool (which has no parent)."""
    i: int = dataset.rfind("/")
    return dataset[:i] if i >= 0 else ""


def list_formatter(iterable: Iterable[Any], separator: str = " ", lstrip: bool = False) -> Any:
    """Lazy formatter joining items with ``separator`` used to avoid overhead in disabled log levels."""

    class CustomListFormatter:
        """Formatter object that joins items when converted to ``str``."""

        def __str__(self) -> str:
            s = separator.join(map(str, iterable))
            return s.lstrip() if lstrip else s

    return CustomListFormatter()


def stderr_to_str(stderr: Any) -> str:
    """Workaround for https://github.com/python/cpython/issues/87597."""
    return str(stderr) if not isinstance(stderr, bytes) else stderr.decode("utf-8")


def xprint(log: logging.Logger, value: Any, run: bool = True, end: str = "\n", file: TextIO | None = None) -> None:
    """Optionally logs ``value`` at stdout/stderr level."""
    if run and value:
        value = value if end else str(value).rstrip()
        level = LOG_STDOUT if file is sys.stdout else LOG_STDERR
        log.log(level, "%s", value)


def die(msg: str, exit_code: int = DIE_STATUS, parser: argparse.ArgumentParser | None = None) -> NoReturn:
    """Exits the program with ``exit_code`` after logging ``msg``."""
    if parser is None:
        ex = SystemExit(msg)
        ex.code = exit_code
        raise ex
    else:
        parser.error(msg)


def subprocess_run(*args: Any, **kwargs: Any) -> subprocess.CompletedProcess:
    """Drop-in replacement for subprocess.run() that mimics its behavior except it kills the child on any interruption."""
    input_value = kwargs.pop("input", None)
    timeout = kwargs.pop("timeout", None)
    check = kwargs.pop("check", False)
    if input_value is not None:
        if kwargs.get("stdin") is not None:
            raise ValueError("input and stdin are mutually exclusive")
        kwargs["stdin"] = subprocess.PIPE

    with subprocess.Popen(*args, **kwargs) as proc:
        try:
            stdout, stderr = proc.communicate(input_value, timeout=timeout)
        except BaseException:
            proc.kill()
            raise
        else:
            exitcode: int | None = proc.poll()
            assert exitcode is not None
            if check and exitcode:
                raise subprocess.CalledProcessError(exitcode, proc.args, output=stdout, stderr=stderr)
    return subprocess.CompletedProcess(proc.args, exitcode, stdout, stderr)


def is_valid_dataset_name(dataset: str) -> bool:
    """'zfs create' CLI does not accept dataset names that are empty or start or end in a slash, etc."""
    return not (
        dataset in ("", ".", "..")
        or dataset.startswith(("/", "./", "../"))
        or dataset.endswith(("/", "/.", "/.."))
        or any(substring in dataset for substring in ("//", "/./", "/../"))
        or any(char in SHELL_CHARS or char == "@" or (char.isspace() and char != " ") for char in dataset)
        or not dataset[0].isalpha()
    )


DURATION_UNIT_MILLISECONDS: Final[dict[str, int]] = {
    "milliseconds": 1,
    "millis": 1,
    "seconds": 1000,
    "secs": 1000,
    "minutes": 60 * 1000,
    "mins": 60 * 1000,
    "hours": 60 * 60 * 1000,
    "days": 86400 * 1000,
    "weeks": 7 * 86400 * 1000,
    "months": round(30.5 * 86400 * 1000),
    "years": 365 * 86400 * 1000,
}
_DURATION_REGEX: Final[re.Pattern[str]] = re.compile(rf"(\d+)\s*({'|'.join(DURATION_UNIT_MILLISECONDS.keys())})")


def parse_duration_to_milliseconds(duration: str, context: str = "") -> int:
    """Parses human duration strings like '5mins' or '2 hours' to milliseconds."""
    match = _DURATION_REGEX.fullmatch(duration.strip())
    if not match:
        if context:
            die(f"Invalid duration format: {duration} within {context}")
        else:
            raise ValueError(f"Invalid duration format: {duration}")
    quantity: int = int(match.group(1))
    unit: str = match.group(2)
    return quantity * DURATION_UNIT_MILLISECONDS[unit]


def parse_duration(duration: str, context: str = "") -> timedelta:
    """Same as parse_duration_to_milliseconds() except it returns a timedelta."""
    return timedelta(milliseconds=parse_duration_to_milliseconds(duration, context=context))


def get_timezone(tz_spec: str | None = None) -> tzinfo | None:
    """Returns timezone from spec or local timezone if unspecified."""
    tz: tzinfo | None
    if tz_spec is None:
        tz = None
    elif tz_spec == "UTC":
        tz = timezone.utc
    else:
        if match := re.fullmatch(r"([+-])(\d\d):?(\d\d)", tz_spec):
            sign, hours, minutes = match.groups()
            offset: int = int(hours) * 60 + int(minutes)
            offset = -offset if sign == "-" else offset
            tz = timezone(timedelta(minutes=offset))
        elif "/" in tz_spec:
            from zoneinfo import ZoneInfo  # lazy import for startup perf

            tz = ZoneInfo(tz_spec)
        else:
            raise ValueError(f"Invalid timezone specification: {tz_spec}")
    return tz


def parse_datetime(datetime_str: str, tz: tzinfo | None = None) -> datetime:
    """Parses an ISO 8601 datetime string; attaches ``tz`` if the string carries no UTC offset of its own."""
    dt: datetime = datetime.fromisoformat(datetime_str)
    return dt.replace(tzinfo=tz) if dt.tzinfo is None else dt


#############################################################################
class _XFinally(contextlib.AbstractContextManager):
    """Context manager ensuring cleanup code executes after ``with`` blocks."""

    def __init__(self, cleanup: Callable[[], None]) -> None:
        """Records the callable to run upon exit."""
        self._cleanup = cleanup

    def __exit__(  # type: ignore[exit-return]
        self, exc_type: type[BaseException] | None, exc: BaseException | None, tb: types.TracebackType | None
    ) -> bool:
        """Runs cleanup and propagates any exceptions appropriately."""
        try:
            self._cleanup()
        except BaseException as cleanup_exc:
            if exc is None:
                raise  # No main error --> propagate cleanup error normally
            exc.__context__ = cleanup_exc  # attach so it shows up in traceback but doesn't mask the main error
            return False
        return False


def xfinally(cleanup: Callable[[], None]) -> _XFinally:
    """Usage: with xfinally(lambda: cleanup()): ...

    Returns a context manager that guarantees that cleanup() runs on exit and guarantees any error in cleanup() will never
    mask an exception raised earlier inside the body of the `with` block.
    """
    return _XFinally(cleanup)
