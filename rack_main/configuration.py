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
"""Configuration subsystem; Centralizes option parsing, the YAML config file and derived settings.

``LogParams`` carries the logging options, ``Params`` bundles everything else a Job needs; both are built from the
``argparse.Namespace`` produced by ``argparse_cli.argument_parser()``. The YAML config file (default ``~/.rack.yaml``) is
loaded with PyYAML into immutable dataclasses; command line options take precedence over it.
"""

from __future__ import (
    annotations,
)
import argparse
import os
from dataclasses import (
    dataclass,
    field,
)
from datetime import (
    datetime,
    tzinfo,
)
from logging import (
    Logger,
)
from typing import (
    Any,
    Final,
)

import yaml

from rack_main.argparse_cli import (
    CONFIG_FILE_DEFAULT,
    PRUNE,
    SNAP,
)
from rack_main.errors import (
    ConfigError,
)
from rack_main.period_anchors import (
    PeriodAnchors,
)
from rack_main.retention import (
    DEFAULT_RETENTION_BUCKETS,
    UNBOUNDED,
    RetentionBucket,
    buckets_from_plan,
    validate_buckets,
)
from rack_main.retry import (
    RetryPolicy,
)
from rack_main.snapshot_names import (
    validate_prefix,
)
from rack_main.utils import (
    DEFAULT_SNAPSHOT_PREFIX,
    die,
    dry,
    get_home_directory,
    get_timezone,
    getenv_any,
    getenv_int,
    is_valid_dataset_name,
    parse_datetime,
    parse_duration,
)


#############################################################################
class LogParams:
    """Option values for logging."""

    def __init__(self, args: argparse.Namespace) -> None:
        """Reads from ArgumentParser via args."""
        # immutable variables:
        if args.quiet:
            log_level: str = "ERROR"
        elif args.verbose >= 2:
            log_level = "TRACE"
        elif args.verbose >= 1:
            log_level = "DEBUG"
        else:
            log_level = "INFO"
        self.log_level: Final[str] = log_level
        self.quiet: Final[bool] = args.quiet
        self.log_file: Final[str | None] = args.log_file

    def __repr__(self) -> str:
        return str(self.__dict__)


#############################################################################
class Params:
    """All parsed CLI options and config file settings combined into a single bundle."""

    def __init__(
        self,
        args: argparse.Namespace,
        log_params: LogParams,
        log: Logger,
        config: RackConfig | None = None,
    ) -> None:
        """Reads from ArgumentParser via args; ``config`` defaults to the config file named by --config."""
        # immutable variables:
        assert args is not None
        assert log_params is not None
        assert log is not None
        self.args: Final[argparse.Namespace] = args
        self.log_params: Final[LogParams] = log_params
        self.log: Final[Logger] = log
        self.command: Final[str] = args.command
        self.config: Final[RackConfig] = config if config is not None else load_config_file(args.config)

        prefix: str = args.prefix or self.config.prefix or DEFAULT_SNAPSHOT_PREFIX
        self.prefix: Final[str] = prefix
        try:
            self.timezone: Final[tzinfo | None] = get_timezone(args.timezone)
        except (ValueError, LookupError) as e:  # ZoneInfoNotFoundError is a KeyError
            die(f"Invalid --timezone: {args.timezone}: {e}")
        self.zfs_program: Final[str] = args.zfs_program
        self.enable_privilege_elevation: Final[bool] = not args.no_privilege_elevation
        is_root: bool = os.geteuid() == 0
        self.sudo_cmd: Final[list[str]] = (
            [args.sudo_program, "-n"] if self.enable_privilege_elevation and not is_root else []
        )
        self.timeout_secs: Final[int | None] = getenv_int("timeout_secs", 0) or None  # None means wait forever
        self.retry_policy: Final[RetryPolicy] = RetryPolicy(args)

        dry_run: bool = not args.really if self.command == PRUNE else bool(getattr(args, "dryrun", False))
        self.dry_run: Final[bool] = dry_run
        recursive: bool | None = getattr(args, "recursive", None)
        if recursive is None:  # not specified on the CLI
            recursive = {PRUNE: self.config.prune.recursive, SNAP: self.config.snap.recursive}.get(self.command, False)
        self.recursive: Final[bool] = recursive
        now: str | None = getattr(args, "now", None) or getenv_any("now")
        try:
            self.now: Final[datetime] = parse_datetime(now, self.timezone) if now else datetime.now(self.timezone)
        except ValueError as e:
            die(f"Invalid --now: {now}: {e}")

        try:
            self.retention_buckets: Final[list[RetentionBucket]] = validate_buckets(
                getattr(args, "retention_buckets", None)
                or self.config.prune.retention_buckets
                or list(DEFAULT_RETENTION_BUCKETS)
            )
        except ValueError as e:
            die(f"Invalid retention policy: {e}")
        keep_latest: int | None = getattr(args, "keep_latest", None)
        self.keep_latest: Final[int] = keep_latest if keep_latest is not None else self.config.prune.keep_latest
        self.anchors: Final[PeriodAnchors] = PeriodAnchors.parse(args) if self.command == PRUNE else PeriodAnchors()

    def dry(self, msg: str) -> str:
        """Prefix ``msg`` with 'Dry' when running in dry-run mode."""
        return dry(msg, self.dry_run)

    def __repr__(self) -> str:
        return str({k: v for k, v in self.__dict__.items() if k not in ("args", "log")})


#############################################################################
@dataclass(frozen=True)
class CloneConfig:
    """One source/destination pair of the config file's 'clone' section."""

    name: str
    source: str
    dest: str
    skip: bool = False
    exclude: tuple[str, ...] = ()


@dataclass(frozen=True)
class PruneConfig:
    """The config file's 'prune' section; an empty retention list means 'use the built-in default'."""

    volumes: tuple[str, ...] = ()
    recursive: bool = False
    keep_latest: int = 0
    retention_buckets: tuple[RetentionBucket, ...] = ()


@dataclass(frozen=True)
class SnapConfig:
    """The config file's 'snap' section."""

    volumes: tuple[str, ...] = ()
    recursive: bool = False


@dataclass(frozen=True)
class RackConfig:
    """The parsed YAML config file."""

    prefix: str | None = None
    clone: tuple[CloneConfig, ...] = ()
    prune: PruneConfig = field(default_factory=PruneConfig)
    snap: SnapConfig = field(default_factory=SnapConfig)


def load_config_file(path: str | None) -> RackConfig:
    """Loads the given YAML config file; if ``path`` is None the default file is loaded if it exists."""
    if path is None:
        path = os.path.join(get_home_directory(), CONFIG_FILE_DEFAULT)
        if not os.path.exists(path):
            return RackConfig()
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in config file {path}: {e}") from e
    return parse_config(raw, path)


def parse_config(raw: Any, path: str = "<config>") -> RackConfig:
    """Validates the object tree produced by yaml.safe_load() and converts it into a RackConfig."""
    if raw is None:
        return RackConfig()  # empty file
    if not isinstance(raw, dict):
        raise ConfigError(f"Config must be a YAML mapping: {path}")

    prefix = raw.get("prefix")
    if prefix is not None:
        try:
            validate_prefix(str(prefix))
        except ValueError as e:
            raise ConfigError(f"{path}: {e}") from e
        prefix = str(prefix)

    clone_raw: dict[str, Any] = _section(raw, "clone", path)
    clones: list[CloneConfig] = []
    for i, entry in enumerate(clone_raw.get("volumes") or []):
        where: str = f"{path}: clone.volumes[{i}]"
        if not isinstance(entry, dict):
            raise ConfigError(f"{where} must be a mapping with 'source' and 'dest'")
        source: str = _dataset(entry.get("source"), f"{where}.source")
        dest: str = _dataset(entry.get("dest"), f"{where}.dest")
        excludes: tuple[str, ...] = tuple(
            _dataset(x, f"{where}.exclude") for x in _list(entry.get("exclude"), f"{where}.exclude")
        )
        clones.append(
            CloneConfig(
                name=str(entry.get("name") or source),
                source=source,
                dest=dest,
                skip=_bool(entry.get("skip", False), f"{where}.skip"),
                exclude=excludes,
            )
        )

    prune_raw: dict[str, Any] = _section(raw, "prune", path)
    keep_latest = prune_raw.get("keep_latest", 0)
    if not isinstance(keep_latest, int) or isinstance(keep_latest, bool) or keep_latest < 0:
        raise ConfigError(f"{path}: prune.keep_latest must be a non-negative integer, but got: {keep_latest!r}")
    if "retention" in prune_raw and "plan" in prune_raw:
        raise ConfigError(f"{path}: prune.retention and prune.plan are mutually exclusive")
    try:
        if "plan" in prune_raw:
            plan = prune_raw["plan"]
            if not isinstance(plan, dict):
                raise ConfigError(f"{path}: prune.plan must be a mapping such as {{daily: 7, weekly: 4}}")
            buckets: list[RetentionBucket] = buckets_from_plan(plan)
        else:
            buckets = [
                _bucket(item, f"{path}: prune.retention[{i}]")
                for i, item in enumerate(_list(prune_raw.get("retention"), f"{path}: prune.retention"))
            ]
        if buckets:
            validate_buckets(buckets)
    except ValueError as e:
        raise ConfigError(f"{path}: prune: {e}") from e
    prune = PruneConfig(
        volumes=tuple(_dataset(x, f"{path}: prune.volumes") for x in _list(prune_raw.get("volumes"), "prune.volumes")),
        recursive=_bool(prune_raw.get("recursive", False), f"{path}: prune.recursive"),
        keep_latest=keep_latest,
        retention_buckets=tuple(buckets),
    )

    snap_raw: dict[str, Any] = _section(raw, "snap", path)
    snap = SnapConfig(
        volumes=tuple(_dataset(x, f"{path}: snap.volumes") for x in _list(snap_raw.get("volumes"), "snap.volumes")),
        recursive=_bool(snap_raw.get("recursive", False), f"{path}: snap.recursive"),
    )
    return RackConfig(prefix=prefix, clone=tuple(clones), prune=prune, snap=snap)


def _section(raw: dict[str, Any], name: str, path: str) -> dict[str, Any]:
    section = raw.get(name)
    if section is None:
        return {}
    if not isinstance(section, dict):
        raise ConfigError(f"{path}: '{name}' must be a mapping")
    return section


def _list(value: Any, where: str) -> list[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ConfigError(f"{where} must be a list")
    return value


def _bool(value: Any, where: str) -> bool:
    if not isinstance(value, bool):
        raise ConfigError(f"{where} must be true or false, but got: {value!r}")
    return value


def _dataset(value: Any, where: str) -> str:
    if not isinstance(value, str) or not is_valid_dataset_name(value):
        raise ConfigError(f"{where}: Invalid ZFS dataset name: {value!r}")
    return value


def _bucket(item: Any, where: str) -> RetentionBucket:
    """Parses ``{start: 0 days, end: 2 days, every: all}``; ``end: forever`` means unbounded."""
    if not isinstance(item, dict) or not {"start", "end", "every"}.issubset(item):
        raise ConfigError(f"{where} must be a mapping with 'start', 'end' and 'every'")
    end = str(item["end"]).strip()
    return RetentionBucket(
        start=parse_duration(str(item["start"])),
        end=None if end == UNBOUNDED else parse_duration(end),
        granularity=str(item["every"]).strip(),
    )
