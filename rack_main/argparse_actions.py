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
"""Custom argparse actions of the 'rack' CLI; These helpers validate dataset names, snapshot prefixes and retention
policies at parse time so that errors are reported with the offending option."""

from __future__ import (
    annotations,
)
import argparse
import ast
from typing import (
    Any,
)

from rack_main.retention import (
    UNBOUNDED,
    RetentionBucket,
    buckets_from_plan,
)
from rack_main.snapshot_names import (
    validate_prefix,
)
from rack_main.utils import (
    is_valid_dataset_name,
    parse_duration,
)


#############################################################################
class NonEmptyStringAction(argparse.Action):
    """Argparse action rejecting empty string values."""

    def __call__(
        self, parser: argparse.ArgumentParser, namespace: argparse.Namespace, values: Any, option_string: str | None = None
    ) -> None:
        """Strip whitespace and reject empty values."""
        values = values.strip()
        if values == "":
            parser.error(f"{option_string}: Empty string is not valid")
        setattr(namespace, self.dest, values)


#############################################################################
class CheckRange(argparse.Action):
    """Rejects numbers outside of the closed interval [min, max]; either endpoint may be omitted."""

    def __init__(self, *args: Any, min: float | None = None, max: float | None = None, **kwargs: Any) -> None:  # noqa: A002
        super().__init__(*args, **kwargs)
        self.min: float | None = min
        self.max: float | None = max

    def __call__(
        self, parser: argparse.ArgumentParser, namespace: argparse.Namespace, values: Any, option_string: str | None = None
    ) -> None:
        if (self.min is not None and values < self.min) or (self.max is not None and values > self.max):
            lo: str = "(-infinity" if self.min is None else f"[{self.min}"
            hi: str = "+infinity)" if self.max is None else f"{self.max}]"
            raise argparse.ArgumentError(self, f"valid range: {lo}, {hi}")
        setattr(namespace, self.dest, values)


#############################################################################
class DatasetAction(argparse.Action):
    """Rejects dataset names that the zfs CLI would not accept; accepts a single name or a list of names (nargs)."""

    def __call__(
        self, parser: argparse.ArgumentParser, namespace: argparse.Namespace, values: Any, option_string: str | None = None
    ) -> None:
        if values is None:  # omitted optional positional
            setattr(namespace, self.dest, None)
            return
        datasets: list[str] = [values] if isinstance(values, str) else list(values)
        for dataset in datasets:
            if not is_valid_dataset_name(dataset):
                parser.error(f"{option_string or self.dest}: Invalid ZFS dataset name: '{dataset}'")
        if self.nargs == argparse.ONE_OR_MORE and option_string is not None:  # e.g. repeated --exclude options
            datasets = (getattr(namespace, self.dest, None) or []) + datasets
        setattr(namespace, self.dest, values if isinstance(values, str) else datasets)


#############################################################################
class SnapshotPrefixAction(argparse.Action):
    """Rejects snapshot prefixes that can't be part of a ZFS snapshot name."""

    def __call__(
        self, parser: argparse.ArgumentParser, namespace: argparse.Namespace, values: Any, option_string: str | None = None
    ) -> None:
        try:
            setattr(namespace, self.dest, validate_prefix(values.strip()))
        except ValueError as e:
            parser.error(f"{option_string}: {e}")


#############################################################################
class RetentionBucketAction(argparse.Action):
    """Parses ``START END GRANULARITY`` triples, e.g. ``--retention-bucket '0 days' '2 days' all``; appends to a list."""

    def __call__(
        self, parser: argparse.ArgumentParser, namespace: argparse.Namespace, values: Any, option_string: str | None = None
    ) -> None:
        start, end, granularity = values
        try:
            bucket = RetentionBucket(
                start=parse_duration(start),
                end=None if end.strip() == UNBOUNDED else parse_duration(end),
                granularity=granularity.strip(),
            )
        except ValueError as e:
            parser.error(f"{option_string}: {e}")
        buckets: list[RetentionBucket] = getattr(namespace, self.dest, None) or []
        setattr(namespace, self.dest, buckets + [bucket])


#############################################################################
class RetentionPlanAction(argparse.Action):
    """Parses a count based retention plan such as ``"{'hourly': 24, 'daily': 7}"`` into retention buckets."""

    def __call__(
        self, parser: argparse.ArgumentParser, namespace: argparse.Namespace, values: Any, option_string: str | None = None
    ) -> None:
        try:
            plan = ast.literal_eval(values)
        except (ValueError, SyntaxError) as e:
            parser.error(f"{option_string}: Invalid dictionary literal: {values}: {e}")
        if not isinstance(plan, dict):
            parser.error(f"{option_string}: Retention plan must be a dictionary, but got: {values}")
        try:
            buckets: list[RetentionBucket] = buckets_from_plan(plan)
        except ValueError as e:
            parser.error(f"{option_string}: {e}")
        if not buckets:
            parser.error(f"{option_string}: Cowardly refusing to prune with a retention plan that keeps nothing: {values}")
        setattr(namespace, self.dest, buckets)
