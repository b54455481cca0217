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
"""Test case base class used by most unit tests.

Provides shared setup for consistent CLI argument parsing, and builds Params and Jobs that never read the user's config file.
"""

from __future__ import annotations
import argparse
import logging
import unittest
from unittest.mock import MagicMock

from rack_main import argparse_cli, configuration, rack
from rack_main.volume_manager import VolumeManager


#############################################################################
class AbstractTestCase(unittest.TestCase):

    @staticmethod
    def argparser_parse_args(args: list[str]) -> argparse.Namespace:
        return argparse_cli.argument_parser().parse_args(args)

    @staticmethod
    def make_params(
        args: argparse.Namespace,
        log_params: configuration.LogParams | None = None,
        log: logging.Logger | None = None,
        config: configuration.RackConfig | None = None,
    ) -> configuration.Params:
        log_params = log_params if log_params is not None else MagicMock(spec=configuration.LogParams)
        log = log if log is not None else MagicMock(spec=logging.Logger)
        config = config if config is not None else configuration.RackConfig()
        return configuration.Params(args=args, log_params=log_params, log=log, config=config)

    def make_job(
        self,
        cli_args: list[str],
        manager: VolumeManager | None = None,
        config: configuration.RackConfig | None = None,
    ) -> rack.Job:
        """Returns a Job whose params are parsed from ``cli_args``; retries don't sleep."""
        args = self.argparser_parse_args(["--retry-min-sleep-secs", "0", "--retry-max-sleep-secs", "0"] + cli_args)
        job = rack.Job(manager=manager)
        job.params = self.make_params(args, config=config)
        return job
