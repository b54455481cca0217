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
"""Retries of transient zfs send/receive failures using jittered exponential backoff with cap.

A callee signals that a failure may go away on its own by raising ``RetryableError`` from the underlying exception; once the
policy is exhausted the underlying exception is re-raised so callers only ever see the real error.
"""

from __future__ import (
    annotations,
)
import argparse
import random
import time
from dataclasses import (
    dataclass,
)
from logging import (
    Logger,
)
from typing import (
    Any,
    Callable,
    TypeVar,
)


#############################################################################
class RetryPolicy:
    """Configuration controlling retry counts and backoff delays."""

    def __init__(self, args: argparse.Namespace) -> None:
        """Option values for retries; reads from ArgumentParser via args."""
        # immutable variables:
        self.retries: int = max(0, args.retries)
        self.min_sleep_secs: float = max(0.0, args.retry_min_sleep_secs)
        self.max_sleep_secs: float = max(self.min_sleep_secs, args.retry_max_sleep_secs)
        self.min_sleep_nanos: int = max(1, int(self.min_sleep_secs * 1_000_000_000))
        self.max_sleep_nanos: int = max(self.min_sleep_nanos, int(self.max_sleep_secs * 1_000_000_000))

    def __repr__(self) -> str:
        return (
            f"retries: {self.retries}, min_sleep_secs: {self.min_sleep_secs}, max_sleep_secs: {self.max_sleep_secs}"
        )

    @classmethod
    def no_retries(cls) -> RetryPolicy:
        """Returns a policy that never retries."""
        return cls(argparse.Namespace(retries=0, retry_min_sleep_secs=0, retry_max_sleep_secs=0))


#############################################################################
T = TypeVar("T")


def run_with_retries(log: Logger, policy: RetryPolicy, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Runs the given function with the given arguments, and retries on RetryableError as indicated by policy."""
    max_sleep_nanos: int = policy.min_sleep_nanos
    retry_count: int = 0
    sysrandom: random.SystemRandom | None = None
    while True:
        try:
            return fn(*args, **kwargs, retry=Retry(retry_count))
        except RetryableError as retryable_error:
            if retry_count < policy.retries:
                retry_count += 1
                sysrandom = random.SystemRandom() if sysrandom is None else sysrandom
                sleep_nanos: int = sysrandom.randint(policy.min_sleep_nanos, max_sleep_nanos)  # jitter
                log.info("Retrying [%s/%s] in %.3fs ...", retry_count, policy.retries, sleep_nanos / 1_000_000_000)
                time.sleep(sleep_nanos / 1_000_000_000)
                max_sleep_nanos = min(policy.max_sleep_nanos, 2 * max_sleep_nanos)  # exponential backoff with cap
            else:
                if policy.retries > 0:
                    log.warning("Giving up because the last [%s/%s] retries failed!", retry_count, policy.retries)
                cause: BaseException | None = retryable_error.__cause__
                assert cause is not None
                raise cause.with_traceback(cause.__traceback__) from getattr(cause, "__cause__", None)


#############################################################################
class RetryableError(Exception):
    """Indicates that the task that caused the underlying exception can be retried and might eventually succeed."""


#############################################################################
@dataclass(frozen=True)
class Retry:
    """The current retry attempt number provided to the callable."""

    count: int
