# Copyright 2026 The siazfs Authors
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
"""Retries of transient 'zfs' failures using jittered exponential backoff with cap.

A 'zfs' command may fail transiently, for example with "dataset is busy" while a concurrent 'zfs send' holds the dataset.
Callers signal such failures by raising RetryableError from the callable; every other exception propagates immediately.
"""

from __future__ import (
    annotations,
)
import argparse
import itertools
import random
import time
from collections.abc import (
    Iterator,
)
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

from siazfs_main.utils import (
    human_readable_duration,
)


#############################################################################
class RetryPolicy:
    """Configuration controlling retry counts and backoff delays."""

    def __init__(self, args: argparse.Namespace) -> None:
        """Option values for retries; reads from ArgumentParser via args."""
        # immutable variables:
        self.retries: int = args.retries
        self.min_sleep_secs: float = args.retry_min_sleep_secs
        self.max_sleep_secs: float = args.retry_max_sleep_secs
        self.max_elapsed_secs: float = args.retry_max_elapsed_secs
        self.min_sleep_nanos: int = max(1, int(self.min_sleep_secs * 1_000_000_000))
        self.max_sleep_nanos: int = max(self.min_sleep_nanos, int(self.max_sleep_secs * 1_000_000_000))
        self.max_elapsed_nanos: int = int(self.max_elapsed_secs * 1_000_000_000)
        assert self.min_sleep_nanos <= self.max_sleep_nanos

    def __repr__(self) -> str:
        return (
            f"retries: {self.retries}, min_sleep_secs: {self.min_sleep_secs}, max_sleep_secs: {self.max_sleep_secs}, "
            f"max_elapsed_secs: {self.max_elapsed_secs}"
        )

    @classmethod
    def no_retries(cls) -> RetryPolicy:
        """Returns a policy that never retries."""
        return cls(
            argparse.Namespace(retries=0, retry_min_sleep_secs=0, retry_max_sleep_secs=0, retry_max_elapsed_secs=0)
        )


#############################################################################
T = TypeVar("T")


def run_with_retries(
    log: Logger,
    policy: RetryPolicy,
    fn: Callable[..., T],
    *args: Any,
    sleep_fn: Callable[[float], None] = time.sleep,
    **kwargs: Any,
) -> T:
    """Runs the given function with the given arguments, and retries on RetryableError as indicated by policy.

    The callable receives a ``retry`` keyword argument with the current attempt. After the last attempt fails, the cause of
    the final RetryableError is re-raised.
    """
    delays: Iterator[int] = backoff_delays_nanos(policy)
    start_time_nanos: int = time.monotonic_ns()
    for attempt in itertools.count():
        try:
            return fn(*args, **kwargs, retry=Retry(attempt))
        except RetryableError as retryable_error:
            elapsed_nanos: int = time.monotonic_ns() - start_time_nanos
            if attempt >= policy.retries or elapsed_nanos >= policy.max_elapsed_nanos:
                if policy.retries > 0:
                    log.warning(
                        "Giving up after %s/%s retries within %s (limit %s): %s",
                        attempt,
                        policy.retries,
                        human_readable_duration(elapsed_nanos),
                        human_readable_duration(policy.max_elapsed_nanos),
                        retryable_error,
                    )
                cause: BaseException | None = retryable_error.__cause__
                if cause is None:
                    raise
                raise cause.with_traceback(cause.__traceback__) from cause.__cause__
            sleep_nanos: int = next(delays)
            sleep_text: str = human_readable_duration(sleep_nanos)
            log.info("Retrying %s/%s in %s: %s", attempt + 1, policy.retries, sleep_text, retryable_error)
            sleep_fn(sleep_nanos / 1_000_000_000)
    raise AssertionError("unreachable")


def backoff_delays_nanos(policy: RetryPolicy) -> Iterator[int]:
    """Yields jittered sleep durations; the upper bound starts at the minimum and doubles per retry, up to the maximum."""
    rng = random.SystemRandom()
    upper_nanos: int = policy.min_sleep_nanos
    while True:
        yield rng.randint(policy.min_sleep_nanos, upper_nanos)
        upper_nanos = min(policy.max_sleep_nanos, 2 * upper_nanos)


#############################################################################
class RetryableError(Exception):
    """Indicates that the task that caused the underlying exception can be retried and might eventually succeed."""


#############################################################################
@dataclass(frozen=True)
class Retry:
    """The current retry attempt number provided to the callable."""

    count: int
