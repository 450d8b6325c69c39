# Copyright 2022 TIER IV, INC. All rights reserved.
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
"""Bounded retry with exponential backoff and jitter."""


from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Optional

from fwupdater_common._typing import StrEnum, T
from fwupdater_common.asyncio_utils import maybe_await

logger = logging.getLogger(__name__)


class RetryDecision(StrEnum):
    RETRY = "retry"
    ABORT = "abort"


Classifier = Callable[[BaseException], RetryDecision]
OnRetryCallback = Callable[[BaseException, int, float], Any]


def get_backoff(n: int, factor: float, _max: float) -> float:
    """Exponential backoff for the <n>th(0-based) retry, capped by <_max>."""
    return min(_max, factor * (2**n))


def get_backoff_with_jitter(n: int, base: float, _max: float) -> float:
    """Exponential backoff plus a random jitter in [0, base).

    The result is always within [base, min(base * 2**n, _max) + base).
    """
    return get_backoff(n, base, _max) + random.random() * base


async def retry_async(
    func: Callable[[], Awaitable[T]],
    *,
    classify: Classifier,
    max_attempts: int = 5,
    base_delay: float = 1,
    max_delay: float = 60,
    on_retry: Optional[OnRetryCallback] = None,
) -> T:
    """Await <func> until it succeeds, at most <max_attempts> times.

    On each failure, <classify> decides whether to retry. When retrying, the
        optional <on_retry>(exc, next_attempt, delay) observer is invoked before
        sleeping. When aborted or attempts are exhausted, the last exception
        is re-raised as is.
    """
    if max_attempts < 1:
        raise ValueError(f"{max_attempts=} must be >= 1")

    for attempt in range(max_attempts):
        try:
            return await func()
        except Exception as e:
            if attempt + 1 >= max_attempts or classify(e) != RetryDecision.RETRY:
                raise

            delay = get_backoff_with_jitter(attempt, base_delay, max_delay)
            logger.debug(
                f"attempt #{attempt + 1} failed: {e!r}, retry in {delay:.2f}s"
            )
            if on_retry:
                await maybe_await(on_retry(e, attempt + 1, delay))
            await asyncio.sleep(delay)

    raise AssertionError("unreachable")  # pragma: no cover
