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
"""Retry helper with the default transient/permanent classifier plugged in."""


from __future__ import annotations

from typing import Awaitable, Callable, Optional

from fwupdater.configs import cfg
from fwupdater.errors import is_retryable
from fwupdater_common._typing import T
from fwupdater_common.retry import (
    Classifier,
    OnRetryCallback,
    RetryDecision,
    retry_async,
)


def default_classifier(exc: BaseException) -> RetryDecision:
    return RetryDecision.RETRY if is_retryable(exc) else RetryDecision.ABORT


async def with_retry(
    func: Callable[[], Awaitable[T]],
    *,
    max_attempts: Optional[int] = None,
    base_delay: Optional[float] = None,
    max_delay: Optional[float] = None,
    classify: Optional[Classifier] = None,
    on_retry: Optional[OnRetryCallback] = None,
) -> T:
    """Retry <func> with exponential backoff and jitter.

    Unset parameters fall back to the RETRY_* settings, and <classify> falls back
        to retrying only transient errors.
    """
    return await retry_async(
        func,
        classify=classify or default_classifier,
        max_attempts=max_attempts if max_attempts is not None else cfg.RETRY_MAX_ATTEMPTS,
        base_delay=base_delay if base_delay is not None else cfg.RETRY_BASE_DELAY,
        max_delay=max_delay if max_delay is not None else cfg.RETRY_MAX_DELAY,
        on_retry=on_retry,
    )
