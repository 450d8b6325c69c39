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


from __future__ import annotations

import inspect
import logging
from typing import Any, Callable, Optional

from fwupdater_common._typing import MaybeAwaitable, T

logger = logging.getLogger(__name__)


async def maybe_await(value: MaybeAwaitable[T]) -> T:
    if inspect.isawaitable(value):
        return await value
    return value  # type: ignore[return-value]


async def notify_sink(
    sink: Optional[Callable[[Any], Any]],
    event: Any,
    *,
    _logger: logging.Logger = logger,
) -> None:
    """Deliver <event> to <sink>, swallowing any failure raised by the sink.

    <sink> can be a plain function or a coroutine function.
    """
    if sink is None:
        return
    try:
        await maybe_await(sink(event))
    except Exception as e:
        _logger.debug(f"event sink failed on {event=}: {e!r}")
