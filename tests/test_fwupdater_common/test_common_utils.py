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

import logging

import pytest

from fwupdater_common.asyncio_utils import maybe_await, notify_sink
from fwupdater_common.logging import BurstSuppressFilter, get_burst_suppressed_logger


def test_burst_suppressed_logger(caplog: pytest.LogCaptureFixture):
    caplog.set_level(logging.INFO)
    _logger = get_burst_suppressed_logger(
        "upper_logger.burst_test", burst_max=3, window=60
    )

    for idx in range(10):
        _logger.info(f"line #{idx}")

    lines = [r for r in caplog.records if r.name == "upper_logger.burst_test"]
    assert [r.getMessage() for r in lines] == ["line #0", "line #1", "line #2"]

    reports = [r for r in caplog.records if r.name == "upper_logger"]
    assert len(reports) == 1
    assert "suppressed" in reports[0].getMessage()
    assert any(isinstance(f, BurstSuppressFilter) for f in _logger.filters)


class TestAsyncioUtils:

    @pytest.mark.asyncio
    async def test_maybe_await(self):
        async def _coro() -> int:
            return 2

        assert await maybe_await(1) == 1
        assert await maybe_await(_coro()) == 2

    @pytest.mark.asyncio
    async def test_notify_sink(self):
        received = []

        async def _async_sink(event) -> None:
            received.append(("async", event))

        await notify_sink(received.append, "a")
        await notify_sink(_async_sink, "b")
        await notify_sink(None, "c")
        assert received == ["a", ("async", "b")]

    @pytest.mark.asyncio
    async def test_sink_failure_swallowed(self):
        def _broken_sink(_) -> None:
            raise RuntimeError("sink failed")

        await notify_sink(_broken_sink, "a")
