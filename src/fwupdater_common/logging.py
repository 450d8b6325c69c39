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
"""Logging helpers shared by fwupdater modules."""


from __future__ import annotations

import logging
import threading
import time


class BurstSuppressFilter(logging.Filter):
    """Allow at most <burst_max> records per <window> seconds through this logger.

    Suppressed records are counted, and a summary is emitted through <report_logger>
    when the window rolls over.
    """

    def __init__(
        self,
        name: str,
        *,
        burst_max: int,
        window: float,
        report_logger_name: str,
    ) -> None:
        super().__init__(name)
        self.burst_max = burst_max
        self.window = window
        self.report_logger_name = report_logger_name

        self._lock = threading.Lock()
        self._window_start = time.monotonic()
        self._emitted = 0
        self._suppressed = 0

    def filter(self, record: logging.LogRecord) -> bool:
        report_logger = logging.getLogger(self.report_logger_name)
        with self._lock:
            now = time.monotonic()
            if now >= self._window_start + self.window:
                if self._suppressed:
                    report_logger.warning(
                        f"{self._suppressed} lines of logging from {self.name} "
                        f"were suppressed in the last {self.window}s"
                    )
                self._window_start = now
                self._emitted = self._suppressed = 0

            if self._emitted < self.burst_max:
                self._emitted += 1
                return True

            if not self._suppressed:
                report_logger.warning(
                    f"logging from {self.name} suppressed: "
                    f"more than {self.burst_max} lines within {self.window}s"
                )
            self._suppressed += 1
            return False


def get_burst_suppressed_logger(
    _logger: logging.Logger | str,
    *,
    report_logger_name: str | None = None,
    burst_max: int = 6,
    window: float = 30,
) -> logging.Logger:
    """Get the logger <_logger> with a BurstSuppressFilter attached.

    Args:
        _logger (logging.Logger | str): the logger object or the name of the logger.
        report_logger_name (str | None, optional): the logger that reports suppression.
            Defaults to the top-level package logger of <_logger>.
        burst_max (int, optional): max lines per window. Defaults to 6.
        window (float, optional): length of the suppression window in seconds.
            Defaults to 30.
    """
    this_logger = (
        logging.getLogger(_logger) if isinstance(_logger, str) else _logger
    )
    if report_logger_name is None:
        report_logger_name = this_logger.name.split(".")[0]

    this_logger.addFilter(
        BurstSuppressFilter(
            this_logger.name,
            burst_max=burst_max,
            window=window,
            report_logger_name=report_logger_name,
        )
    )
    return this_logger
