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
"""Track one asynchronous firmware job on the REST protocol to its end.

States of one tracking:
    polling -> terminal(success/failure) -> awaiting controller recovery
    -> inventory collected.

Each poll/retry/terminal/recovery/error transition is delivered to the caller
    supplied event sink, sink failures never affect the polling.
"""


from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from fwupdater._types import InventoryDiff, InventorySnapshot
from fwupdater.configs import cfg
from fwupdater.errors import (
    RedfishError,
    TaskLocationMissing,
    TaskTimeoutError,
    is_network_error,
)
from fwupdater.redfish.client import RedfishClient, read_response_body, resolve_location
from fwupdater.redfish.inventory import collect_software_inventory, diff_inventories
from fwupdater_common._typing import StrEnum
from fwupdater_common.asyncio_utils import notify_sink
from fwupdater_common.logging import get_burst_suppressed_logger

logger = logging.getLogger(__name__)
burst_suppressed_logger = get_burst_suppressed_logger(f"{__name__}.transient_retry")

_FAILURE_STATUS_PA = re.compile(cfg.TASK_FAILURE_STATUS_PATTERN, re.IGNORECASE)


class TaskEventType(StrEnum):
    POLL = "poll"
    RETRY = "retry"
    COMPLETE = "complete"
    WAIT_CONTROLLER = "wait-controller"
    CONTROLLER_ONLINE = "controller-online"
    ERROR = "error"


@dataclass
class TaskLogEvent:
    type: TaskEventType
    task_location: str
    timestamp: float = field(default_factory=time.time)
    state: Optional[str] = None
    status: Optional[str] = None
    progress: Optional[int] = None
    backoff: Optional[float] = None
    message: Optional[str] = None


TaskEventSink = Callable[[TaskLogEvent], Any]


@dataclass
class TaskPollResult:
    task: Dict[str, Any]
    task_location: str
    state: str
    status: str
    completed: bool
    messages: List[str] = field(default_factory=list)
    percent_complete: Optional[int] = None
    oem: Optional[Dict[str, Any]] = None
    duration: float = 0
    inventory: Optional[InventoryDiff] = None


def is_task_successful(state: str, status: str) -> bool:
    """Both the job state and the status text must be clean.

    Vendors report failures inconsistently between the two fields, a failure
        signal on either of them marks the job as failed.
    """
    if state in cfg.TASK_FAILURE_STATES:
        return False
    return not _FAILURE_STATUS_PA.search(status or "")


def _as_text(value: Any, *sub_keys: str) -> str:
    if isinstance(value, dict):
        for _key in sub_keys:
            if value.get(_key):
                return str(value[_key])
        return ""
    return "" if value is None else str(value)


def extract_task_state(task: Dict[str, Any]) -> str:
    for _key in ("TaskState", "JobState", "Status"):
        if _state := _as_text(task.get(_key), "State"):
            return _state
    return ""


def extract_task_status(task: Dict[str, Any]) -> str:
    for _key in ("TaskStatus", "Status"):
        if _status := _as_text(task.get(_key), "Health", "HealthRollup"):
            return _status
    return ""


def extract_task_messages(task: Dict[str, Any]) -> Optional[List[str]]:
    if not isinstance(_messages := task.get("Messages"), list):
        return None

    res = []
    for _msg in _messages:
        if isinstance(_msg, dict):
            _text = _msg.get("Message") or _msg.get("MessageId") or _msg.get("Resolution")
            res.append(str(_text) if _text else json.dumps(_msg))
        else:
            res.append(str(_msg))
    return res


async def _sleep_within(delay: float, deadline: float) -> None:
    await asyncio.sleep(max(0, min(delay, deadline - time.monotonic())))


class _TaskTracker:

    def __init__(
        self,
        client: RedfishClient,
        task_location: str,
        *,
        event_sink: Optional[TaskEventSink],
        deadline: float,
    ) -> None:
        self._client = client
        self.task_location = task_location
        self._event_sink = event_sink
        self.deadline = deadline

        self.state, self.status = "", ""
        self.percent_complete: Optional[int] = None
        self.messages: List[str] = []
        self.oem: Optional[Dict[str, Any]] = None

    async def emit(self, _type: TaskEventType, **kwargs: Any) -> None:
        await notify_sink(
            self._event_sink,
            TaskLogEvent(type=_type, task_location=self.task_location, **kwargs),
            _logger=logger,
        )

    async def collect_inventory(self, phase: str) -> Optional[InventorySnapshot]:
        try:
            return await collect_software_inventory(self._client)
        except Exception as e:
            logger.warning(f"failed to collect {phase} inventory, continue: {e!r}")
            await self.emit(TaskEventType.ERROR, message=f"{phase} inventory: {e}")

    async def poll_until_terminal(
        self, *, backoff_start: float, backoff_max: float
    ) -> Dict[str, Any]:
        backoff = backoff_start
        while time.monotonic() < self.deadline:
            try:
                resp = await self._client.request("GET", self.task_location)
            except Exception as e:
                if not is_network_error(e):
                    await self.emit(TaskEventType.ERROR, message=str(e))
                    raise

                burst_suppressed_logger.warning(
                    f"network error on polling {self.task_location}, "
                    f"retry in {backoff}s: {e!r}"
                )
                await self.emit(TaskEventType.RETRY, message=str(e), backoff=backoff)
                await _sleep_within(backoff, self.deadline)
                backoff = min(backoff * 2, backoff_max)
                continue

            _status_code = resp.status_code
            if not resp.is_success:
                if _status_code >= 500 or _status_code == 404:
                    burst_suppressed_logger.warning(
                        f"transient response {_status_code} on polling "
                        f"{self.task_location}, retry in {backoff}s"
                    )
                    await self.emit(
                        TaskEventType.RETRY,
                        message=f"transient response {_status_code}",
                        backoff=backoff,
                    )
                    await _sleep_within(backoff, self.deadline)
                    backoff = min(backoff * 2, backoff_max)
                    continue

                _err = RedfishError(
                    "task poll failed", _status_code, read_response_body(resp)
                )
                await self.emit(TaskEventType.ERROR, message=str(_err))
                raise _err

            task = resp.json()
            self.state, self.status = extract_task_state(task), extract_task_status(task)
            if isinstance(_percent := task.get("PercentComplete"), (int, float)):
                self.percent_complete = int(_percent)
            if (_messages := extract_task_messages(task)) is not None:
                self.messages = _messages
            if isinstance(_oem := task.get("Oem"), dict):
                self.oem = _oem

            logger.debug(
                f"job {self.task_location}: {self.state=}, {self.status=}, "
                f"{self.percent_complete=}"
            )
            await self.emit(
                TaskEventType.POLL,
                state=self.state,
                status=self.status,
                progress=self.percent_complete,
                backoff=backoff,
            )
            if self.state in cfg.TASK_TERMINAL_STATES:
                return task

            await _sleep_within(backoff, self.deadline)
            backoff = min(backoff * 2, backoff_max)

        raise TaskTimeoutError(
            f"timed out waiting for job {self.task_location} to complete",
            context={"state": self.state, "status": self.status},
        )

    async def wait_for_controller(
        self,
        *,
        probe_timeout: float,
        backoff_start: float,
        backoff_factor: float,
        backoff_max: float,
    ) -> None:
        """Wait for the service root to respond again after the controller reboots.

        5xx and network errors mean "not yet back", any other non-2xx is fatal.
        """
        _url = self._client.url_for(cfg.REDFISH_SERVICE_ROOT)
        attempt = 0
        while time.monotonic() < self.deadline:
            try:
                resp = await self._client.request("GET", _url, timeout=probe_timeout)
            except Exception as e:
                if not is_network_error(e):
                    await self.emit(TaskEventType.ERROR, message=str(e))
                    raise
                burst_suppressed_logger.info(f"controller not yet back: {e!r}")
                await self.emit(TaskEventType.RETRY, message=str(e))
            else:
                if resp.is_success:
                    logger.info(f"controller {self._client.base_url} is back online")
                    await self.emit(TaskEventType.CONTROLLER_ONLINE)
                    return

                if resp.status_code < 500:
                    _err = RedfishError(
                        "unexpected response while waiting for the service root",
                        resp.status_code,
                        read_response_body(resp),
                    )
                    await self.emit(TaskEventType.ERROR, message=str(_err))
                    raise _err

                burst_suppressed_logger.info(
                    f"service root responds {resp.status_code}, controller not yet back"
                )
                await self.emit(
                    TaskEventType.RETRY, message=f"service root {resp.status_code}"
                )

            _delay = min(backoff_max, backoff_start * backoff_factor**attempt)
            attempt += 1
            await self.emit(TaskEventType.WAIT_CONTROLLER, backoff=_delay)
            await _sleep_within(_delay, self.deadline)

        raise TaskTimeoutError(
            f"timed out waiting for {self._client.base_url} to come back after update"
        )


async def poll_task(
    client: RedfishClient,
    task_location: Optional[str],
    *,
    baseline_inventory: Optional[InventorySnapshot] = None,
    event_sink: Optional[TaskEventSink] = None,
    timeout_minutes: Optional[float] = None,
    backoff_start: Optional[float] = None,
    backoff_max: Optional[float] = None,
    probe_timeout: Optional[float] = None,
    recovery_backoff_start: Optional[float] = None,
    recovery_backoff_factor: Optional[float] = None,
    recovery_backoff_max: Optional[float] = None,
) -> TaskPollResult:
    """Poll the job at <task_location> until terminal, then wait for recovery and diff inventory.

    Unset tunables fall back to the settings.

    Raises:
        TaskLocationMissing if <task_location> is not provided.
        TaskTimeoutError if the overall deadline is exceeded before the job ends
            or before the controller comes back.
        RedfishError on non-transient HTTP error responses.
    """
    _location = resolve_location(client.base_url, task_location)
    if not _location:
        raise TaskLocationMissing("job location not provided by the update response")

    if timeout_minutes is None:
        timeout_minutes = cfg.TASK_POLL_TIMEOUT_MINUTES
    started_at = time.monotonic()
    tracker = _TaskTracker(
        client,
        _location,
        event_sink=event_sink,
        deadline=started_at + timeout_minutes * 60,
    )

    before = baseline_inventory
    if before is None:
        before = await tracker.collect_inventory("baseline")

    final_task = await tracker.poll_until_terminal(
        backoff_start=(
            backoff_start if backoff_start is not None else cfg.TASK_POLL_BACKOFF_START
        ),
        backoff_max=backoff_max if backoff_max is not None else cfg.TASK_POLL_BACKOFF_MAX,
    )
    state, status = tracker.state, tracker.status
    completed = is_task_successful(state, status)
    logger.info(f"job {_location} finished: {state=}, {status=}, {completed=}")
    await tracker.emit(TaskEventType.COMPLETE, state=state, status=status)

    if time.monotonic() >= tracker.deadline:
        raise TaskTimeoutError(f"timed out before {client.base_url} recovery phase")

    await tracker.wait_for_controller(
        probe_timeout=(
            probe_timeout if probe_timeout is not None else cfg.SERVICE_ROOT_PROBE_TIMEOUT
        ),
        backoff_start=(
            recovery_backoff_start
            if recovery_backoff_start is not None
            else cfg.SERVICE_ROOT_BACKOFF_START
        ),
        backoff_factor=(
            recovery_backoff_factor
            if recovery_backoff_factor is not None
            else cfg.SERVICE_ROOT_BACKOFF_FACTOR
        ),
        backoff_max=(
            recovery_backoff_max
            if recovery_backoff_max is not None
            else cfg.SERVICE_ROOT_BACKOFF_MAX
        ),
    )

    inventory = None
    if after := await tracker.collect_inventory("after-update"):
        # without a baseline, only the after snapshot is reported
        inventory = InventoryDiff(
            after=after,
            before=before,
            changes=diff_inventories(before, after) if before else [],
        )

    return TaskPollResult(
        task=final_task,
        task_location=_location,
        state=state,
        status=status,
        completed=completed,
        messages=list(tracker.messages),
        percent_complete=tracker.percent_complete,
        oem=tracker.oem,
        duration=time.monotonic() - started_at,
        inventory=inventory,
    )
