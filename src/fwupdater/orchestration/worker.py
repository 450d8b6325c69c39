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
"""Host update job consumer.

At most one run per host is in flight: a host that is already queued is not
    queued again, and runs of the same host are serialized by a per host lock.
"""


from __future__ import annotations

import asyncio
import logging
from collections import defaultdict, deque
from typing import Deque, Dict, List, Optional, Set

from fwupdater._types import HostRun, HostRunState
from fwupdater.configs import cfg
from fwupdater.errors import InvalidStateTransition, OrchestrationError
from fwupdater.orchestration.collaborators import HostRunStore
from fwupdater.orchestration.state_machine import HostStateMachine
from fwupdater_common.asyncio_utils import maybe_await

logger = logging.getLogger(__name__)


class HostUpdateWorker:

    def __init__(
        self,
        state_machine: HostStateMachine,
        store: HostRunStore,
        *,
        concurrency: Optional[int] = None,
        keep_finished: Optional[int] = None,
    ) -> None:
        self._sm = state_machine
        self._store = store
        self._concurrency = concurrency if concurrency is not None else cfg.WORKER_CONCURRENCY

        self._queue: asyncio.Queue[HostRun] = asyncio.Queue()
        self._pending: Dict[str, HostRun] = {}
        self._host_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._se = asyncio.Semaphore(self._concurrency)
        self._tasks: Set[asyncio.Task] = set()
        self._serve_task: Optional[asyncio.Task] = None

        # the most recent finished runs, the store keeps the full history
        self.finished_runs: Deque[HostRun] = deque(
            maxlen=(
                keep_finished
                if keep_finished is not None
                else cfg.WORKER_FINISHED_RUNS_KEEP
            )
        )

    async def __aenter__(self) -> HostUpdateWorker:
        self.start()
        return self

    async def __aexit__(self, *_) -> None:
        await self.stop()

    def start(self) -> None:
        if self._serve_task is None:
            self._serve_task = asyncio.create_task(self._serve())

    async def stop(self) -> None:
        """Stop consuming the queue, wait for the in-flight runs to finish."""
        if self._serve_task is not None:
            self._serve_task.cancel()
            await asyncio.gather(self._serve_task, return_exceptions=True)
            self._serve_task = None
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def join(self) -> None:
        """Wait until all the queued runs are processed."""
        await self._queue.join()

    def is_pending(self, host_id: str) -> bool:
        return host_id in self._pending

    async def _queue_run(self, run: HostRun) -> HostRun:
        self._pending[run.host_id] = run
        await self._queue.put(run)
        logger.info(f"queued host run {run.id} for {run.host_id} at {run.state}")
        return run

    async def enqueue(self, host_id: str, plan_id: str) -> HostRun:
        """Queue an update run of <plan_id> for <host_id>.

        If <host_id> is already queued, the queued run is returned. If <host_id>
            has an unfinished run(i.e., interrupted by a restart), that run is resumed.
        """
        if _pending := self._pending.get(host_id):
            logger.info(f"{host_id} is already queued with run {_pending.id}")
            return _pending

        for _run in await maybe_await(self._store.list_for_host(host_id)):
            if not _run.finished and _run.plan_id == plan_id:
                logger.info(f"resume host run {_run.id} for {host_id} at {_run.state}")
                return await self._queue_run(_run)

        return await self._queue_run(await self._sm.create_run(host_id, plan_id))

    async def retry(self, host_id: str) -> HostRun:
        """Re-enter PRECHECKS for the last failed run of <host_id>.

        Raises:
            OrchestrationError if <host_id> has no run, is already queued, or the attempt
                budget is exhausted.
            InvalidStateTransition if the last run of <host_id> is not failed.
        """
        if host_id in self._pending:
            raise OrchestrationError(f"{host_id} is already queued")

        runs: List[HostRun] = await maybe_await(self._store.list_for_host(host_id))
        if not runs:
            raise OrchestrationError(f"no host run found for {host_id}")

        last_run = runs[-1]
        if last_run.state != HostRunState.ERROR:
            raise InvalidStateTransition(last_run.state, HostRunState.PRECHECKS)

        self._sm.prepare_retry(last_run)
        await maybe_await(self._store.save(last_run))
        return await self._queue_run(last_run)

    async def _process(self, run: HostRun) -> None:
        try:
            # a run waiting for its host doesn't take a concurrency slot
            async with self._host_locks[run.host_id], self._se:
                # from now on a new request for this host is queued again
                self._pending.pop(run.host_id, None)
                try:
                    _res = await self._sm.run(run)
                except Exception as e:
                    logger.exception(f"host run {run.id} aborted unexpectedly: {e!r}")
                    return

                logger.info(f"host run {_res.id} for {_res.host_id} finished: {_res.state}")
                self.finished_runs.append(_res)
        finally:
            self._queue.task_done()

    async def _serve(self) -> None:
        while True:
            run = await self._queue.get()
            _task = asyncio.create_task(self._process(run))
            self._tasks.add(_task)
            _task.add_done_callback(self._tasks.discard)
