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

import asyncio
from typing import List, Tuple

import pytest

from fwupdater._types import (
    FirmwareComponent,
    FirmwarePlan,
    HostRun,
    HostRunState,
    ManagedHost,
    ProtocolType,
)
from fwupdater.errors import InvalidStateTransition, OrchestrationError, ProtocolError
from fwupdater.orchestration.credentials import EnvCredentialResolver
from fwupdater.orchestration.state_machine import HostStateMachine, new_host_run
from fwupdater.orchestration.store import InMemoryHostRunStore
from fwupdater.orchestration.worker import HostUpdateWorker
from fwupdater.protocols import ProtocolManager
from tests.conftest import cfg
from tests.utils import FakeMaintenance, FakeProtocolClient, StaticLookup

PLAN_ID = "bios-2024q1"
HOSTS = {
    _id: ManagedHost(id=_id, bmc_address=f"10.0.0.{_idx}")
    for _idx, _id in enumerate(("esx-01", "esx-02", "esx-03"), start=11)
}
PLANS = {
    PLAN_ID: FirmwarePlan(
        id=PLAN_ID,
        components=[FirmwareComponent(id="BIOS", image_uri="http://repo/BIOS.EXE")],
    )
}


class _SlowStateMachine:
    """Track how many runs are driven at the same time."""

    def __init__(self) -> None:
        self.running: List[str] = []
        self.started: List[Tuple[str, str]] = []
        self.max_concurrent = 0

    async def create_run(self, host_id: str, plan_id: str) -> HostRun:
        return new_host_run(host_id, plan_id)

    async def run(self, run: HostRun) -> HostRun:
        self.running.append(run.host_id)
        self.started.append((run.host_id, run.plan_id))
        self.max_concurrent = max(self.max_concurrent, len(self.running))
        await asyncio.sleep(cfg.BACKOFF * 10)
        self.running.remove(run.host_id)
        run.state = HostRunState.DONE
        return run


class TestHostUpdateWorker:

    @pytest.fixture
    def store(self) -> InMemoryHostRunStore:
        return InMemoryHostRunStore()

    @pytest.fixture
    def wsman(self) -> FakeProtocolClient:
        return FakeProtocolClient.of(ProtocolType.WSMAN)

    @pytest.fixture
    def sm(self, store: InMemoryHostRunStore, wsman: FakeProtocolClient):
        return HostStateMachine(
            store=store,
            hosts=StaticLookup(HOSTS, PLANS),
            plans=StaticLookup(HOSTS, PLANS),
            credentials=EnvCredentialResolver(
                {"FWUPDATER_BMC_USER": cfg.BMC_USER, "FWUPDATER_BMC_PASS": cfg.BMC_PASS}
            ),
            maintenance=FakeMaintenance(),
            manager_factory=lambda: ProtocolManager([wsman], update_retry_attempts=1),
        )

    @pytest.mark.asyncio
    async def test_run_hosts_to_done(
        self, sm: HostStateMachine, store: InMemoryHostRunStore
    ):
        async with HostUpdateWorker(sm, store, concurrency=2) as worker:
            for _host_id in HOSTS:
                await worker.enqueue(_host_id, PLAN_ID)
            await worker.join()

        assert sorted(r.host_id for r in worker.finished_runs) == sorted(HOSTS)
        assert all(r.state == HostRunState.DONE for r in worker.finished_runs)
        assert not any(worker.is_pending(_host_id) for _host_id in HOSTS)
        for _host_id in HOSTS:
            assert [r.state for r in store.list_for_host(_host_id)] == [HostRunState.DONE]

    @pytest.mark.asyncio
    async def test_enqueue_dedup(self, sm: HostStateMachine, store: InMemoryHostRunStore):
        worker = HostUpdateWorker(sm, store, concurrency=1)

        first = await worker.enqueue("esx-01", PLAN_ID)
        second = await worker.enqueue("esx-01", PLAN_ID)

        assert second is first
        assert worker.is_pending("esx-01")
        assert len(store.list_for_host("esx-01")) == 1

        async with worker:
            await worker.join()
        assert [r.id for r in worker.finished_runs] == [first.id]

    @pytest.mark.asyncio
    async def test_resume_unfinished_run(
        self, sm: HostStateMachine, store: InMemoryHostRunStore, wsman: FakeProtocolClient
    ):
        interrupted = new_host_run("esx-01", PLAN_ID)
        interrupted.state = HostRunState.APPLY
        interrupted.ctx = {"supported": {"WSMAN": True}}
        store.save(interrupted)

        async with HostUpdateWorker(sm, store, concurrency=1) as worker:
            resumed = await worker.enqueue("esx-01", PLAN_ID)
            await worker.join()

        assert resumed.id == interrupted.id
        assert len(store.list_for_host("esx-01")) == 1
        assert worker.finished_runs[0].state == HostRunState.DONE
        # continued from APPLY, no capability detection
        assert wsman.detect_calls == 0

    @pytest.mark.asyncio
    async def test_retry_failed_run(self, store: InMemoryHostRunStore):
        wsman = FakeProtocolClient.of(
            ProtocolType.WSMAN,
            update=[ProtocolError("job rejected", ProtocolType.WSMAN), None],
        )
        sm = HostStateMachine(
            store=store,
            hosts=StaticLookup(HOSTS, PLANS),
            plans=StaticLookup(HOSTS, PLANS),
            credentials=EnvCredentialResolver(
                {"FWUPDATER_BMC_USER": cfg.BMC_USER, "FWUPDATER_BMC_PASS": cfg.BMC_PASS}
            ),
            maintenance=FakeMaintenance(),
            manager_factory=lambda: ProtocolManager([wsman], update_retry_attempts=1),
        )

        async with HostUpdateWorker(sm, store, concurrency=1) as worker:
            failed = await worker.enqueue("esx-01", PLAN_ID)
            await worker.join()
            assert worker.finished_runs[-1].state == HostRunState.ERROR

            retried = await worker.retry("esx-01")
            assert retried.id == failed.id
            assert worker.is_pending("esx-01")
            await worker.join()

        assert worker.finished_runs[-1].state == HostRunState.DONE
        assert worker.finished_runs[-1].attempts == 1
        assert len(store.list_for_host("esx-01")) == 1

    @pytest.mark.asyncio
    async def test_retry_rejected(self, sm: HostStateMachine, store: InMemoryHostRunStore):
        worker = HostUpdateWorker(sm, store, concurrency=1)
        with pytest.raises(OrchestrationError, match="no host run"):
            await worker.retry("esx-01")

        done = new_host_run("esx-02", PLAN_ID)
        done.state = HostRunState.DONE
        store.save(done)
        with pytest.raises(InvalidStateTransition):
            await worker.retry("esx-02")

        await worker.enqueue("esx-03", PLAN_ID)
        with pytest.raises(OrchestrationError, match="already queued"):
            await worker.retry("esx-03")

    @pytest.mark.asyncio
    async def test_concurrency_bound(self, store: InMemoryHostRunStore):
        sm = _SlowStateMachine()

        async with HostUpdateWorker(sm, store, concurrency=2) as worker:  # type: ignore[arg-type]
            for _host_id in HOSTS:
                await worker.enqueue(_host_id, PLAN_ID)
            await worker.join()

        assert sm.max_concurrent == 2
        assert len(worker.finished_runs) == len(HOSTS)

    @pytest.mark.asyncio
    async def test_waiting_host_does_not_take_slot(self, store: InMemoryHostRunStore):
        sm = _SlowStateMachine()

        async with HostUpdateWorker(sm, store, concurrency=2) as worker:  # type: ignore[arg-type]
            await worker.enqueue("esx-01", PLAN_ID)
            while not sm.running:
                await asyncio.sleep(0)
            # waits for the first run of esx-01 to finish
            await worker.enqueue("esx-01", "catalog")
            await worker.enqueue("esx-02", PLAN_ID)
            await worker.join()

        # esx-02 takes the free slot while esx-01 is busy
        assert sm.started == [
            ("esx-01", PLAN_ID),
            ("esx-02", PLAN_ID),
            ("esx-01", "catalog"),
        ]
        assert sm.max_concurrent == 2

    @pytest.mark.asyncio
    async def test_keep_recent_finished_runs(self, store: InMemoryHostRunStore):
        sm = _SlowStateMachine()

        async with HostUpdateWorker(
            sm, store, concurrency=1, keep_finished=2  # type: ignore[arg-type]
        ) as worker:
            for _host_id in HOSTS:
                await worker.enqueue(_host_id, PLAN_ID)
            await worker.join()

        assert [r.host_id for r in worker.finished_runs] == ["esx-02", "esx-03"]
