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
"""The per host firmware update state machine.

PRECHECKS -> ENTER_MAINT -> APPLY -> REBOOT -> POSTCHECKS -> EXIT_MAINT -> DONE,
    with ERROR reachable from any non-terminal state.

The HostRun record is saved on every transition, <state> and <ctx> are enough
    to resume a run from where it stopped. Phase to phase progression is strictly
    forward-or-error, re-entering PRECHECKS only happens with an explicit retry.

Once the maintenance mode is requested, exiting it is always attempted, also on
    the failure path.
"""


from __future__ import annotations

import logging
import time
import uuid
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Optional

import httpx

from fwupdater._types import (
    SINGLE_IMAGE_UPDATE_MODES,
    CredentialKind,
    Credentials,
    FirmwarePlan,
    FirmwareUpdateRequest,
    HostRun,
    HostRunState,
    InventorySnapshot,
    MaintenanceAction,
    ManagedHost,
    ProtocolType,
    ServerGeneration,
    UpdateStatus,
)
from fwupdater.compatibility import (
    component_key,
    sort_components,
    validate_compatibility,
)
from fwupdater.configs import cfg
from fwupdater.detect import ManagerProbes, detect_capabilities
from fwupdater.errors import (
    CredentialsNotFound,
    ErrorClassification,
    IncompatibleComponent,
    InvalidStateTransition,
    MaintenanceModeError,
    OrchestrationError,
    TaskFailedError,
    VerificationError,
    classify_error,
)
from fwupdater.orchestration.collaborators import (
    CredentialResolver,
    HostLookup,
    HostRunStore,
    MaintenanceController,
    PlanLookup,
)
from fwupdater.protocols import ProtocolManager, create_default_protocol_manager
from fwupdater.redfish.client import RedfishClient
from fwupdater.redfish.inventory import collect_software_inventory
from fwupdater.redfish.task_poller import TaskEventSink, poll_task
from fwupdater.retry import with_retry
from fwupdater_common.asyncio_utils import maybe_await
from fwupdater_common.retry import RetryDecision

logger = logging.getLogger(__name__)

_FORWARD: Dict[HostRunState, HostRunState] = {
    HostRunState.PRECHECKS: HostRunState.ENTER_MAINT,
    HostRunState.ENTER_MAINT: HostRunState.APPLY,
    HostRunState.APPLY: HostRunState.REBOOT,
    HostRunState.REBOOT: HostRunState.POSTCHECKS,
    HostRunState.POSTCHECKS: HostRunState.EXIT_MAINT,
    HostRunState.EXIT_MAINT: HostRunState.DONE,
}


def allowed_transitions(_from: HostRunState) -> FrozenSet[HostRunState]:
    if _from == HostRunState.ERROR:
        # only with an explicit retry
        return frozenset({HostRunState.PRECHECKS})
    if _from == HostRunState.DONE:
        return frozenset()
    return frozenset({_FORWARD[_from], HostRunState.ERROR})


class CtxKey:
    """Keys of HostRun.ctx."""

    # PRECHECKS
    MGMT_KIND = "mgmt_kind"
    PROTOCOL = "protocol"
    GENERATION = "generation"
    FEATURES = "features"
    SUPPORTED = "supported"
    # ENTER_MAINT/EXIT_MAINT
    MAINTENANCE_REQUESTED = "maintenance_requested"
    MAINTENANCE_EXITED = "maintenance_exited"
    EXIT_MAINTENANCE_ERROR = "exit_maintenance_error"
    # APPLY
    BASELINE_INVENTORY = "baseline_inventory"
    APPLIED_PROTOCOL = "applied_protocol"
    TASK_LOCATION = "task_location"
    JOB_ID = "job_id"
    UPDATE_STATUS = "update_status"
    UPDATE_MESSAGES = "update_messages"
    # REBOOT
    TASK_STATE = "task_state"
    TASK_STATUS = "task_status"
    TASK_MESSAGES = "task_messages"
    INVENTORY_AFTER = "inventory_after"
    INVENTORY_CHANGES = "inventory_changes"
    # POSTCHECKS
    VERIFICATION = "verification"
    # ERROR
    ERROR = "error"
    ERROR_STATE = "error_state"
    ERROR_CLASSIFICATION = "error_classification"
    PREVIOUS_ERRORS = "previous_errors"


@dataclass
class _RunEnv:
    host: ManagedHost
    plan: FirmwarePlan
    credentials: Credentials
    manager: ProtocolManager


def new_host_run(host_id: str, plan_id: str) -> HostRun:
    return HostRun(id=str(uuid.uuid4()), plan_id=plan_id, host_id=host_id)


class HostStateMachine:
    """Drive HostRun records through the firmware update workflow.

    Args:
        store, hosts, plans, credentials, maintenance: the collaborators.
        manager_factory: create a protocol manager for one run, the manager is
            disposed when the run stops.
        http_client: shared by the REST protocol calls if provided.
        task_event_sink: receive the job tracking events of the REST protocol.
        max_attempts: workflow attempt budget, also bounds maintenance mode retries.
        poll_kwargs: extra tunables passed to the task poller.
    """

    def __init__(
        self,
        *,
        store: HostRunStore,
        hosts: HostLookup,
        plans: PlanLookup,
        credentials: CredentialResolver,
        maintenance: MaintenanceController,
        manager_factory: Optional[Callable[[], ProtocolManager]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        task_event_sink: Optional[TaskEventSink] = None,
        max_attempts: Optional[int] = None,
        maintenance_retry_base_delay: Optional[float] = None,
        poll_kwargs: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._store = store
        self._hosts = hosts
        self._plans = plans
        self._credentials = credentials
        self._maintenance = maintenance
        self._http_client = http_client
        self._manager_factory = manager_factory or (
            lambda: create_default_protocol_manager(http_client=self._http_client)
        )
        self._task_event_sink = task_event_sink
        self.max_attempts = (
            max_attempts if max_attempts is not None else cfg.WORKFLOW_MAX_ATTEMPTS
        )
        self._maintenance_retry_base_delay = (
            maintenance_retry_base_delay
            if maintenance_retry_base_delay is not None
            else cfg.MAINTENANCE_RETRY_BASE_DELAY
        )
        self._poll_kwargs = dict(poll_kwargs or {})

        self._handlers: Dict[
            HostRunState, Callable[[HostRun, _RunEnv], Awaitable[HostRunState]]
        ] = {
            HostRunState.PRECHECKS: self._prechecks,
            HostRunState.ENTER_MAINT: self._enter_maint,
            HostRunState.APPLY: self._apply,
            HostRunState.REBOOT: self._reboot,
            HostRunState.POSTCHECKS: self._postchecks,
            HostRunState.EXIT_MAINT: self._exit_maint,
        }

    #
    # ------ run lifecycle ------ #
    #

    async def _transition(self, run: HostRun, to: HostRunState) -> None:
        if to not in allowed_transitions(run.state):
            raise InvalidStateTransition(run.state, to)
        logger.info(f"host run {run.id}({run.host_id}): {run.state} -> {to}")
        run.state = to
        run.updated_at = time.time()
        await maybe_await(self._store.save(run))

    async def create_run(self, host_id: str, plan_id: str) -> HostRun:
        run = new_host_run(host_id, plan_id)
        await maybe_await(self._store.save(run))
        return run

    async def run(self, run: HostRun) -> HostRun:
        """Drive <run> from its current state until it reaches DONE or ERROR."""
        if run.finished:
            return run

        try:
            host: ManagedHost = await maybe_await(self._hosts.get_host(run.host_id))
        except Exception as e:
            logger.error(f"host run {run.id}: failed to look up {run.host_id}: {e!r}")
            await self._fail(run, None, e)
            return run

        try:
            plan: FirmwarePlan = await maybe_await(self._plans.get_plan(run.plan_id))
            credentials: Credentials = await maybe_await(
                self._credentials.resolve(host, CredentialKind.BMC)
            )
        except Exception as e:
            logger.error(f"host run {run.id}: failed to prepare the run: {e!r}")
            await self._fail(run, host, e)
            return run

        env = _RunEnv(
            host=host,
            plan=plan,
            credentials=credentials,
            manager=self._manager_factory(),
        )
        try:
            while not run.finished:
                try:
                    next_state = await self._handlers[run.state](run, env)
                except Exception as e:
                    logger.error(
                        f"host run {run.id}({run.host_id}) failed at {run.state}: {e!r}"
                    )
                    await self._fail(run, host, e)
                    break
                await self._transition(run, next_state)
        finally:
            await env.manager.dispose()
        return run

    async def _fail(
        self, run: HostRun, host: Optional[ManagedHost], exc: BaseException
    ) -> None:
        ctx = run.ctx
        ctx[CtxKey.ERROR] = str(exc) or repr(exc)
        ctx[CtxKey.ERROR_STATE] = str(run.state)
        ctx[CtxKey.ERROR_CLASSIFICATION] = str(classify_error(exc))

        if (
            host is not None
            and ctx.get(CtxKey.MAINTENANCE_REQUESTED)
            and not ctx.get(CtxKey.MAINTENANCE_EXITED)
        ):
            try:
                await self._set_maintenance(host, MaintenanceAction.EXIT)
                ctx[CtxKey.MAINTENANCE_EXITED] = True
            except Exception as e:
                logger.error(
                    f"host run {run.id}: {host.id} might be left in maintenance mode: {e!r}"
                )
                ctx[CtxKey.EXIT_MAINTENANCE_ERROR] = str(e) or repr(e)
        await self._transition(run, HostRunState.ERROR)

    def prepare_retry(self, run: HostRun) -> HostRun:
        """Re-enter PRECHECKS for a failed run, within the workflow attempt budget.

        Raises:
            InvalidStateTransition if <run> is not in ERROR state.
            OrchestrationError if the attempt budget is exhausted.
        """
        if run.state != HostRunState.ERROR:
            raise InvalidStateTransition(run.state, HostRunState.PRECHECKS)
        if run.attempts + 1 >= self.max_attempts:
            raise OrchestrationError(
                f"host run {run.id}: attempt budget({self.max_attempts}) exhausted",
                classification=ErrorClassification.PERMANENT,
                context={"attempts": run.attempts},
            )

        previous_errors: List[Dict[str, Any]] = run.ctx.get(CtxKey.PREVIOUS_ERRORS, [])
        previous_errors.append(
            {
                "attempt": run.attempts,
                "error": run.ctx.get(CtxKey.ERROR),
                "error_state": run.ctx.get(CtxKey.ERROR_STATE),
                "error_classification": run.ctx.get(CtxKey.ERROR_CLASSIFICATION),
            }
        )
        ctx: Dict[str, Any] = {CtxKey.PREVIOUS_ERRORS: previous_errors}
        if run.ctx.get(CtxKey.MAINTENANCE_REQUESTED) and not run.ctx.get(
            CtxKey.MAINTENANCE_EXITED
        ):
            # the host might still be in maintenance mode, exit it again on failure
            ctx[CtxKey.MAINTENANCE_REQUESTED] = True
            ctx[CtxKey.EXIT_MAINTENANCE_ERROR] = run.ctx.get(CtxKey.EXIT_MAINTENANCE_ERROR)
        run.ctx = ctx
        run.attempts += 1
        run.state = HostRunState.PRECHECKS
        run.updated_at = time.time()
        return run

    async def retry(self, run: HostRun) -> HostRun:
        self.prepare_retry(run)
        await maybe_await(self._store.save(run))
        return await self.run(run)

    #
    # ------ phases ------ #
    #

    async def _prechecks(self, run: HostRun, env: _RunEnv) -> HostRunState:
        probes = ManagerProbes(env.manager, env.host.identity, env.credentials)
        detection = await detect_capabilities(probes.as_probes())

        features = {str(_p): _v for _p, _v in detection.features.items()}
        run.ctx[CtxKey.MGMT_KIND] = str(detection.mgmt_kind)
        run.ctx[CtxKey.FEATURES] = features
        if not detection.usable:
            raise OrchestrationError(
                f"{env.host.id}: no usable management protocol",
                classification=ErrorClassification.PERMANENT,
                context={"features": features},
            )

        capability = probes.capabilities.get(detection.protocol)  # type: ignore[arg-type]
        generation = capability.generation if capability else ServerGeneration.UNKNOWN
        run.ctx[CtxKey.PROTOCOL] = str(detection.protocol)
        run.ctx[CtxKey.GENERATION] = str(generation)
        run.ctx[CtxKey.SUPPORTED] = {
            str(_p): _cap.supported and env.plan.mode in _cap.update_modes
            for _p, _cap in probes.capabilities.items()
        }

        self._check_compatibility(env, generation)
        if (
            env.plan.mode in SINGLE_IMAGE_UPDATE_MODES
            and len(env.plan.components) != 1
        ):
            raise OrchestrationError(
                f"{env.plan.id}: {env.plan.mode} applies exactly one image, "
                f"got {len(env.plan.components)} components",
                classification=ErrorClassification.PERMANENT,
                context={"components": [_c.id for _c in env.plan.components]},
            )
        return HostRunState.ENTER_MAINT

    def _check_compatibility(self, env: _RunEnv, generation: ServerGeneration) -> None:
        if generation == ServerGeneration.UNKNOWN:
            logger.warning(
                f"{env.host.id}: server generation unknown, skip compatibility check"
            )
            return

        rejected: Dict[str, List[str]] = {}
        scheduled: List[str] = []
        for component in sort_components(env.plan.components):
            _key = component_key(component)
            res = validate_compatibility(_key, generation, scheduled)
            if not res.generation_supported:
                rejected[_key] = res.reasons
            elif res.missing_prerequisites:
                # the prerequisite might already be installed on the host
                logger.warning(
                    f"{env.host.id}: {_key} prerequisites "
                    f"{res.missing_prerequisites} are not in this plan"
                )
            scheduled.append(_key)

        if rejected:
            raise IncompatibleComponent(
                f"{env.host.id}: components not supported on {generation}: "
                f"{list(rejected)}",
                context={"rejected": rejected},
            )

    async def _set_maintenance(self, host: ManagedHost, action: MaintenanceAction) -> None:
        async def _call() -> None:
            if not await maybe_await(self._maintenance.set_maintenance(host, action)):
                raise MaintenanceModeError(f"failed to {action} maintenance mode for {host.id}")

        await with_retry(
            _call,
            max_attempts=self.max_attempts,
            base_delay=self._maintenance_retry_base_delay,
            classify=lambda _exc: (
                RetryDecision.ABORT
                if isinstance(_exc, CredentialsNotFound)
                else RetryDecision.RETRY
            ),
        )

    async def _enter_maint(self, run: HostRun, env: _RunEnv) -> HostRunState:
        # set before entering, a partially entered maintenance mode is also exited
        run.ctx[CtxKey.MAINTENANCE_REQUESTED] = True
        await maybe_await(self._store.save(run))
        await self._set_maintenance(env.host, MaintenanceAction.ENTER)
        return HostRunState.APPLY

    def _redfish_client(self, env: _RunEnv) -> RedfishClient:
        return RedfishClient(
            env.host.bmc_address, env.credentials, http_client=self._http_client
        )

    async def _apply(self, run: HostRun, env: _RunEnv) -> HostRunState:
        supported_hint = {
            ProtocolType(_p): _v for _p, _v in run.ctx.get(CtxKey.SUPPORTED, {}).items()
        }

        if supported_hint.get(ProtocolType.REDFISH):
            try:
                async with self._redfish_client(env) as client:
                    baseline = await collect_software_inventory(client)
                run.ctx[CtxKey.BASELINE_INVENTORY] = baseline.export()
            except Exception as e:
                logger.warning(f"{env.host.id}: failed to capture baseline inventory: {e!r}")

        plan = env.plan
        request = FirmwareUpdateRequest(
            host=env.host.bmc_address,
            credentials=env.credentials,
            mode=plan.mode,
            components=sort_components(plan.components),
            repository_url=plan.repository_url,
            apply_time=plan.apply_time,
            params=dict(plan.params),
        )
        result = await env.manager.run_update(request, supported=supported_hint)

        run.ctx[CtxKey.APPLIED_PROTOCOL] = str(result.protocol)
        run.ctx[CtxKey.TASK_LOCATION] = result.task_location
        run.ctx[CtxKey.JOB_ID] = result.job_id
        run.ctx[CtxKey.UPDATE_STATUS] = str(result.status)
        run.ctx[CtxKey.UPDATE_MESSAGES] = list(result.messages)
        if result.status == UpdateStatus.FAILED:
            raise TaskFailedError(
                f"{env.host.id}: {result.protocol} update failed: {result.messages}"
            )
        return HostRunState.REBOOT

    async def _reboot(self, run: HostRun, env: _RunEnv) -> HostRunState:
        if run.ctx.get(CtxKey.APPLIED_PROTOCOL) != str(ProtocolType.REDFISH):
            logger.info(f"{env.host.id}: no REST protocol job to track")
            return HostRunState.POSTCHECKS
        # an accepted REST update without a job location fails in the poller
        task_location = run.ctx.get(CtxKey.TASK_LOCATION)

        baseline = None
        if _exported := run.ctx.get(CtxKey.BASELINE_INVENTORY):
            baseline = InventorySnapshot.load(_exported)

        async with self._redfish_client(env) as client:
            res = await poll_task(
                client,
                task_location,
                baseline_inventory=baseline,
                event_sink=self._task_event_sink,
                **self._poll_kwargs,
            )

        run.ctx[CtxKey.TASK_STATE] = res.state
        run.ctx[CtxKey.TASK_STATUS] = res.status
        run.ctx[CtxKey.TASK_MESSAGES] = list(res.messages)
        if res.inventory:
            run.ctx[CtxKey.INVENTORY_AFTER] = res.inventory.after.export()
            run.ctx[CtxKey.INVENTORY_CHANGES] = [
                {**asdict(_change), "change_type": str(_change.change_type)}
                for _change in res.inventory.changes
            ]
            if res.inventory.before is None:
                run.ctx[CtxKey.BASELINE_INVENTORY] = None

        if not res.completed:
            raise TaskFailedError(
                f"{env.host.id}: job {task_location} ended with "
                f"state={res.state}, status={res.status}",
                context={"messages": res.messages},
            )
        return HostRunState.POSTCHECKS

    async def _postchecks(self, run: HostRun, env: _RunEnv) -> HostRunState:
        expected = [c for c in env.plan.components if c.expected_version]
        if not expected:
            run.ctx[CtxKey.VERIFICATION] = "skipped: no expected version in plan"
            return HostRunState.EXIT_MAINT
        if run.ctx.get(CtxKey.APPLIED_PROTOCOL) != str(ProtocolType.REDFISH):
            run.ctx[CtxKey.VERIFICATION] = (
                f"skipped: no inventory over {run.ctx.get(CtxKey.APPLIED_PROTOCOL)}"
            )
            return HostRunState.EXIT_MAINT

        if (after := run.ctx.get(CtxKey.INVENTORY_AFTER)) is None:
            raise VerificationError(f"{env.host.id}: no inventory observed after update")

        changes: List[Dict[str, Any]] = run.ctx.get(CtxKey.INVENTORY_CHANGES) or []
        has_baseline = bool(run.ctx.get(CtxKey.BASELINE_INVENTORY))
        mismatches: Dict[str, Any] = {}
        for component in expected:
            _names = {n.lower() for n in (component.id, component.name) if n}
            if has_baseline:
                # with a baseline, the diff must show the version change
                observed = [
                    c["current_version"]
                    for c in changes
                    if {str(c["id"]).lower(), str(c.get("name") or "").lower()} & _names
                ]
            else:
                observed = [
                    e.get("version")
                    for e in after.values()
                    if {str(e["id"]).lower(), str(e.get("name") or "").lower()} & _names
                ]
            if component.expected_version not in observed:
                mismatches[component.id] = {
                    "expected": component.expected_version,
                    "observed": observed,
                }

        if mismatches:
            run.ctx[CtxKey.VERIFICATION] = "failed"
            raise VerificationError(
                f"{env.host.id}: firmware versions not as expected: {mismatches}",
                context={"mismatches": mismatches},
            )
        run.ctx[CtxKey.VERIFICATION] = "passed"
        return HostRunState.EXIT_MAINT

    async def _exit_maint(self, run: HostRun, env: _RunEnv) -> HostRunState:
        if run.ctx.get(CtxKey.MAINTENANCE_REQUESTED) and not run.ctx.get(
            CtxKey.MAINTENANCE_EXITED
        ):
            await self._set_maintenance(env.host, MaintenanceAction.EXIT)
            run.ctx[CtxKey.MAINTENANCE_EXITED] = True
        return HostRunState.DONE
