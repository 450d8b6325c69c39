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

import time
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import httpx

from fwupdater._types import (
    Credentials,
    FirmwarePlan,
    FirmwareUpdateMode,
    FirmwareUpdateRequest,
    FirmwareUpdateResult,
    HealthStatus,
    MaintenanceAction,
    ManagedHost,
    ProtocolCapability,
    ProtocolHealth,
    ProtocolType,
    ServerIdentity,
    UpdateStatus,
)
from fwupdater.protocols.base import ProtocolClient

Handler = Union[httpx.Response, Exception, Callable[[httpx.Request], httpx.Response]]


def respond(status: int = 200, json=None, headers=None, text=None):
    """Make a handler which creates a fresh response for each request."""

    def _inner(_: httpx.Request) -> httpx.Response:
        if text is not None:
            return httpx.Response(status, text=text, headers=headers)
        return httpx.Response(status, json=json, headers=headers)

    return _inner


class FakeController:
    """A routing table for httpx.MockTransport, emulating a management controller.

    Handlers registered for a route are consumed in order, the last one is kept
        to serve all the following requests. Unknown routes get 404.
    """

    def __init__(self) -> None:
        self._routes: Dict[Tuple[str, str], List[Handler]] = {}
        self.requests: List[httpx.Request] = []

    def add(self, method: str, path: str, *handlers: Handler) -> FakeController:
        self._routes.setdefault((method.upper(), path), []).extend(handlers)
        return self

    def requests_to(self, method: str, path: str) -> List[httpx.Request]:
        return [
            r
            for r in self.requests
            if r.method == method.upper() and r.url.path == path
        ]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        _handlers = self._routes.get((request.method, request.url.path))
        if not _handlers:
            return httpx.Response(404, json={"error": f"{request.url.path} not found"})

        _handler = _handlers.pop(0) if len(_handlers) > 1 else _handlers[0]
        if isinstance(_handler, Exception):
            raise _handler
        if isinstance(_handler, httpx.Response):
            return _handler
        return _handler(request)

    def http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


def software_inventory(**versions: str) -> Dict[str, Dict]:
    """Build the SoftwareInventory collection and members as {path: body}."""
    base = "/redfish/v1/UpdateService/SoftwareInventory"
    res: Dict[str, Dict] = {
        base: {"Members": [{"@odata.id": f"{base}/{_id}"} for _id in versions]}
    }
    for _id, _version in versions.items():
        res[f"{base}/{_id}"] = {"Id": _id, "Name": f"{_id} firmware", "Version": _version}
    return res


def add_inventory(controller: FakeController, **versions: str) -> None:
    for _path, _body in software_inventory(**versions).items():
        controller.add("GET", _path, respond(200, json=_body))


class FakeProtocolClient(ProtocolClient):
    """A protocol client with scripted capability and update outcome.

    <update> can be a result, an exception to raise, or a list of them consumed in order.
    """

    protocol = ProtocolType.REDFISH

    def __init__(
        self,
        *,
        supported: bool = True,
        update_modes: Optional[List[FirmwareUpdateMode]] = None,
        update: Any = None,
        detect_error: Optional[Exception] = None,
    ) -> None:
        self.supported = supported
        self.update_modes = update_modes or list(FirmwareUpdateMode)
        self._update = update
        self.detect_error = detect_error
        self.detect_calls = 0
        self.update_calls: List[FirmwareUpdateRequest] = []
        self.closed = 0

    @classmethod
    def of(cls, protocol: ProtocolType, **kwargs: Any) -> FakeProtocolClient:
        _cls = type(f"Fake{protocol.name.title()}Client", (cls,), {"protocol": protocol})
        return _cls(**kwargs)

    async def detect_capability(
        self, identity: ServerIdentity, credentials: Credentials
    ) -> ProtocolCapability:
        self.detect_calls += 1
        if self.detect_error:
            raise self.detect_error
        if not self.supported:
            return ProtocolCapability.unsupported(self.protocol)
        return ProtocolCapability(
            protocol=self.protocol, supported=True, update_modes=self.update_modes
        )

    async def health_check(
        self, identity: ServerIdentity, credentials: Credentials
    ) -> ProtocolHealth:
        return ProtocolHealth(protocol=self.protocol, status=HealthStatus.HEALTHY)

    async def perform_firmware_update(
        self, request: FirmwareUpdateRequest
    ) -> FirmwareUpdateResult:
        self.update_calls.append(request)
        _outcome = self._update
        if isinstance(_outcome, list):
            _outcome = _outcome.pop(0) if len(_outcome) > 1 else _outcome[0]
        if isinstance(_outcome, Exception):
            raise _outcome
        if _outcome is None:
            return FirmwareUpdateResult(
                protocol=self.protocol,
                status=UpdateStatus.COMPLETED,
                started_at=time.time(),
            )
        return _outcome

    async def close(self) -> None:
        self.closed += 1


class StaticLookup:
    """Host and plan lookup backed by dicts."""

    def __init__(
        self, hosts: Dict[str, ManagedHost], plans: Dict[str, FirmwarePlan]
    ) -> None:
        self.hosts, self.plans = hosts, plans

    def get_host(self, host_id: str) -> ManagedHost:
        return self.hosts[host_id]

    async def get_plan(self, plan_id: str) -> FirmwarePlan:
        return self.plans[plan_id]


class FakeMaintenance:
    """Record the maintenance mode switching, outcomes are given per action."""

    def __init__(self, **outcomes: Union[bool, Exception]) -> None:
        self.calls: List[Tuple[str, MaintenanceAction]] = []
        self._outcomes = outcomes

    async def set_maintenance(self, host: ManagedHost, action: MaintenanceAction) -> bool:
        self.calls.append((host.id, action))
        _outcome = self._outcomes.get(str(action), True)
        if isinstance(_outcome, Exception):
            raise _outcome
        return _outcome
