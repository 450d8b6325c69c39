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
"""Maintenance mode controller backed by the vCenter REST API."""


from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Optional

import httpx

from fwupdater._types import (
    CredentialKind,
    Credentials,
    MaintenanceAction,
    ManagedHost,
)
from fwupdater.configs import cfg, create_http_client
from fwupdater.errors import MaintenanceModeError
from fwupdater.orchestration.credentials import EnvCredentialResolver
from fwupdater.redfish.client import basic_auth_header
from fwupdater_common.asyncio_utils import maybe_await

logger = logging.getLogger(__name__)

TASK_SUCCEEDED = frozenset({"SUCCEEDED", "success"})
TASK_FAILED = frozenset({"FAILED", "error"})


class VCenterClient:
    """Session based client of one vCenter, login() must be called first."""

    def __init__(self, base_url: str, http_client: httpx.AsyncClient) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = http_client
        self._session_id: Optional[str] = None

    def _headers(self) -> dict[str, str]:
        if not self._session_id:
            raise MaintenanceModeError(f"not logged in to {self.base_url}")
        return {"vmware-api-session-id": self._session_id}

    async def _post(self, path: str, *, action: str, **kwargs: Any) -> Any:
        resp = await self._client.post(
            f"{self.base_url}{path}", headers=self._headers(), **kwargs
        )
        if not resp.is_success:
            raise MaintenanceModeError(
                f"vCenter {action} failed with {resp.status_code}",
                context={"status": resp.status_code},
            )
        return resp.json()

    async def login(self, credentials: Credentials) -> None:
        resp = await self._client.post(
            f"{self.base_url}/rest/com/vmware/cis/session",
            headers={"authorization": basic_auth_header(credentials)},
        )
        if not resp.is_success:
            raise MaintenanceModeError(
                f"vCenter login to {self.base_url} failed with {resp.status_code}",
                context={"status": resp.status_code},
            )
        self._session_id = resp.json()["value"]

    async def enter_maintenance(self, host_moid: str, *, timeout_minutes: float) -> str:
        data = await self._post(
            f"/rest/vcenter/host/maintenance-mode/{host_moid}?action=enter",
            action="enter maintenance",
            json={"evacuate_all": True, "timeout": max(60, int(timeout_minutes * 60))},
        )
        return (data or {}).get("value") or ""

    async def exit_maintenance(self, host_moid: str) -> str:
        data = await self._post(
            f"/rest/vcenter/host/maintenance-mode/{host_moid}?action=exit",
            action="exit maintenance",
        )
        return (data or {}).get("value") or ""

    async def wait_task(
        self, task_id: str, *, timeout: float, poll_interval: float
    ) -> bool:
        """Wait for vCenter task <task_id>, return True if the task succeeded."""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            resp = await self._client.get(
                f"{self.base_url}/rest/com/vmware/cis/task/{task_id}",
                headers=self._headers(),
            )
            if not resp.is_success:
                raise MaintenanceModeError(
                    f"vCenter task {task_id} query failed with {resp.status_code}"
                )
            _value = resp.json().get("value") or {}
            state = _value.get("state") or _value.get("status")
            if state in TASK_SUCCEEDED:
                return True
            if state in TASK_FAILED:
                return False
            await asyncio.sleep(poll_interval)

        logger.warning(f"vCenter task {task_id} timed out after {timeout}s")
        return False

    async def get_host_connection_state(self, host_moid: str) -> str:
        resp = await self._client.get(
            f"{self.base_url}/rest/vcenter/host/{host_moid}", headers=self._headers()
        )
        if not resp.is_success:
            raise MaintenanceModeError(
                f"vCenter host {host_moid} query failed with {resp.status_code}"
            )
        return (resp.json().get("value") or {}).get("connection_state") or "UNKNOWN"


class VCenterMaintenanceController:
    """Put a host into/out of the maintenance mode of its vCenter cluster.

    Hosts without a vCenter host id are not managed by vCenter, for which
        the maintenance mode switching is a no-op.
    """

    def __init__(
        self,
        credential_resolver: Optional[EnvCredentialResolver] = None,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        task_timeout_minutes: Optional[float] = None,
        poll_interval: Optional[float] = None,
    ) -> None:
        self._resolver = credential_resolver or EnvCredentialResolver()
        self._http_client = http_client
        self._task_timeout_minutes = (
            task_timeout_minutes
            if task_timeout_minutes is not None
            else cfg.MAINTENANCE_TASK_TIMEOUT_MINUTES
        )
        self._poll_interval = (
            poll_interval if poll_interval is not None else cfg.MAINTENANCE_TASK_POLL_INTERVAL
        )

    async def set_maintenance(self, host: ManagedHost, action: MaintenanceAction) -> bool:
        if not host.vcenter_host_moid:
            logger.info(f"{host.id} is not managed by vCenter, skip {action} maintenance")
            return True

        base_url = self._resolver.resolve_vcenter_url(host)
        credentials = await maybe_await(
            self._resolver.resolve(host, CredentialKind.VCENTER)
        )

        _owns_client = self._http_client is None
        http_client = self._http_client or create_http_client()
        try:
            client = VCenterClient(base_url, http_client)
            await client.login(credentials)
            if action == MaintenanceAction.ENTER:
                task_id = await client.enter_maintenance(
                    host.vcenter_host_moid, timeout_minutes=self._task_timeout_minutes
                )
            else:
                task_id = await client.exit_maintenance(host.vcenter_host_moid)

            if not task_id:
                logger.info(f"{host.id}: {action} maintenance finished without task")
                return True

            res = await client.wait_task(
                task_id,
                timeout=self._task_timeout_minutes * 60,
                poll_interval=self._poll_interval,
            )
            logger.info(f"{host.id}: {action} maintenance task {task_id}: {res=}")
            return res
        finally:
            if _owns_client:
                await http_client.aclose()
