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
"""Firmware update over the REST(Redfish) protocol."""


from __future__ import annotations

import json
import logging
import time
from typing import List

from fwupdater._types import (
    Credentials,
    FirmwareUpdateMode,
    FirmwareUpdateRequest,
    FirmwareUpdateResult,
    ProtocolCapability,
    ProtocolHealth,
    ProtocolType,
    ServerIdentity,
    UpdateStatus,
)
from fwupdater.errors import (
    ErrorClassification,
    ProtocolError,
    RedfishActionMissingError,
    RedfishError,
)
from fwupdater.protocols.base import (
    HTTPProtocolClient,
    health_from_probe,
    single_image_component,
)
from fwupdater.redfish.client import (
    RedfishActionResponse,
    RedfishCapabilities,
    RedfishClient,
    generation_from_firmware_version,
)

logger = logging.getLogger(__name__)


def collect_update_modes(caps: RedfishCapabilities) -> List[FirmwareUpdateMode]:
    modes = []
    if caps.simple_update:
        modes.append(FirmwareUpdateMode.SIMPLE_UPDATE)
    if caps.install_from_repository:
        modes.append(FirmwareUpdateMode.INSTALL_FROM_REPOSITORY)
    if caps.multipart_push_uri:
        modes.append(FirmwareUpdateMode.MULTIPART_UPDATE)
    return modes


class RedfishProtocolClient(HTTPProtocolClient):
    protocol = ProtocolType.REDFISH

    def get_redfish_client(self, host: str, credentials: Credentials) -> RedfishClient:
        return RedfishClient(host, credentials, http_client=self.get_http_client())

    async def detect_capability(
        self, identity: ServerIdentity, credentials: Credentials
    ) -> ProtocolCapability:
        client = self.get_redfish_client(identity.host, credentials)
        try:
            caps = await client.enumerate_capabilities()
        except Exception as e:
            logger.debug(f"REST protocol probe on {identity.host} failed: {e!r}")
            return ProtocolCapability.unsupported(self.protocol, error=str(e))

        if not (modes := collect_update_modes(caps)):
            return ProtocolCapability.unsupported(
                self.protocol, reason="no update action advertised", update_service=caps.raw
            )
        return ProtocolCapability(
            protocol=self.protocol,
            supported=True,
            update_modes=modes,
            generation=generation_from_firmware_version(caps.firmware_version),
            firmware_version=caps.firmware_version,
            raw=caps.raw,
        )

    async def health_check(
        self, identity: ServerIdentity, credentials: Credentials
    ) -> ProtocolHealth:
        client = self.get_redfish_client(identity.host, credentials)
        _start = time.monotonic()
        try:
            await client.service_root()
        except Exception as e:
            return health_from_probe(self.protocol, started_at=_start, error=e)
        return health_from_probe(self.protocol, started_at=_start)

    async def perform_firmware_update(
        self, request: FirmwareUpdateRequest
    ) -> FirmwareUpdateResult:
        client = self.get_redfish_client(request.host, request.credentials)
        started_at = time.time()
        try:
            resp = await self._dispatch(client, request)
        except RedfishActionMissingError as e:
            raise ProtocolError(
                str(e),
                self.protocol,
                classification=ErrorClassification.PERMANENT,
                context={"action": e.action},
            ) from e
        except RedfishError as e:
            raise ProtocolError(
                str(e),
                self.protocol,
                classification=e.classification,
                context={"status": e.status},
            ) from e

        logger.info(
            f"{request.mode} accepted by {client.base_url}: "
            f"status={resp.status}, job={resp.task_location}"
        )
        return FirmwareUpdateResult(
            protocol=self.protocol,
            status=UpdateStatus.QUEUED,
            started_at=started_at,
            task_location=resp.task_location,
            job_id=resp.task_location,
            messages=[json.dumps(resp.body)] if resp.body else [],
        )

    async def _dispatch(
        self, client: RedfishClient, request: FirmwareUpdateRequest
    ) -> RedfishActionResponse:
        mode = request.mode
        if mode == FirmwareUpdateMode.INSTALL_FROM_REPOSITORY:
            return await client.install_from_repository(
                request.repository_url,
                install_upon=request.params.get("install_upon", "Immediate"),
                update_parameters=request.params.get("update_parameters"),
            )

        component = single_image_component(request, self.protocol)

        if mode == FirmwareUpdateMode.SIMPLE_UPDATE:
            if not component.image_uri:
                raise ProtocolError(
                    f"image URI is required for SimpleUpdate of {component.id}",
                    self.protocol,
                    classification=ErrorClassification.PERMANENT,
                )
            return await client.simple_update(
                component.image_uri,
                targets=request.params.get("targets"),
                apply_time=request.apply_time,
                maintenance_window_start=request.maintenance_window_start,
                maintenance_window_duration=request.maintenance_window_duration,
            )

        if mode == FirmwareUpdateMode.MULTIPART_UPDATE:
            if not component.file_path:
                raise ProtocolError(
                    f"local file is required for multipart update of {component.id}",
                    self.protocol,
                    classification=ErrorClassification.PERMANENT,
                )
            return await client.multipart_update(
                component.file_path,
                update_parameters=request.params.get("update_parameters"),
                push_uri=request.params.get("push_uri"),
            )

        raise ProtocolError(
            f"unsupported REST protocol update mode {mode}",
            self.protocol,
            classification=ErrorClassification.PERMANENT,
        )
