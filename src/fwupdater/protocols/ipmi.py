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
"""IPMI protocol, detection and health check only."""


from __future__ import annotations

import logging
import time
from typing import List, Optional

from fwupdater._types import (
    Credentials,
    FirmwareUpdateMode,
    FirmwareUpdateRequest,
    FirmwareUpdateResult,
    ProtocolCapability,
    ProtocolHealth,
    ProtocolType,
    ServerIdentity,
)
from fwupdater.configs import cfg
from fwupdater.errors import ProtocolError, UnsupportedOperation
from fwupdater.protocols.base import health_from_probe
from fwupdater.protocols.cli import CLIProtocolClient

logger = logging.getLogger(__name__)


class IPMIProtocolClient(CLIProtocolClient):
    protocol = ProtocolType.IPMI

    def __init__(self, *, port: Optional[int] = None) -> None:
        self.port = port if port is not None else cfg.IPMI_PORT

    def build_cmd(self, host: str, credentials: Credentials, *args: str) -> List[str]:
        cmd = [
            cfg.IPMITOOL_BIN,
            "-I",
            cfg.IPMI_INTERFACE,
            "-H",
            host,
            "-U",
            credentials.username,
            "-P",
            credentials.password,
        ]
        if self.port:
            cmd += ["-p", str(self.port)]
        return [*cmd, *args]

    async def chassis_status(self, host: str, credentials: Credentials) -> str:
        return await self.run_cli(
            self.build_cmd(host, credentials, "chassis", "status"),
            timeout=cfg.CLI_PROBE_TIMEOUT,
            secrets=[credentials.password],
        )

    async def detect_capability(
        self, identity: ServerIdentity, credentials: Credentials
    ) -> ProtocolCapability:
        try:
            await self.chassis_status(identity.host, credentials)
        except ProtocolError as e:
            logger.debug(f"IPMI probe on {identity.host} failed: {e!r}")
            return ProtocolCapability.unsupported(self.protocol, error=str(e))
        return ProtocolCapability(
            protocol=self.protocol,
            supported=True,
            update_modes=[FirmwareUpdateMode.CUSTOM_PROTOCOL],
            raw={"interface": cfg.IPMI_INTERFACE},
        )

    async def health_check(
        self, identity: ServerIdentity, credentials: Credentials
    ) -> ProtocolHealth:
        _start = time.monotonic()
        try:
            output = await self.chassis_status(identity.host, credentials)
        except ProtocolError as e:
            return health_from_probe(self.protocol, started_at=_start, error=e)
        return health_from_probe(self.protocol, started_at=_start, details=output)

    async def perform_firmware_update(
        self, request: FirmwareUpdateRequest
    ) -> FirmwareUpdateResult:
        raise UnsupportedOperation(
            "firmware update over IPMI requires custom tooling", self.protocol
        )
