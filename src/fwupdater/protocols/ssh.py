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
"""SSH protocol, detection and health check only."""


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


class SSHProtocolClient(CLIProtocolClient):
    protocol = ProtocolType.SSH

    def __init__(self, *, port: Optional[int] = None) -> None:
        self.port = port if port is not None else cfg.SSH_PORT

    def build_cmd(self, host: str, credentials: Credentials, command: str) -> List[str]:
        return [
            cfg.SSH_BIN,
            "-o",
            "BatchMode=yes",
            "-o",
            "StrictHostKeyChecking=no",
            "-p",
            str(self.port),
            f"{credentials.username}@{host}",
            command,
        ]

    async def ssh(self, host: str, credentials: Credentials, command: str) -> str:
        # BatchMode only allows key based login, the password is not used
        return await self.run_cli(
            self.build_cmd(host, credentials, command), timeout=cfg.CLI_PROBE_TIMEOUT
        )

    async def detect_capability(
        self, identity: ServerIdentity, credentials: Credentials
    ) -> ProtocolCapability:
        try:
            await self.ssh(identity.host, credentials, "uname -a")
        except ProtocolError as e:
            logger.debug(f"SSH probe on {identity.host} failed: {e!r}")
            return ProtocolCapability.unsupported(self.protocol, error=str(e))
        return ProtocolCapability(
            protocol=self.protocol,
            supported=True,
            update_modes=[FirmwareUpdateMode.CUSTOM_PROTOCOL],
            raw={"shell": "ssh"},
        )

    async def health_check(
        self, identity: ServerIdentity, credentials: Credentials
    ) -> ProtocolHealth:
        _start = time.monotonic()
        try:
            output = await self.ssh(identity.host, credentials, "uptime")
        except ProtocolError as e:
            return health_from_probe(self.protocol, started_at=_start, error=e)
        return health_from_probe(self.protocol, started_at=_start, details=output)

    async def perform_firmware_update(
        self, request: FirmwareUpdateRequest
    ) -> FirmwareUpdateResult:
        raise UnsupportedOperation(
            "firmware update over SSH requires custom workflow integration", self.protocol
        )
