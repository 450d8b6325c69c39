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
"""Firmware update through the vendor's racadm command line tool."""


from __future__ import annotations

import logging
import re
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
    UpdateStatus,
)
from fwupdater.configs import cfg
from fwupdater.errors import ErrorClassification, ProtocolError
from fwupdater.protocols.base import health_from_probe
from fwupdater.protocols.cli import CLIProtocolClient
from fwupdater.redfish.client import generation_from_firmware_version

logger = logging.getLogger(__name__)

_FAILURE_PA = re.compile(r"(error|fail(?:ed)?|invalid|not supported)[^\n]*", re.I)
_SUCCESS_PA = re.compile(r"(success|completed)[^\n]*", re.I)
_FIRMWARE_VERSION_PA = re.compile(r"Firmware Version\s*=\s*(\S+)", re.I)


def detect_failure(stdout: str, stderr: str) -> Optional[str]:
    if _ma := _FAILURE_PA.search(f"{stdout}\n{stderr}"):
        return _ma.group(0).strip()


def detect_success(stdout: str) -> Optional[str]:
    if _ma := _SUCCESS_PA.search(stdout):
        return _ma.group(0).strip()


class RacadmProtocolClient(CLIProtocolClient):
    protocol = ProtocolType.RACADM

    def build_cmd(
        self, host: str, credentials: Credentials, *subcommand: str
    ) -> List[str]:
        return [
            cfg.RACADM_BIN,
            "-r",
            host,
            "-u",
            credentials.username,
            "-p",
            credentials.password,
            *subcommand,
        ]

    async def racadm(
        self, host: str, credentials: Credentials, *subcommand: str
    ) -> str:
        return await self.run_cli(
            self.build_cmd(host, credentials, *subcommand),
            timeout=cfg.CLI_PROBE_TIMEOUT,
            secrets=[credentials.password],
        )

    async def detect_capability(
        self, identity: ServerIdentity, credentials: Credentials
    ) -> ProtocolCapability:
        if not credentials.username or not credentials.password:
            return ProtocolCapability.unsupported(self.protocol, reason="missing credentials")

        try:
            sysinfo = await self.racadm(identity.host, credentials, "getsysinfo")
        except ProtocolError as e:
            logger.debug(f"racadm probe on {identity.host} failed: {e!r}")
            return ProtocolCapability.unsupported(self.protocol, error=str(e))

        version = None
        try:
            version = await self.racadm(identity.host, credentials, "getversion")
        except ProtocolError as e:
            logger.debug(f"racadm getversion on {identity.host} failed: {e!r}")

        firmware_version = None
        if _ma := _FIRMWARE_VERSION_PA.search(sysinfo):
            firmware_version = _ma.group(1)
        return ProtocolCapability(
            protocol=self.protocol,
            supported=True,
            update_modes=[FirmwareUpdateMode.INSTALL_FROM_REPOSITORY],
            generation=generation_from_firmware_version(firmware_version),
            firmware_version=firmware_version,
            raw={"version": version},
        )

    async def health_check(
        self, identity: ServerIdentity, credentials: Credentials
    ) -> ProtocolHealth:
        _start = time.monotonic()
        try:
            await self.racadm(identity.host, credentials, "getsysinfo")
        except ProtocolError as e:
            return health_from_probe(self.protocol, started_at=_start, error=e)
        return health_from_probe(
            self.protocol, started_at=_start, details="racadm reachable"
        )

    async def perform_firmware_update(
        self, request: FirmwareUpdateRequest
    ) -> FirmwareUpdateResult:
        """Run `fwupdate -g -u -a <repository>` and judge the outcome from its output."""
        if request.mode != FirmwareUpdateMode.INSTALL_FROM_REPOSITORY:
            raise ProtocolError(
                f"racadm does not support mode {request.mode}",
                self.protocol,
                classification=ErrorClassification.PERMANENT,
            )
        if not (repository := request.repository_url or request.params.get("repository")):
            raise ProtocolError(
                "racadm update requires a repository URL",
                self.protocol,
                classification=ErrorClassification.PERMANENT,
            )

        started_at = time.time()
        cmd = self.build_cmd(
            request.host, request.credentials, "fwupdate", "-g", "-u", "-a", repository
        )
        res = await self.run_cli_unchecked(
            cmd,
            timeout=float(request.params.get("timeout", cfg.RACADM_UPDATE_TIMEOUT)),
            secrets=[request.credentials.password],
        )
        logger.info(
            f"{' '.join(res.cmd)} exited with {res.returncode} after {res.duration:.1f}s"
        )

        _metadata = {
            "returncode": res.returncode,
            "stdout": res.stdout,
            "stderr": res.stderr,
            "duration": res.duration,
        }
        failure_reason = detect_failure(res.stdout, res.stderr)
        if res.returncode != 0:
            raise ProtocolError(
                f"racadm exited with {res.returncode}: {failure_reason or res.stderr.strip()}",
                self.protocol,
                context=_metadata,
            )
        if failure_reason:
            raise ProtocolError(
                f"racadm reports failure: {failure_reason}",
                self.protocol,
                classification=ErrorClassification.PERMANENT,
                context=_metadata,
            )

        return FirmwareUpdateResult(
            protocol=self.protocol,
            status=UpdateStatus.COMPLETED,
            started_at=started_at,
            completed_at=time.time(),
            messages=[detect_success(res.stdout) or "racadm update executed"],
            metadata=_metadata,
        )
