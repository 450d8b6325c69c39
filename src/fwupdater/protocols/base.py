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
"""The contract shared by all protocol clients."""


from __future__ import annotations

import time
from abc import ABC, abstractmethod
from typing import ClassVar, Optional

import httpx

from fwupdater._types import (
    PROTOCOL_PRIORITY,
    Credentials,
    FirmwareComponent,
    FirmwareUpdateRequest,
    FirmwareUpdateResult,
    HealthStatus,
    ProtocolCapability,
    ProtocolHealth,
    ProtocolType,
    ServerIdentity,
)
from fwupdater.configs import create_http_client
from fwupdater.errors import (
    ErrorClassification,
    ProtocolError,
    classify_error,
    is_network_error,
)
from fwupdater_common.cmdhelper import CommandTimeoutError


class ProtocolClient(ABC):
    """One way of talking to a management controller.

    detect_capability and health_check never raise, failures are reported in
        the returned capability/health. perform_firmware_update raises on failure,
        which drives the protocol fallback.
    """

    protocol: ClassVar[ProtocolType]

    @property
    def priority(self) -> int:
        """Lower is preferred."""
        return PROTOCOL_PRIORITY[self.protocol]

    @abstractmethod
    async def detect_capability(
        self, identity: ServerIdentity, credentials: Credentials
    ) -> ProtocolCapability: ...

    @abstractmethod
    async def health_check(
        self, identity: ServerIdentity, credentials: Credentials
    ) -> ProtocolHealth: ...

    @abstractmethod
    async def perform_firmware_update(
        self, request: FirmwareUpdateRequest
    ) -> FirmwareUpdateResult: ...

    async def close(self) -> None:
        """Release resources held by this client, can be called multiple times."""

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}: {self.protocol}, priority={self.priority}>"


class HTTPProtocolClient(ProtocolClient):
    """Base for the HTTP based protocol clients.

    If <http_client> is not provided, one is created on first use and closed
        by close(), otherwise the caller owns the provided client.
    """

    def __init__(self, *, http_client: Optional[httpx.AsyncClient] = None) -> None:
        self._http_client = http_client
        self._owns_http_client = http_client is None

    def get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = create_http_client()
            self._owns_http_client = True
        return self._http_client

    async def close(self) -> None:
        if (
            self._owns_http_client
            and self._http_client is not None
            and not self._http_client.is_closed
        ):
            await self._http_client.aclose()


def health_from_probe(
    protocol: ProtocolType,
    *,
    started_at: float,
    error: Optional[BaseException] = None,
    details: Optional[str] = None,
) -> ProtocolHealth:
    """Build a health result from the outcome of a probe started at <started_at>(monotonic).

    A probe that cannot reach the endpoint marks it as unreachable, while a probe that
        gets an error answer marks it as degraded.
    """
    latency = time.monotonic() - started_at
    if error is None:
        return ProtocolHealth(
            protocol=protocol,
            status=HealthStatus.HEALTHY,
            latency=latency,
            details=details,
        )

    _classification = classify_error(error)
    _root = error.__cause__ or error
    _unreachable = (
        is_network_error(_root)
        or isinstance(_root, (CommandTimeoutError, FileNotFoundError))
        or _classification == ErrorClassification.FATAL
    )
    return ProtocolHealth(
        protocol=protocol,
        status=HealthStatus.UNREACHABLE if _unreachable else HealthStatus.DEGRADED,
        latency=latency,
        details=str(error) or repr(error),
        error_classification=str(_classification),
    )


def single_image_component(
    request: FirmwareUpdateRequest, protocol: ProtocolType
) -> FirmwareComponent:
    """Get the only component of a single image update request.

    Raises:
        ProtocolError(permanent) if <request> doesn't carry exactly one component.
    """
    if len(request.components) != 1:
        raise ProtocolError(
            f"{request.mode} applies exactly one image, "
            f"got {len(request.components)} components",
            protocol,
            classification=ErrorClassification.PERMANENT,
            context={"components": [_c.id for _c in request.components]},
        )
    return request.components[0]
