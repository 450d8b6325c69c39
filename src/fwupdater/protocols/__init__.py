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
"""Protocol clients for the out-of-band management controllers."""


from __future__ import annotations

from typing import Optional

import httpx

from fwupdater._types import (
    Credentials,
    FirmwareUpdateRequest,
    FirmwareUpdateResult,
    ProtocolDetectionResult,
    ServerIdentity,
)
from fwupdater.protocols.base import ProtocolClient
from fwupdater.protocols.ipmi import IPMIProtocolClient
from fwupdater.protocols.manager import (
    ProtocolManager,
    ProtocolManagerEvent,
    ProtocolManagerEventSink,
    ProtocolManagerEventType,
)
from fwupdater.protocols.racadm import RacadmProtocolClient
from fwupdater.protocols.redfish import RedfishProtocolClient
from fwupdater.protocols.ssh import SSHProtocolClient
from fwupdater.protocols.wsman import WSManProtocolClient

__all__ = [
    "ProtocolClient",
    "ProtocolManager",
    "ProtocolManagerEvent",
    "ProtocolManagerEventSink",
    "ProtocolManagerEventType",
    "RedfishProtocolClient",
    "WSManProtocolClient",
    "RacadmProtocolClient",
    "IPMIProtocolClient",
    "SSHProtocolClient",
    "create_default_protocol_manager",
    "detect_protocols",
    "execute_with_fallback",
]


def create_default_protocol_manager(
    *,
    http_client: Optional[httpx.AsyncClient] = None,
    event_sink: Optional[ProtocolManagerEventSink] = None,
) -> ProtocolManager:
    """Create a manager with all the protocol clients registered.

    <http_client> is shared by the HTTP based clients if provided.
    """
    return ProtocolManager(
        [
            RedfishProtocolClient(http_client=http_client),
            WSManProtocolClient(http_client=http_client),
            RacadmProtocolClient(),
            IPMIProtocolClient(),
            SSHProtocolClient(),
        ],
        event_sink=event_sink,
    )


async def detect_protocols(
    identity: ServerIdentity,
    credentials: Credentials,
    *,
    http_client: Optional[httpx.AsyncClient] = None,
    event_sink: Optional[ProtocolManagerEventSink] = None,
) -> ProtocolDetectionResult:
    """Probe <identity> with every protocol client of the default manager."""
    manager = create_default_protocol_manager(
        http_client=http_client, event_sink=event_sink
    )
    try:
        return await manager.detect(identity, credentials)
    finally:
        await manager.dispose()


async def execute_with_fallback(
    request: FirmwareUpdateRequest,
    *,
    http_client: Optional[httpx.AsyncClient] = None,
    event_sink: Optional[ProtocolManagerEventSink] = None,
) -> FirmwareUpdateResult:
    """Apply <request> with the default manager, see ProtocolManager.run_update."""
    manager = create_default_protocol_manager(
        http_client=http_client, event_sink=event_sink
    )
    try:
        return await manager.run_update(request)
    finally:
        await manager.dispose()
