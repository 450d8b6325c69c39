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
"""Single-answer capability detection: which protocol should drive this host.

Probes run strictly in order REST -> WS -> CLI tool -> IPMI(optional), and the
    first probe that succeeds decides, later probes are not run. Newer controllers
    support strictly more capable protocols, so the first success is the cheapest
    sufficient answer.
"""


from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Optional

from fwupdater._types import (
    Credentials,
    ProtocolCapability,
    ProtocolType,
    ServerIdentity,
)
from fwupdater.protocols.manager import ProtocolManager
from fwupdater_common._typing import StrEnum

logger = logging.getLogger(__name__)

ProbeFunc = Callable[[], Awaitable[bool]]


class ManagementKind(StrEnum):
    IDRAC9 = "idrac9"
    """REST protocol capable, the newest controllers."""
    IDRAC7 = "idrac7"
    """WS protocol capable."""
    DRAC5 = "drac5"
    """Only the vendor CLI tool is usable."""
    UNKNOWN = "unknown"


@dataclass
class DetectionProbes:
    redfish: ProbeFunc
    wsman: ProbeFunc
    racadm: ProbeFunc
    ipmi: Optional[ProbeFunc] = None


@dataclass
class CapabilityDetection:
    mgmt_kind: ManagementKind
    protocol: Optional[ProtocolType] = None
    features: Dict[ProtocolType, bool] = field(default_factory=dict)

    @property
    def usable(self) -> bool:
        return self.protocol is not None


async def _run_probe(name: str, probe: ProbeFunc) -> bool:
    try:
        return bool(await probe())
    except Exception as e:
        logger.debug(f"{name} probe raised, treated as not supported: {e!r}")
        return False


def _features(**enabled: bool) -> Dict[ProtocolType, bool]:
    res = {
        ProtocolType.REDFISH: False,
        ProtocolType.WSMAN: False,
        ProtocolType.RACADM: False,
        ProtocolType.IPMI: False,
    }
    for _protocol, _enabled in enabled.items():
        res[ProtocolType[_protocol.upper()]] = _enabled
    return res


async def detect_capabilities(probes: DetectionProbes) -> CapabilityDetection:
    if await _run_probe("REST", probes.redfish):
        return CapabilityDetection(
            ManagementKind.IDRAC9, ProtocolType.REDFISH, _features(redfish=True)
        )
    if await _run_probe("WS", probes.wsman):
        return CapabilityDetection(
            ManagementKind.IDRAC7, ProtocolType.WSMAN, _features(wsman=True)
        )
    if await _run_probe("racadm", probes.racadm):
        return CapabilityDetection(
            ManagementKind.DRAC5, ProtocolType.RACADM, _features(racadm=True)
        )

    # IPMI alone cannot apply firmware, only reported as a feature
    ipmi = await _run_probe("IPMI", probes.ipmi) if probes.ipmi else False
    return CapabilityDetection(ManagementKind.UNKNOWN, None, _features(ipmi=ipmi))


class ManagerProbes:
    """Build the detection probes from the clients of a protocol manager.

    The capability reported by each probe is kept in <capabilities>.
    """

    def __init__(
        self,
        manager: ProtocolManager,
        identity: ServerIdentity,
        credentials: Credentials,
    ) -> None:
        self._manager = manager
        self._identity = identity
        self._credentials = credentials
        self.capabilities: Dict[ProtocolType, ProtocolCapability] = {}

    def probe_for(self, protocol: ProtocolType) -> ProbeFunc:
        async def _probe() -> bool:
            if not (client := self._manager.client_for(protocol)):
                return False
            capability = await client.detect_capability(self._identity, self._credentials)
            self.capabilities[protocol] = capability
            return capability.supported

        return _probe

    def as_probes(self) -> DetectionProbes:
        return DetectionProbes(
            redfish=self.probe_for(ProtocolType.REDFISH),
            wsman=self.probe_for(ProtocolType.WSMAN),
            racadm=self.probe_for(ProtocolType.RACADM),
            ipmi=self.probe_for(ProtocolType.IPMI),
        )
