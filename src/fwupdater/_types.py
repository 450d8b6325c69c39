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
"""fwupdater internal used types."""


from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Optional

from fwupdater_common._typing import StrEnum

#
# ------ protocol enums definitions ------ #
#


class ProtocolType(StrEnum):
    REDFISH = "REDFISH"
    WSMAN = "WSMAN"
    RACADM = "RACADM"
    IPMI = "IPMI"
    SSH = "SSH"


PROTOCOL_PRIORITY: Dict[ProtocolType, int] = {
    ProtocolType.REDFISH: 10,
    ProtocolType.WSMAN: 20,
    ProtocolType.RACADM: 30,
    ProtocolType.IPMI: 40,
    ProtocolType.SSH: 50,
}
"""Static fallback order of the protocols, lower is preferred."""


class ServerGeneration(StrEnum):
    G11 = "11G"
    G12 = "12G"
    G13 = "13G"
    G14 = "14G"
    G15 = "15G"
    G16 = "16G"
    UNKNOWN = "UNKNOWN"


class FirmwareUpdateMode(StrEnum):
    SIMPLE_UPDATE = "SIMPLE_UPDATE"
    INSTALL_FROM_REPOSITORY = "INSTALL_FROM_REPOSITORY"
    MULTIPART_UPDATE = "MULTIPART_UPDATE"
    CUSTOM_PROTOCOL = "CUSTOM_PROTOCOL"


SINGLE_IMAGE_UPDATE_MODES: FrozenSet[FirmwareUpdateMode] = frozenset(
    {FirmwareUpdateMode.SIMPLE_UPDATE, FirmwareUpdateMode.MULTIPART_UPDATE}
)
"""Update modes that apply the image of exactly one component."""


class UpdateStatus(StrEnum):
    QUEUED = "QUEUED"
    """The update is accepted as an asynchronous job, see task_location/job_id."""
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class HealthStatus(StrEnum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNREACHABLE = "unreachable"


class CredentialKind(StrEnum):
    BMC = "bmc"
    VCENTER = "vcenter"


class MaintenanceAction(StrEnum):
    ENTER = "enter"
    EXIT = "exit"


#
# ------ identity and credentials ------ #
#


@dataclass(frozen=True)
class ServerIdentity:
    host: str
    name: Optional[str] = None


@dataclass(frozen=True)
class Credentials:
    username: str
    password: str
    port: Optional[int] = None

    def __repr__(self) -> str:
        return f"Credentials(username={self.username!r}, password='***', port={self.port})"


#
# ------ protocol capability and health ------ #
#


@dataclass
class ProtocolCapability:
    protocol: ProtocolType
    supported: bool
    update_modes: List[FirmwareUpdateMode] = field(default_factory=list)
    generation: ServerGeneration = ServerGeneration.UNKNOWN
    firmware_version: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)
    """Raw probe diagnostics."""

    def __post_init__(self) -> None:
        if self.supported and not self.update_modes:
            raise ValueError(
                f"supported {self.protocol} capability must have at least one update mode"
            )

    @classmethod
    def unsupported(cls, protocol: ProtocolType, **raw: Any) -> ProtocolCapability:
        return cls(protocol=protocol, supported=False, raw=raw)


@dataclass
class ProtocolHealth:
    protocol: ProtocolType
    status: HealthStatus
    checked_at: float = field(default_factory=time.time)
    latency: Optional[float] = None
    """In seconds."""
    details: Optional[str] = None
    error_classification: Optional[str] = None


@dataclass
class ProtocolDetectionResult:
    identity: ServerIdentity
    capabilities: List[ProtocolCapability]
    healthiest: Optional[ProtocolCapability] = None


#
# ------ firmware update request and result ------ #
#


@dataclass
class FirmwareComponent:
    id: str
    image_uri: Optional[str] = None
    name: Optional[str] = None
    file_path: Optional[str] = None
    """Local image file, used by MULTIPART_UPDATE."""
    expected_version: Optional[str] = None


@dataclass
class FirmwareUpdateRequest:
    host: str
    credentials: Credentials
    mode: FirmwareUpdateMode
    components: List[FirmwareComponent] = field(default_factory=list)
    repository_url: Optional[str] = None
    apply_time: Optional[str] = None
    """Immediate, OnReset or AtMaintenanceWindowStart."""
    maintenance_window_start: Optional[str] = None
    maintenance_window_duration: Optional[int] = None
    """In seconds."""
    params: Dict[str, Any] = field(default_factory=dict)
    """Protocol specific parameters."""


@dataclass
class FirmwareUpdateResult:
    protocol: ProtocolType
    status: UpdateStatus
    started_at: float
    completed_at: Optional[float] = None
    messages: List[str] = field(default_factory=list)
    task_location: Optional[str] = None
    job_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


#
# ------ firmware inventory ------ #
#


class InventoryChangeType(StrEnum):
    ADDED = "added"
    REMOVED = "removed"
    UPDATED = "updated"


@dataclass(frozen=True)
class InventoryComponent:
    id: str
    name: Optional[str] = None
    version: Optional[str] = None
    uri: Optional[str] = None


@dataclass
class InventorySnapshot:
    raw: Any = None
    components: Dict[str, InventoryComponent] = field(default_factory=dict)

    def export(self) -> Dict[str, Any]:
        """Export the component table as a JSON compatible dict."""
        return {
            _id: {"id": c.id, "name": c.name, "version": c.version, "uri": c.uri}
            for _id, c in self.components.items()
        }

    @classmethod
    def load(cls, _in: Dict[str, Any]) -> InventorySnapshot:
        return cls(
            components={
                _id: InventoryComponent(**entry) for _id, entry in _in.items()
            }
        )


@dataclass(frozen=True)
class InventoryChange:
    id: str
    change_type: InventoryChangeType
    name: Optional[str] = None
    previous_version: Optional[str] = None
    current_version: Optional[str] = None


@dataclass
class InventoryDiff:
    after: InventorySnapshot
    before: Optional[InventorySnapshot] = None
    changes: List[InventoryChange] = field(default_factory=list)


#
# ------ per host update run ------ #
#


class HostRunState(StrEnum):
    PRECHECKS = "PRECHECKS"
    ENTER_MAINT = "ENTER_MAINT"
    APPLY = "APPLY"
    REBOOT = "REBOOT"
    POSTCHECKS = "POSTCHECKS"
    EXIT_MAINT = "EXIT_MAINT"
    DONE = "DONE"
    ERROR = "ERROR"


TERMINAL_HOST_RUN_STATES = frozenset({HostRunState.DONE, HostRunState.ERROR})


@dataclass
class HostRun:
    """The durable record of one host update workflow.

    <state> is the authoritative position of the workflow, <ctx> carries
        intermediate results across process restarts.
    """

    id: str
    plan_id: str
    host_id: str
    state: HostRunState = HostRunState.PRECHECKS
    ctx: Dict[str, Any] = field(default_factory=dict)
    attempts: int = 0
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_HOST_RUN_STATES


@dataclass
class FirmwarePlan:
    id: str
    components: List[FirmwareComponent] = field(default_factory=list)
    mode: FirmwareUpdateMode = FirmwareUpdateMode.SIMPLE_UPDATE
    repository_url: Optional[str] = None
    apply_time: Optional[str] = None
    params: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ManagedHost:
    """One managed server, as known to the host lookup."""

    id: str
    bmc_address: str
    name: Optional[str] = None
    vcenter_url: Optional[str] = None
    vcenter_host_moid: Optional[str] = None
    credential_refs: Dict[str, str] = field(default_factory=dict)
    """Credential kind -> vault reference, i.e., "env:USER_VAR,PASS_VAR"."""

    @property
    def identity(self) -> ServerIdentity:
        return ServerIdentity(host=self.bmc_address, name=self.name or self.id)
