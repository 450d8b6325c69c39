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
"""Interfaces of the external collaborators called by the host state machine.

Implementations can be either sync or async.
"""


from __future__ import annotations

from abc import abstractmethod
from typing import List, Optional, Protocol

from fwupdater._types import (
    CredentialKind,
    Credentials,
    FirmwarePlan,
    HostRun,
    MaintenanceAction,
    ManagedHost,
)
from fwupdater_common._typing import MaybeAwaitable


class CredentialResolver(Protocol):
    @abstractmethod
    def resolve(
        self, host: ManagedHost, kind: CredentialKind
    ) -> MaybeAwaitable[Credentials]:
        """Raises CredentialsNotFound if no credentials can be resolved."""


class MaintenanceController(Protocol):
    @abstractmethod
    def set_maintenance(
        self, host: ManagedHost, action: MaintenanceAction
    ) -> MaybeAwaitable[bool]:
        """Enter or exit the maintenance mode, return False on failure."""


class PlanLookup(Protocol):
    @abstractmethod
    def get_plan(self, plan_id: str) -> MaybeAwaitable[FirmwarePlan]:
        """Raises KeyError if the plan doesn't exist."""


class HostLookup(Protocol):
    @abstractmethod
    def get_host(self, host_id: str) -> MaybeAwaitable[ManagedHost]:
        """Raises KeyError if the host doesn't exist."""


class HostRunStore(Protocol):
    @abstractmethod
    def save(self, run: HostRun) -> MaybeAwaitable[None]: ...

    @abstractmethod
    def get(self, run_id: str) -> MaybeAwaitable[Optional[HostRun]]: ...

    @abstractmethod
    def list_for_host(self, host_id: str) -> MaybeAwaitable[List[HostRun]]:
        """All runs of <host_id>, oldest first."""
