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
"""Plan file definition and parsing logic.

A plan file lists the managed hosts and the firmware plans to apply to them:

    format_version: 1
    hosts:
      - id: esx-01
        bmc_address: 10.0.0.11
        vcenter_url: https://vcenter.example.com
        vcenter_host_moid: host-1001
        credential_refs:
          bmc: env:ESX01_BMC_USER,ESX01_BMC_PASS
    plans:
      - id: bios-2024q1
        mode: SIMPLE_UPDATE
        hosts: [esx-01]
        components:
          - id: BIOS
            image_uri: http://repo.example.com/BIOS_2.19.1.EXE
            expected_version: 2.19.1

The loaded plan file also serves as the host lookup and plan lookup.
"""


from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

import yaml
from pydantic import BeforeValidator, Field, model_validator
from typing_extensions import Annotated

from fwupdater._types import (
    FirmwareComponent,
    FirmwarePlan,
    FirmwareUpdateMode,
    ManagedHost,
)
from fwupdater.configs._common import BaseFixedConfig
from fwupdater_common._typing import StrOrPath, gen_strenum_validator

logger = logging.getLogger(__name__)


class InvalidPlanFile(ValueError):
    pass


class ComponentConfig(BaseFixedConfig):
    id: str
    name: Optional[str] = None
    image_uri: Optional[str] = None
    file_path: Optional[str] = None
    expected_version: Optional[str] = None


class HostConfig(BaseFixedConfig):
    id: str
    bmc_address: str
    name: Optional[str] = None
    vcenter_url: Optional[str] = None
    vcenter_host_moid: Optional[str] = None
    credential_refs: Dict[str, str] = {}


class PlanConfig(BaseFixedConfig):
    id: str
    mode: Annotated[
        FirmwareUpdateMode, BeforeValidator(gen_strenum_validator(FirmwareUpdateMode))
    ] = FirmwareUpdateMode.SIMPLE_UPDATE
    components: List[ComponentConfig] = []
    repository_url: Optional[str] = None
    apply_time: Optional[str] = None
    params: Dict[str, Any] = {}
    hosts: List[str] = Field(default_factory=list)
    """The ids of hosts this plan is applied to."""


class PlanFile(BaseFixedConfig):
    format_version: int = 1
    hosts: List[HostConfig] = []
    plans: List[PlanConfig] = []

    @model_validator(mode="after")
    def _check_references(self) -> PlanFile:
        host_ids = [h.id for h in self.hosts]
        if len(set(host_ids)) != len(host_ids):
            raise ValueError(f"duplicated host ids: {host_ids}")
        plan_ids = [p.id for p in self.plans]
        if len(set(plan_ids)) != len(plan_ids):
            raise ValueError(f"duplicated plan ids: {plan_ids}")

        for plan in self.plans:
            if unknown := set(plan.hosts) - set(host_ids):
                raise ValueError(f"plan {plan.id} targets unknown hosts: {sorted(unknown)}")
        return self

    #
    # ------ host and plan lookup ------ #
    #

    def get_host(self, host_id: str) -> ManagedHost:
        for _host in self.hosts:
            if _host.id == host_id:
                return ManagedHost(
                    id=_host.id,
                    bmc_address=_host.bmc_address,
                    name=_host.name,
                    vcenter_url=_host.vcenter_url,
                    vcenter_host_moid=_host.vcenter_host_moid,
                    credential_refs=dict(_host.credential_refs),
                )
        raise KeyError(f"host {host_id} not found")

    def get_plan(self, plan_id: str) -> FirmwarePlan:
        for _plan in self.plans:
            if _plan.id == plan_id:
                return FirmwarePlan(
                    id=_plan.id,
                    components=[
                        FirmwareComponent(**_c.model_dump()) for _c in _plan.components
                    ],
                    mode=_plan.mode,
                    repository_url=_plan.repository_url,
                    apply_time=_plan.apply_time,
                    params=dict(_plan.params),
                )
        raise KeyError(f"plan {plan_id} not found")

    def iter_targets(self) -> Iterator[Tuple[str, List[str]]]:
        """Yield (plan_id, host_ids) of each plan, in the order of the plan file."""
        for _plan in self.plans:
            yield _plan.id, list(_plan.hosts)


def load_plan_file(plan_file: StrOrPath) -> PlanFile:
    """Parse the plan file located at <plan_file>.

    Raises:
        InvalidPlanFile if the file cannot be read or is not a valid plan file.
    """
    try:
        _raw_yaml_str = Path(plan_file).read_text()
    except OSError as e:
        raise InvalidPlanFile(f"failed to read {plan_file=}: {e!r}") from e

    try:
        loaded_plan_file = yaml.safe_load(_raw_yaml_str)
        assert isinstance(loaded_plan_file, dict), "not a valid yaml file"
        return PlanFile.model_validate(loaded_plan_file)
    except Exception as e:
        logger.error(f"{plan_file=} is invalid: {e!r}")
        raise InvalidPlanFile(f"{plan_file=} is invalid: {e!r}") from e
