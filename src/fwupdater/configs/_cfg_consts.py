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
"""fwupdater internal uses consts, should not be changed from external."""

from __future__ import annotations


class Consts:
    #
    # ------ REST(Redfish) protocol resources ------ #
    #
    REDFISH_SERVICE_ROOT = "/redfish/v1/"
    REDFISH_MANAGERS = "/redfish/v1/Managers"
    REDFISH_UPDATE_SERVICE = "/redfish/v1/UpdateService"
    REDFISH_SIMPLE_UPDATE = (
        "/redfish/v1/UpdateService/Actions/UpdateService.SimpleUpdate"
    )
    REDFISH_INSTALL_FROM_REPOSITORY = (
        "/redfish/v1/UpdateService/Actions/UpdateService.InstallFromRepository"
    )
    REDFISH_MULTIPART_UPDATE = "/redfish/v1/UpdateService/update-multipart"
    REDFISH_SOFTWARE_INVENTORY = "/redfish/v1/UpdateService/SoftwareInventory"

    SIMPLE_UPDATE_ACTION = "#UpdateService.SimpleUpdate"
    INSTALL_FROM_REPOSITORY_ACTION = "#UpdateService.InstallFromRepository"

    # job states
    TASK_TERMINAL_STATES = frozenset(
        {
            "Completed",
            "CompletedOK",
            "CompletedWithWarnings",
            "Cancelled",
            "Exception",
            "Killed",
            "Failed",
        }
    )
    TASK_FAILURE_STATES = frozenset({"Exception", "Cancelled", "Killed", "Failed"})
    TASK_FAILURE_STATUS_PATTERN = r"exception|error|failed"

    #
    # ------ WS protocol resources ------ #
    #
    WSMAN_ENDPOINT = "/wsman"
    WSMAN_IDENTIFY = "http://schemas.dmtf.org/wbem/wsman/identity/1/Identify"
    WSMAN_SOFTWARE_INSTALLATION_URI = (
        "http://schemas.dell.com/wbem/wscim/1/cim-schema/2/"
        "DCIM_SoftwareInstallationService"
    )

    #
    # ------ CLI protocols ------ #
    #
    IPMI_INTERFACE = "lanplus"


cfg_consts = Consts()
