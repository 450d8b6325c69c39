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


from __future__ import annotations

import json
from pathlib import Path

import httpx
import pytest

from fwupdater._types import (
    Credentials,
    InventoryChangeType,
    InventoryComponent,
    InventorySnapshot,
    ServerGeneration,
)
from fwupdater.errors import RedfishActionMissingError, RedfishError
from fwupdater.redfish.client import (
    RedfishClient,
    basic_auth_header,
    generation_from_firmware_version,
    normalize_base_url,
    read_response_body,
    resolve_location,
)
from fwupdater.redfish.inventory import collect_software_inventory, diff_inventories
from tests.conftest import cfg
from tests.utils import FakeController, add_inventory, respond

UPDATE_SERVICE = {
    "Actions": {
        "#UpdateService.SimpleUpdate": {
            "target": "/redfish/v1/UpdateService/Actions/UpdateService.SimpleUpdate"
        },
        "#UpdateService.InstallFromRepository": {
            "target": "/redfish/v1/UpdateService/Actions/UpdateService.InstallFromRepository"
        },
    },
    "MultipartHttpPushUri": "/redfish/v1/UpdateService/MultipartUpload",
}


@pytest.mark.parametrize(
    "host, expected",
    (
        ("10.0.0.10", "https://10.0.0.10"),
        (" 10.0.0.10/ ", "https://10.0.0.10"),
        ("http://10.0.0.10:8080", "http://10.0.0.10:8080"),
        ("HTTPS://idrac.local/", "HTTPS://idrac.local"),
    ),
)
def test_normalize_base_url(host: str, expected: str):
    assert normalize_base_url(host) == expected


@pytest.mark.parametrize(
    "host, port, expected",
    (
        ("10.0.0.10", 8443, "https://10.0.0.10:8443"),
        ("http://10.0.0.10:8080/", 8443, "http://10.0.0.10:8080"),
        ("[fd00::10]", 443, "https://[fd00::10]:443"),
    ),
)
def test_normalize_base_url_with_port(host: str, port: int, expected: str):
    assert normalize_base_url(host, port) == expected


@pytest.mark.parametrize(
    "location, expected",
    (
        (None, None),
        ("", None),
        (
            "/redfish/v1/TaskService/Tasks/JID_1",
            "https://10.0.0.10/redfish/v1/TaskService/Tasks/JID_1",
        ),
        (
            "https://10.0.0.99/redfish/v1/TaskService/Tasks/JID_1",
            "https://10.0.0.99/redfish/v1/TaskService/Tasks/JID_1",
        ),
    ),
)
def test_resolve_location(location, expected):
    assert resolve_location("https://10.0.0.10", location) == expected


@pytest.mark.parametrize(
    "version, expected",
    (
        ("2.85.85.85", ServerGeneration.G11),
        ("3.21.26.22", ServerGeneration.G12),
        ("4.40.00.00", ServerGeneration.G13),
        ("5.10.50.00", ServerGeneration.G14),
        ("6.10.30.00", ServerGeneration.G15),
        ("7.00.60.00", ServerGeneration.G16),
        ("1.0", ServerGeneration.G11),
        ("unknown", ServerGeneration.UNKNOWN),
        (None, ServerGeneration.UNKNOWN),
    ),
)
def test_generation_from_firmware_version(version, expected):
    assert generation_from_firmware_version(version) == expected


def test_basic_auth_header():
    assert (
        basic_auth_header(Credentials(username="root", password="calvin"))
        == "Basic cm9vdDpjYWx2aW4="
    )


def test_read_response_body():
    assert read_response_body(httpx.Response(200, json={"a": 1})) == {"a": 1}
    assert read_response_body(httpx.Response(500, text="oops")) == "oops"
    assert read_response_body(httpx.Response(204)) is None


class TestRedfishClient:

    @pytest.fixture
    def client(self, http_client: httpx.AsyncClient, credentials: Credentials):
        return RedfishClient(cfg.BMC_HOST, credentials, http_client=http_client)

    @pytest.mark.asyncio
    async def test_enumerate_capabilities(
        self, client: RedfishClient, fake_controller: FakeController
    ):
        fake_controller.add(
            "GET", "/redfish/v1/UpdateService", respond(200, json=UPDATE_SERVICE)
        ).add(
            "GET",
            "/redfish/v1/Managers",
            respond(200, json={"Members": [{"@odata.id": "/redfish/v1/Managers/iDRAC.Embedded.1"}]}),
        ).add(
            "GET",
            "/redfish/v1/Managers/iDRAC.Embedded.1",
            respond(200, json={"FirmwareVersion": "5.10.50.00"}),
        )

        caps = await client.enumerate_capabilities()

        assert caps.simple_update and caps.install_from_repository
        assert caps.multipart_push_uri == "/redfish/v1/UpdateService/MultipartUpload"
        assert caps.firmware_version == "5.10.50.00"
        # every request is authenticated
        assert all(
            r.headers["authorization"] == "Basic cm9vdDpjYWx2aW4="
            for r in fake_controller.requests
        )

    @pytest.mark.asyncio
    async def test_enumerate_capabilities_without_managers(
        self, client: RedfishClient, fake_controller: FakeController
    ):
        fake_controller.add(
            "GET", "/redfish/v1/UpdateService", respond(200, json={"Actions": {}})
        )
        caps = await client.enumerate_capabilities()
        assert not caps.simple_update and not caps.install_from_repository
        assert caps.firmware_version is None

    @pytest.mark.asyncio
    async def test_simple_update(
        self, client: RedfishClient, fake_controller: FakeController
    ):
        fake_controller.add(
            "POST",
            "/redfish/v1/UpdateService/Actions/UpdateService.SimpleUpdate",
            respond(202, headers={"location": "/redfish/v1/TaskService/Tasks/JID_1"}),
        )

        res = await client.simple_update(
            "https://repo.example.local/BIOS.EXE",
            targets=["/redfish/v1/UpdateService/FirmwareInventory/BIOS"],
            apply_time="OnReset",
        )

        assert res.status == 202
        assert res.task_location == f"{cfg.BMC_BASE_URL}/redfish/v1/TaskService/Tasks/JID_1"
        payload = json.loads(fake_controller.requests[-1].content)
        assert payload == {
            "ImageURI": "https://repo.example.local/BIOS.EXE",
            "TransferProtocol": "HTTPS",
            "Targets": ["/redfish/v1/UpdateService/FirmwareInventory/BIOS"],
            "@Redfish.OperationApplyTime": "OnReset",
        }

    @pytest.mark.asyncio
    async def test_simple_update_rejected(
        self, client: RedfishClient, fake_controller: FakeController
    ):
        fake_controller.add(
            "POST",
            "/redfish/v1/UpdateService/Actions/UpdateService.SimpleUpdate",
            respond(400, json={"error": {"message": "bad ImageURI"}}),
        )
        with pytest.raises(RedfishError) as exc_info:
            await client.simple_update("http://repo.example.local/BIOS.EXE")
        assert exc_info.value.status == 400
        assert exc_info.value.body == {"error": {"message": "bad ImageURI"}}

    @pytest.mark.asyncio
    async def test_install_from_repository(
        self, client: RedfishClient, fake_controller: FakeController
    ):
        fake_controller.add(
            "GET", "/redfish/v1/UpdateService", respond(200, json=UPDATE_SERVICE)
        ).add(
            "POST",
            "/redfish/v1/UpdateService/Actions/UpdateService.InstallFromRepository",
            respond(202, headers={"location": "/redfish/v1/TaskService/Tasks/JID_2"}),
        )

        res = await client.install_from_repository(install_upon="NextReboot")

        assert res.task_location.endswith("/JID_2")
        payload = json.loads(fake_controller.requests[-1].content)
        assert payload["Repository"] == "https://downloads.dell.com/catalog/Catalog.xml.gz"
        assert payload["InstallUpon"] == "NextReboot"

    @pytest.mark.asyncio
    async def test_install_from_repository_not_advertised(
        self, client: RedfishClient, fake_controller: FakeController
    ):
        fake_controller.add(
            "GET", "/redfish/v1/UpdateService", respond(200, json={"Actions": {}})
        )
        with pytest.raises(RedfishActionMissingError):
            await client.install_from_repository("https://repo.example.local/Catalog.xml")
        assert not fake_controller.requests_to(
            "POST", "/redfish/v1/UpdateService/Actions/UpdateService.InstallFromRepository"
        )

    @pytest.mark.asyncio
    async def test_multipart_update(
        self, client: RedfishClient, fake_controller: FakeController, tmp_path: Path
    ):
        _image = tmp_path / "BIOS_2.19.1.EXE"
        _image.write_bytes(b"firmware image")
        fake_controller.add(
            "POST",
            "/redfish/v1/UpdateService/MultipartUpload",
            respond(202, headers={"location": "/redfish/v1/TaskService/Tasks/JID_3"}),
        )

        res = await client.multipart_update(
            str(_image),
            update_parameters={"@Redfish.OperationApplyTime": "Immediate"},
            push_uri="/redfish/v1/UpdateService/MultipartUpload",
        )

        assert res.task_location.endswith("/JID_3")
        _req = fake_controller.requests[-1]
        assert b"firmware image" in _req.content
        assert b"BIOS_2.19.1.EXE" in _req.content


class TestInventory:

    @pytest.mark.asyncio
    async def test_collect_software_inventory(
        self,
        http_client: httpx.AsyncClient,
        credentials: Credentials,
        fake_controller: FakeController,
    ):
        add_inventory(fake_controller, BIOS="2.19.1", iDRAC="7.00.60.00")
        client = RedfishClient(cfg.BMC_HOST, credentials, http_client=http_client)

        snapshot = await collect_software_inventory(client)

        assert set(snapshot.components) == {"BIOS", "iDRAC"}
        assert snapshot.components["BIOS"].version == "2.19.1"
        assert snapshot.components["BIOS"].name == "BIOS firmware"
        assert snapshot.components["iDRAC"].uri == (
            f"{cfg.BMC_BASE_URL}/redfish/v1/UpdateService/SoftwareInventory/iDRAC"
        )

    @pytest.mark.asyncio
    async def test_member_failure_skipped(
        self,
        http_client: httpx.AsyncClient,
        credentials: Credentials,
        fake_controller: FakeController,
    ):
        _base = "/redfish/v1/UpdateService/SoftwareInventory"
        fake_controller.add(
            "GET",
            _base,
            respond(
                200,
                json={
                    "Members": [
                        {"@odata.id": f"{_base}/BIOS"},
                        {"@odata.id": f"{_base}/BIOS"},
                        {"@odata.id": f"{_base}/Broken"},
                        {"no-uri": True},
                    ]
                },
            ),
        ).add(
            "GET", f"{_base}/BIOS", respond(200, json={"Id": "BIOS", "FirmwareVersion": "1.0"})
        ).add("GET", f"{_base}/Broken", httpx.ReadTimeout("timed out"))
        client = RedfishClient(cfg.BMC_HOST, credentials, http_client=http_client)

        snapshot = await collect_software_inventory(client)

        assert list(snapshot.components) == ["BIOS"]
        assert snapshot.components["BIOS"].version == "1.0"
        assert len(fake_controller.requests_to("GET", f"{_base}/BIOS")) == 1

    @pytest.mark.asyncio
    async def test_collection_failure_raised(
        self, http_client: httpx.AsyncClient, credentials: Credentials
    ):
        client = RedfishClient(cfg.BMC_HOST, credentials, http_client=http_client)
        with pytest.raises(RedfishError):
            await collect_software_inventory(client)

    def test_diff_inventories(self):
        before = InventorySnapshot(
            components={
                "A": InventoryComponent(id="A", version="v1"),
                "B": InventoryComponent(id="B", version="v1"),
            }
        )
        after = InventorySnapshot(
            components={
                "A": InventoryComponent(id="A", version="v2"),
                "C": InventoryComponent(id="C", version="v1"),
            }
        )

        changes = diff_inventories(before, after)

        assert [(c.id, c.change_type, c.previous_version, c.current_version) for c in changes] == [
            ("A", InventoryChangeType.UPDATED, "v1", "v2"),
            ("B", InventoryChangeType.REMOVED, "v1", None),
            ("C", InventoryChangeType.ADDED, None, "v1"),
        ]

    def test_diff_inventories_unchanged_and_missing(self):
        snapshot = InventorySnapshot(
            components={"A": InventoryComponent(id="A", version="v1")}
        )
        assert diff_inventories(snapshot, snapshot) == []
        assert [c.change_type for c in diff_inventories(None, snapshot)] == [
            InventoryChangeType.ADDED
        ]
        assert diff_inventories(None, None) == []

    def test_snapshot_export_and_load(self):
        snapshot = InventorySnapshot(
            components={"A": InventoryComponent(id="A", name="BIOS", version="v1")}
        )
        assert InventorySnapshot.load(snapshot.export()).components == snapshot.components
