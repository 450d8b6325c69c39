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

import logging
from dataclasses import dataclass

import pytest
import pytest_asyncio

from fwupdater._types import Credentials, ServerIdentity
from tests.utils import FakeController

logger = logging.getLogger(__name__)


@dataclass
class TestConfiguration:
    # module paths
    CLI_PROTOCOL_MODULE_PATH = "fwupdater.protocols.cli"
    STATE_MACHINE_MODULE_PATH = "fwupdater.orchestration.state_machine"

    # the managed server settings for testing
    BMC_HOST = "10.0.0.10"
    BMC_BASE_URL = f"https://{BMC_HOST}"
    BMC_USER = "root"
    BMC_PASS = "calvin"
    VCENTER_URL = "https://vcenter.example.local"
    VCENTER_HOST_MOID = "host-42"

    # tiny backoff for faster test
    BACKOFF = 0.001


cfg = TestConfiguration()


@pytest.fixture
def fake_controller() -> FakeController:
    return FakeController()


@pytest_asyncio.fixture
async def http_client(fake_controller: FakeController):
    async with fake_controller.http_client() as _client:
        yield _client


@pytest.fixture
def identity() -> ServerIdentity:
    return ServerIdentity(host=cfg.BMC_HOST, name="server-1")


@pytest.fixture
def credentials() -> Credentials:
    return Credentials(username=cfg.BMC_USER, password=cfg.BMC_PASS)
