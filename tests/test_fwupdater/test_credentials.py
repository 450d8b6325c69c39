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

from typing import Dict, Optional, Tuple

import pytest

from fwupdater._types import CredentialKind, Credentials, ManagedHost
from fwupdater.errors import CredentialsNotFound
from fwupdater.orchestration.credentials import (
    EnvCredentialResolver,
    parse_env_vault_path,
)
from tests.conftest import cfg

ENVIRON = {
    "ESX01_IDRAC_USER": "admin",
    "ESX01_IDRAC_PASS": "s3cret",
    "FWUPDATER_BMC_USER": cfg.BMC_USER,
    "FWUPDATER_BMC_PASS": cfg.BMC_PASS,
    "FWUPDATER_VCENTER_USER": "administrator@vsphere.local",
}


@pytest.mark.parametrize(
    "vault_path, expected",
    (
        (None, None),
        ("", None),
        ("vault://secret/esx-01", None),
        ("env:ESX01_IDRAC_USER,ESX01_IDRAC_PASS", ("admin", "s3cret")),
        ("env: ESX01_IDRAC_USER , ESX01_IDRAC_PASS ", ("admin", "s3cret")),
        ("env:ESX01_IDRAC_USER", ("admin", "")),
        ("env:NOT_SET_USER,NOT_SET_PASS", ("", "")),
        ("env:", ("", "")),
    ),
)
def test_parse_env_vault_path(
    vault_path: Optional[str], expected: Optional[Tuple[str, str]]
):
    assert parse_env_vault_path(vault_path, ENVIRON) == expected


class TestEnvCredentialResolver:

    @pytest.fixture
    def resolver(self) -> EnvCredentialResolver:
        return EnvCredentialResolver(ENVIRON)

    def test_resolve_from_reference(self, resolver: EnvCredentialResolver):
        host = ManagedHost(
            id="esx-01",
            bmc_address=cfg.BMC_HOST,
            credential_refs={"bmc": "env:ESX01_IDRAC_USER,ESX01_IDRAC_PASS"},
        )
        assert resolver.resolve(host, CredentialKind.BMC) == Credentials(
            username="admin", password="s3cret"
        )

    @pytest.mark.parametrize(
        "credential_refs",
        (
            {},
            {"bmc": "env:NOT_SET_USER,NOT_SET_PASS"},
            {"bmc": "vault://secret/esx-01"},
        ),
    )
    def test_fallback_to_kind_defaults(
        self, resolver: EnvCredentialResolver, credential_refs: Dict[str, str]
    ):
        host = ManagedHost(
            id="esx-01", bmc_address=cfg.BMC_HOST, credential_refs=credential_refs
        )
        assert resolver.resolve(host, CredentialKind.BMC) == Credentials(
            username=cfg.BMC_USER, password=cfg.BMC_PASS
        )

    def test_missing_password(self, resolver: EnvCredentialResolver):
        host = ManagedHost(id="esx-01", bmc_address=cfg.BMC_HOST)

        with pytest.raises(CredentialsNotFound) as exc_info:
            resolver.resolve(host, CredentialKind.VCENTER)
        assert "FWUPDATER_VCENTER_USER/_PASS" in str(exc_info.value)
        assert exc_info.value.context == {"host_id": "esx-01", "kind": "vcenter"}

    def test_password_not_in_repr(self, resolver: EnvCredentialResolver):
        host = ManagedHost(id="esx-01", bmc_address=cfg.BMC_HOST)
        assert cfg.BMC_PASS not in repr(resolver.resolve(host, CredentialKind.BMC))

    def test_resolve_vcenter_url(self):
        resolver = EnvCredentialResolver({"FWUPDATER_VCENTER_URL": cfg.VCENTER_URL})
        host = ManagedHost(id="esx-01", bmc_address=cfg.BMC_HOST)
        assert resolver.resolve_vcenter_url(host) == cfg.VCENTER_URL

        host.vcenter_url = "https://vcenter-2.example.local"
        assert resolver.resolve_vcenter_url(host) == "https://vcenter-2.example.local"

        with pytest.raises(CredentialsNotFound):
            EnvCredentialResolver({}).resolve_vcenter_url(
                ManagedHost(id="esx-01", bmc_address=cfg.BMC_HOST)
            )
