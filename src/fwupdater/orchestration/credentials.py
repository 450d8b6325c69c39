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
"""Credential resolving from environment variables.

A host can reference its credentials with "env:<USER_VAR>,<PASS_VAR>", otherwise
    FWUPDATER_<KIND>_USER and FWUPDATER_<KIND>_PASS are used.
"""


from __future__ import annotations

import logging
import os
from typing import Mapping, Optional, Tuple

from fwupdater._types import CredentialKind, Credentials, ManagedHost
from fwupdater.configs import ENV_PREFIX
from fwupdater.errors import CredentialsNotFound

logger = logging.getLogger(__name__)

ENV_VAULT_SCHEME = "env:"


def parse_env_vault_path(
    vault_path: Optional[str], environ: Mapping[str, str]
) -> Optional[Tuple[str, str]]:
    """Parse "env:USER_VAR,PASS_VAR" and look up the two variables in <environ>.

    Returns None if <vault_path> is not an env reference.
    """
    if not vault_path or not vault_path.startswith(ENV_VAULT_SCHEME):
        return None

    _keys = vault_path[len(ENV_VAULT_SCHEME) :].split(",")
    user_key = _keys[0].strip() if _keys else ""
    pass_key = _keys[1].strip() if len(_keys) > 1 else ""
    return (
        environ.get(user_key, "") if user_key else "",
        environ.get(pass_key, "") if pass_key else "",
    )


class EnvCredentialResolver:

    def __init__(self, environ: Optional[Mapping[str, str]] = None) -> None:
        self._environ = environ if environ is not None else os.environ

    def _fallback(self, kind: CredentialKind) -> Tuple[str, str]:
        _prefix = f"{ENV_PREFIX}{str(kind).upper()}"
        return (
            self._environ.get(f"{_prefix}_USER", ""),
            self._environ.get(f"{_prefix}_PASS", ""),
        )

    def resolve(self, host: ManagedHost, kind: CredentialKind) -> Credentials:
        _ref = host.credential_refs.get(str(kind))
        username, password = parse_env_vault_path(_ref, self._environ) or ("", "")
        fallback_user, fallback_pass = self._fallback(kind)
        username, password = username or fallback_user, password or fallback_pass

        if not username or not password:
            raise CredentialsNotFound(
                f"missing {kind} credentials for {host.id}: "
                f"set a credential reference or {ENV_PREFIX}{str(kind).upper()}_USER/_PASS",
                context={"host_id": host.id, "kind": str(kind)},
            )
        return Credentials(username=username, password=password)

    def resolve_vcenter_url(self, host: ManagedHost) -> str:
        if _url := host.vcenter_url or self._environ.get(f"{ENV_PREFIX}VCENTER_URL"):
            return _url
        raise CredentialsNotFound(
            f"missing vCenter URL for {host.id}",
            context={"host_id": host.id, "kind": str(CredentialKind.VCENTER)},
        )
