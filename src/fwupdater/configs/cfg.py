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
"""Load fwupdater configs, and build the HTTP client with the configured TLS policy."""

from __future__ import annotations

import logging
import ssl
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional, Union

import httpx

from fwupdater.configs._cfg_configurable import ConfigurableSettings, set_configs
from fwupdater.configs._cfg_consts import Consts

logger = logging.getLogger(__name__)

cfg_configurable = set_configs()
cfg_consts = Consts()

if TYPE_CHECKING:

    class _FWUpdaterConfigs(ConfigurableSettings, Consts):
        """fwupdater configs."""

else:

    class _FWUpdaterConfigs:

        def __getattribute__(self, name: str) -> Any:
            for _cfg in [cfg_consts, cfg_configurable]:
                try:
                    return getattr(_cfg, name)
                except AttributeError:
                    continue
            raise AttributeError(f"no such config field: {name=}")


cfg = _FWUpdaterConfigs()


def create_http_client(
    *,
    verify: Optional[bool] = None,
    ca_bundle: Optional[str] = None,
    timeout: Optional[float] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    """Create the HTTP client used by every REST/WS component.

    The TLS trust policy is explicit here: when a CA bundle is configured, the
        server cert is verified against it, otherwise <verify> decides.
    """
    if verify is None:
        verify = cfg.TLS_VERIFY
    if ca_bundle is None:
        ca_bundle = cfg.CA_BUNDLE_PATH

    _verify: Union[bool, ssl.SSLContext] = verify
    if ca_bundle:
        if Path(ca_bundle).is_file():
            _verify = ssl.create_default_context(cafile=ca_bundle)
        else:
            logger.warning(f"{ca_bundle=} not found, ignored")

    return httpx.AsyncClient(
        verify=_verify,
        timeout=httpx.Timeout(timeout if timeout is not None else cfg.HTTP_REQUEST_TIMEOUT),
        transport=transport,
    )
