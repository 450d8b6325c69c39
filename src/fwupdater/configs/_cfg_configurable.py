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
"""Runtime configurable configs for fwupdater."""

from __future__ import annotations

import json
import logging
from typing import Dict, Literal, Optional

from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict

from fwupdater_common._typing import PositiveSeconds

logger = logging.getLogger(__name__)

ENV_PREFIX = "FWUPDATER_"
LOG_LEVEL_LITERAL = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


class _LoggingSettings(BaseModel):
    DEFAULT_LOG_LEVEL: LOG_LEVEL_LITERAL = "INFO"
    LOG_LEVEL_TABLE: Dict[str, LOG_LEVEL_LITERAL] = {
        "fwupdater": "INFO",
        "fwupdater_common": "INFO",
    }

    @property
    def LOG_FORMAT(self) -> str:
        log_fields = {
            "timestamp": "%(asctime)s",
            "level": "%(levelname)s",
            "logger": "%(name)s",
            "function": "%(funcName)s",
            "line": "%(lineno)d",
            "message": "%(message)s",
        }
        return json.dumps(log_fields, separators=(",", ":"))


class _TaskPollerSettings(BaseModel):
    # the overall deadline of tracking one firmware job, measured from poll start
    TASK_POLL_TIMEOUT_MINUTES: float = 90
    TASK_POLL_BACKOFF_START: PositiveSeconds = 2  # seconds
    TASK_POLL_BACKOFF_MAX: PositiveSeconds = 15  # seconds

    # waiting for the management controller to come back after the update
    SERVICE_ROOT_PROBE_TIMEOUT: PositiveSeconds = 5  # seconds
    SERVICE_ROOT_BACKOFF_START: PositiveSeconds = 2  # seconds
    SERVICE_ROOT_BACKOFF_FACTOR: float = 1.5
    SERVICE_ROOT_BACKOFF_MAX: PositiveSeconds = 5  # seconds


class _ProtocolSettings(BaseModel):
    HTTP_REQUEST_TIMEOUT: PositiveSeconds = 30  # seconds
    # NOTE: most management controllers ship with self-signed certs
    TLS_VERIFY: bool = False
    CA_BUNDLE_PATH: Optional[str] = None

    PROTOCOL_UPDATE_RETRY_ATTEMPTS: int = 3

    CLI_PROBE_TIMEOUT: PositiveSeconds = 5  # seconds
    RACADM_UPDATE_TIMEOUT: PositiveSeconds = 30 * 60  # seconds
    RACADM_BIN: str = "racadm"
    IPMITOOL_BIN: str = "ipmitool"
    SSH_BIN: str = "ssh"
    # the CLI tools use their own ports, Credentials.port is the BMC HTTP port
    IPMI_PORT: Optional[int] = None
    SSH_PORT: int = 22

    DEFAULT_CATALOG_URL: str = "https://downloads.dell.com/catalog/Catalog.xml.gz"


class _RetrySettings(BaseModel):
    RETRY_MAX_ATTEMPTS: int = 5
    RETRY_BASE_DELAY: PositiveSeconds = 1  # seconds
    RETRY_MAX_DELAY: PositiveSeconds = 60  # seconds


class _WorkflowSettings(BaseModel):
    # how many times a host run can be (re-)entered, also bounds the
    # maintenance mode entering retries
    WORKFLOW_MAX_ATTEMPTS: int = 3
    MAINTENANCE_RETRY_BASE_DELAY: PositiveSeconds = 5  # seconds
    MAINTENANCE_TASK_TIMEOUT_MINUTES: float = 60
    MAINTENANCE_TASK_POLL_INTERVAL: PositiveSeconds = 1  # seconds
    WORKER_CONCURRENCY: int = 4
    WORKER_FINISHED_RUNS_KEEP: int = 1024


class ConfigurableSettings(
    _LoggingSettings,
    _TaskPollerSettings,
    _ProtocolSettings,
    _RetrySettings,
    _WorkflowSettings,
):
    """fwupdater runtime configuration settings."""


def set_configs() -> ConfigurableSettings:
    try:

        class _SettingParser(ConfigurableSettings, BaseSettings):
            model_config = SettingsConfigDict(
                validate_default=True,
                env_prefix=ENV_PREFIX,
            )

        _parsed_setting = _SettingParser()
        return ConfigurableSettings.model_construct(**_parsed_setting.model_dump())
    except Exception as e:
        logger.error(f"failed to parse fwupdater configurable settings: {e!r}")
        logger.warning("use default settings ...")
        return ConfigurableSettings()
