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
"""Base for protocol clients driving an external command line tool."""


from __future__ import annotations

import logging
from typing import Iterable, Sequence

from fwupdater.errors import ErrorClassification, ProtocolError
from fwupdater.protocols.base import ProtocolClient
from fwupdater_common.cmdhelper import (
    CommandFailedError,
    CommandResult,
    CommandTimeoutError,
    check_output,
    run_command,
)

logger = logging.getLogger(__name__)


class CLIProtocolClient(ProtocolClient):
    """Wraps the command runner failures into ProtocolError.

    Timeout(the process is killed) and non-zero exit are transient, while a missing
        binary is permanent.
    """

    def _wrap_error(self, cmd: Sequence[str], exc: BaseException) -> ProtocolError:
        if isinstance(exc, (CommandTimeoutError, CommandFailedError)):
            return ProtocolError.caused_by(
                str(exc),
                self.protocol,
                classification=ErrorClassification.TRANSIENT,
                context={"cmd": exc.cmd},
                cause=exc,
            )
        return ProtocolError.caused_by(
            f"failed to execute {cmd[0]}: {exc!r}",
            self.protocol,
            classification=ErrorClassification.PERMANENT,
            cause=exc,
        )

    async def run_cli(
        self,
        cmd: Sequence[str],
        *,
        timeout: float,
        secrets: Iterable[str] = (),
    ) -> str:
        """Run <cmd> and return its stripped stdout, raise ProtocolError on failure."""
        try:
            return await check_output(cmd, timeout=timeout, secrets=secrets)
        except (CommandFailedError, CommandTimeoutError, OSError) as e:
            raise self._wrap_error(cmd, e) from e

    async def run_cli_unchecked(
        self,
        cmd: Sequence[str],
        *,
        timeout: float,
        secrets: Iterable[str] = (),
    ) -> CommandResult:
        """Like run_cli, but the returncode is not checked."""
        try:
            return await run_command(cmd, timeout=timeout, secrets=secrets)
        except (CommandTimeoutError, OSError) as e:
            raise self._wrap_error(cmd, e) from e
