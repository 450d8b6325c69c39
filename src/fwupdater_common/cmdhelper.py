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
"""Scoped subprocess execution for the CLI based protocol clients.

Every spawned process is guaranteed to be reaped on every exit path: normal
    exit, timeout(the process is killed) or caller cancellation.
"""


from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass
from typing import AsyncIterator, Iterable, Mapping, Optional, Sequence

logger = logging.getLogger(__name__)

REDACTED = "********"


def redact_cmd(cmd: Sequence[str], secrets: Iterable[str] = ()) -> list[str]:
    """Return a copy of <cmd> with every arg equal to one of <secrets> masked."""
    _secrets = {s for s in secrets if s}
    return [REDACTED if arg in _secrets else arg for arg in cmd]


@dataclass
class CommandResult:
    cmd: list[str]
    """Redacted command line."""
    returncode: int
    stdout: str
    stderr: str
    duration: float


class CommandError(Exception):
    def __init__(self, msg: str, *, cmd: Sequence[str]) -> None:
        self.cmd = list(cmd)
        super().__init__(msg)


class CommandTimeoutError(CommandError):
    def __init__(self, *, cmd: Sequence[str], timeout: float) -> None:
        self.timeout = timeout
        super().__init__(f"command {cmd[0]} timed out after {timeout}s", cmd=cmd)


class CommandFailedError(CommandError):
    def __init__(
        self, *, cmd: Sequence[str], returncode: int, stdout: str, stderr: str
    ) -> None:
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(
            f"command {cmd[0]} exited with {returncode}: {stderr.strip()}", cmd=cmd
        )


@contextlib.asynccontextmanager
async def spawn_process(
    cmd: Sequence[str], *, env: Optional[Mapping[str, str]] = None
) -> AsyncIterator[asyncio.subprocess.Process]:
    """Spawn <cmd>, and kill + reap it on leaving the context if it is still running."""
    proc = await asyncio.create_subprocess_exec(
        *cmd,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=dict(env) if env is not None else None,
    )
    try:
        yield proc
    finally:
        if proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()


async def run_command(
    cmd: Sequence[str],
    *,
    timeout: float,
    env: Optional[Mapping[str, str]] = None,
    secrets: Iterable[str] = (),
) -> CommandResult:
    """Run <cmd> and collect its outputs, without checking the returncode.

    Raises:
        CommandTimeoutError if <cmd> doesn't finish within <timeout> seconds,
            the process is killed in such case.
        OSError(i.e., FileNotFoundError) if <cmd> cannot be spawned.
    """
    _redacted = redact_cmd(cmd, secrets)
    logger.debug(f"run command: {' '.join(_redacted)}")

    _start = time.monotonic()
    async with spawn_process(cmd, env=env) as proc:
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout)
        except asyncio.TimeoutError:
            raise CommandTimeoutError(cmd=_redacted, timeout=timeout) from None

    return CommandResult(
        cmd=_redacted,
        returncode=proc.returncode if proc.returncode is not None else -1,
        stdout=stdout.decode(errors="replace"),
        stderr=stderr.decode(errors="replace"),
        duration=time.monotonic() - _start,
    )


async def check_output(
    cmd: Sequence[str],
    *,
    timeout: float,
    env: Optional[Mapping[str, str]] = None,
    secrets: Iterable[str] = (),
) -> str:
    """Run <cmd> and return its stripped stdout.

    Raises:
        CommandFailedError on non-zero returncode, with stderr captured.
        CommandTimeoutError on timeout.
    """
    res = await run_command(cmd, timeout=timeout, env=env, secrets=secrets)
    if res.returncode != 0:
        raise CommandFailedError(
            cmd=res.cmd,
            returncode=res.returncode,
            stdout=res.stdout,
            stderr=res.stderr,
        )
    return res.stdout.strip()
