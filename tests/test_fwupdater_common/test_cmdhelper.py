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

import sys

import pytest

from fwupdater_common.cmdhelper import (
    REDACTED,
    CommandFailedError,
    CommandTimeoutError,
    check_output,
    redact_cmd,
    run_command,
)

PY = sys.executable


def test_redact_cmd():
    cmd = ["racadm", "-r", "10.0.0.1", "-u", "root", "-p", "calvin", "getsysinfo"]
    assert redact_cmd(cmd, ["calvin", ""]) == [
        "racadm",
        "-r",
        "10.0.0.1",
        "-u",
        "root",
        "-p",
        REDACTED,
        "getsysinfo",
    ]


class TestRunCommand:

    @pytest.mark.asyncio
    async def test_collect_outputs(self):
        res = await run_command(
            [PY, "-c", "import sys; print('out'); print('err', file=sys.stderr)"],
            timeout=30,
        )
        assert res.returncode == 0
        assert res.stdout.strip() == "out"
        assert res.stderr.strip() == "err"

    @pytest.mark.asyncio
    async def test_returncode_not_checked(self):
        res = await run_command([PY, "-c", "raise SystemExit(3)"], timeout=30)
        assert res.returncode == 3

    @pytest.mark.asyncio
    async def test_timeout(self):
        with pytest.raises(CommandTimeoutError) as exc_info:
            await run_command(
                [PY, "-c", "import time; time.sleep(30)", "secret-value"],
                timeout=0.5,
                secrets=["secret-value"],
            )
        assert exc_info.value.timeout == 0.5
        assert "secret-value" not in exc_info.value.cmd

    @pytest.mark.asyncio
    async def test_cmd_not_found(self):
        with pytest.raises(FileNotFoundError):
            await run_command(["fwupdater-not-existed-cmd"], timeout=1)


class TestCheckOutput:

    @pytest.mark.asyncio
    async def test_stripped_stdout(self):
        assert await check_output([PY, "-c", "print('  hello  ')"], timeout=30) == "hello"

    @pytest.mark.asyncio
    async def test_failed(self):
        with pytest.raises(CommandFailedError) as exc_info:
            await check_output(
                [PY, "-c", "import sys; print('boom', file=sys.stderr); sys.exit(2)"],
                timeout=30,
            )
        assert exc_info.value.returncode == 2
        assert "boom" in exc_info.value.stderr
