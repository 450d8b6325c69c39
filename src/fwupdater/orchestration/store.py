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
"""In-memory HostRun persistence."""


from __future__ import annotations

import copy
import threading
from typing import Dict, List, Optional

from fwupdater._types import HostRun


class InMemoryHostRunStore:
    """Keep copies of the saved runs, so that callers cannot mutate the stored record."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._runs: Dict[str, HostRun] = {}

    def save(self, run: HostRun) -> None:
        with self._lock:
            self._runs[run.id] = copy.deepcopy(run)

    def get(self, run_id: str) -> Optional[HostRun]:
        with self._lock:
            if _run := self._runs.get(run_id):
                return copy.deepcopy(_run)

    def list_for_host(self, host_id: str) -> List[HostRun]:
        with self._lock:
            _runs = [copy.deepcopy(r) for r in self._runs.values() if r.host_id == host_id]
        return sorted(_runs, key=lambda _r: _r.created_at)

    def find_active(self, host_id: str) -> Optional[HostRun]:
        for _run in self.list_for_host(host_id):
            if not _run.finished:
                return _run
