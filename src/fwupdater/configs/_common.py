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
"""Common shared config base for fwupdater config files."""


from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class BaseFixedConfig(BaseModel):
    """Common base for configs that should be fixed and not changable."""

    model_config = ConfigDict(frozen=True, validate_default=True, extra="forbid")
