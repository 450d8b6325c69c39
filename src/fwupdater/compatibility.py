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
"""Firmware component compatibility rules and the canonical update order."""


from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence, Tuple

from fwupdater._types import FirmwareComponent, ServerGeneration

_ALL_GENERATIONS = (
    ServerGeneration.G11,
    ServerGeneration.G12,
    ServerGeneration.G13,
    ServerGeneration.G14,
    ServerGeneration.G15,
    ServerGeneration.G16,
)


@dataclass(frozen=True)
class CompatibilityRule:
    component: str
    supported_generations: Tuple[ServerGeneration, ...]
    prerequisites: Tuple[str, ...] = ()


RULES: Tuple[CompatibilityRule, ...] = (
    CompatibilityRule("BIOS", _ALL_GENERATIONS),
    CompatibilityRule("iDRAC", _ALL_GENERATIONS[1:], prerequisites=("BIOS",)),
    CompatibilityRule(
        "LifecycleController", _ALL_GENERATIONS[1:], prerequisites=("BIOS",)
    ),
    CompatibilityRule("NIC", _ALL_GENERATIONS, prerequisites=("BIOS",)),
)

# components not listed here go after these, alphabetically
UPDATE_ORDER = ("BIOS", "LifecycleController", "iDRAC")


@dataclass
class CompatibilityCheckResult:
    supported: bool
    generation_supported: bool = True
    reasons: List[str] = field(default_factory=list)
    missing_prerequisites: List[str] = field(default_factory=list)


def find_rule(component: str) -> Optional[CompatibilityRule]:
    for _rule in RULES:
        if _rule.component.lower() == component.lower():
            return _rule


def validate_compatibility(
    component: str,
    generation: ServerGeneration,
    applied_components: Iterable[str] = (),
) -> CompatibilityCheckResult:
    """Check <component> against the rules, components without a rule are always supported."""
    if not (rule := find_rule(component)):
        return CompatibilityCheckResult(supported=True)

    _applied = {_c.lower() for _c in applied_components}
    generation_supported = generation in rule.supported_generations
    missing = [_p for _p in rule.prerequisites if _p.lower() not in _applied]

    reasons = []
    if not generation_supported:
        reasons.append(f"component {component} is not supported on generation {generation}")
    if missing:
        reasons.append(f"missing prerequisites: {', '.join(missing)}")
    return CompatibilityCheckResult(
        supported=generation_supported and not missing,
        generation_supported=generation_supported,
        reasons=reasons,
        missing_prerequisites=missing,
    )


def _order_key(name: str) -> Tuple[int, str]:
    try:
        return UPDATE_ORDER.index(name), ""
    except ValueError:
        return len(UPDATE_ORDER), name


def sort_update_order(components: Sequence[str]) -> List[str]:
    """BIOS -> LifecycleController -> iDRAC -> others in alphabetical order."""
    return sorted(components, key=_order_key)


def component_key(component: FirmwareComponent) -> str:
    return component.name or component.id


def sort_components(components: Sequence[FirmwareComponent]) -> List[FirmwareComponent]:
    return sorted(components, key=lambda _c: _order_key(component_key(_c)))
