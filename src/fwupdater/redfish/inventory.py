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
"""Firmware inventory collection and diffing.

The inventory diff is the only proof that a reported success corresponds to
    an actual firmware change, job state alone is not trusted.
"""


from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

import httpx

from fwupdater._types import (
    InventoryChange,
    InventoryChangeType,
    InventoryComponent,
    InventorySnapshot,
)
from fwupdater.configs import cfg
from fwupdater.redfish.client import RedfishClient, resolve_location

logger = logging.getLogger(__name__)


_NAME_KEYS = ("Name", "Description", "ComponentName")
_VERSION_KEYS = ("Version", "FirmwareVersion", "SoftwareVersion", "Build", "CurrentVersion")


def _first_of(entry: Dict[str, Any], keys: Tuple[str, ...]) -> Optional[str]:
    for _key in keys:
        if (_value := entry.get(_key)) is not None:
            return str(_value)


def _member_uri(member: Any) -> Optional[str]:
    if isinstance(member, str):
        return member
    if isinstance(member, dict):
        return member.get("@odata.id")


async def collect_software_inventory(client: RedfishClient) -> InventorySnapshot:
    """GET the SoftwareInventory collection, then GET each of its members.

    Failure on one member is skipped, failure on the collection is raised.
    """
    collection = await client.get_json(
        client.url_for(cfg.REDFISH_SOFTWARE_INVENTORY),
        action="SoftwareInventory query",
    )

    components: Dict[str, InventoryComponent] = {}
    _seen = set()
    for member in collection.get("Members") or []:
        if not (_uri := _member_uri(member)):
            continue
        _url = resolve_location(client.base_url, _uri) or _uri
        if _url in _seen:
            continue
        _seen.add(_url)

        try:
            resp = await client.request("GET", _url)
            if not resp.is_success:
                logger.debug(f"skip inventory member {_url}: HTTP {resp.status_code}")
                continue
            entry = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.debug(f"skip inventory member {_url}: {e!r}")
            continue

        _id = str(entry.get("Id") or entry.get("ComponentID") or _url)
        components[_id] = InventoryComponent(
            id=_id,
            name=_first_of(entry, _NAME_KEYS) or _id,
            version=_first_of(entry, _VERSION_KEYS),
            uri=_url,
        )
    logger.debug(f"collected {len(components)} inventory entries from {client.base_url}")
    return InventorySnapshot(raw=collection, components=components)


def diff_inventories(
    before: Optional[InventorySnapshot], after: Optional[InventorySnapshot]
) -> List[InventoryChange]:
    """Compute the changes between two snapshots, sorted by component id.

    A missing snapshot is treated as an empty one.
    """
    _before = before.components if before else {}
    _after = after.components if after else {}

    changes: List[InventoryChange] = []
    for _id in sorted(_before.keys() | _after.keys()):
        prev, cur = _before.get(_id), _after.get(_id)
        if prev is None and cur is not None:
            changes.append(
                InventoryChange(
                    id=_id,
                    change_type=InventoryChangeType.ADDED,
                    name=cur.name,
                    current_version=cur.version,
                )
            )
        elif cur is None and prev is not None:
            changes.append(
                InventoryChange(
                    id=_id,
                    change_type=InventoryChangeType.REMOVED,
                    name=prev.name,
                    previous_version=prev.version,
                )
            )
        elif prev is not None and cur is not None and prev.version != cur.version:
            changes.append(
                InventoryChange(
                    id=_id,
                    change_type=InventoryChangeType.UPDATED,
                    name=cur.name or prev.name,
                    previous_version=prev.version,
                    current_version=cur.version,
                )
            )
    return changes
