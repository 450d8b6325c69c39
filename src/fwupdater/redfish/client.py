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
"""A thin async client over the management controller's Redfish service."""


from __future__ import annotations

import base64
import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import urljoin, urlsplit, urlunsplit

import httpx

from fwupdater._types import Credentials, ServerGeneration
from fwupdater.configs import cfg, create_http_client
from fwupdater.errors import RedfishActionMissingError, RedfishError

logger = logging.getLogger(__name__)

_SCHEME_PA = re.compile(r"^https?://", re.IGNORECASE)


def normalize_base_url(host: str, port: Optional[int] = None) -> str:
    """Normalize <host> into a base URL, https is used if no scheme is specified.

    <port> is applied only when <host> doesn't carry one.
    """
    _trimmed = re.sub(r"\s+", "", host).rstrip("/")
    if not _SCHEME_PA.match(_trimmed):
        _trimmed = f"https://{_trimmed}"
    if port is None:
        return _trimmed

    _parts = urlsplit(_trimmed)
    if _parts.port is not None:
        return _trimmed
    return urlunsplit(_parts._replace(netloc=f"{_parts.netloc}:{port}"))


def resolve_location(base_url: str, location: Optional[str]) -> Optional[str]:
    """Resolve a (possibly relative) <location> against <base_url>."""
    if not location:
        return None
    return urljoin(base_url if base_url.endswith("/") else f"{base_url}/", location)


def basic_auth_header(credentials: Credentials) -> str:
    _token = base64.b64encode(
        f"{credentials.username}:{credentials.password}".encode()
    ).decode()
    return f"Basic {_token}"


def read_response_body(resp: httpx.Response) -> Any:
    """Parse the response body as JSON, fallback to text, None if empty."""
    if not (_text := resp.text):
        return None
    try:
        return json.loads(_text)
    except ValueError:
        return _text


def generation_from_firmware_version(version: Optional[str]) -> ServerGeneration:
    """Map the manager firmware major version to the server generation."""
    if not version:
        return ServerGeneration.UNKNOWN
    try:
        major = int(version.split(".")[0])
    except ValueError:
        return ServerGeneration.UNKNOWN

    if major <= 2:
        return ServerGeneration.G11
    return {
        3: ServerGeneration.G12,
        4: ServerGeneration.G13,
        5: ServerGeneration.G14,
        6: ServerGeneration.G15,
    }.get(major, ServerGeneration.G16)


@dataclass
class RedfishCapabilities:
    simple_update: bool = False
    install_from_repository: bool = False
    multipart_push_uri: Optional[str] = None
    firmware_version: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RedfishActionResponse:
    status: int
    body: Any
    task_location: Optional[str]


class RedfishClient:
    """Redfish client for one management controller.

    The HTTP client can be shared across components, in such case the caller
        owns it and close() will not close it.
    """

    def __init__(
        self,
        host: str,
        credentials: Credentials,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = normalize_base_url(host, credentials.port)
        self._headers = {"authorization": basic_auth_header(credentials)}
        self._owns_client = http_client is None
        self._client = http_client or create_http_client()

    async def close(self) -> None:
        if self._owns_client and not self._client.is_closed:
            await self._client.aclose()

    async def __aenter__(self) -> RedfishClient:
        return self

    async def __aexit__(self, *_) -> None:
        await self.close()

    def url_for(self, path: str) -> str:
        return f"{self.base_url}{path}"

    async def request(
        self,
        method: str,
        url: str,
        *,
        timeout: Optional[float] = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """Issue a request to <url>, the response status is NOT checked."""
        return await self._client.request(
            method,
            url,
            headers=self._headers,
            timeout=timeout if timeout is not None else httpx.USE_CLIENT_DEFAULT,
            **kwargs,
        )

    async def get_json(
        self, url: str, *, action: str, timeout: Optional[float] = None
    ) -> Any:
        resp = await self.request("GET", url, timeout=timeout)
        if not resp.is_success:
            raise RedfishError(f"{action} failed", resp.status_code, read_response_body(resp))
        return resp.json()

    async def _post_action(self, url: str, *, action: str, **kwargs: Any) -> RedfishActionResponse:
        resp = await self.request("POST", url, **kwargs)
        body = read_response_body(resp)
        if resp.status_code >= 400:
            raise RedfishError(f"{action} failed", resp.status_code, body)
        return RedfishActionResponse(
            status=resp.status_code,
            body=body,
            task_location=resolve_location(self.base_url, resp.headers.get("location")),
        )

    #
    # ------ discovery ------ #
    #

    async def service_root(self, *, timeout: Optional[float] = None) -> Any:
        return await self.get_json(
            self.url_for(cfg.REDFISH_SERVICE_ROOT), action="service root", timeout=timeout
        )

    async def update_service(self) -> Dict[str, Any]:
        return await self.get_json(
            self.url_for(cfg.REDFISH_UPDATE_SERVICE), action="UpdateService query"
        )

    async def manager_firmware_version(self) -> Optional[str]:
        managers = await self.get_json(
            self.url_for(cfg.REDFISH_MANAGERS), action="Managers query"
        )
        for member in managers.get("Members") or []:
            if not (_uri := member.get("@odata.id")):
                continue
            manager = await self.get_json(
                resolve_location(self.base_url, _uri) or _uri, action="Manager query"
            )
            if _version := manager.get("FirmwareVersion"):
                return str(_version)

    async def enumerate_capabilities(self) -> RedfishCapabilities:
        service = await self.update_service()
        actions: Dict[str, Any] = service.get("Actions") or {}

        firmware_version = None
        try:
            firmware_version = await self.manager_firmware_version()
        except (RedfishError, httpx.HTTPError, ValueError) as e:
            logger.debug(f"failed to query manager firmware version: {e!r}")

        return RedfishCapabilities(
            simple_update=cfg.SIMPLE_UPDATE_ACTION in actions,
            install_from_repository=cfg.INSTALL_FROM_REPOSITORY_ACTION in actions,
            multipart_push_uri=service.get("MultipartHttpPushUri"),
            firmware_version=firmware_version,
            raw=service,
        )

    #
    # ------ update actions ------ #
    #

    async def simple_update(
        self,
        image_uri: str,
        *,
        targets: Optional[List[str]] = None,
        apply_time: Optional[str] = None,
        maintenance_window_start: Optional[str] = None,
        maintenance_window_duration: Optional[int] = None,
    ) -> RedfishActionResponse:
        payload: Dict[str, Any] = {
            "ImageURI": image_uri,
            "TransferProtocol": "HTTPS" if image_uri.lower().startswith("https://") else "HTTP",
            "Targets": list(targets or []),
        }
        if apply_time:
            payload["@Redfish.OperationApplyTime"] = apply_time
        if maintenance_window_start:
            payload["@Redfish.MaintenanceWindow"] = {
                "MaintenanceWindowStartTime": maintenance_window_start,
                "MaintenanceWindowDurationInSeconds": maintenance_window_duration or 0,
            }
        return await self._post_action(
            self.url_for(cfg.REDFISH_SIMPLE_UPDATE), action="SimpleUpdate", json=payload
        )

    async def install_from_repository(
        self,
        repository: Optional[str] = None,
        *,
        install_upon: str = "Immediate",
        update_parameters: Optional[Dict[str, Any]] = None,
    ) -> RedfishActionResponse:
        service = await self.update_service()
        if cfg.INSTALL_FROM_REPOSITORY_ACTION not in (service.get("Actions") or {}):
            raise RedfishActionMissingError(cfg.INSTALL_FROM_REPOSITORY_ACTION)

        payload = {
            "Repository": repository or cfg.DEFAULT_CATALOG_URL,
            "InstallUpon": install_upon,
            "UpdateParameters": update_parameters or {},
        }
        return await self._post_action(
            self.url_for(cfg.REDFISH_INSTALL_FROM_REPOSITORY),
            action="InstallFromRepository",
            json=payload,
        )

    async def multipart_update(
        self,
        file_path: str,
        *,
        update_parameters: Optional[Dict[str, Any]] = None,
        push_uri: Optional[str] = None,
    ) -> RedfishActionResponse:
        _fpath = Path(file_path)
        url = resolve_location(self.base_url, push_uri) or self.url_for(
            cfg.REDFISH_MULTIPART_UPDATE
        )
        with open(_fpath, "rb") as f:
            return await self._post_action(
                url,
                action="multipart update",
                files={
                    "UpdateParameters": (
                        None,
                        json.dumps(update_parameters or {}),
                        "application/json",
                    ),
                    "UpdateFile": (_fpath.name, f, "application/octet-stream"),
                },
            )
