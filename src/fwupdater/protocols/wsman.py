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
"""Firmware update over the WS(WS-Management SOAP) protocol, for older controllers."""


from __future__ import annotations

import logging
import re
import time
import uuid
import xml.etree.ElementTree as ET
from typing import Optional, Tuple
from xml.sax.saxutils import escape

from fwupdater._types import (
    Credentials,
    FirmwareUpdateMode,
    FirmwareUpdateRequest,
    FirmwareUpdateResult,
    ProtocolCapability,
    ProtocolHealth,
    ProtocolType,
    ServerGeneration,
    ServerIdentity,
    UpdateStatus,
)
from fwupdater.configs import cfg
from fwupdater.errors import ErrorClassification, ProtocolError
from fwupdater.protocols.base import (
    HTTPProtocolClient,
    health_from_probe,
    single_image_component,
)
from fwupdater.redfish.client import basic_auth_header, normalize_base_url

logger = logging.getLogger(__name__)

_ENVELOPE_TEMPLATE = """\
<?xml version="1.0" encoding="UTF-8"?>
<s:Envelope xmlns:s="http://www.w3.org/2003/05/soap-envelope"
            xmlns:wsa="http://schemas.xmlsoap.org/ws/2004/08/addressing"
            xmlns:wsman="http://schemas.dmtf.org/wbem/wsman/1/wsman.xsd">
  <s:Header>
    <wsa:Action>{action}</wsa:Action>
    <wsa:MessageID>uuid:{message_id}</wsa:MessageID>
    <wsa:To>wsman</wsa:To>
    <wsman:ResourceURI>{resource_uri}</wsman:ResourceURI>
  </s:Header>
  <s:Body>
    {body}
  </s:Body>
</s:Envelope>"""

# controller product string -> server generation
_GENERATION_PA: Tuple[Tuple[re.Pattern, ServerGeneration], ...] = (
    (re.compile(r"iDRAC10", re.I), ServerGeneration.G16),
    (re.compile(r"iDRAC9", re.I), ServerGeneration.G14),
    (re.compile(r"iDRAC8", re.I), ServerGeneration.G13),
    (re.compile(r"iDRAC7", re.I), ServerGeneration.G12),
)


def create_envelope(action: str, resource_uri: str, body: str) -> str:
    return _ENVELOPE_TEMPLATE.format(
        action=escape(action),
        message_id=uuid.uuid4(),
        resource_uri=escape(resource_uri),
        body=body,
    )


def find_xml_value(text: str, tag: str) -> Optional[str]:
    """Find the text of the first element named <tag>, regardless of its namespace."""
    try:
        root = ET.fromstring(text)
    except ET.ParseError:
        return None

    for element in root.iter():
        if element.tag.rsplit("}", 1)[-1].lower() == tag.lower():
            if element.text and (_value := element.text.strip()):
                return _value


def generation_from_product(product: Optional[str]) -> ServerGeneration:
    if not product:
        return ServerGeneration.UNKNOWN
    for _pa, _generation in _GENERATION_PA:
        if _pa.search(product):
            return _generation
    return ServerGeneration.UNKNOWN


class WSManProtocolClient(HTTPProtocolClient):
    protocol = ProtocolType.WSMAN

    async def request(
        self,
        host: str,
        credentials: Credentials,
        *,
        action: str,
        resource_uri: str,
        body: str,
    ) -> str:
        _url = f"{normalize_base_url(host, credentials.port)}{cfg.WSMAN_ENDPOINT}"
        resp = await self.get_http_client().post(
            _url,
            headers={
                "content-type": "application/soap+xml;charset=UTF-8",
                "authorization": basic_auth_header(credentials),
                "wsman-resource-uri": resource_uri,
                "wsman-action": action,
            },
            content=create_envelope(action, resource_uri, body),
        )
        if not resp.is_success:
            _status = resp.status_code
            raise ProtocolError(
                f"WS-Man request {action} failed with {_status}",
                self.protocol,
                classification=(
                    ErrorClassification.TRANSIENT
                    if _status >= 500
                    else ErrorClassification.PERMANENT
                ),
                context={"status": _status},
            )
        return resp.text

    async def identify(self, host: str, credentials: Credentials) -> str:
        return await self.request(
            host,
            credentials,
            action=cfg.WSMAN_IDENTIFY,
            resource_uri=cfg.WSMAN_IDENTIFY,
            body="<Identify/>",
        )

    async def detect_capability(
        self, identity: ServerIdentity, credentials: Credentials
    ) -> ProtocolCapability:
        try:
            text = await self.identify(identity.host, credentials)
        except Exception as e:
            logger.debug(f"WS protocol probe on {identity.host} failed: {e!r}")
            return ProtocolCapability.unsupported(self.protocol, error=str(e))

        firmware_version = find_xml_value(text, "ProductVersion")
        product = find_xml_value(text, "ProductName") or find_xml_value(text, "ProductVendor")
        return ProtocolCapability(
            protocol=self.protocol,
            supported=True,
            update_modes=[
                FirmwareUpdateMode.SIMPLE_UPDATE,
                FirmwareUpdateMode.INSTALL_FROM_REPOSITORY,
            ],
            generation=generation_from_product(product or firmware_version),
            firmware_version=firmware_version,
            raw={"product": product, "firmware_version": firmware_version},
        )

    async def health_check(
        self, identity: ServerIdentity, credentials: Credentials
    ) -> ProtocolHealth:
        _start = time.monotonic()
        try:
            await self.identify(identity.host, credentials)
        except Exception as e:
            return health_from_probe(self.protocol, started_at=_start, error=e)
        return health_from_probe(self.protocol, started_at=_start)

    async def perform_firmware_update(
        self, request: FirmwareUpdateRequest
    ) -> FirmwareUpdateResult:
        started_at = time.time()
        if request.mode == FirmwareUpdateMode.INSTALL_FROM_REPOSITORY:
            method, body = self._install_from_repository_body(request)
        elif request.mode == FirmwareUpdateMode.SIMPLE_UPDATE:
            method, body = self._install_from_uri_body(request)
        else:
            raise ProtocolError(
                f"WS-Man does not support mode {request.mode}",
                self.protocol,
                classification=ErrorClassification.PERMANENT,
            )

        _service = cfg.WSMAN_SOFTWARE_INSTALLATION_URI
        text = await self.request(
            request.host,
            request.credentials,
            action=f"{_service}/{method}",
            resource_uri=_service,
            body=body,
        )
        job_id = find_xml_value(text, "JobID")
        logger.info(f"{method} accepted by {request.host}: {job_id=}")
        return FirmwareUpdateResult(
            protocol=self.protocol,
            status=UpdateStatus.QUEUED,
            started_at=started_at,
            job_id=job_id,
            messages=[text],
        )

    def _install_from_repository_body(
        self, request: FirmwareUpdateRequest
    ) -> Tuple[str, str]:
        _service = cfg.WSMAN_SOFTWARE_INSTALLATION_URI
        repository = request.repository_url or request.params.get("repository", "ALL")
        install_upon = request.params.get("install_upon", "Immediate")
        return "InstallFromRepository", (
            f'<p:InstallFromRepository_INPUT xmlns:p="{_service}">'
            f"<p:Repository>{escape(repository)}</p:Repository>"
            f"<p:InstallUpon>{escape(install_upon)}</p:InstallUpon>"
            "</p:InstallFromRepository_INPUT>"
        )

    def _install_from_uri_body(self, request: FirmwareUpdateRequest) -> Tuple[str, str]:
        _service = cfg.WSMAN_SOFTWARE_INSTALLATION_URI
        component = single_image_component(request, self.protocol)
        if not component.image_uri:
            raise ProtocolError(
                f"InstallFromURI requires an image URI for {component.id}",
                self.protocol,
                classification=ErrorClassification.PERMANENT,
            )
        targets = "".join(
            f"<p:Target>{escape(str(_target))}</p:Target>"
            for _target in request.params.get("targets") or []
        )
        return "InstallFromURI", (
            f'<p:InstallFromURI_INPUT xmlns:p="{_service}">'
            f"<p:URI>{escape(component.image_uri)}</p:URI>"
            f"{targets}"
            "</p:InstallFromURI_INPUT>"
        )
