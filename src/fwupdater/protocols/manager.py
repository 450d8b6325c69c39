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
"""Protocol manager: probe every protocol client and apply firmware with priority fallback."""


from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from fwupdater._types import (
    Credentials,
    FirmwareUpdateRequest,
    FirmwareUpdateResult,
    HealthStatus,
    ProtocolCapability,
    ProtocolDetectionResult,
    ProtocolHealth,
    ProtocolType,
    ServerIdentity,
)
from fwupdater.configs import cfg
from fwupdater.errors import ProtocolFallbackExhausted, classify_error
from fwupdater.protocols.base import ProtocolClient
from fwupdater.retry import with_retry
from fwupdater_common._typing import StrEnum
from fwupdater_common.asyncio_utils import notify_sink
from fwupdater_common.logging import get_burst_suppressed_logger

logger = logging.getLogger(__name__)
burst_suppressed_logger = get_burst_suppressed_logger(f"{__name__}.update_retry")


class ProtocolManagerEventType(StrEnum):
    CAPABILITY_DETECTED = "capability-detected"
    HEALTH_CHECK = "health-check"
    UPDATE_ATTEMPT = "update-attempt"
    RETRY = "retry"
    FALLBACK = "fallback"
    UPDATE_RESULT = "update-result"


@dataclass
class ProtocolManagerEvent:
    type: ProtocolManagerEventType
    protocol: ProtocolType
    timestamp: float = field(default_factory=time.time)
    capability: Optional[ProtocolCapability] = None
    health: Optional[ProtocolHealth] = None
    result: Optional[FirmwareUpdateResult] = None
    error: Optional[BaseException] = None
    attempt: Optional[int] = None


ProtocolManagerEventSink = Callable[[ProtocolManagerEvent], Any]


class ProtocolManager:
    """Drive a set of protocol clients for one or more hosts.

    Clients are tried in ascending priority order on update, the first client that
        succeeds wins and no further client is tried.
    """

    def __init__(
        self,
        clients: Iterable[ProtocolClient],
        *,
        event_sink: Optional[ProtocolManagerEventSink] = None,
        update_retry_attempts: Optional[int] = None,
        retry_base_delay: Optional[float] = None,
    ) -> None:
        self._registered = list(clients)
        # NOTE: sorted is stable, registration order is kept within the same priority
        self._by_priority = sorted(self._registered, key=lambda _c: _c.priority)
        self._event_sink = event_sink
        self._update_retry_attempts = (
            update_retry_attempts
            if update_retry_attempts is not None
            else cfg.PROTOCOL_UPDATE_RETRY_ATTEMPTS
        )
        self._retry_base_delay = retry_base_delay
        self._disposed = False

    @property
    def clients(self) -> List[ProtocolClient]:
        """Registered clients in ascending priority order."""
        return list(self._by_priority)

    def client_for(self, protocol: ProtocolType) -> Optional[ProtocolClient]:
        for _client in self._registered:
            if _client.protocol == protocol:
                return _client

    async def _emit(self, _type: ProtocolManagerEventType, protocol: ProtocolType, **kwargs) -> None:
        await notify_sink(
            self._event_sink,
            ProtocolManagerEvent(type=_type, protocol=protocol, **kwargs),
            _logger=logger,
        )

    async def _probe(
        self, client: ProtocolClient, identity: ServerIdentity, credentials: Credentials
    ) -> ProtocolCapability:
        try:
            return await client.detect_capability(identity, credentials)
        except Exception as e:
            logger.warning(f"{client.protocol} capability detection raised: {e!r}")
            return ProtocolCapability.unsupported(client.protocol, error=str(e))

    async def detect(
        self, identity: ServerIdentity, credentials: Credentials
    ) -> ProtocolDetectionResult:
        """Probe every registered client, in registration order."""
        capabilities: List[ProtocolCapability] = []
        for client in self._registered:
            capability = await self._probe(client, identity, credentials)
            if capability.supported:
                await self._emit(
                    ProtocolManagerEventType.CAPABILITY_DETECTED,
                    client.protocol,
                    capability=capability,
                )
            capabilities.append(capability)

        healthiest = None
        for client in self._by_priority:
            _cap = next(
                (c for c in capabilities if c.protocol == client.protocol and c.supported),
                None,
            )
            if _cap:
                healthiest = _cap
                break

        logger.info(
            f"{identity.host}: supported protocols="
            f"{[str(c.protocol) for c in capabilities if c.supported]}"
        )
        return ProtocolDetectionResult(
            identity=identity, capabilities=capabilities, healthiest=healthiest
        )

    async def health(
        self, identity: ServerIdentity, credentials: Credentials
    ) -> List[ProtocolHealth]:
        """Health check every registered client, in registration order."""
        res: List[ProtocolHealth] = []
        for client in self._registered:
            try:
                _health = await client.health_check(identity, credentials)
            except Exception as e:
                logger.warning(f"{client.protocol} health check raised: {e!r}")
                _health = ProtocolHealth(
                    protocol=client.protocol,
                    status=HealthStatus.UNREACHABLE,
                    details=str(e),
                    error_classification=str(classify_error(e)),
                )
            await self._emit(
                ProtocolManagerEventType.HEALTH_CHECK, client.protocol, health=_health
            )
            res.append(_health)
        return res

    async def run_update(
        self,
        request: FirmwareUpdateRequest,
        *,
        supported: Optional[Mapping[ProtocolType, bool]] = None,
    ) -> FirmwareUpdateResult:
        """Apply the firmware update with the first usable client that succeeds.

        Args:
            request (FirmwareUpdateRequest): the update to apply.
            supported (Optional[Mapping[ProtocolType, bool]]): pre-computed support hint
                by protocol. Hinted protocols are not probed again, not hinted ones are
                probed and must list the request's mode.

        Raises:
            ProtocolFallbackExhausted if no client applied the update, carrying the
                per-protocol errors.
        """
        identity = ServerIdentity(host=request.host)
        errors: Dict[ProtocolType, BaseException] = {}
        attempted: List[ProtocolType] = []

        for client in self._by_priority:
            protocol = client.protocol
            if supported is not None and protocol in supported:
                if not supported[protocol]:
                    continue
            else:
                capability = await self._probe(client, identity, request.credentials)
                if not capability.supported or request.mode not in capability.update_modes:
                    logger.debug(f"skip {protocol}: {request.mode} is not supported")
                    continue

            attempted.append(protocol)
            await self._emit(ProtocolManagerEventType.UPDATE_ATTEMPT, protocol)
            logger.info(f"{request.host}: apply {request.mode} via {protocol}")

            async def _on_retry(exc: BaseException, attempt: int, delay: float) -> None:
                burst_suppressed_logger.warning(
                    f"{request.host}: {protocol} update failed, "
                    f"retry #{attempt} in {delay:.1f}s: {exc!r}"
                )
                await self._emit(
                    ProtocolManagerEventType.RETRY, protocol, error=exc, attempt=attempt
                )

            try:
                result = await with_retry(
                    lambda: client.perform_firmware_update(request),
                    max_attempts=self._update_retry_attempts,
                    base_delay=self._retry_base_delay,
                    on_retry=_on_retry,
                )
            except Exception as e:
                logger.warning(
                    f"{request.host}: {protocol} update failed "
                    f"({classify_error(e)}), fallback to next protocol: {e!r}"
                )
                errors[protocol] = e
                await self._emit(
                    ProtocolManagerEventType.FALLBACK,
                    protocol,
                    error=e,
                    attempt=len(attempted),
                )
                continue

            await self._emit(
                ProtocolManagerEventType.UPDATE_RESULT, protocol, result=result
            )
            return result

        raise ProtocolFallbackExhausted(
            f"{request.host}: all protocol fallbacks exhausted",
            errors=errors,
            attempted=attempted,
        )

    async def dispose(self) -> None:
        """Close all clients, safe to be called multiple times."""
        _results = await asyncio.gather(
            *(_client.close() for _client in self._registered),
            return_exceptions=True,
        )
        for _client, _res in zip(self._registered, _results):
            if isinstance(_res, BaseException):
                logger.warning(f"failed to close {_client!r}: {_res!r}")
        self._disposed = True

    @property
    def disposed(self) -> bool:
        return self._disposed
