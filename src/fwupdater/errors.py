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
"""Errors definitions and the transient/permanent/fatal error classification."""


from __future__ import annotations

import asyncio
import errno
import re
from typing import Any, Dict, Iterable, Mapping, Optional

import httpx

from fwupdater._types import HostRunState, ProtocolType
from fwupdater_common._typing import StrEnum
from fwupdater_common.cmdhelper import CommandTimeoutError


class ErrorClassification(StrEnum):
    TRANSIENT = "transient"
    """Retry with backoff within the relevant deadline/attempts budget."""
    PERMANENT = "permanent"
    """Never retried, surfaced immediately."""
    FATAL = "fatal"
    """Deadline exceeded while the outcome is still unknown."""


TRANSIENT_ERRNO = frozenset(
    {
        errno.ECONNRESET,
        errno.ECONNREFUSED,
        errno.ETIMEDOUT,
        errno.EHOSTUNREACH,
        errno.ENETUNREACH,
    }
)
_TRANSIENT_MSG_PA = re.compile(
    r"(timeout|timed out|network|socket|hang up|reset|ECONNRESET|ECONNREFUSED|ETIMEDOUT)",
    re.IGNORECASE,
)


class OrchestrationError(Exception):
    classification: ErrorClassification = ErrorClassification.PERMANENT

    def __init__(
        self,
        msg: str,
        *,
        classification: Optional[ErrorClassification] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        if classification is not None:
            self.classification = classification
        self.context = dict(context or {})
        super().__init__(msg)

    @classmethod
    def caused_by(cls, *args, cause: BaseException, **kwargs):
        _new = cls(*args, **kwargs)
        _new.__cause__ = cause
        return _new


class ProtocolError(OrchestrationError):
    def __init__(
        self,
        msg: str,
        protocol: ProtocolType,
        *,
        classification: ErrorClassification = ErrorClassification.TRANSIENT,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.protocol = protocol
        super().__init__(
            msg,
            classification=classification,
            context={**(context or {}), "protocol": str(protocol)},
        )


class UnsupportedOperation(ProtocolError):
    def __init__(self, msg: str, protocol: ProtocolType) -> None:
        super().__init__(msg, protocol, classification=ErrorClassification.PERMANENT)


class RedfishError(OrchestrationError):
    """Non-2xx response from the REST protocol endpoint."""

    def __init__(self, msg: str, status: int, body: Any = None) -> None:
        self.status = status
        self.body = body
        super().__init__(
            f"{msg} (status {status})",
            classification=(
                ErrorClassification.TRANSIENT
                if status >= 500 or status == 404
                else ErrorClassification.PERMANENT
            ),
        )


class RedfishActionMissingError(RedfishError):
    def __init__(self, action: str) -> None:
        self.action = action
        super().__init__(f"Redfish action {action} not supported", 400)


class TaskLocationMissing(OrchestrationError):
    """The update response doesn't point at a job resource."""


class TaskTimeoutError(OrchestrationError):
    classification = ErrorClassification.FATAL


class TaskFailedError(OrchestrationError):
    """The job reached a terminal state which indicates failure."""


class ProtocolFallbackExhausted(OrchestrationError):
    """All registered protocol clients failed or none is usable."""

    def __init__(
        self,
        msg: str,
        *,
        errors: Mapping[ProtocolType, BaseException],
        attempted: Iterable[ProtocolType],
    ) -> None:
        self.errors = dict(errors)
        self.attempted = list(attempted)
        self.last_error = list(self.errors.values())[-1] if self.errors else None
        super().__init__(
            f"{msg}: attempted={[str(p) for p in self.attempted]}, "
            f"last_error={self.last_error!r}",
            classification=ErrorClassification.PERMANENT,
        )


class MaintenanceModeError(OrchestrationError):
    classification = ErrorClassification.TRANSIENT


class CredentialsNotFound(OrchestrationError):
    pass


class VerificationError(OrchestrationError):
    """Inventory diff doesn't prove the expected firmware change."""


class IncompatibleComponent(OrchestrationError):
    pass


class InvalidStateTransition(OrchestrationError):
    def __init__(self, _from: HostRunState, _to: HostRunState) -> None:
        self.from_state, self.to_state = _from, _to
        super().__init__(f"invalid host run transition: {_from} -> {_to}")


def is_network_error(exc: BaseException) -> bool:
    """Connection reset/refused, timeout, DNS failure or host unreachable."""
    if isinstance(exc, (httpx.TransportError, asyncio.TimeoutError)):
        return True
    if isinstance(exc, OSError) and exc.errno in TRANSIENT_ERRNO:
        return True
    return isinstance(exc, (ConnectionError, TimeoutError))


def classify_error(exc: BaseException) -> ErrorClassification:
    if isinstance(exc, OrchestrationError):
        return exc.classification
    if isinstance(exc, httpx.HTTPStatusError):
        _status = exc.response.status_code
        if _status >= 500 or _status == 404:
            return ErrorClassification.TRANSIENT
        return ErrorClassification.PERMANENT
    if is_network_error(exc) or isinstance(exc, CommandTimeoutError):
        return ErrorClassification.TRANSIENT
    if _TRANSIENT_MSG_PA.search(str(exc)):
        return ErrorClassification.TRANSIENT
    return ErrorClassification.PERMANENT


def is_retryable(exc: BaseException) -> bool:
    return classify_error(exc) == ErrorClassification.TRANSIENT
