"""
Error types and stable error codes for kubebind.

Pure functions (hostport parsing, aggregation, diffing) raise the parse and
validation errors below synchronously. Orchestration layers (poller,
reconcilers) catch collaborator errors, record them on the BoundEndpoint
status with one of the ``EnrichedError`` codes, and carry on.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from http import HTTPStatus

from kubebind.datastructures.type_aliases import ErrorCode, PortNumber

_WHITESPACE_RE = re.compile(r"\s+")


class KubebindError(Exception):
    """Base class for all kubebind errors."""


class HostportParseError(KubebindError, ValueError):
    """A public URL could not be turned into a service 4-tuple."""


class AggregationError(KubebindError):
    """A remote endpoint record in a batch was malformed."""

    def __init__(self, endpoint_id: str, cause: Exception) -> None:
        super().__init__(f"failed to parse endpoint: {endpoint_id}: {cause}")
        self.endpoint_id = endpoint_id
        self.cause = cause


class PolicyError(KubebindError, ValueError):
    """An allowed-URL pattern is malformed."""


class PortAllocationError(KubebindError):
    """Base class for port bitmap failures."""


class PortConflictError(PortAllocationError):
    def __init__(self, port: PortNumber) -> None:
        super().__init__(f"port {port} is already allocated")
        self.port = port


class PortOutOfRangeError(PortAllocationError):
    def __init__(self, port: PortNumber, start: PortNumber, end: PortNumber) -> None:
        super().__init__(f"port {port} is outside of allocatable range [{start}, {end}]")
        self.port = port


class PortExhaustedError(PortAllocationError):
    def __init__(self, start: PortNumber, end: PortNumber) -> None:
        super().__init__(f"no free ports left in range [{start}, {end}]")


class StoreError(KubebindError):
    """Base class for cluster store failures."""


class NotFoundError(StoreError):
    pass


class AlreadyExistsError(StoreError):
    pass


class ConflictError(StoreError):
    """A write was rejected because the stored object changed underneath it."""


class RemoteAPIError(KubebindError):
    """The remote endpoint API returned an error or could not be reached."""


class ConnectivityError(KubebindError):
    """Dialing a BoundEndpoint through its provisioned Services failed."""


class MuxProtocolError(KubebindError):
    """The length-prefixed handshake could not be framed or parsed."""


class ForwarderConfigError(KubebindError):
    """The forwarder is missing the operator binding configuration or TLS material."""


class BindingUpgradeFailure(KubebindError):
    """The tunnel refused to upgrade a connection to a binding connection."""

    def __init__(self, error_code: str, error_message: str) -> None:
        super().__init__(f"binding upgrade failure: [{error_code}]: {error_message}")
        self.error_code = error_code
        self.error_message = error_message


@dataclass(frozen=True, slots=True)
class EnrichedError:
    """A stable, user-visible error code."""

    name: ErrorCode
    code: int
    status_code: HTTPStatus


ERR_INTERNAL_SERVER_ERROR = EnrichedError(
    "ERR_NGROK_20000", 20000, HTTPStatus.INTERNAL_SERVER_ERROR
)
ERR_CONFIGURATION_ERROR = EnrichedError("ERR_NGROK_20001", 20001, HTTPStatus.BAD_REQUEST)
ERR_FAILED_TO_CREATE_UPSTREAM_SERVICE = EnrichedError(
    "ERR_NGROK_20002", 20002, HTTPStatus.SERVICE_UNAVAILABLE
)
ERR_FAILED_TO_CREATE_TARGET_SERVICE = EnrichedError(
    "ERR_NGROK_20003", 20003, HTTPStatus.SERVICE_UNAVAILABLE
)
ERR_FAILED_TO_CONNECT_SERVICES = EnrichedError(
    "ERR_NGROK_20004", 20004, HTTPStatus.SERVICE_UNAVAILABLE
)
ERR_ENDPOINT_DENIED = EnrichedError("ERR_NGROK_20005", 20005, HTTPStatus.FORBIDDEN)
ERR_FAILED_TO_CREATE_CSR = EnrichedError(
    "ERR_NGROK_20006", 20006, HTTPStatus.INTERNAL_SERVER_ERROR
)


class BindingStatusError(KubebindError):
    """A failure that is surfaced on a BoundEndpoint status with a stable code."""

    def __init__(self, cause: BaseException | None, enriched: EnrichedError, msg: str) -> None:
        message = f"{msg}: {cause}" if cause is not None else msg
        super().__init__(sanitize_error_message(message))
        self.cause = cause
        self.error_code = enriched.name
        self.status_code = enriched.status_code

    @property
    def message(self) -> str:
        return str(self)


def sanitize_error_message(msg: str) -> str:
    """Collapse all whitespace runs (newlines included) into single spaces."""
    return _WHITESPACE_RE.sub(" ", msg).strip()
