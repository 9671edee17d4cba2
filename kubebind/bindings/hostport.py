"""
Parsing of public URLs into the ``(scheme, service, namespace, port)`` 4-tuple.

Accepted shape: ``[<scheme>://]<service>.<namespace>[:<port>]``. A missing
scheme falls back to the record's protocol and then to ``https``; a missing
port falls back to the scheme's well-known port. ``tcp`` has no well-known
port and must carry one explicitly.
"""

from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import urlsplit

from kubebind.core.errors import HostportParseError
from kubebind.datastructures.bound_endpoint import SUPPORTED_SCHEMES
from kubebind.datastructures.type_aliases import (
    EndpointURI,
    NamespaceName,
    ObjectName,
    PortNumber,
    Scheme,
)

DEFAULT_SCHEME: Scheme = "https"
DEFAULT_PORTS: dict[Scheme, PortNumber] = {
    "http": 80,
    "https": 443,
    "tls": 443,
}


@dataclass(frozen=True, slots=True)
class ParsedHostport:
    scheme: Scheme
    service_name: ObjectName
    namespace: NamespaceName
    port: PortNumber

    @property
    def endpoint_uri(self) -> EndpointURI:
        return f"{self.scheme}://{self.service_name}.{self.namespace}:{self.port}"

    def __str__(self) -> str:
        return self.endpoint_uri


def parse_hostport(proto: str, public_url: str) -> ParsedHostport:
    """Parse ``public_url`` into its 4-tuple.

    ``proto`` is the record's own protocol field. When the URL carries a
    scheme it must agree with ``proto`` (if ``proto`` is set).
    """
    if not public_url:
        raise HostportParseError("missing publicURL")

    if "://" in public_url:
        full_url = public_url
        declared = public_url.split("://", 1)[0]
        if proto and declared != proto:
            raise HostportParseError(f"mismatched scheme, expected {proto}: {public_url}")
    else:
        full_url = f"{proto or DEFAULT_SCHEME}://{public_url}"

    try:
        parsed = urlsplit(full_url)
    except ValueError as e:
        raise HostportParseError(f"unable to parse url {full_url}: {e}") from e

    scheme = parsed.scheme
    if scheme not in SUPPORTED_SCHEMES:
        raise HostportParseError(
            f"unsupported scheme {scheme!r}, expected one of {', '.join(SUPPORTED_SCHEMES)}"
        )

    hostname = parsed.hostname or ""
    parts = hostname.split(".")
    if len(parts) != 2 or not all(parts):
        raise HostportParseError(
            f"invalid hostname, expected <service-name>.<namespace-name>: {hostname}"
        )
    service_name, namespace = parts

    try:
        url_port = parsed.port
    except ValueError as e:
        raise HostportParseError(f"invalid port value in {public_url}: {e}") from e

    if url_port is None:
        if scheme == "tcp":
            raise HostportParseError(f"missing port for tcp scheme: {public_url}")
        port = DEFAULT_PORTS[scheme]
    elif not 1 <= url_port <= 65535:
        raise HostportParseError(f"invalid port value: {url_port}")
    else:
        port = url_port

    return ParsedHostport(
        scheme=scheme, service_name=service_name, namespace=namespace, port=port
    )
