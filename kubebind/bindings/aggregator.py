"""
Endpoint aggregation: flat remote records to desired BoundEndpoints.

Records that resolve to the same canonical URI collapse into one desired
BoundEndpoint whose ``status.endpoints`` lists every contributing record in
input order. The returned dict preserves first-seen key order, so the output
is a pure function of the input sequence.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import TypeAlias

from kubebind.bindings.hostport import parse_hostport
from kubebind.core.errors import AggregationError, HostportParseError
from kubebind.datastructures.bound_endpoint import (
    BindingEndpoint,
    BoundEndpoint,
    BoundEndpointSpec,
    BoundEndpointStatus,
    EndpointRef,
    EndpointTarget,
    ObjectMeta,
)
from kubebind.datastructures.type_aliases import EndpointURI
from kubebind.remote.models import RemoteEndpoint

AggregatedEndpoints: TypeAlias = dict[EndpointURI, BoundEndpoint]

TARGET_PROTOCOL = "TCP"


def aggregate_bound_endpoints(endpoints: Iterable[RemoteEndpoint]) -> AggregatedEndpoints:
    """Group ``endpoints`` by canonical URI.

    Fails fast: the first record whose public URL cannot be parsed aborts the
    whole batch with an ``AggregationError`` naming that record.
    """
    aggregated: AggregatedEndpoints = {}

    for endpoint in endpoints:
        try:
            parsed = parse_hostport(endpoint.proto, endpoint.public_url)
        except HostportParseError as e:
            raise AggregationError(endpoint.id, e) from e

        endpoint_uri = parsed.endpoint_uri
        desired = aggregated.get(endpoint_uri)
        if desired is None:
            desired = BoundEndpoint(
                metadata=ObjectMeta(),
                spec=BoundEndpointSpec(
                    endpoint_uri=endpoint_uri,
                    scheme=parsed.scheme,
                    target=EndpointTarget(
                        service=parsed.service_name,
                        namespace=parsed.namespace,
                        protocol=TARGET_PROTOCOL,
                        port=parsed.port,
                    ),
                ),
                status=BoundEndpointStatus(),
            )
            aggregated[endpoint_uri] = desired

        desired.status.endpoints.append(
            BindingEndpoint(ref=EndpointRef(id=endpoint.id, uri=endpoint.uri))
        )

    return aggregated
