"""Typed data model shared by the controller and the forwarder."""

from .bound_endpoint import (
    BindingEndpoint,
    BindingEndpointStatus,
    BoundEndpoint,
    BoundEndpointSpec,
    EndpointRef,
    EndpointTarget,
    KubernetesOperator,
    Service,
)

__all__ = [
    "BindingEndpoint",
    "BindingEndpointStatus",
    "BoundEndpoint",
    "BoundEndpointSpec",
    "EndpointRef",
    "EndpointTarget",
    "KubernetesOperator",
    "Service",
]
