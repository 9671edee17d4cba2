"""Remote endpoint API access."""

from .client import ApiRemoteEndpointSource, RemoteEndpointSource, StaticRemoteEndpointSource
from .models import RemoteEndpoint, RemoteEndpointPage

__all__ = [
    "ApiRemoteEndpointSource",
    "RemoteEndpoint",
    "RemoteEndpointPage",
    "RemoteEndpointSource",
    "StaticRemoteEndpointSource",
]
