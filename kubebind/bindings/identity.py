"""Stable BoundEndpoint names derived from canonical endpoint URIs."""

import uuid

from kubebind.datastructures.type_aliases import EndpointURI, IdentityName

IDENTITY_PREFIX = "bound-"


def hash_uri(uri: EndpointURI) -> IdentityName:
    """Name-based UUID (SHA-1, URL namespace) of ``uri`` with a fixed prefix.

    The result is 42 characters of lowercase hex and dashes, so it is a valid
    DNS label and a valid object name.
    """
    return f"{IDENTITY_PREFIX}{uuid.uuid5(uuid.NAMESPACE_URL, uri)}"
