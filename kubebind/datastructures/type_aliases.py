"""
Semantic type aliases for kubebind datastructures.

These aliases keep signatures self-documenting where a raw ``str`` or ``int``
would hide what a value means (a canonical endpoint URI versus a Kubernetes
object name, an allocated local port versus a Service port).
"""

from typing import Any, TypeAlias

# Time types
Timestamp: TypeAlias = float
DurationSeconds: TypeAlias = float

# Kubernetes object identifiers
ObjectName: TypeAlias = str
NamespaceName: TypeAlias = str
ObjectKey: TypeAlias = str  # "<namespace>/<name>"
ResourceVersion: TypeAlias = str
Generation: TypeAlias = int
LabelMap: TypeAlias = dict[str, str]
AnnotationMap: TypeAlias = dict[str, str]

# Endpoint identifiers
EndpointURI: TypeAlias = str  # "<scheme>://<service>.<namespace>:<port>"
EndpointId: TypeAlias = str
EndpointRefURI: TypeAlias = str
IdentityName: TypeAlias = str  # hashed, DNS-label-safe BoundEndpoint name
Scheme: TypeAlias = str

# Network types
HostAddress: TypeAlias = str
PortNumber: TypeAlias = int
UrlString: TypeAlias = str

# Status types
ErrorCode: TypeAlias = str
ErrorMessage: TypeAlias = str
ConditionReason: TypeAlias = str

# Serialization types
JsonDict: TypeAlias = dict[str, Any]
