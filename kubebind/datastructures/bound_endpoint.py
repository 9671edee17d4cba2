"""
BoundEndpoint and Service datastructures.

A BoundEndpoint is the cluster-resident record for one routing 4-tuple
``(scheme, service, namespace, port)``. Its ``status.endpoints`` lists every
remote endpoint that shares that 4-tuple; they all share one pair of Services
and therefore one status.

Objects convert to and from the Kubernetes JSON shape (camelCase keys) with
``to_dict`` / ``from_dict`` so the same types work against the in-memory store
and the API server.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from kubebind.datastructures.type_aliases import (
    AnnotationMap,
    ConditionReason,
    EndpointId,
    EndpointRefURI,
    EndpointURI,
    ErrorCode,
    ErrorMessage,
    Generation,
    JsonDict,
    LabelMap,
    NamespaceName,
    ObjectKey,
    ObjectName,
    PortNumber,
    ResourceVersion,
    Scheme,
)

BINDINGS_GROUP = "bindings.kubebind.io"
BINDINGS_VERSION = "v1alpha1"
BOUND_ENDPOINT_KIND = "BoundEndpoint"
BOUND_ENDPOINT_PLURAL = "boundendpoints"
OPERATOR_GROUP = "operator.kubebind.io"
OPERATOR_VERSION = "v1alpha1"
OPERATOR_KIND = "KubernetesOperator"
OPERATOR_PLURAL = "kubernetesoperators"

SUPPORTED_SCHEMES: tuple[Scheme, ...] = ("tcp", "http", "https", "tls")


def object_key(namespace: NamespaceName, name: ObjectName) -> ObjectKey:
    return f"{namespace}/{name}"


def split_object_key(key: ObjectKey) -> tuple[NamespaceName, ObjectName]:
    namespace, _, name = key.partition("/")
    return namespace, name


def endpoints_summary(count: int) -> str:
    """Human-readable endpoint count: ``"1 endpoint"``, ``"2 endpoints"``."""
    if count == 1:
        return "1 endpoint"
    return f"{count} endpoints"


class BindingEndpointStatus(Enum):
    UNKNOWN = "unknown"
    PROVISIONING = "provisioning"
    BOUND = "bound"
    ERROR = "error"
    DENIED = "denied"


class ConditionStatus(Enum):
    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


@dataclass(frozen=True, slots=True)
class EndpointRef:
    """Reference to one remote endpoint record."""

    id: EndpointId
    uri: EndpointRefURI = ""


@dataclass(slots=True)
class BindingEndpoint:
    ref: EndpointRef
    status: BindingEndpointStatus = BindingEndpointStatus.UNKNOWN
    error_code: ErrorCode = ""
    error_message: ErrorMessage = ""

    def to_dict(self) -> JsonDict:
        data: JsonDict = {
            "id": self.ref.id,
            "uri": self.ref.uri,
            "status": self.status.value,
        }
        if self.error_code:
            data["errorCode"] = self.error_code
        if self.error_message:
            data["errorMessage"] = self.error_message
        return data

    @classmethod
    def from_dict(cls, data: JsonDict) -> BindingEndpoint:
        return cls(
            ref=EndpointRef(id=data.get("id", ""), uri=data.get("uri", "")),
            status=BindingEndpointStatus(data.get("status") or "unknown"),
            error_code=data.get("errorCode", ""),
            error_message=data.get("errorMessage", ""),
        )


@dataclass(slots=True)
class TargetMetadata:
    labels: LabelMap | None = None
    annotations: AnnotationMap | None = None

    def to_dict(self) -> JsonDict:
        data: JsonDict = {}
        if self.labels:
            data["labels"] = dict(self.labels)
        if self.annotations:
            data["annotations"] = dict(self.annotations)
        return data

    @classmethod
    def from_dict(cls, data: JsonDict | None) -> TargetMetadata:
        data = data or {}
        return cls(labels=data.get("labels"), annotations=data.get("annotations"))


@dataclass(slots=True)
class EndpointTarget:
    """The Service that a BoundEndpoint projects into the cluster."""

    service: ObjectName
    namespace: NamespaceName
    protocol: str = "TCP"
    port: PortNumber = 0
    metadata: TargetMetadata = field(default_factory=TargetMetadata)

    def to_dict(self) -> JsonDict:
        return {
            "service": self.service,
            "namespace": self.namespace,
            "protocol": self.protocol,
            "port": self.port,
            "metadata": self.metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: JsonDict) -> EndpointTarget:
        return cls(
            service=data.get("service", ""),
            namespace=data.get("namespace", ""),
            protocol=data.get("protocol", "TCP"),
            port=int(data.get("port", 0)),
            metadata=TargetMetadata.from_dict(data.get("metadata")),
        )


@dataclass(slots=True)
class BoundEndpointSpec:
    endpoint_uri: EndpointURI
    scheme: Scheme
    target: EndpointTarget
    # local forwarder port, exclusively allocated by the poller
    port: PortNumber = 0
    allowed: bool = True

    def to_dict(self) -> JsonDict:
        return {
            "endpointURI": self.endpoint_uri,
            "scheme": self.scheme,
            "port": self.port,
            "allowed": self.allowed,
            "target": self.target.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: JsonDict) -> BoundEndpointSpec:
        return cls(
            endpoint_uri=data.get("endpointURI", ""),
            scheme=data.get("scheme", ""),
            target=EndpointTarget.from_dict(data.get("target") or {}),
            port=int(data.get("port", 0)),
            allowed=bool(data.get("allowed", True)),
        )


@dataclass(slots=True)
class Condition:
    type: str
    status: ConditionStatus
    reason: ConditionReason
    message: str = ""
    observed_generation: Generation = 0
    last_transition_time: str = ""

    @property
    def is_true(self) -> bool:
        return self.status is ConditionStatus.TRUE

    def to_dict(self) -> JsonDict:
        return {
            "type": self.type,
            "status": self.status.value,
            "reason": self.reason,
            "message": self.message,
            "observedGeneration": self.observed_generation,
            "lastTransitionTime": self.last_transition_time,
        }

    @classmethod
    def from_dict(cls, data: JsonDict) -> Condition:
        return cls(
            type=data["type"],
            status=ConditionStatus(data.get("status", "Unknown")),
            reason=data.get("reason", ""),
            message=data.get("message", ""),
            observed_generation=int(data.get("observedGeneration", 0)),
            last_transition_time=data.get("lastTransitionTime", ""),
        )


@dataclass(frozen=True, slots=True)
class ServiceRef:
    name: ObjectName
    namespace: NamespaceName | None = None

    def to_dict(self) -> JsonDict:
        data: JsonDict = {"name": self.name}
        if self.namespace is not None:
            data["namespace"] = self.namespace
        return data

    @classmethod
    def from_dict(cls, data: JsonDict | None) -> ServiceRef | None:
        if not data:
            return None
        return cls(name=data["name"], namespace=data.get("namespace"))


@dataclass(slots=True)
class BoundEndpointStatus:
    endpoints: list[BindingEndpoint] = field(default_factory=list)
    hashed_name: str = ""
    endpoints_summary: str = ""
    conditions: list[Condition] = field(default_factory=list)
    target_service_ref: ServiceRef | None = None
    upstream_service_ref: ServiceRef | None = None

    def to_dict(self) -> JsonDict:
        data: JsonDict = {
            "endpoints": [endpoint.to_dict() for endpoint in self.endpoints],
            "conditions": [condition.to_dict() for condition in self.conditions],
        }
        if self.hashed_name:
            data["hashedName"] = self.hashed_name
        if self.endpoints_summary:
            data["endpointsSummary"] = self.endpoints_summary
        if self.target_service_ref is not None:
            data["targetServiceRef"] = self.target_service_ref.to_dict()
        if self.upstream_service_ref is not None:
            data["upstreamServiceRef"] = self.upstream_service_ref.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: JsonDict | None) -> BoundEndpointStatus:
        data = data or {}
        return cls(
            endpoints=[BindingEndpoint.from_dict(ep) for ep in data.get("endpoints") or []],
            hashed_name=data.get("hashedName", ""),
            endpoints_summary=data.get("endpointsSummary", ""),
            conditions=[Condition.from_dict(c) for c in data.get("conditions") or []],
            target_service_ref=ServiceRef.from_dict(data.get("targetServiceRef")),
            upstream_service_ref=ServiceRef.from_dict(data.get("upstreamServiceRef")),
        )


@dataclass(slots=True)
class ObjectMeta:
    name: ObjectName = ""
    namespace: NamespaceName = ""
    generation: Generation = 0
    resource_version: ResourceVersion = ""
    labels: LabelMap = field(default_factory=dict)
    annotations: AnnotationMap = field(default_factory=dict)

    def to_dict(self) -> JsonDict:
        data: JsonDict = {"name": self.name, "namespace": self.namespace}
        if self.generation:
            data["generation"] = self.generation
        if self.resource_version:
            data["resourceVersion"] = self.resource_version
        if self.labels:
            data["labels"] = dict(self.labels)
        if self.annotations:
            data["annotations"] = dict(self.annotations)
        return data

    @classmethod
    def from_dict(cls, data: JsonDict | None) -> ObjectMeta:
        data = data or {}
        return cls(
            name=data.get("name", ""),
            namespace=data.get("namespace", ""),
            generation=int(data.get("generation") or 0),
            resource_version=str(data.get("resourceVersion") or ""),
            labels=dict(data.get("labels") or {}),
            annotations=dict(data.get("annotations") or {}),
        )


@dataclass(slots=True)
class BoundEndpoint:
    metadata: ObjectMeta
    spec: BoundEndpointSpec
    status: BoundEndpointStatus = field(default_factory=BoundEndpointStatus)

    @property
    def name(self) -> ObjectName:
        return self.metadata.name

    @property
    def namespace(self) -> NamespaceName:
        return self.metadata.namespace

    @property
    def key(self) -> ObjectKey:
        return object_key(self.metadata.namespace, self.metadata.name)

    def deepcopy(self) -> BoundEndpoint:
        return copy.deepcopy(self)

    def to_dict(self) -> JsonDict:
        return {
            "apiVersion": f"{BINDINGS_GROUP}/{BINDINGS_VERSION}",
            "kind": BOUND_ENDPOINT_KIND,
            "metadata": self.metadata.to_dict(),
            "spec": self.spec.to_dict(),
            "status": self.status.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: JsonDict) -> BoundEndpoint:
        return cls(
            metadata=ObjectMeta.from_dict(data.get("metadata")),
            spec=BoundEndpointSpec.from_dict(data.get("spec") or {}),
            status=BoundEndpointStatus.from_dict(data.get("status")),
        )


class ServiceType(Enum):
    EXTERNAL_NAME = "ExternalName"
    CLUSTER_IP = "ClusterIP"


@dataclass(slots=True)
class ServicePort:
    name: str
    port: PortNumber
    target_port: PortNumber
    protocol: str = "TCP"

    def to_dict(self) -> JsonDict:
        return {
            "name": self.name,
            "protocol": self.protocol,
            "port": self.port,
            "targetPort": self.target_port,
        }

    @classmethod
    def from_dict(cls, data: JsonDict) -> ServicePort:
        return cls(
            name=data.get("name") or "",
            port=int(data["port"]),
            target_port=int(data.get("targetPort") or data["port"]),
            protocol=data.get("protocol") or "TCP",
        )


@dataclass(slots=True)
class Service:
    """The subset of a core/v1 Service that kubebind manages."""

    metadata: ObjectMeta
    type: ServiceType
    ports: list[ServicePort] = field(default_factory=list)
    external_name: str | None = None
    selector: LabelMap | None = None
    session_affinity: str = "ClientIP"
    internal_traffic_policy: str = "Cluster"

    @property
    def name(self) -> ObjectName:
        return self.metadata.name

    @property
    def namespace(self) -> NamespaceName:
        return self.metadata.namespace

    @property
    def key(self) -> ObjectKey:
        return object_key(self.metadata.namespace, self.metadata.name)

    def spec_dict(self) -> JsonDict:
        spec: JsonDict = {
            "type": self.type.value,
            "ports": [port.to_dict() for port in self.ports],
            "sessionAffinity": self.session_affinity,
            "internalTrafficPolicy": self.internal_traffic_policy,
        }
        if self.external_name is not None:
            spec["externalName"] = self.external_name
        if self.selector is not None:
            spec["selector"] = dict(self.selector)
        return spec

    def to_dict(self) -> JsonDict:
        return {
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": self.metadata.to_dict(),
            "spec": self.spec_dict(),
        }

    @classmethod
    def from_dict(cls, data: JsonDict) -> Service:
        spec = data.get("spec") or {}
        return cls(
            metadata=ObjectMeta.from_dict(data.get("metadata")),
            type=ServiceType(spec.get("type", "ClusterIP")),
            ports=[ServicePort.from_dict(port) for port in spec.get("ports") or []],
            external_name=spec.get("externalName"),
            selector=spec.get("selector"),
            session_affinity=spec.get("sessionAffinity") or "ClientIP",
            internal_traffic_policy=spec.get("internalTrafficPolicy") or "Cluster",
        )


@dataclass(slots=True)
class KubernetesOperator:
    """The operator-identity object: registration id and tunnel ingress address."""

    name: ObjectName
    namespace: NamespaceName
    id: str = ""
    registration_status: str = ""
    ingress_endpoint: str | None = None
    tls_secret_name: str = ""
    binding_configured: bool = False

    @property
    def registered(self) -> bool:
        return self.registration_status == "registered" and bool(self.id)

    @classmethod
    def from_dict(cls, data: JsonDict) -> KubernetesOperator:
        metadata = data.get("metadata") or {}
        spec = data.get("spec") or {}
        status = data.get("status") or {}
        binding: dict[str, Any] = spec.get("binding") or {}
        return cls(
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace", ""),
            id=status.get("id", ""),
            registration_status=status.get("registrationStatus", ""),
            ingress_endpoint=binding.get("ingressEndpoint"),
            tls_secret_name=binding.get("tlsSecretName", ""),
            binding_configured=spec.get("binding") is not None,
        )
