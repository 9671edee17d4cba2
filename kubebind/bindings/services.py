"""
Projection of a BoundEndpoint into its two Services.

* target: an ``ExternalName`` Service named after ``spec.target.service`` in
  the target namespace. Clients dial ``<scheme>://<service>.<namespace>:<port>``
  and cluster DNS forwards them to the upstream Service.
* upstream: a ``ClusterIP`` Service named after the BoundEndpoint in the
  operator namespace, selecting the forwarder pods on the allocated port.

Services may live outside the owner's namespace, so ownership is expressed
with the owner-name and owner-namespace labels instead of owner references.
"""

from __future__ import annotations

from kubebind.datastructures.bound_endpoint import (
    BINDINGS_GROUP,
    BoundEndpoint,
    ObjectMeta,
    Service,
    ServicePort,
    ServiceType,
)
from kubebind.datastructures.type_aliases import LabelMap, ObjectKey

LABEL_MANAGED_BY = "app.kubernetes.io/managed-by"
LABEL_BOUND_ENDPOINT_NAME = f"{BINDINGS_GROUP}/endpoint-binding-name"
LABEL_BOUND_ENDPOINT_NAMESPACE = f"{BINDINGS_GROUP}/endpoint-binding-namespace"
ANNOTATION_ENDPOINT_URL = f"{BINDINGS_GROUP}/endpoint-url"

MANAGED_BY = "kubebind"
COMMON_LABELS: LabelMap = {LABEL_MANAGED_BY: MANAGED_BY}


def owner_labels(be: BoundEndpoint) -> LabelMap:
    return {
        LABEL_BOUND_ENDPOINT_NAME: be.name,
        LABEL_BOUND_ENDPOINT_NAMESPACE: be.namespace,
    }


def owner_key_from_labels(labels: LabelMap) -> ObjectKey | None:
    """The ``namespace/name`` of the owning BoundEndpoint, if labelled."""
    name = labels.get(LABEL_BOUND_ENDPOINT_NAME)
    namespace = labels.get(LABEL_BOUND_ENDPOINT_NAMESPACE)
    if not name or not namespace:
        return None
    return f"{namespace}/{name}"


def upstream_fqdn(be: BoundEndpoint, cluster_domain: str) -> str:
    return f"{be.name}.{be.namespace}.{cluster_domain}"


def convert_bound_endpoint_to_services(
    be: BoundEndpoint, cluster_domain: str, upstream_selector: LabelMap
) -> tuple[Service, Service]:
    """Return ``(target, upstream)`` for ``be``."""
    endpoint_url = upstream_fqdn(be, cluster_domain)
    target_spec = be.spec.target

    # increasing precedence: common, user, ownership
    target_labels = {**COMMON_LABELS, **(target_spec.metadata.labels or {}), **owner_labels(be)}

    target = Service(
        metadata=ObjectMeta(
            name=target_spec.service,
            namespace=target_spec.namespace,
            labels=target_labels,
            annotations=dict(target_spec.metadata.annotations or {}),
        ),
        type=ServiceType.EXTERNAL_NAME,
        external_name=endpoint_url,
        ports=[
            ServicePort(
                name=be.spec.scheme,
                protocol=target_spec.protocol,
                port=target_spec.port,
                target_port=target_spec.port,
            )
        ],
    )

    upstream = Service(
        metadata=ObjectMeta(
            name=be.name,
            namespace=be.namespace,
            labels={**COMMON_LABELS, **owner_labels(be)},
            annotations={ANNOTATION_ENDPOINT_URL: endpoint_url},
        ),
        type=ServiceType.CLUSTER_IP,
        selector=dict(upstream_selector),
        ports=[
            ServicePort(
                name=be.spec.scheme,
                protocol=target_spec.protocol,
                port=target_spec.port,
                # the forwarder container port allocated by the poller
                target_port=be.spec.port,
            )
        ],
    )

    return target, upstream
