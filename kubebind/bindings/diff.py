"""
Diffing of existing BoundEndpoints against the aggregated desired state.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from loguru import logger

from kubebind.bindings.aggregator import AggregatedEndpoints
from kubebind.bindings.identity import hash_uri
from kubebind.datastructures.bound_endpoint import BoundEndpoint, TargetMetadata

diff_log = logger


@dataclass(slots=True)
class BoundEndpointActions:
    to_create: list[BoundEndpoint] = field(default_factory=list)
    to_update: list[BoundEndpoint] = field(default_factory=list)
    to_delete: list[BoundEndpoint] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.to_create) + len(self.to_update) + len(self.to_delete)


def filter_bound_endpoint_actions(
    existing: list[BoundEndpoint], desired: AggregatedEndpoints
) -> BoundEndpointActions:
    """Split ``existing`` and ``desired`` into create/update/delete actions.

    ``desired`` is consumed: every key matched by an existing record is
    removed, and whatever remains afterwards is net-new. An existing record
    whose name is not the identity of its URI is replaced (delete + create)
    rather than renamed.
    """
    actions = BoundEndpointActions()

    for existing_be in existing:
        uri = existing_be.spec.endpoint_uri
        desired_be = desired.pop(uri, None)

        if desired_be is None:
            actions.to_delete.append(existing_be)
        elif existing_be.name == hash_uri(desired_be.spec.endpoint_uri):
            actions.to_update.append(desired_be)
        else:
            diff_log.info(
                "BoundEndpoint {} does not carry the identity of {}, replacing it",
                existing_be.name,
                uri,
            )
            actions.to_delete.append(existing_be)
            actions.to_create.append(desired_be)

    actions.to_create.extend(desired.values())
    desired.clear()

    diff_log.debug(
        "Diffed BoundEndpoints: create={} update={} delete={}",
        len(actions.to_create),
        len(actions.to_update),
        len(actions.to_delete),
    )
    return actions


def target_metadata_is_equal(a: TargetMetadata, b: TargetMetadata) -> bool:
    """Compare target metadata, treating a missing map as an empty one."""
    return (a.labels or {}) == (b.labels or {}) and (a.annotations or {}) == (
        b.annotations or {}
    )


def bound_endpoint_needs_update(existing: BoundEndpoint, desired: BoundEndpoint) -> bool:
    """True when ``existing`` differs from ``desired`` in spec or endpoint refs.

    The allocated port and per-endpoint statuses are owned elsewhere and are
    not compared.
    """
    e_spec, d_spec = existing.spec, desired.spec
    spec_changed = (
        e_spec.scheme != d_spec.scheme
        or e_spec.endpoint_uri != d_spec.endpoint_uri
        or e_spec.allowed != d_spec.allowed
        or e_spec.target.port != d_spec.target.port
        or e_spec.target.protocol != d_spec.target.protocol
        or e_spec.target.service != d_spec.target.service
        or e_spec.target.namespace != d_spec.target.namespace
        or not target_metadata_is_equal(e_spec.target.metadata, d_spec.target.metadata)
    )
    if spec_changed:
        diff_log.debug("BoundEndpoint {} spec has changed", existing.name)
        return True

    existing_ids = [ep.ref.id for ep in existing.status.endpoints]
    desired_ids = [ep.ref.id for ep in desired.status.endpoints]
    if len(existing_ids) != len(desired_ids) or set(existing_ids) != set(desired_ids):
        diff_log.debug("BoundEndpoint {} endpoint refs have changed", existing.name)
        return True

    return False
