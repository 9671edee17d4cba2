"""
Secondary indexes for cross-namespace ownership.

Services are mapped to their owning BoundEndpoint through the owner labels,
and BoundEndpoints are indexed by target namespace so that namespace events
can be fanned out to every record that targets the namespace.
"""

from __future__ import annotations

from collections import defaultdict

from kubebind.bindings.services import owner_key_from_labels
from kubebind.datastructures.bound_endpoint import BoundEndpoint, Service
from kubebind.datastructures.type_aliases import NamespaceName, ObjectKey


class OwnerIndex:
    def __init__(self) -> None:
        self._services_by_owner: defaultdict[ObjectKey, set[ObjectKey]] = defaultdict(set)
        self._owners_by_namespace: defaultdict[NamespaceName, set[ObjectKey]] = defaultdict(set)
        self._target_namespace: dict[ObjectKey, NamespaceName] = {}

    def observe_service(self, service: Service) -> ObjectKey | None:
        """Index ``service`` under its owner and return the owner key."""
        owner = owner_key_from_labels(service.metadata.labels)
        if owner is not None:
            self._services_by_owner[owner].add(service.key)
        return owner

    def forget_service(self, service: Service) -> ObjectKey | None:
        owner = owner_key_from_labels(service.metadata.labels)
        if owner is not None:
            keys = self._services_by_owner.get(owner)
            if keys is not None:
                keys.discard(service.key)
                if not keys:
                    del self._services_by_owner[owner]
        return owner

    def observe_bound_endpoint(self, be: BoundEndpoint) -> None:
        namespace = be.spec.target.namespace
        previous = self._target_namespace.get(be.key)
        if previous is not None and previous != namespace:
            self._discard_owner(previous, be.key)
        self._target_namespace[be.key] = namespace
        self._owners_by_namespace[namespace].add(be.key)

    def forget_bound_endpoint(self, key: ObjectKey) -> None:
        namespace = self._target_namespace.pop(key, None)
        if namespace is not None:
            self._discard_owner(namespace, key)

    def _discard_owner(self, namespace: NamespaceName, key: ObjectKey) -> None:
        owners = self._owners_by_namespace.get(namespace)
        if owners is not None:
            owners.discard(key)
            if not owners:
                del self._owners_by_namespace[namespace]

    def services_for(self, owner: ObjectKey) -> set[ObjectKey]:
        return set(self._services_by_owner.get(owner, ()))

    def owners_in_namespace(self, namespace: NamespaceName) -> set[ObjectKey]:
        return set(self._owners_by_namespace.get(namespace, ()))

    def __len__(self) -> int:
        return len(self._target_namespace)
