"""
Status conditions for BoundEndpoints.

``ServicesCreated`` and ``ConnectivityVerified`` are written by the binding
reconciler; ``Ready`` is always derived from them by
``calculate_ready_condition`` and never set directly.
"""

from __future__ import annotations

from datetime import UTC, datetime

from kubebind.datastructures.bound_endpoint import (
    BoundEndpoint,
    Condition,
    ConditionStatus,
)

CONDITION_READY = "Ready"
CONDITION_SERVICES_CREATED = "ServicesCreated"
CONDITION_CONNECTIVITY_VERIFIED = "ConnectivityVerified"

# Ready reasons
REASON_READY = "BoundEndpointReady"
REASON_SERVICES_NOT_CREATED = "ServicesNotCreated"
REASON_CONNECTIVITY_NOT_VERIFIED = "ConnectivityNotVerified"
REASON_DENIED = "Denied"

# ServicesCreated reasons
REASON_SERVICES_CREATED = "ServicesCreated"
REASON_SERVICE_CREATION_FAILED = "ServiceCreationFailed"

# ConnectivityVerified reasons
REASON_CONNECTIVITY_VERIFIED = "ConnectivityVerified"
REASON_CONNECTIVITY_FAILED = "ConnectivityFailed"


def _now() -> str:
    return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def find_condition(conditions: list[Condition], condition_type: str) -> Condition | None:
    for condition in conditions:
        if condition.type == condition_type:
            return condition
    return None


def set_condition(conditions: list[Condition], new: Condition) -> None:
    """Insert or replace ``new`` by type.

    The transition time is only moved forward when the status flips.
    """
    existing = find_condition(conditions, new.type)
    if existing is None:
        if not new.last_transition_time:
            new.last_transition_time = _now()
        conditions.append(new)
        return

    if existing.status is not new.status:
        existing.status = new.status
        existing.last_transition_time = new.last_transition_time or _now()
    existing.reason = new.reason
    existing.message = new.message
    existing.observed_generation = new.observed_generation


def _status(flag: bool) -> ConditionStatus:
    return ConditionStatus.TRUE if flag else ConditionStatus.FALSE


def set_services_created_condition(
    be: BoundEndpoint, created: bool, reason: str, message: str
) -> None:
    set_condition(
        be.status.conditions,
        Condition(
            type=CONDITION_SERVICES_CREATED,
            status=_status(created),
            reason=reason,
            message=message,
            observed_generation=be.metadata.generation,
        ),
    )


def set_connectivity_verified_condition(
    be: BoundEndpoint, verified: bool, message: str | None = None
) -> None:
    if verified:
        reason = REASON_CONNECTIVITY_VERIFIED
        message = message or "Successfully connected to upstream service"
    else:
        reason = REASON_CONNECTIVITY_FAILED
        message = message or "Connectivity check failed"

    set_condition(
        be.status.conditions,
        Condition(
            type=CONDITION_CONNECTIVITY_VERIFIED,
            status=_status(verified),
            reason=reason,
            message=message,
            observed_generation=be.metadata.generation,
        ),
    )


def set_denied_conditions(be: BoundEndpoint, message: str) -> None:
    """Mark both sub-conditions as denied so ``Ready`` derives to Denied."""
    for condition_type in (CONDITION_SERVICES_CREATED, CONDITION_CONNECTIVITY_VERIFIED):
        set_condition(
            be.status.conditions,
            Condition(
                type=condition_type,
                status=ConditionStatus.FALSE,
                reason=REASON_DENIED,
                message=message,
                observed_generation=be.metadata.generation,
            ),
        )


def calculate_ready_condition(be: BoundEndpoint) -> Condition:
    """Derive ``Ready`` from ``ServicesCreated`` and ``ConnectivityVerified``.

    When both are failing, ``ServicesCreated`` supplies the reason and message.
    """
    services = find_condition(be.status.conditions, CONDITION_SERVICES_CREATED)
    connectivity = find_condition(be.status.conditions, CONDITION_CONNECTIVITY_VERIFIED)

    services_created = services is not None and services.is_true
    connectivity_verified = connectivity is not None and connectivity.is_true
    ready = services_created and connectivity_verified

    if ready:
        reason, message = REASON_READY, "BoundEndpoint is ready"
    elif not services_created:
        if services is not None:
            reason, message = services.reason, services.message
        else:
            reason, message = REASON_SERVICES_NOT_CREATED, "Services not yet created"
    elif connectivity is not None:
        reason, message = connectivity.reason, connectivity.message
    else:
        reason, message = REASON_CONNECTIVITY_NOT_VERIFIED, "Connectivity not yet verified"

    condition = Condition(
        type=CONDITION_READY,
        status=_status(ready),
        reason=reason,
        message=message,
        observed_generation=be.metadata.generation,
    )
    set_condition(be.status.conditions, condition)
    return condition
