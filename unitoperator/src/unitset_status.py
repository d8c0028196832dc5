from __future__ import annotations

import copy
from typing import Any

from unitoperator.src import naming
from unitoperator.src.concurrency import retry_on_conflict
from unitoperator.src.constants import (
    ANNOTATION_MAIN_CONTAINER_VERSION,
    CONDITION_FALSE,
    CONDITION_TRUE,
    PHASE_READY,
)
from unitoperator.src.context import ReconcileContext
from unitoperator.src.drift import quantity, resources_equal
from unitoperator.src.events import utc_now_rfc3339
from unitoperator.src.kube import UNITSET
from unitoperator.src.podutil import (
    annotations_of,
    find_container,
    name_of,
    namespace_of,
    unit_template_spec,
)
from unitoperator.src.unit_status import strip_timestamps
from unitoperator.src.unitset_network import service_names
from unitoperator.src.unitset_scale import owned_units

SYNC_FLAGS = ("imageSyncStatus", "resourceSyncStatus", "pvcSyncStatus")


def _synced_claims(unitset: dict[str, Any], unit: dict[str, Any]) -> int:
    sizes = {
        naming.claim_name(name_of(unit), storage["name"]): storage.get("size")
        for storage in (unitset.get("spec") or {}).get("storage") or []
    }
    count = 0
    for claim in (unit.get("status") or {}).get("persistentVolumeClaim") or []:
        size = sizes.get(claim.get("name"))
        capacity = (claim.get("capacity") or {}).get("storage")
        if size and capacity and quantity(capacity) >= quantity(size):
            count += 1
    return count


def _resources_synced(unitset: dict[str, Any], unit: dict[str, Any]) -> bool:
    spec = unitset.get("spec") or {}
    container = find_container(unit_template_spec(unit), spec.get("type", ""))
    return container is not None and resources_equal(container.get("resources"), spec.get("resources"))


def _flag(previous: dict[str, Any] | None, value: bool, now: str) -> dict[str, str]:
    status = CONDITION_TRUE if value else CONDITION_FALSE
    previous = previous or {}
    if previous.get("status") == status and previous.get("lastTransitionTime"):
        return dict(previous)
    return {"status": status, "lastTransitionTime": now}


def build_status(
    unitset: dict[str, Any],
    units: list[dict[str, Any]],
    external_service: str,
    unit_services: dict[str, str],
    now: str,
) -> dict[str, Any]:
    """Derive the fleet status from its units, keeping transition times of unchanged flags."""
    spec = unitset.get("spec") or {}
    replicas = spec.get("units") or 0
    status = copy.deepcopy(unitset.get("status") or {})

    status["units"] = len(units)
    status["readyUnits"] = sum(
        1 for unit in units if (unit.get("status") or {}).get("phase") == PHASE_READY
    )
    status["inUpdate"] = ",".join(
        name_of(unit) for unit in units if (unit.get("status") or {}).get("task")
    )

    image_synced = sum(
        1
        for unit in units
        if annotations_of(unit).get(ANNOTATION_MAIN_CONTAINER_VERSION) == spec.get("version")
    )
    resource_synced = sum(1 for unit in units if _resources_synced(unitset, unit))
    claims_synced = sum(_synced_claims(unitset, unit) for unit in units)

    status["imageSyncStatus"] = _flag(status.get("imageSyncStatus"), image_synced == replicas, now)
    status["resourceSyncStatus"] = _flag(
        status.get("resourceSyncStatus"), resource_synced == replicas, now
    )
    status["pvcSyncStatus"] = _flag(
        status.get("pvcSyncStatus"),
        claims_synced == len(spec.get("storage") or []) * replicas,
        now,
    )

    if (spec.get("externalService") or {}).get("type"):
        status["externalService"] = {"name": external_service}
    if (spec.get("unitService") or {}).get("type"):
        status["unitService"] = {"name": dict(unit_services)}
    return status


def refresh_status(
    ctx: ReconcileContext, unitset: dict[str, Any], *, observe_generation: bool = False
) -> dict[str, Any]:
    """Recompute the fleet status from its units and write it when anything but a timestamp changed.

    With ``observe_generation`` the current ``metadata.generation`` is
    recorded as observed; callers pass it only after a full pass succeeded.
    """
    namespace = namespace_of(unitset)
    name = name_of(unitset)

    def _attempt() -> dict[str, Any]:
        current = ctx.store.get(UNITSET, namespace, name)
        if current is None:
            return unitset
        external, per_unit = service_names(ctx, current)
        status = build_status(current, owned_units(ctx, current), external, per_unit, utc_now_rfc3339())
        if observe_generation:
            status["observedGeneration"] = (current.get("metadata") or {}).get("generation")
        if strip_timestamps(status) == strip_timestamps(current.get("status") or {}):
            return current
        current["status"] = status
        return ctx.store.replace_status(UNITSET, current)

    return retry_on_conflict(_attempt)


def observe_generation(ctx: ReconcileContext, unitset: dict[str, Any]) -> None:
    """Record ``metadata.generation`` as observed without recomputing anything else."""
    namespace = namespace_of(unitset)
    name = name_of(unitset)

    def _attempt() -> None:
        current = ctx.store.get(UNITSET, namespace, name)
        if current is None:
            return
        generation = (current.get("metadata") or {}).get("generation")
        status = current.setdefault("status", {})
        if status.get("observedGeneration") == generation:
            return
        status["observedGeneration"] = generation
        ctx.store.replace_status(UNITSET, current)

    retry_on_conflict(_attempt)
