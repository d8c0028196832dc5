"""Propagation of fleet changes onto existing units.

Version rollouts are gated: a unit is only considered updated once the unit
controller reports that it observed the new generation and is Ready.
Resource, label and storage changes are written straight through.
"""

from __future__ import annotations

import copy
import math
from typing import Any

from unitoperator.src import naming
from unitoperator.src.concurrency import fan_out, poll_until, retry_on_conflict
from unitoperator.src.constants import (
    ANNOTATION_MAIN_CONTAINER_VERSION,
    ANNOTATION_POD_TEMPLATE_HASH,
    LABEL_UNITSET_NAME,
    PHASE_FAILED,
    PHASE_READY,
    ROLLING_UPDATE,
)
from unitoperator.src.context import ReconcileContext
from unitoperator.src.drift import quantity, resources_equal, template_hash
from unitoperator.src.errors import ReconcileError
from unitoperator.src.kube import POD_TEMPLATE, UNIT, UNITSET
from unitoperator.src.podutil import (
    annotations_of,
    find_container,
    labels_of,
    name_of,
    namespace_of,
    ordinal_of,
    unit_template_spec,
)
from unitoperator.src.unitset_scale import owned_units
from unitoperator.src.unitset_template import (
    build_unit_template,
    golden_pod_template,
    is_fleet_only_annotation,
)


def _strategy(unitset: dict[str, Any]) -> dict[str, Any]:
    return (unitset.get("spec") or {}).get("updateStrategy") or {}


def max_unavailable(unitset: dict[str, Any]) -> int:
    """Return the rolling batch size: an integer or a percentage of ``units``, at least 1."""
    raw = (_strategy(unitset).get("rollingUpdate") or {}).get("maxUnavailable")
    if raw is None or raw == "":
        return 1
    replicas = (unitset.get("spec") or {}).get("units") or 0
    text = str(raw).strip()
    try:
        if text.endswith("%"):
            value = math.floor(replicas * int(text[:-1]) / 100)
        else:
            value = int(text)
    except ValueError:
        raise ReconcileError(f"invalid rollingUpdate.maxUnavailable {raw!r}") from None
    return max(value, 1)


def partition(unitset: dict[str, Any]) -> int:
    raw = (_strategy(unitset).get("rollingUpdate") or {}).get("partition") or 0
    try:
        return max(int(raw), 0)
    except (TypeError, ValueError):
        raise ReconcileError(f"invalid rollingUpdate.partition {raw!r}") from None


def needs_update(unit: dict[str, Any], version: str, golden_hash: str) -> bool:
    annotations = annotations_of(unit)
    return (
        annotations.get(ANNOTATION_MAIN_CONTAINER_VERSION) != version
        or annotations.get(ANNOTATION_POD_TEMPLATE_HASH) != golden_hash
    )


def set_in_update(ctx: ReconcileContext, unitset: dict[str, Any], value: str) -> None:
    namespace = namespace_of(unitset)
    name = name_of(unitset)

    def _attempt() -> None:
        current = ctx.store.get(UNITSET, namespace, name)
        if current is None:
            return
        status = current.setdefault("status", {})
        if status.get("inUpdate", "") == value:
            return
        status["inUpdate"] = value
        ctx.store.replace_status(UNITSET, current)

    retry_on_conflict(_attempt)


def _wait_unit_ready(ctx: ReconcileContext, namespace: str, name: str, generation: int) -> None:
    def _ready() -> bool:
        unit = ctx.store.get(UNIT, namespace, name)
        if unit is None:
            return False
        status = unit.get("status") or {}
        if status.get("phase") == PHASE_FAILED:
            raise ReconcileError(f"unit {namespace}/{name} entered phase Failed during update")
        return (status.get("observedGeneration") or 0) >= generation and status.get(
            "phase"
        ) == PHASE_READY

    wait = ctx.waits.unit_ready
    poll_until(
        _ready,
        interval=wait.interval,
        timeout=wait.timeout,
        stop_event=ctx.stop_event,
        description=f"unit {namespace}/{name} to become Ready at generation {generation}",
    )


def update_unit(
    ctx: ReconcileContext, unitset: dict[str, Any], unit_name: str, golden: dict[str, Any]
) -> None:
    """Roll one unit onto the golden template and wait until it is Ready again."""
    namespace = namespace_of(unitset)
    version = (unitset.get("spec") or {}).get("version", "")
    golden_hash = template_hash(golden.get("template") or {})

    def _write_template() -> dict[str, Any]:
        current = ctx.store.get(UNIT, namespace, unit_name)
        if current is None:
            raise ReconcileError(f"unit {namespace}/{unit_name} disappeared during update")
        template = build_unit_template(unitset, unit_name, golden)
        node = unit_template_spec(current).get("nodeName")
        if node:
            template["spec"]["nodeName"] = node
        current.setdefault("spec", {})["template"] = template
        return ctx.store.replace(UNIT, current)

    updated = retry_on_conflict(_write_template)
    generation = (updated.get("metadata") or {}).get("generation") or 0
    ctx.logger.info("Updated template of unit %s/%s to version %s", namespace, unit_name, version)

    _wait_unit_ready(ctx, namespace, unit_name, generation)

    def _stamp() -> None:
        current = ctx.store.get(UNIT, namespace, unit_name)
        if current is None:
            return
        annotations = current["metadata"].setdefault("annotations", {})
        annotations[ANNOTATION_MAIN_CONTAINER_VERSION] = version
        annotations[ANNOTATION_POD_TEMPLATE_HASH] = golden_hash
        ctx.store.replace(UNIT, current)

    retry_on_conflict(_stamp)
    ctx.events.normal(unitset, "UnitUpdated", f"unit {unit_name} updated to version {version}")


def reconcile_image_version(
    ctx: ReconcileContext, unitset: dict[str, Any], pod_template: dict[str, Any]
) -> bool:
    """Roll units onto the golden pod template when the fleet's copy is stale.

    Units are visited from the highest ordinal down, only down to
    ``rollingUpdate.partition``. With the RollingUpdate strategy they move in
    batches of ``maxUnavailable`` and every batch must become Ready before
    the next starts; other strategies update all candidates at once. The
    fleet's pod template is replaced only when no unit is left behind, so a
    lowered partition resumes the rollout. Returns True when the rollout
    completed on this pass.
    """
    golden = golden_pod_template(ctx, unitset)
    if (pod_template.get("template") or {}) == (golden.get("template") or {}):
        return False

    spec = unitset.get("spec") or {}
    version = spec.get("version", "")
    golden_hash = template_hash(golden.get("template") or {})
    floor = partition(unitset)

    pending = [
        unit
        for unit in owned_units(ctx, unitset)
        if ordinal_of(unit) is not None and needs_update(unit, version, golden_hash)
    ]
    candidates = sorted(
        (unit for unit in pending if ordinal_of(unit) >= floor),
        key=lambda unit: ordinal_of(unit),
        reverse=True,
    )
    names = [name_of(unit) for unit in candidates]

    if names:
        ctx.logger.info(
            "Rolling unitset %s/%s to version %s: %s",
            namespace_of(unitset),
            name_of(unitset),
            version,
            ", ".join(names),
        )
        if _strategy(unitset).get("type", "").lower() == ROLLING_UPDATE.lower():
            size = max_unavailable(unitset)
            for start in range(0, len(names), size):
                batch = names[start : start + size]
                set_in_update(ctx, unitset, ",".join(batch))
                fan_out(batch, lambda unit: update_unit(ctx, unitset, unit, golden))
        else:
            set_in_update(ctx, unitset, ",".join(names))
            fan_out(names, lambda unit: update_unit(ctx, unitset, unit, golden))

    if len(pending) > len(candidates):
        ctx.logger.info(
            "Unitset %s/%s holds %d unit(s) below partition %d",
            namespace_of(unitset),
            name_of(unitset),
            len(pending) - len(candidates),
            floor,
        )
        return False

    def _replace_template() -> None:
        current = ctx.store.get(POD_TEMPLATE, namespace_of(unitset), naming.pod_template_name(name_of(unitset)))
        if current is None:
            return
        current["template"] = copy.deepcopy(golden.get("template") or {})
        ctx.store.replace(POD_TEMPLATE, current)

    retry_on_conflict(_replace_template)
    set_in_update(ctx, unitset, "")
    ctx.events.normal(unitset, "RolloutComplete", f"all units run version {version}")
    return True


def _main_resources(unit: dict[str, Any], main_name: str) -> dict[str, Any] | None:
    spec = ((unit.get("spec") or {}).get("template") or {}).get("spec") or {}
    container = find_container(spec, main_name)
    if container is None:
        return None
    return container.get("resources") or {}


def reconcile_resources(ctx: ReconcileContext, unitset: dict[str, Any]) -> bool:
    """Write ``spec.resources`` onto the main container of every unit that differs."""
    spec = unitset.get("spec") or {}
    main_name = spec.get("type", "")
    desired = spec.get("resources") or {}
    namespace = namespace_of(unitset)

    stale = []
    for unit in owned_units(ctx, unitset):
        current = _main_resources(unit, main_name)
        if current is not None and not resources_equal(current, desired):
            stale.append(name_of(unit))

    def _update(unit_name: str) -> None:
        def _attempt() -> None:
            current = ctx.store.get(UNIT, namespace, unit_name)
            if current is None:
                return
            pod_spec = current["spec"]["template"]["spec"]
            container = find_container(pod_spec, main_name)
            if container is None or resources_equal(container.get("resources"), desired):
                return
            container["resources"] = copy.deepcopy(desired)
            ctx.store.replace(UNIT, current)

        retry_on_conflict(_attempt)
        ctx.logger.info("Updated resources of unit %s/%s", namespace, unit_name)

    fan_out(stale, _update)
    return bool(stale)


def mirrored_metadata(unitset: dict[str, Any]) -> tuple[dict[str, str], dict[str, str]]:
    """Labels and annotations every unit of the fleet must carry."""
    labels = dict(labels_of(unitset))
    labels[LABEL_UNITSET_NAME] = name_of(unitset)
    annotations = {
        key: value
        for key, value in annotations_of(unitset).items()
        if not is_fleet_only_annotation(key)
    }
    return labels, annotations


def reconcile_labels_annotations(ctx: ReconcileContext, unitset: dict[str, Any]) -> bool:
    """Copy fleet labels and annotations onto units without removing the units' own keys."""
    namespace = namespace_of(unitset)
    labels, annotations = mirrored_metadata(unitset)

    def _differs(unit: dict[str, Any]) -> bool:
        unit_labels = labels_of(unit)
        unit_annotations = annotations_of(unit)
        return any(unit_labels.get(k) != v for k, v in labels.items()) or any(
            unit_annotations.get(k) != v for k, v in annotations.items()
        )

    stale = [name_of(unit) for unit in owned_units(ctx, unitset) if _differs(unit)]

    def _update(unit_name: str) -> None:
        def _attempt() -> None:
            current = ctx.store.get(UNIT, namespace, unit_name)
            if current is None or not _differs(current):
                return
            meta = current["metadata"]
            meta.setdefault("labels", {}).update(labels)
            meta.setdefault("annotations", {}).update(annotations)
            ctx.store.replace(UNIT, current)

        retry_on_conflict(_attempt)

    fan_out(stale, _update)
    return bool(stale)


def _grow_claims(unit: dict[str, Any], sizes: dict[str, str]) -> bool:
    changed = False
    for template in (unit.get("spec") or {}).get("volumeClaimTemplates") or []:
        size = sizes.get(template.get("name"))
        if not size:
            continue
        requests = template.setdefault("spec", {}).setdefault("resources", {}).setdefault("requests", {})
        if quantity(requests.get("storage")) < quantity(size):
            requests["storage"] = size
            changed = True
    return changed


def reconcile_storage(ctx: ReconcileContext, unitset: dict[str, Any]) -> bool:
    """Raise unit claim template requests to the declared sizes; never shrink them."""
    namespace = namespace_of(unitset)
    sizes = {
        storage["name"]: storage.get("size")
        for storage in (unitset.get("spec") or {}).get("storage") or []
    }
    if not sizes:
        return False
    stale = [
        name_of(unit)
        for unit in owned_units(ctx, unitset)
        if _grow_claims(copy.deepcopy(unit), sizes)
    ]

    def _update(unit_name: str) -> None:
        def _attempt() -> None:
            current = ctx.store.get(UNIT, namespace, unit_name)
            if current is None or not _grow_claims(current, sizes):
                return
            ctx.store.replace(UNIT, current)

        retry_on_conflict(_attempt)
        ctx.logger.info("Expanded claim templates of unit %s/%s", namespace, unit_name)

    fan_out(stale, _update)
    return bool(stale)
