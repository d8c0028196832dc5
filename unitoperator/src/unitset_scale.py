from __future__ import annotations

import json
from typing import Any

from kubernetes.client import ApiException

from unitoperator.src import naming
from unitoperator.src.concurrency import fan_out
from unitoperator.src.constants import ANNOTATION_NODE_NAME_MAP
from unitoperator.src.context import ReconcileContext
from unitoperator.src.errors import is_already_exists
from unitoperator.src.kube import UNIT, UNITSET
from unitoperator.src.podutil import (
    name_of,
    namespace_of,
    ordinal_of,
    unitset_label_selector,
)
from unitoperator.src.unitset_template import build_unit, node_name_map


def owned_units(ctx: ReconcileContext, unitset: dict[str, Any]) -> list[dict[str, Any]]:
    return ctx.store.list(
        UNIT, namespace_of(unitset), label_selector=unitset_label_selector(name_of(unitset))
    )


def reconcile_units(
    ctx: ReconcileContext, unitset: dict[str, Any], pod_template: dict[str, Any]
) -> bool:
    """Create units for missing ordinals and delete units at or above ``spec.units``.

    Returns True when any unit was created or deleted.
    """
    namespace = namespace_of(unitset)
    replicas = (unitset.get("spec") or {}).get("units") or 0
    existing = {name_of(unit) for unit in owned_units(ctx, unitset)}
    missing = [
        (ordinal, naming.unit_name(name_of(unitset), ordinal))
        for ordinal in range(replicas)
        if naming.unit_name(name_of(unitset), ordinal) not in existing
    ]

    def _create(item: tuple[int, str]) -> None:
        ordinal, unit = item
        if ctx.store.get(UNIT, namespace, unit) is not None:
            return
        try:
            ctx.store.create(UNIT, build_unit(unitset, unit, ordinal, pod_template))
        except ApiException as exc:
            if not is_already_exists(exc):
                raise
            return
        ctx.logger.info("Created unit %s/%s", namespace, unit)

    fan_out(missing, _create, key=lambda item: item[1])

    removed = False
    for unit in owned_units(ctx, unitset):
        ordinal = ordinal_of(unit)
        if ordinal is None or ordinal < replicas:
            continue
        if ctx.store.delete(UNIT, namespace, name_of(unit)):
            ctx.logger.info("Deleted unit %s/%s (ordinal %d >= %d)", namespace, name_of(unit), ordinal, replicas)
            removed = True
    return bool(missing) or removed


def backfill_node_names(ctx: ReconcileContext, unitset: dict[str, Any]) -> None:
    """Record the node each unit landed on so a recreated pod returns to it.

    Entries explicitly set to ``null`` (unpinned) are left alone.
    """
    current = node_name_map(unitset)
    updated = dict(current)
    for unit in owned_units(ctx, unitset):
        node = (unit.get("status") or {}).get("nodeName")
        if not node:
            continue
        name = name_of(unit)
        if name in current and current[name] is None:
            continue
        updated[name] = node
    if updated == current:
        return
    ctx.store.patch(
        UNITSET,
        namespace_of(unitset),
        name_of(unitset),
        {"metadata": {"annotations": {ANNOTATION_NODE_NAME_MAP: json.dumps(updated, sort_keys=True)}}},
    )
    ctx.logger.info("Updated node name map of unitset %s/%s", namespace_of(unitset), name_of(unitset))
