from __future__ import annotations

from typing import Any

from unitoperator.src import naming
from unitoperator.src.concurrency import fan_out, poll_until
from unitoperator.src.constants import FINALIZER_CONFIGMAP_DELETE, FINALIZER_UNIT_DELETE
from unitoperator.src.context import ReconcileContext
from unitoperator.src.kube import CONFIG_MAP, UNIT, UNITSET
from unitoperator.src.podutil import name_of, namespace_of
from unitoperator.src.unit_delete import remove_finalizer
from unitoperator.src.unitset_scale import owned_units


def _delete_units(ctx: ReconcileContext, unitset: dict[str, Any]) -> None:
    namespace = namespace_of(unitset)
    for unit in owned_units(ctx, unitset):
        if ctx.store.delete(UNIT, namespace, name_of(unit)):
            ctx.logger.info("Deleted unit %s/%s", namespace, name_of(unit))
    wait = ctx.waits.units_gone
    poll_until(
        lambda: not owned_units(ctx, unitset),
        interval=wait.interval,
        timeout=wait.timeout,
        stop_event=ctx.stop_event,
        description=f"units of unitset {namespace}/{name_of(unitset)} deletion",
    )
    remove_finalizer(ctx, UNITSET, unitset, FINALIZER_UNIT_DELETE)


def _delete_config_map(ctx: ReconcileContext, namespace: str, name: str) -> None:
    ctx.store.delete(CONFIG_MAP, namespace, name)
    wait = ctx.waits.config_map_gone
    poll_until(
        lambda: ctx.store.get(CONFIG_MAP, namespace, name) is None,
        interval=wait.interval,
        timeout=wait.timeout,
        stop_event=ctx.stop_event,
        description=f"config map {namespace}/{name} deletion",
    )


def _delete_config_maps(ctx: ReconcileContext, unitset: dict[str, Any]) -> None:
    namespace = namespace_of(unitset)
    replicas = (unitset.get("spec") or {}).get("units") or 0
    names = [naming.config_template_name(name_of(unitset))]
    names += [naming.config_value_name(unit) for unit in naming.unit_names(name_of(unitset), replicas)]
    fan_out(names, lambda name: _delete_config_map(ctx, namespace, name))
    remove_finalizer(ctx, UNITSET, unitset, FINALIZER_CONFIGMAP_DELETE)


HANDLERS = {
    FINALIZER_UNIT_DELETE: _delete_units,
    FINALIZER_CONFIGMAP_DELETE: _delete_config_maps,
}


def finalize_unitset(ctx: ReconcileContext, unitset: dict[str, Any]) -> None:
    """Remove a deleting fleet's units and config maps, one concurrent task per finalizer."""
    finalizers = [
        finalizer
        for finalizer in (unitset.get("metadata") or {}).get("finalizers") or []
        if finalizer in HANDLERS
    ]
    fan_out(finalizers, lambda finalizer: HANDLERS[finalizer](ctx, unitset))
