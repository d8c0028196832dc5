"""Fleet config maps: the shared template copy and one value map per unit.

Value maps hold per-unit customizations. On a version change they are
carried forward onto the new version's defaults instead of being replaced.
"""

from __future__ import annotations

import copy
from collections.abc import Iterator
from typing import Any

import yaml

from unitoperator.src import naming
from unitoperator.src.concurrency import fan_out
from unitoperator.src.constants import ANNOTATION_MAIN_CONTAINER_VERSION
from unitoperator.src.context import ReconcileContext
from unitoperator.src.errors import ReconcileError
from unitoperator.src.kube import CONFIG_MAP
from unitoperator.src.podutil import labels_of, name_of, namespace_of, owner_reference


def _leaves(tree: dict[str, Any], prefix: tuple[str, ...] = ()) -> Iterator[tuple[tuple[str, ...], Any]]:
    for key, value in tree.items():
        path = prefix + (key,)
        if isinstance(value, dict) and value:
            yield from _leaves(value, path)
        else:
            yield path, value


def overlay_values(current: str, incoming: str) -> str:
    """Return ``incoming`` YAML with every leaf key of ``current`` written over it.

    Keys only present in ``incoming`` (new defaults) survive; every value the
    unit already had, customized or not, wins.
    """
    try:
        current_tree = yaml.safe_load(current) or {}
        incoming_tree = yaml.safe_load(incoming) or {}
    except yaml.YAMLError as exc:
        raise ReconcileError(f"config value is not valid YAML: {exc}") from exc
    if not isinstance(current_tree, dict) or not isinstance(incoming_tree, dict):
        raise ReconcileError("config value must be a YAML mapping")

    merged = copy.deepcopy(incoming_tree)
    for path, value in _leaves(current_tree):
        node = merged
        for key in path[:-1]:
            child = node.get(key)
            if not isinstance(child, dict):
                child = {}
                node[key] = child
            node = child
        node[path[-1]] = copy.deepcopy(value)
    return yaml.safe_dump(merged, default_flow_style=False, sort_keys=True)


def _version(obj: dict[str, Any]) -> str:
    return ((obj.get("metadata") or {}).get("annotations") or {}).get(
        ANNOTATION_MAIN_CONTAINER_VERSION, ""
    )


def _global(ctx: ReconcileContext, name: str) -> dict[str, Any]:
    found = ctx.store.get(CONFIG_MAP, ctx.config.manager_namespace, name)
    if found is None:
        raise ReconcileError(f"config map {ctx.config.manager_namespace}/{name} not found")
    return found


def _new_config_map(unitset: dict[str, Any], name: str, data: dict[str, str]) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {
            "name": name,
            "namespace": namespace_of(unitset),
            "labels": dict(labels_of(unitset)),
            "annotations": {
                ANNOTATION_MAIN_CONTAINER_VERSION: (unitset.get("spec") or {}).get("version", "")
            },
            "ownerReferences": [owner_reference(unitset)],
        },
        "data": dict(data or {}),
    }


def reconcile_template(ctx: ReconcileContext, unitset: dict[str, Any]) -> None:
    spec = unitset.get("spec") or {}
    name = naming.config_template_name(name_of(unitset))
    current = ctx.store.get(CONFIG_MAP, namespace_of(unitset), name)
    if current is None:
        source = _global(ctx, naming.global_config_template_name(spec))
        ctx.store.create(CONFIG_MAP, _new_config_map(unitset, name, source.get("data")))
        ctx.logger.info("Created config template %s/%s", namespace_of(unitset), name)
        return

    if _version(current) == spec.get("version", ""):
        return
    ctx.logger.info(
        "Config template %s/%s moves from version %s to %s",
        namespace_of(unitset), name, _version(current) or "<none>", spec.get("version"),
    )
    source = _global(ctx, naming.global_config_template_name(spec))
    current["data"] = dict(source.get("data") or {})
    current["metadata"].setdefault("annotations", {})[ANNOTATION_MAIN_CONTAINER_VERSION] = spec.get(
        "version", ""
    )
    ctx.store.replace(CONFIG_MAP, current)


def reconcile_value(ctx: ReconcileContext, unitset: dict[str, Any], unit: str) -> None:
    spec = unitset.get("spec") or {}
    key = spec.get("type", "")
    name = naming.config_value_name(unit)
    current = ctx.store.get(CONFIG_MAP, namespace_of(unitset), name)
    if current is None:
        source = _global(ctx, naming.global_config_value_name(spec))
        ctx.store.create(CONFIG_MAP, _new_config_map(unitset, name, source.get("data")))
        return

    old_version = _version(current)
    if old_version == spec.get("version", ""):
        return

    source = _global(ctx, naming.global_config_value_name(spec))
    incoming = (source.get("data") or {}).get(key)
    if incoming is None:
        return

    data = current.get("data") or {}
    current["data"] = data
    existing = data.get(key)
    if existing is None:
        data[key] = incoming
    else:
        previous = ctx.store.get(
            CONFIG_MAP,
            ctx.config.manager_namespace,
            naming.global_config_value_name(spec, version=old_version),
        )
        previous_content = ((previous or {}).get("data") or {}).get(key, "")
        if previous_content and previous_content == existing:
            # Never customized: take the new defaults verbatim.
            data[key] = incoming
        else:
            data[key] = overlay_values(existing, incoming)

    current["metadata"].setdefault("annotations", {})[ANNOTATION_MAIN_CONTAINER_VERSION] = spec.get(
        "version", ""
    )
    ctx.store.replace(CONFIG_MAP, current)
    ctx.logger.info("Carried config value %s forward to version %s", name, spec.get("version"))


def reconcile_config(ctx: ReconcileContext, unitset: dict[str, Any]) -> None:
    reconcile_template(ctx, unitset)
    units = naming.unit_names(name_of(unitset), (unitset.get("spec") or {}).get("units") or 0)
    fan_out(units, lambda unit: reconcile_value(ctx, unitset, unit))
