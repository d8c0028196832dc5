"""Pure comparison and synthesis of unit pods.

Nothing in this module talks to the API server: it answers "does this pod
still match its unit?" and builds the objects the unit reconciler writes.
"""

from __future__ import annotations

import copy
import json
import logging
from decimal import Decimal
from hashlib import sha256
from typing import Any

from kubernetes.utils import parse_quantity

from unitoperator.src.podutil import (
    find_container,
    main_container_name,
    owner_reference,
    unit_template_spec,
)

LOGGER = logging.getLogger(__name__)

NODE_AFFINITY_REASON = "NodeAffinity"


def quantity(value: Any) -> Decimal:
    if value is None or value == "":
        return Decimal(0)
    return parse_quantity(value)


def _resource(container: dict[str, Any], section: str, name: str) -> Decimal:
    return quantity(((container.get("resources") or {}).get(section) or {}).get(name))


def resources_equal(a: dict[str, Any] | None, b: dict[str, Any] | None) -> bool:
    """Compare cpu and memory requests and limits by quantity, so ``1`` equals ``1000m``."""
    a = {"resources": a or {}}
    b = {"resources": b or {}}
    for section in ("requests", "limits"):
        for name in ("cpu", "memory"):
            if _resource(a, section, name) != _resource(b, section, name):
                return False
    return True


def envs_match(unit_envs: list[dict[str, Any]] | None, pod_envs: list[dict[str, Any]] | None) -> bool:
    """Return True when a pod's env list carries exactly what the unit declares.

    A literal value must match, a ``valueFrom`` must be identical, and an
    entry declaring neither requires the pod to declare neither. Entries
    present on only one side are a mismatch.
    """
    # The API server drops empty lists, so a missing list equals an empty one.
    unit_envs = unit_envs or []
    pod_envs = pod_envs or []
    if not unit_envs and not pod_envs:
        return True

    matched = len(unit_envs) == len(pod_envs)
    remaining = {env.get("name"): env for env in pod_envs}
    for env in unit_envs:
        name = env.get("name")
        pod_env = remaining.pop(name, None)
        if pod_env is None:
            LOGGER.debug("env %s declared on unit but missing from pod", name)
            matched = False
            continue
        value = env.get("value") or ""
        value_from = env.get("valueFrom")
        if value and value != (pod_env.get("value") or ""):
            matched = False
        elif value_from is not None and value_from != pod_env.get("valueFrom"):
            matched = False
        elif not value and value_from is None:
            if pod_env.get("value") or pod_env.get("valueFrom") is not None:
                matched = False
    if remaining:
        LOGGER.debug("env %s present on pod but not on unit", ", ".join(sorted(map(str, remaining))))
        matched = False
    return matched


def recreate_reason(unit: dict[str, Any], pod: dict[str, Any]) -> str:
    """Return why ``pod`` must be deleted and recreated, or ``""`` when it can be patched.

    Checks run in a fixed order and the first hit wins: main container image,
    cpu, memory, env; then env of every other container and init container;
    then a node-affinity admission failure.
    """
    main_name = main_container_name(unit)
    unit_spec = unit_template_spec(unit)
    pod_spec = pod.get("spec") or {}

    for container in unit_spec.get("containers") or []:
        live = find_container(pod_spec, container.get("name", ""))
        if live is None:
            continue
        if container.get("name") == main_name:
            if container.get("image") != live.get("image"):
                return "image changed"
            for section in ("requests", "limits"):
                if _resource(container, section, "cpu") != _resource(live, section, "cpu"):
                    return "cpu changed"
            for section in ("requests", "limits"):
                if _resource(container, section, "memory") != _resource(live, section, "memory"):
                    return "memory changed"
            if not envs_match(container.get("env"), live.get("env")):
                return "env changed"
        elif not envs_match(container.get("env"), live.get("env")):
            return f"container {container.get('name')} env changed"

    live_init = {c.get("name"): c for c in pod_spec.get("initContainers") or []}
    for container in unit_spec.get("initContainers") or []:
        live = live_init.get(container.get("name"))
        if live is not None and not envs_match(container.get("env"), live.get("env")):
            return "init container env changed"

    status = pod.get("status") or {}
    if (
        pod_spec.get("nodeName")
        and status.get("reason") == NODE_AFFINITY_REASON
        and status.get("phase") == "Failed"
    ):
        return "pod predicate NodeAffinity failed"
    return ""


def _merge_missing(primary: dict[str, str] | None, secondary: dict[str, str] | None) -> dict[str, str]:
    merged = dict(primary or {})
    for key, value in (secondary or {}).items():
        merged.setdefault(key, value)
    return merged


def build_pod(unit: dict[str, Any]) -> dict[str, Any]:
    """Synthesize the pod for ``unit``.

    Template labels and annotations take precedence; unit metadata fills in
    keys the template does not set.
    """
    meta = unit.get("metadata") or {}
    template = (unit.get("spec") or {}).get("template") or {}
    template_meta = template.get("metadata") or {}
    return {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {
            "name": meta.get("name", ""),
            "namespace": meta.get("namespace", ""),
            "labels": _merge_missing(template_meta.get("labels"), meta.get("labels")),
            "annotations": _merge_missing(
                template_meta.get("annotations"), meta.get("annotations")
            ),
            "ownerReferences": [owner_reference(unit)],
        },
        "spec": copy.deepcopy(template.get("spec") or {}),
    }


def pod_patch(unit: dict[str, Any], pod: dict[str, Any]) -> dict[str, Any]:
    """Strategic merge patch that brings in-place mutable pod fields in line with ``unit``.

    Covers unit labels and annotations, node adoption and the images of
    containers other than the main one. Returns ``{}`` when nothing differs.
    """
    meta = unit.get("metadata") or {}
    pod_meta = pod.get("metadata") or {}
    patch: dict[str, Any] = {}

    labels = {
        key: value
        for key, value in (meta.get("labels") or {}).items()
        if (pod_meta.get("labels") or {}).get(key) != value
    }
    annotations = {
        key: value
        for key, value in (meta.get("annotations") or {}).items()
        if (pod_meta.get("annotations") or {}).get(key) != value
    }
    if labels:
        patch.setdefault("metadata", {})["labels"] = labels
    if annotations:
        patch.setdefault("metadata", {})["annotations"] = annotations

    unit_spec = unit_template_spec(unit)
    pod_spec = pod.get("spec") or {}
    desired_node = unit_spec.get("nodeName") or ""
    live_node = pod_spec.get("nodeName") or ""
    if desired_node and desired_node != live_node:
        patch.setdefault("spec", {})["nodeName"] = desired_node

    main_name = main_container_name(unit)
    images = []
    for container in unit_spec.get("containers") or []:
        name = container.get("name")
        if name == main_name:
            continue
        live = find_container(pod_spec, name or "")
        if live is not None and live.get("image") != container.get("image"):
            images.append({"name": name, "image": container.get("image")})
    if images:
        patch.setdefault("spec", {})["containers"] = images
    return patch


def template_hash(template: dict[str, Any]) -> str:
    """Return a stable SHA-256 hex digest of a pod template."""
    payload = json.dumps(template or {}, sort_keys=True, separators=(",", ":"))
    return sha256(payload.encode("utf-8")).hexdigest()
