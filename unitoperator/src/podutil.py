from __future__ import annotations

from typing import Any

from unitoperator.src.constants import (
    AGENT_CONTAINER_NAME,
    ANNOTATION_FORCE_DELETE,
    ANNOTATION_MAIN_CONTAINER_NAME,
    ANNOTATION_MAINTENANCE,
    LABEL_UNIT_SN,
    LABEL_UNITSET_NAME,
)


def name_of(obj: dict[str, Any]) -> str:
    return (obj.get("metadata") or {}).get("name", "")


def namespace_of(obj: dict[str, Any]) -> str:
    return (obj.get("metadata") or {}).get("namespace", "")


def labels_of(obj: dict[str, Any] | None) -> dict[str, str]:
    return ((obj or {}).get("metadata") or {}).get("labels") or {}


def annotations_of(obj: dict[str, Any] | None) -> dict[str, str]:
    return ((obj or {}).get("metadata") or {}).get("annotations") or {}


def is_deleting(obj: dict[str, Any]) -> bool:
    return bool((obj.get("metadata") or {}).get("deletionTimestamp"))


def has_finalizer(obj: dict[str, Any], finalizer: str) -> bool:
    return finalizer in ((obj.get("metadata") or {}).get("finalizers") or [])


def in_maintenance(obj: dict[str, Any]) -> bool:
    return annotations_of(obj).get(ANNOTATION_MAINTENANCE, "").lower() == "true"


def force_delete_requested(obj: dict[str, Any]) -> bool:
    return annotations_of(obj).get(ANNOTATION_FORCE_DELETE, "").lower() == "true"


def ordinal_of(unit: dict[str, Any]) -> int | None:
    raw = labels_of(unit).get(LABEL_UNIT_SN)
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def unitset_label_selector(unitset_name: str) -> str:
    return f"{LABEL_UNITSET_NAME}={unitset_name}"


def owner_reference(owner: dict[str, Any]) -> dict[str, Any]:
    meta = owner.get("metadata") or {}
    return {
        "apiVersion": owner.get("apiVersion", ""),
        "kind": owner.get("kind", ""),
        "name": meta.get("name", ""),
        "uid": meta.get("uid", ""),
        "controller": True,
        "blockOwnerDeletion": True,
    }


# ----------------------------------------------------------------------
# Unit helpers
# ----------------------------------------------------------------------


def main_container_name(unit: dict[str, Any]) -> str:
    return annotations_of(unit).get(ANNOTATION_MAIN_CONTAINER_NAME, "")


def unit_template_spec(unit: dict[str, Any]) -> dict[str, Any]:
    return (((unit.get("spec") or {}).get("template") or {}).get("spec")) or {}


def find_container(pod_spec: dict[str, Any], name: str) -> dict[str, Any] | None:
    for container in pod_spec.get("containers") or []:
        if container.get("name") == name:
            return container
    return None


def pod_node_name(pod: dict[str, Any]) -> str:
    return (pod.get("spec") or {}).get("nodeName") or ""


# ----------------------------------------------------------------------
# Pod status helpers
# ----------------------------------------------------------------------


def pod_phase(pod: dict[str, Any] | None) -> str:
    return ((pod or {}).get("status") or {}).get("phase") or ""


def _condition(pod: dict[str, Any] | None, condition_type: str) -> bool:
    for condition in ((pod or {}).get("status") or {}).get("conditions") or []:
        if condition.get("type") == condition_type:
            return condition.get("status") == "True"
    return False


def pod_ready(pod: dict[str, Any] | None) -> bool:
    return _condition(pod, "Ready")


def pod_initialized(pod: dict[str, Any] | None) -> bool:
    return _condition(pod, "Initialized")


def pod_scheduled(pod: dict[str, Any] | None) -> bool:
    return bool(pod_node_name(pod or {}))


def container_status(pod: dict[str, Any] | None, name: str) -> dict[str, Any] | None:
    for status in ((pod or {}).get("status") or {}).get("containerStatuses") or []:
        if status.get("name") == name:
            return status
    return None


def container_ready(pod: dict[str, Any] | None, name: str) -> bool:
    status = container_status(pod, name)
    return bool(status and status.get("ready"))


def container_running(pod: dict[str, Any] | None, name: str) -> bool:
    status = container_status(pod, name)
    return bool(status and (status.get("state") or {}).get("running") is not None)


def agent_ready(pod: dict[str, Any] | None) -> bool:
    return container_running(pod, AGENT_CONTAINER_NAME) and container_ready(
        pod, AGENT_CONTAINER_NAME
    )


def pod_ip(pod: dict[str, Any] | None) -> str:
    pod_ips = ((pod or {}).get("status") or {}).get("podIPs") or []
    if pod_ips and pod_ips[0].get("ip"):
        return pod_ips[0]["ip"]
    return ((pod or {}).get("status") or {}).get("podIP") or ""
