from __future__ import annotations

import copy
from typing import Any

from unitoperator.src import naming
from unitoperator.src.concurrency import retry_on_conflict
from unitoperator.src.constants import (
    ANNOTATION_CONFIG_TEMPLATE_VERSION,
    ANNOTATION_CONFIG_VALUE_VERSION,
    CONDITION_FALSE,
    CONDITION_TRUE,
    PHASE_READY,
    PHASE_RUNNING,
)
from unitoperator.src.context import ReconcileContext
from unitoperator.src.drift import recreate_reason
from unitoperator.src.errors import AgentError
from unitoperator.src.events import utc_now_rfc3339
from unitoperator.src.kube import CONFIG_MAP, NODE, PERSISTENT_VOLUME_CLAIM, POD, UNIT
from unitoperator.src.podutil import (
    agent_ready,
    annotations_of,
    name_of,
    namespace_of,
    pod_node_name,
    pod_phase,
    pod_ready,
)

TIMESTAMP_FIELDS = ("lastTransitionTime",)


def strip_timestamps(value: Any) -> Any:
    """Return ``value`` without any ``lastTransitionTime`` keys, at any depth."""
    if isinstance(value, dict):
        return {k: strip_timestamps(v) for k, v in value.items() if k not in TIMESTAMP_FIELDS}
    if isinstance(value, list):
        return [strip_timestamps(v) for v in value]
    return value


def node_ready(node: dict[str, Any]) -> str:
    for condition in (node.get("status") or {}).get("conditions") or []:
        if condition.get("type") == "Ready" and condition.get("status") == "True":
            return CONDITION_TRUE
    return CONDITION_FALSE


def claim_snapshot(claim: dict[str, Any]) -> dict[str, Any]:
    spec = claim.get("spec") or {}
    status = claim.get("status") or {}
    return {
        "name": name_of(claim),
        "volumeName": spec.get("volumeName", ""),
        "accessModes": list(spec.get("accessModes") or []),
        "capacity": {"storage": (status.get("capacity") or {}).get("storage", "")},
        "phase": status.get("phase", ""),
    }


def config_synced(
    unit: dict[str, Any],
    template_cm: dict[str, Any] | None,
    value_cm: dict[str, Any] | None,
) -> bool:
    """True when both version stamps on the unit match the live config maps."""
    if template_cm is None or value_cm is None:
        return False
    annotations = annotations_of(unit)
    template_version = annotations.get(ANNOTATION_CONFIG_TEMPLATE_VERSION)
    value_version = annotations.get(ANNOTATION_CONFIG_VALUE_VERSION)
    return (
        bool(template_version)
        and template_version == (template_cm.get("metadata") or {}).get("resourceVersion")
        and value_version == (value_cm.get("metadata") or {}).get("resourceVersion")
    )


def build_status(
    unit: dict[str, Any],
    pod: dict[str, Any] | None,
    node: dict[str, Any] | None,
    claims: list[dict[str, Any]],
    synced: bool,
    process_state: str,
    now: str,
) -> dict[str, Any]:
    """Derive the next unit status from observed state, starting from the current one."""
    status = copy.deepcopy(unit.get("status") or {})

    if pod is not None:
        pod_status = pod.get("status") or {}
        status["hostIP"] = pod_status.get("hostIP", "")
        status["podIPs"] = copy.deepcopy(pod_status.get("podIPs") or [])
        if pod_phase(pod) == "Running":
            if pod_ready(pod):
                status["phase"] = PHASE_READY
                status["task"] = ""
            else:
                status["phase"] = PHASE_RUNNING
        else:
            status["phase"] = pod_phase(pod)
        status["processState"] = process_state

        # A pod that still needs recreating has not observed this generation,
        # even when its stale container reports ready.
        if not recreate_reason(unit, pod):
            generation = (unit.get("metadata") or {}).get("generation")
            if generation is not None:
                status["observedGeneration"] = generation

    if node is not None:
        status["nodeReady"] = node_ready(node)
        status["nodeName"] = name_of(node)

    if claims:
        status["persistentVolumeClaim"] = [claim_snapshot(claim) for claim in claims]

    flag = CONDITION_TRUE if synced else CONDITION_FALSE
    previous = status.get("configSynced") or {}
    if previous.get("status") != flag:
        status["configSynced"] = {"status": flag, "lastTransitionTime": now}

    return status


def _process_state(ctx: ReconcileContext, unit: dict[str, Any], pod: dict[str, Any]) -> str:
    if not agent_ready(pod):
        return ""
    try:
        return ctx.agent.service_status(unit, pod)
    except AgentError as exc:
        ctx.logger.warning("Failed to read process state of unit %s: %s", name_of(unit), exc)
        return ""


def refresh_status(ctx: ReconcileContext, unit: dict[str, Any]) -> dict[str, Any]:
    """Recompute and write the unit's status, returning the latest unit.

    The write is skipped when only timestamps would change, so repeated
    passes over a converged unit are free of status writes.
    """
    namespace = namespace_of(unit)
    name = name_of(unit)

    def _attempt() -> dict[str, Any]:
        current = ctx.store.get(UNIT, namespace, name)
        if current is None:
            return unit
        pod = ctx.store.get(POD, namespace, name)
        node = None
        if pod is not None and pod_node_name(pod):
            node = ctx.store.get(NODE, "", pod_node_name(pod))
        claims = []
        for template in (current.get("spec") or {}).get("volumeClaimTemplates") or []:
            claim = ctx.store.get(
                PERSISTENT_VOLUME_CLAIM, namespace, naming.claim_name(name, template.get("name", ""))
            )
            if claim is not None:
                claims.append(claim)
        spec = current.get("spec") or {}
        template_cm = value_cm = None
        if spec.get("configTemplateName"):
            template_cm = ctx.store.get(CONFIG_MAP, namespace, spec["configTemplateName"])
        if spec.get("configValueName"):
            value_cm = ctx.store.get(CONFIG_MAP, namespace, spec["configValueName"])

        process_state = _process_state(ctx, current, pod) if pod is not None else ""
        status = build_status(
            current,
            pod,
            node,
            claims,
            config_synced(current, template_cm, value_cm),
            process_state,
            utc_now_rfc3339(),
        )
        if strip_timestamps(status) == strip_timestamps(current.get("status") or {}):
            return current
        current["status"] = status
        return ctx.store.replace_status(UNIT, current)

    return retry_on_conflict(_attempt)


def mark_recreating(ctx: ReconcileContext, unit: dict[str, Any], reason: str) -> None:
    """Record that the unit's pod is being recreated and clear stale pod fields."""
    namespace = namespace_of(unit)
    name = name_of(unit)

    def _attempt() -> None:
        current = ctx.store.get(UNIT, namespace, name)
        if current is None:
            return
        status = current.setdefault("status", {})
        status["task"] = reason
        status["phase"] = ""
        status["hostIP"] = ""
        status["podIPs"] = []
        ctx.store.replace_status(UNIT, current)

    retry_on_conflict(_attempt)
