"""Config sync and service lifecycle driven through the unit's sidecar agent."""

from __future__ import annotations

from typing import Any

from unitoperator.src.concurrency import poll_until, retry_on_conflict
from unitoperator.src.config import Poll
from unitoperator.src.constants import (
    ANNOTATION_CONFIG_TEMPLATE_VERSION,
    ANNOTATION_CONFIG_VALUE_VERSION,
    PROCESS_RUNNING,
    PROCESS_STARTING,
)
from unitoperator.src.context import ReconcileContext
from unitoperator.src.drift import build_pod
from unitoperator.src.errors import AgentError, ReconcileError, WaitTimeoutError
from unitoperator.src.kube import CONFIG_MAP, POD, UNIT
from unitoperator.src.metrics import METRICS
from unitoperator.src.podutil import (
    agent_ready,
    annotations_of,
    container_ready,
    container_running,
    find_container,
    in_maintenance,
    main_container_name,
    name_of,
    namespace_of,
    pod_initialized,
    pod_ip,
    pod_phase,
    pod_ready,
    pod_scheduled,
)


def probe_poll(pod: dict[str, Any], container_name: str, fallback: Poll) -> Poll:
    """Derive a wait from the container's readiness probe.

    The interval is ``periodSeconds`` and the timeout allows
    ``successThreshold`` periods plus one probe timeout.
    """
    container = find_container(pod.get("spec") or {}, container_name) or {}
    probe = container.get("readinessProbe") or {}
    period = probe.get("periodSeconds") or 0
    if period <= 0:
        return fallback
    timeout = period * (probe.get("successThreshold") or 1) + (probe.get("timeoutSeconds") or 1)
    return Poll(period, timeout)


def _config_maps(
    ctx: ReconcileContext, unit: dict[str, Any]
) -> tuple[dict[str, Any], dict[str, Any]]:
    spec = unit.get("spec") or {}
    namespace = namespace_of(unit)
    template_cm = ctx.store.get(CONFIG_MAP, namespace, spec.get("configTemplateName", ""))
    if template_cm is None:
        raise ReconcileError(f"config template {spec.get('configTemplateName')} not found")
    value_cm = ctx.store.get(CONFIG_MAP, namespace, spec.get("configValueName", ""))
    if value_cm is None:
        raise ReconcileError(f"config value {spec.get('configValueName')} not found")
    return template_cm, value_cm


def _stamp_versions(
    ctx: ReconcileContext,
    unit: dict[str, Any],
    template_cm: dict[str, Any],
    value_cm: dict[str, Any],
) -> None:
    namespace = namespace_of(unit)
    name = name_of(unit)
    stamps = {
        ANNOTATION_CONFIG_TEMPLATE_VERSION: template_cm["metadata"].get("resourceVersion", ""),
        ANNOTATION_CONFIG_VALUE_VERSION: value_cm["metadata"].get("resourceVersion", ""),
    }

    def _attempt() -> None:
        current = ctx.store.get(UNIT, namespace, name)
        if current is None:
            return
        annotations = current["metadata"].setdefault("annotations", {})
        if all(annotations.get(key) == value for key, value in stamps.items()):
            return
        annotations.update(stamps)
        ctx.store.replace(UNIT, current)

    retry_on_conflict(_attempt)


def _push_config(ctx: ReconcileContext, unit: dict[str, Any], pod: dict[str, Any]) -> str:
    spec = unit.get("spec") or {}
    return ctx.agent.sync_config(
        unit,
        pod,
        main_container=main_container_name(unit),
        template_config_map=spec.get("configTemplateName", ""),
        value_config_map=spec.get("configValueName", ""),
    )


def reload_config(ctx: ReconcileContext, unit: dict[str, Any], pod: dict[str, Any]) -> None:
    """Re-push config to a running unit whose config maps changed since the last sync."""
    annotations = annotations_of(unit)
    template_version = annotations.get(ANNOTATION_CONFIG_TEMPLATE_VERSION)
    value_version = annotations.get(ANNOTATION_CONFIG_VALUE_VERSION)
    if template_version is None or value_version is None:
        return

    template_cm, value_cm = _config_maps(ctx, unit)
    if (
        template_version == template_cm["metadata"].get("resourceVersion")
        and value_version == value_cm["metadata"].get("resourceVersion")
    ):
        return
    if not agent_ready(pod):
        ctx.events.warning(unit, "ResourceCheck", "unit-agent not ready, config reload postponed")
        return
    if not pod_ip(pod):
        raise ReconcileError("reload unit config failed: pod has no IP")

    _push_config(ctx, unit, pod)
    _stamp_versions(ctx, unit, template_cm, value_cm)
    ctx.logger.info("Reloaded config of unit %s/%s", namespace_of(unit), name_of(unit))


def sync_config(ctx: ReconcileContext, unit: dict[str, Any]) -> None:
    """Render the unit's config through its agent before the main process starts.

    A sync that keeps failing past the readiness-probe window recreates the
    pod and fails the pass; the next pass starts from a fresh pod.
    """
    if in_maintenance(unit):
        return
    namespace = namespace_of(unit)
    name = name_of(unit)
    pod = ctx.store.get(POD, namespace, name)
    if pod is None:
        raise ReconcileError(f"pod {namespace}/{name} not found")
    if not pod_initialized(pod):
        ctx.events.warning(unit, "ResourceCheck", "pod not initialized, config sync postponed")
        return

    if pod_phase(pod) == "Running":
        reload_config(ctx, unit, pod)

    main_name = main_container_name(unit)
    if (container_running(pod, main_name) and container_ready(pod, main_name)) or not (
        unit.get("spec") or {}
    ).get("startup"):
        return
    if not agent_ready(pod):
        ctx.events.warning(unit, "ResourceCheck", "unit-agent not ready, config sync postponed")
        return
    if not pod_ip(pod):
        raise ReconcileError("sync unit config failed: pod has no IP")

    wait = probe_poll(pod, main_name, ctx.waits.config_sync_fallback)
    last_error: list[AgentError] = []

    def _synced() -> bool:
        try:
            _push_config(ctx, unit, pod)
        except AgentError as exc:
            last_error[:] = [exc]
            return False
        return True

    try:
        poll_until(
            _synced,
            interval=wait.interval,
            timeout=wait.timeout,
            stop_event=ctx.stop_event,
            immediate=False,
            description=f"config sync of unit {name}",
        )
    except WaitTimeoutError:
        detail = str(last_error[0]) if last_error else "no response"
        ctx.events.warning(
            unit, "SyncConfigFailed", f"config sync timed out ({detail}), recreating pod"
        )
        ctx.store.delete(POD, namespace, name)
        gone = ctx.waits.config_sync_pod_gone
        poll_until(
            lambda: ctx.store.get(POD, namespace, name) is None,
            interval=gone.interval,
            timeout=gone.timeout,
            stop_event=ctx.stop_event,
            description=f"pod {name} deletion",
        )
        ctx.store.create(POD, build_pod(ctx.store.get(UNIT, namespace, name) or unit))
        METRICS.pod_recreates_total.labels(reason="config sync timeout").inc()
        raise ReconcileError(
            f"config sync of unit {name} timed out ({detail}); pod recreated"
        ) from None

    template_cm, value_cm = _config_maps(ctx, unit)
    _stamp_versions(ctx, unit, template_cm, value_cm)
    ctx.logger.info("Synced config of unit %s/%s", namespace, name)


def stop_best_effort(ctx: ReconcileContext, unit: dict[str, Any], pod: dict[str, Any]) -> None:
    """Ask the agent to stop the service before the pod is torn down."""
    if not agent_ready(pod):
        return
    try:
        ctx.agent.stop_service(unit, pod)
    except AgentError as exc:
        ctx.events.warning(unit, "ErrResourceExists", f"ignore: stop service failed [{exc}]")


def reconcile_service(ctx: ReconcileContext, unit: dict[str, Any]) -> None:
    """Start or stop the unit's main process to match ``spec.startup``."""
    if in_maintenance(unit):
        return
    namespace = namespace_of(unit)
    name = name_of(unit)
    unit = ctx.store.get(UNIT, namespace, name) or unit
    pod = ctx.store.get(POD, namespace, name)
    if pod is None:
        raise ReconcileError(f"pod {namespace}/{name} not found")
    if not pod_initialized(pod) or not pod_scheduled(pod):
        ctx.events.warning(
            unit, "ResourceCheck", "pod not initialized or scheduled, lifecycle postponed"
        )
        return
    if not agent_ready(pod):
        ctx.events.warning(unit, "ResourceCheck", "unit-agent not ready, lifecycle postponed")
        return
    if not pod_ip(pod):
        raise ReconcileError("unit lifecycle management failed: pod has no IP")

    process_state = (unit.get("status") or {}).get("processState", "")
    process_alive = process_state in (PROCESS_RUNNING, PROCESS_STARTING)
    main_name = main_container_name(unit)

    if not (unit.get("spec") or {}).get("startup"):
        if not pod_ready(pod) and not process_alive:
            return
        ctx.agent.stop_service(unit, pod)
        ctx.logger.info("Stopped service of unit %s/%s", namespace, name)
        return

    if container_running(pod, main_name) and container_ready(pod, main_name) and process_alive:
        return

    ctx.agent.start_service(unit, pod)
    wait = probe_poll(pod, main_name, ctx.waits.service_ready_fallback)

    def _ready() -> bool:
        current = ctx.store.get(POD, namespace, name)
        return pod_phase(current) == "Running" and pod_ready(current)

    try:
        poll_until(
            _ready,
            interval=wait.interval,
            timeout=wait.timeout,
            stop_event=ctx.stop_event,
            immediate=False,
            description=f"unit {name} readiness after start",
        )
    except WaitTimeoutError as exc:
        ctx.events.warning(unit, "StartUp", "start timed out, stopping service before retry")
        ctx.agent.stop_service(unit, pod)
        raise ReconcileError(f"unit {name} did not become ready after start") from exc
    ctx.logger.info("Started service of unit %s/%s", namespace, name)
