from __future__ import annotations

from typing import Any

from unitoperator.src import naming
from unitoperator.src.constants import (
    EXPORTER_PORT_NAME,
    LABEL_UNITSET_NAME,
    MONITORING_GROUP,
    MONITORING_VERSION,
    POD_MONITOR_CRD,
)
from unitoperator.src.context import ReconcileContext
from unitoperator.src.kube import POD_MONITOR
from unitoperator.src.podutil import labels_of, name_of, namespace_of, owner_reference


def build_pod_monitor(unitset: dict[str, Any]) -> dict[str, Any]:
    return {
        "apiVersion": f"{MONITORING_GROUP}/{MONITORING_VERSION}",
        "kind": "PodMonitor",
        "metadata": {
            "name": naming.pod_monitor_name(name_of(unitset)),
            "namespace": namespace_of(unitset),
            "labels": dict(labels_of(unitset)),
            "ownerReferences": [owner_reference(unitset)],
        },
        "spec": {
            "podMetricsEndpoints": [{"port": EXPORTER_PORT_NAME}],
            "selector": {"matchLabels": {LABEL_UNITSET_NAME: name_of(unitset)}},
            "namespaceSelector": {"matchNames": [namespace_of(unitset)]},
        },
    }


def reconcile_pod_monitor(ctx: ReconcileContext, unitset: dict[str, Any]) -> None:
    """Create the fleet's PodMonitor when monitoring is enabled and the CRD is installed."""
    if not ((unitset.get("spec") or {}).get("podMonitor") or {}).get("enable"):
        return
    if not ctx.store.has_crd(POD_MONITOR_CRD):
        ctx.events.warning(
            unitset, "PodMonitorSkipped", f"CRD {POD_MONITOR_CRD} is not installed"
        )
        return
    body = build_pod_monitor(unitset)
    if ctx.store.get(POD_MONITOR, namespace_of(unitset), body["metadata"]["name"]) is None:
        ctx.store.create(POD_MONITOR, body)
        ctx.logger.info("Created pod monitor %s/%s", namespace_of(unitset), body["metadata"]["name"])
