from __future__ import annotations

import json
import threading
from typing import Any

from kubernetes.client import ApiException

from unitoperator.src import naming
from unitoperator.src.concurrency import fan_out
from unitoperator.src.constants import (
    ANNOTATION_EXTERNAL_SERVICE_TYPE,
    ANNOTATION_UNIT_SERVICE_TYPE,
    LABEL_UNIT_NAME,
    LABEL_UNITSET_NAME,
)
from unitoperator.src.context import ReconcileContext
from unitoperator.src.errors import PreconditionError, ReconcileError
from unitoperator.src.kube import SERVICE, UNITSET
from unitoperator.src.podutil import (
    annotations_of,
    labels_of,
    name_of,
    namespace_of,
    owner_reference,
)

NODE_PORT = "NodePort"


def service_ports(ports: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Translate container ports into service ports, skipping out-of-range numbers."""
    result = []
    for port in ports:
        try:
            number = int(port.get("containerPort"))
        except (TypeError, ValueError):
            continue
        if not 0 < number <= 65535:
            continue
        entry = {"name": port.get("name", ""), "port": number, "protocol": port.get("protocol") or "TCP"}
        result.append(entry)
    return result


def _service(
    unitset: dict[str, Any],
    name: str,
    service_type: str,
    ports: list[dict[str, Any]],
    selector: dict[str, str],
    extra_labels: dict[str, str],
) -> dict[str, Any]:
    labels = dict(labels_of(unitset))
    labels.update(extra_labels)
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {
            "name": name,
            "namespace": namespace_of(unitset),
            "labels": labels,
            "ownerReferences": [owner_reference(unitset)],
        },
        "spec": {
            "type": service_type,
            "publishNotReadyAddresses": True,
            "selector": selector,
            "ports": ports,
        },
    }


def reconcile_headless_service(
    ctx: ReconcileContext, unitset: dict[str, Any], ports: list[dict[str, Any]]
) -> None:
    """Create the fleet's headless service; an existing one is never mutated."""
    name = naming.headless_service_name(name_of(unitset))
    if ctx.store.get(SERVICE, namespace_of(unitset), name) is not None:
        return
    body = _service(
        unitset,
        name,
        "ClusterIP",
        service_ports(ports),
        {LABEL_UNITSET_NAME: name_of(unitset)},
        {LABEL_UNITSET_NAME: name_of(unitset)},
    )
    body["spec"]["clusterIP"] = "None"
    ctx.store.create(SERVICE, body)
    ctx.logger.info("Created headless service %s/%s", namespace_of(unitset), name)


def reconcile_external_service(
    ctx: ReconcileContext, unitset: dict[str, Any], ports: list[dict[str, Any]]
) -> None:
    service_type = ((unitset.get("spec") or {}).get("externalService") or {}).get("type")
    if not service_type:
        return
    name = naming.external_service_name(name_of(unitset))
    if ctx.store.get(SERVICE, namespace_of(unitset), name) is not None:
        return
    ctx.store.create(
        SERVICE,
        _service(
            unitset,
            name,
            service_type,
            service_ports(ports),
            {LABEL_UNITSET_NAME: name_of(unitset)},
            {LABEL_UNITSET_NAME: name_of(unitset)},
        ),
    )
    ctx.store.patch(
        UNITSET,
        namespace_of(unitset),
        name_of(unitset),
        {"metadata": {"annotations": {ANNOTATION_EXTERNAL_SERVICE_TYPE: service_type}}},
    )
    ctx.logger.info("Created external service %s/%s", namespace_of(unitset), name)


def nodeport_map(unitset: dict[str, Any], port_name: str) -> dict[str, str]:
    raw = annotations_of(unitset).get(naming.nodeport_annotation_key(port_name))
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except ValueError:
        raise PreconditionError(
            f"annotation {naming.nodeport_annotation_key(port_name)} is not valid JSON"
        ) from None
    return {str(k): str(v) for k, v in (parsed or {}).items()}


def reconcile_unit_services(
    ctx: ReconcileContext, unitset: dict[str, Any], ports: list[dict[str, Any]]
) -> None:
    """Create one service per unit and keep allocated node ports sticky.

    For NodePort services the port recorded in the fleet's per-port
    annotation map is requested again on creation, so a recreated service
    keeps its address. Newly allocated ports are written back to the map.
    """
    spec = unitset.get("spec") or {}
    service_type = (spec.get("unitService") or {}).get("type")
    if not service_type:
        return
    namespace = namespace_of(unitset)
    units = naming.unit_names(name_of(unitset), spec.get("units") or 0)
    base_ports = service_ports(ports)
    reserved = {port["name"]: nodeport_map(unitset, port["name"]) for port in base_ports}
    created: list[str] = []
    lock = threading.Lock()

    def _ensure(unit: str) -> None:
        name = naming.unit_service_name(unit)
        if ctx.store.get(SERVICE, namespace, name) is not None:
            return
        unit_ports = []
        for port in base_ports:
            entry = dict(port)
            if service_type == NODE_PORT and unit in reserved.get(port["name"], {}):
                try:
                    entry["nodePort"] = int(reserved[port["name"]][unit])
                except ValueError:
                    raise PreconditionError(
                        f"invalid node port {reserved[port['name']][unit]!r} for {unit}"
                    ) from None
            unit_ports.append(entry)
        body = _service(
            unitset, name, service_type, unit_ports, {LABEL_UNIT_NAME: unit}, {LABEL_UNIT_NAME: unit}
        )
        try:
            ctx.store.create(SERVICE, body)
        except ApiException as exc:
            if exc.status in (409, 422) and any("nodePort" in p for p in unit_ports):
                wanted = ", ".join(str(p["nodePort"]) for p in unit_ports if "nodePort" in p)
                raise ReconcileError(
                    f"node port(s) {wanted} reserved for {unit} are not available, will retry"
                ) from exc
            raise
        with lock:
            created.append(unit)

    try:
        fan_out(units, _ensure)
    finally:
        annotations: dict[str, str] = {}
        if created and annotations_of(unitset).get(ANNOTATION_UNIT_SERVICE_TYPE) != service_type:
            annotations[ANNOTATION_UNIT_SERVICE_TYPE] = service_type
        if service_type == NODE_PORT:
            annotations.update(_allocated_nodeports(ctx, unitset, units, reserved))
        if annotations:
            ctx.store.patch(
                UNITSET, namespace, name_of(unitset), {"metadata": {"annotations": annotations}}
            )


def _allocated_nodeports(
    ctx: ReconcileContext,
    unitset: dict[str, Any],
    units: list[str],
    reserved: dict[str, dict[str, str]],
) -> dict[str, str]:
    changed: set[str] = set()
    maps = {port: dict(values) for port, values in reserved.items()}
    for unit in units:
        service = ctx.store.get(SERVICE, namespace_of(unitset), naming.unit_service_name(unit))
        if service is None:
            continue
        for port in (service.get("spec") or {}).get("ports") or []:
            node_port = port.get("nodePort")
            if not node_port:
                continue
            values = maps.setdefault(port.get("name", ""), {})
            if values.get(unit) != str(node_port):
                values[unit] = str(node_port)
                changed.add(port.get("name", ""))
    return {
        naming.nodeport_annotation_key(port): json.dumps(maps[port], sort_keys=True)
        for port in sorted(changed)
    }


def service_names(ctx: ReconcileContext, unitset: dict[str, Any]) -> tuple[str, dict[str, str]]:
    """Return the external service name and ``{unit: service}`` for services that exist."""
    namespace = namespace_of(unitset)
    spec = unitset.get("spec") or {}
    external = ""
    if (spec.get("externalService") or {}).get("type"):
        candidate = naming.external_service_name(name_of(unitset))
        if ctx.store.get(SERVICE, namespace, candidate) is not None:
            external = candidate
    per_unit: dict[str, str] = {}
    if (spec.get("unitService") or {}).get("type"):
        for unit in naming.unit_names(name_of(unitset), spec.get("units") or 0):
            candidate = naming.unit_service_name(unit)
            if ctx.store.get(SERVICE, namespace, candidate) is not None:
                per_unit[unit] = candidate
    return external, per_unit
