from __future__ import annotations

import json

import pytest
from kubernetes.client import ApiException

from unitoperator.src.constants import ANNOTATION_EXTERNAL_SERVICE_TYPE, ANNOTATION_UNIT_SERVICE_TYPE
from unitoperator.src.errors import AggregateError, ReconcileError
from unitoperator.src.kube import SERVICE, UNITSET
from unitoperator.src.naming import nodeport_annotation_key
from unitoperator.src.unitset_network import (
    reconcile_external_service,
    reconcile_headless_service,
    reconcile_unit_services,
    service_names,
    service_ports,
)
from unitoperator.tests.fakes import NS, FakeStore, make_ctx, make_unitset

PORTS = [{"name": "mysql", "containerPort": 3306}]


def _unitset(store: FakeStore, annotations: dict[str, str] | None = None, **spec: object) -> dict:
    body = make_unitset(**spec)
    body["metadata"]["annotations"].update(annotations or {})
    return store.create(UNITSET, body)


def test_service_ports_skip_out_of_range_numbers() -> None:
    ports = service_ports(
        [
            {"name": "mysql", "containerPort": 3306},
            {"name": "bad", "containerPort": 70000},
            {"name": "junk", "containerPort": "x"},
            {"name": "udp", "containerPort": 53, "protocol": "UDP"},
        ]
    )

    assert ports == [
        {"name": "mysql", "port": 3306, "protocol": "TCP"},
        {"name": "udp", "port": 53, "protocol": "UDP"},
    ]


def test_headless_service_selects_the_fleet_and_is_created_once() -> None:
    store = FakeStore()
    unitset = _unitset(store)
    ctx = make_ctx(store)

    reconcile_headless_service(ctx, unitset, PORTS)
    store.writes.clear()
    reconcile_headless_service(ctx, unitset, PORTS)

    service = store.get(SERVICE, NS, "demo-headless-svc")
    assert service["spec"]["clusterIP"] == "None"
    assert service["spec"]["publishNotReadyAddresses"] is True
    assert service["spec"]["selector"] == {"unit-operator/unitset.name": "demo"}
    assert store.writes == []


def test_external_service_is_recorded_on_the_fleet() -> None:
    store = FakeStore()
    unitset = _unitset(store, externalService={"type": "LoadBalancer"})
    ctx = make_ctx(store)

    reconcile_external_service(ctx, unitset, PORTS)

    assert store.get(SERVICE, NS, "demo-svc")["spec"]["type"] == "LoadBalancer"
    annotations = store.get(UNITSET, NS, "demo")["metadata"]["annotations"]
    assert annotations[ANNOTATION_EXTERNAL_SERVICE_TYPE] == "LoadBalancer"
    assert service_names(ctx, store.get(UNITSET, NS, "demo")) == ("demo-svc", {})


def test_unit_services_reuse_recorded_node_ports() -> None:
    store = FakeStore()
    key = nodeport_annotation_key("mysql")
    unitset = _unitset(
        store,
        annotations={key: json.dumps({"demo-0": "30001"})},
        units=2,
        unitService={"type": "NodePort"},
    )
    ctx = make_ctx(store)

    reconcile_unit_services(ctx, unitset, PORTS)

    assert store.get(SERVICE, NS, "demo-0-svc")["spec"]["ports"][0]["nodePort"] == 30001
    allocated = store.get(SERVICE, NS, "demo-1-svc")["spec"]["ports"][0]["nodePort"]
    annotations = store.get(UNITSET, NS, "demo")["metadata"]["annotations"]
    assert json.loads(annotations[key]) == {"demo-0": "30001", "demo-1": str(allocated)}
    assert annotations[ANNOTATION_UNIT_SERVICE_TYPE] == "NodePort"
    _, per_unit = service_names(ctx, store.get(UNITSET, NS, "demo"))
    assert per_unit == {"demo-0": "demo-0-svc", "demo-1": "demo-1-svc"}


def test_unavailable_reserved_node_port_is_a_retryable_error() -> None:
    store = FakeStore()
    key = nodeport_annotation_key("mysql")
    unitset = _unitset(
        store,
        annotations={key: json.dumps({"demo-0": "30001"})},
        units=1,
        unitService={"type": "NodePort"},
    )
    store.failures[("create", SERVICE)] = ApiException(status=422, reason="Invalid")

    with pytest.raises(AggregateError) as excinfo:
        reconcile_unit_services(make_ctx(store), unitset, PORTS)

    error = excinfo.value.errors["demo-0"]
    assert isinstance(error, ReconcileError)
    assert "30001" in str(error)
    assert "will retry" in str(error)


def test_cluster_ip_unit_services_do_not_touch_node_port_maps() -> None:
    store = FakeStore()
    unitset = _unitset(store, units=1, unitService={"type": "ClusterIP"})

    reconcile_unit_services(make_ctx(store), unitset, PORTS)

    service = store.get(SERVICE, NS, "demo-0-svc")
    assert "nodePort" not in service["spec"]["ports"][0]
    assert service["spec"]["selector"] == {"unit-operator/unit.name": "demo-0"}
    annotations = store.get(UNITSET, NS, "demo")["metadata"]["annotations"]
    assert nodeport_annotation_key("mysql") not in annotations
