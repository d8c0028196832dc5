from __future__ import annotations

import copy
import itertools
import logging
import threading
from collections.abc import Callable
from typing import Any

from kubernetes.client import ApiException

from unitoperator.src.config import OperatorConfig, Poll, WaitSettings
from unitoperator.src.constants import AGENT_CONTAINER_NAME, GROUP_VERSION, PROCESS_RUNNING
from unitoperator.src.context import ReconcileContext
from unitoperator.src.kube import (
    CONFIG_MAP,
    KINDS,
    PERSISTENT_VOLUME,
    PERSISTENT_VOLUME_CLAIM,
    POD,
    POD_TEMPLATE,
    SERVICE,
    UNIT,
    UNITSET,
)
from unitoperator.src.podutil import main_container_name, name_of, namespace_of

NS = "default"
MANAGER_NS = "upm-system"

STATUS_KINDS = {POD, PERSISTENT_VOLUME_CLAIM, UNIT, UNITSET}

FAST = Poll(0.01, 0.2)
FAST_WAITS = WaitSettings(
    pod_scheduled=FAST,
    pod_gone=FAST,
    recovery_pod_gone=FAST,
    recovery_check_interval=0.01,
    config_sync_fallback=FAST,
    config_sync_pod_gone=FAST,
    service_ready_fallback=FAST,
    claim_gone=FAST,
    volume_gone=FAST,
    units_gone=FAST,
    config_map_gone=FAST,
    unit_ready=Poll(0.01, 1),
)

Hook = Callable[[str, str, dict[str, Any]], None]


def _spec_of(kind: str, obj: dict[str, Any]) -> Any:
    if kind == POD_TEMPLATE:
        return obj.get("template")
    return obj.get("spec")


def _merge(target: dict[str, Any], patch: dict[str, Any]) -> None:
    for key, value in patch.items():
        current = target.get(key)
        if value is None:
            target.pop(key, None)
        elif isinstance(value, dict) and isinstance(current, dict):
            _merge(current, value)
        elif key == "containers" and isinstance(value, list) and isinstance(current, list):
            by_name = {container.get("name"): container for container in current}
            for container in value:
                if container.get("name") in by_name:
                    by_name[container["name"]].update(copy.deepcopy(container))
                else:
                    current.append(copy.deepcopy(container))
        else:
            target[key] = copy.deepcopy(value)


def _matches(obj: dict[str, Any], label_selector: str | None) -> bool:
    if not label_selector:
        return True
    labels = (obj.get("metadata") or {}).get("labels") or {}
    for term in label_selector.split(","):
        key, _, value = term.partition("=")
        if labels.get(key.strip()) != value.strip():
            return False
    return True


class FakeStore:
    """In-memory stand-in for ResourceStore with API-server-like write semantics.

    Objects get a resourceVersion and uid on create; ``generation`` moves
    only when ``spec`` changes. Stale writes conflict, deletes of objects
    with finalizers only set ``deletionTimestamp``, and the object goes away
    once its last finalizer is removed. Pods are scheduled onto ``node-1``
    as they are created.
    """

    def __init__(self, crds: set[str] | None = None) -> None:
        self._lock = threading.RLock()
        self._rv = itertools.count(1)
        self._node_ports = itertools.count(30100)
        self.objects: dict[tuple[str, str, str], dict[str, Any]] = {}
        self.crds = set(crds or ())
        self.writes: list[tuple[str, str, str]] = []
        self.failures: dict[tuple[str, str], ApiException] = {}
        self.hooks: list[Hook] = []

    # -- helpers -------------------------------------------------------

    @staticmethod
    def _key(kind: str, namespace: str, name: str) -> tuple[str, str, str]:
        if not KINDS[kind].namespaced:
            namespace = ""
        return kind, namespace, name

    def _check(self, verb: str, kind: str) -> None:
        exc = self.failures.get((verb, kind))
        if exc is not None:
            raise exc

    def _record(self, verb: str, kind: str, stored: dict[str, Any]) -> None:
        self.writes.append((verb, kind, name_of(stored)))
        for hook in self.hooks:
            hook(verb, kind, stored)

    def _bump(self, stored: dict[str, Any]) -> None:
        stored["metadata"]["resourceVersion"] = str(next(self._rv))

    def _settle(self, kind: str, stored: dict[str, Any]) -> None:
        meta = stored["metadata"]
        if meta.get("deletionTimestamp") and not meta.get("finalizers"):
            self.objects.pop(self._key(kind, namespace_of(stored), name_of(stored)), None)

    def mutate(self, kind: str, namespace: str, name: str, fn: Callable[[dict[str, Any]], None]) -> None:
        """Apply ``fn`` to the stored object, as another writer in the cluster would."""
        with self._lock:
            stored = self.objects[self._key(kind, namespace, name)]
            fn(stored)
            self._bump(stored)

    def names(self, kind: str, namespace: str = NS) -> list[str]:
        return [name_of(obj) for obj in self.list(kind, namespace)]

    # -- ResourceStore surface -----------------------------------------

    def get(self, kind: str, namespace: str, name: str) -> dict[str, Any] | None:
        with self._lock:
            found = self.objects.get(self._key(kind, namespace, name))
            return copy.deepcopy(found) if found is not None else None

    def list_snapshot(
        self, kind: str, namespace: str | None = None, label_selector: str | None = None
    ) -> tuple[list[dict[str, Any]], str | None]:
        with self._lock:
            items = [
                copy.deepcopy(obj)
                for (obj_kind, obj_ns, _), obj in sorted(self.objects.items())
                if obj_kind == kind
                and (not namespace or obj_ns == namespace)
                and _matches(obj, label_selector)
            ]
            return items, str(next(self._rv))

    def list(
        self, kind: str, namespace: str | None = None, label_selector: str | None = None
    ) -> list[dict[str, Any]]:
        items, _ = self.list_snapshot(kind, namespace, label_selector)
        return items

    def create(self, kind: str, obj: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            self._check("create", kind)
            key = self._key(kind, namespace_of(obj), name_of(obj))
            if key in self.objects:
                raise ApiException(status=409, reason="AlreadyExists")
            stored = copy.deepcopy(obj)
            stored.setdefault("kind", kind)
            meta = stored.setdefault("metadata", {})
            meta["uid"] = f"uid-{next(self._rv)}"
            meta["generation"] = 1
            meta.pop("deletionTimestamp", None)
            self._bump(stored)
            if kind == POD:
                spec = stored.setdefault("spec", {})
                spec["nodeName"] = spec.get("nodeName") or "node-1"
            if kind == SERVICE and stored.get("spec", {}).get("type") == "NodePort":
                for port in stored["spec"].get("ports") or []:
                    port.setdefault("nodePort", next(self._node_ports))
            self.objects[key] = stored
            self._record("create", kind, stored)
            return copy.deepcopy(stored)

    def _existing(self, kind: str, obj: dict[str, Any]) -> dict[str, Any]:
        key = self._key(kind, namespace_of(obj), name_of(obj))
        stored = self.objects.get(key)
        if stored is None:
            raise ApiException(status=404, reason="NotFound")
        sent = (obj.get("metadata") or {}).get("resourceVersion")
        if sent and sent != stored["metadata"]["resourceVersion"]:
            raise ApiException(status=409, reason="Conflict")
        return stored

    def replace(self, kind: str, obj: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            self._check("replace", kind)
            stored = self._existing(kind, obj)
            updated = copy.deepcopy(obj)
            meta = updated.setdefault("metadata", {})
            for field in ("uid", "generation", "deletionTimestamp"):
                if field in stored["metadata"]:
                    meta[field] = stored["metadata"][field]
            if kind in STATUS_KINDS:
                updated["status"] = copy.deepcopy(stored.get("status"))
                if updated["status"] is None:
                    updated.pop("status")
            if _spec_of(kind, updated) != _spec_of(kind, stored):
                meta["generation"] = stored["metadata"].get("generation", 1) + 1
            self._bump(updated)
            self.objects[self._key(kind, namespace_of(updated), name_of(updated))] = updated
            self._record("replace", kind, updated)
            self._settle(kind, updated)
            return copy.deepcopy(updated)

    def replace_status(self, kind: str, obj: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            self._check("replace_status", kind)
            stored = self._existing(kind, obj)
            stored["status"] = copy.deepcopy(obj.get("status") or {})
            self._bump(stored)
            self._record("replace_status", kind, stored)
            return copy.deepcopy(stored)

    def patch(self, kind: str, namespace: str, name: str, body: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            self._check("patch", kind)
            stored = self.objects.get(self._key(kind, namespace, name))
            if stored is None:
                raise ApiException(status=404, reason="NotFound")
            before = copy.deepcopy(_spec_of(kind, stored))
            _merge(stored, body)
            if _spec_of(kind, stored) != before:
                stored["metadata"]["generation"] = stored["metadata"].get("generation", 1) + 1
            self._bump(stored)
            self._record("patch", kind, stored)
            self._settle(kind, stored)
            return copy.deepcopy(stored)

    def delete(
        self, kind: str, namespace: str, name: str, grace_period_seconds: int | None = None
    ) -> bool:
        with self._lock:
            self._check("delete", kind)
            key = self._key(kind, namespace, name)
            stored = self.objects.get(key)
            if stored is None:
                return False
            if stored["metadata"].get("finalizers"):
                if not stored["metadata"].get("deletionTimestamp"):
                    stored["metadata"]["deletionTimestamp"] = "2026-01-01T00:00:00Z"
                    self._bump(stored)
            else:
                del self.objects[key]
            self._record("delete", kind, stored)
            return True

    def has_crd(self, name: str) -> bool:
        return name in self.crds

    def persistent_volumes_for_claim(self, claim: str) -> list[dict[str, Any]]:
        return [
            volume
            for volume in self.list(PERSISTENT_VOLUME)
            if ((volume.get("spec") or {}).get("claimRef") or {}).get("name") == claim
        ]


class RecordingEvents:
    """Collects events instead of writing them to the API server."""

    def __init__(self) -> None:
        self.recorded: list[tuple[str, str, str, str]] = []

    def event(self, obj: dict[str, Any], event_type: str, reason: str, message: str) -> None:
        self.recorded.append((event_type, reason, message, name_of(obj)))

    def normal(self, obj: dict[str, Any], reason: str, message: str) -> None:
        self.event(obj, "Normal", reason, message)

    def warning(self, obj: dict[str, Any], reason: str, message: str) -> None:
        self.event(obj, "Warning", reason, message)

    def reasons(self, event_type: str | None = None) -> list[str]:
        return [
            reason
            for recorded_type, reason, _, _ in self.recorded
            if event_type is None or recorded_type == event_type
        ]


class FakeAgent:
    """Scripted sidecar agent. Starting a service makes the unit's pod Ready."""

    def __init__(self, store: FakeStore, state: str = "stopped") -> None:
        self.store = store
        self.default_state = state
        self.states: dict[str, str] = {}
        self.calls: list[tuple[str, str]] = []
        self.sync_error: Exception | None = None
        self.start_makes_ready = True
        self._lock = threading.Lock()

    def _call(self, action: str, unit: dict[str, Any]) -> None:
        with self._lock:
            self.calls.append((action, name_of(unit)))

    def sync_config(self, unit: dict[str, Any], pod: dict[str, Any] | None, **kwargs: Any) -> str:
        self._call("sync_config", unit)
        if self.sync_error is not None:
            raise self.sync_error
        return "ok"

    def start_service(self, unit: dict[str, Any], pod: dict[str, Any] | None) -> str:
        self._call("start_service", unit)
        self.states[name_of(unit)] = PROCESS_RUNNING
        if self.start_makes_ready:
            set_pod_running(self.store, namespace_of(unit), name_of(unit), main_ready=True)
        return "ok"

    def stop_service(self, unit: dict[str, Any], pod: dict[str, Any] | None) -> str:
        self._call("stop_service", unit)
        self.states[name_of(unit)] = "stopped"
        return "ok"

    def service_status(self, unit: dict[str, Any], pod: dict[str, Any] | None) -> str:
        return self.states.get(name_of(unit), self.default_state)


def set_pod_running(
    store: FakeStore, namespace: str, name: str, *, main_ready: bool = True, agent_ready: bool = True
) -> None:
    """Give a stored pod the status a kubelet reports for a running unit pod."""

    def _apply(pod: dict[str, Any]) -> None:
        main = main_container_name(pod)
        pod["status"] = {
            "phase": "Running",
            "hostIP": "10.0.0.1",
            "podIP": "10.1.0.5",
            "podIPs": [{"ip": "10.1.0.5"}],
            "conditions": [
                {"type": "Initialized", "status": "True"},
                {"type": "Ready", "status": "True" if main_ready else "False"},
            ],
            "containerStatuses": [
                {"name": main, "ready": main_ready, "state": {"running": {}}},
                {"name": AGENT_CONTAINER_NAME, "ready": agent_ready, "state": {"running": {}}},
            ],
        }

    store.mutate(POD, namespace, name, _apply)


def make_ctx(
    store: FakeStore | None = None, agent: Any = None, **config: Any
) -> ReconcileContext:
    store = store or FakeStore()
    return ReconcileContext(
        store=store,  # type: ignore[arg-type]
        config=OperatorConfig(waits=FAST_WAITS, **config),
        events=RecordingEvents(),  # type: ignore[arg-type]
        agent=agent or FakeAgent(store),
        logger=logging.getLogger("unitoperator.test"),
    )


# ----------------------------------------------------------------------
# Object builders
# ----------------------------------------------------------------------


def make_golden_template(version: str = "8.0.36") -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "PodTemplate",
        "metadata": {"name": f"mysql-{version}", "namespace": MANAGER_NS},
        "template": {
            "metadata": {"labels": {"app": "mysql"}},
            "spec": {
                "containers": [
                    {
                        "name": "mysql",
                        "image": f"mysql:{version}",
                        "ports": [{"name": "mysql", "containerPort": 3306}],
                    },
                    {
                        "name": AGENT_CONTAINER_NAME,
                        "image": "unit-agent:1.0",
                        "env": [{"name": "AGENT_MODE", "value": "sidecar"}],
                    },
                ]
            },
        },
    }


def seed_manager(store: FakeStore, version: str = "8.0.36", value: str = "port: 3306\n") -> dict[str, Any]:
    """Create the shared pod template and config maps for one mysql version."""
    golden = store.create(POD_TEMPLATE, make_golden_template(version))
    store.create(
        CONFIG_MAP,
        {
            "metadata": {"name": f"mysql-{version}-config-template", "namespace": MANAGER_NS},
            "data": {"mysql": "[mysqld]\nport={{ .port }}\n"},
        },
    )
    store.create(
        CONFIG_MAP,
        {
            "metadata": {"name": f"mysql-{version}-config-value", "namespace": MANAGER_NS},
            "data": {"mysql": value},
        },
    )
    return golden


def make_unitset(name: str = "demo", units: int = 3, version: str = "8.0.36", **spec: Any) -> dict[str, Any]:
    body: dict[str, Any] = {
        "type": "mysql",
        "version": version,
        "units": units,
        "storage": [{"name": "data", "size": "10Gi", "mountPath": "/data"}],
        "resources": {
            "requests": {"cpu": "1", "memory": "1Gi"},
            "limits": {"cpu": "1", "memory": "1Gi"},
        },
        "env": [{"name": "TZ", "value": "UTC"}],
    }
    body.update(spec)
    return {
        "apiVersion": GROUP_VERSION,
        "kind": "UnitSet",
        "metadata": {
            "name": name,
            "namespace": NS,
            "labels": {"app.kubernetes.io/instance": name},
            "annotations": {},
        },
        "spec": body,
    }


def make_node(name: str = "node-1") -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Node",
        "metadata": {"name": name},
        "status": {"conditions": [{"type": "Ready", "status": "True"}]},
    }


def make_volume(name: str, claim: str) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "PersistentVolume",
        "metadata": {"name": name},
        "spec": {"claimRef": {"name": claim, "namespace": NS}},
    }


def update_spec(store: FakeStore, kind: str, name: str, **changes: Any) -> dict[str, Any]:
    current = store.get(kind, NS, name)
    assert current is not None
    current["spec"].update(changes)
    return store.replace(kind, current)

