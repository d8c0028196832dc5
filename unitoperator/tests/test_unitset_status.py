from __future__ import annotations

from typing import Any

from unitoperator.src.constants import ANNOTATION_MAIN_CONTAINER_VERSION
from unitoperator.src.kube import UNIT, UNITSET
from unitoperator.src.unitset_status import build_status, observe_generation, refresh_status
from unitoperator.src.unitset_template import build_unit
from unitoperator.tests.fakes import NS, FakeStore, make_ctx, make_golden_template, make_unitset

NOW = "2026-03-01T00:00:00Z"
LATER = "2026-03-01T00:05:00Z"


def _units(unitset: dict[str, Any], capacity: str = "10Gi") -> list[dict[str, Any]]:
    unitset["metadata"].setdefault("uid", "uid-demo")
    units = []
    for ordinal in range(unitset["spec"]["units"]):
        unit = build_unit(unitset, f"demo-{ordinal}", ordinal, make_golden_template())
        unit["status"] = {
            "phase": "Ready",
            "persistentVolumeClaim": [
                {"name": f"demo-{ordinal}-data", "capacity": {"storage": capacity}}
            ],
        }
        units.append(unit)
    return units


def test_all_flags_true_for_converged_fleet() -> None:
    unitset = make_unitset(units=2)

    status = build_status(unitset, _units(unitset), "", {}, NOW)

    assert status["units"] == 2
    assert status["readyUnits"] == 2
    assert status["inUpdate"] == ""
    for flag in ("imageSyncStatus", "resourceSyncStatus", "pvcSyncStatus"):
        assert status[flag] == {"status": "True", "lastTransitionTime": NOW}


def test_larger_claim_capacity_counts_as_synced() -> None:
    unitset = make_unitset(units=2)

    status = build_status(unitset, _units(unitset, capacity="12Gi"), "", {}, NOW)

    assert status["pvcSyncStatus"]["status"] == "True"


def test_flags_keep_transition_time_until_they_flip() -> None:
    unitset = make_unitset(units=2)
    units = _units(unitset)
    unitset["status"] = build_status(unitset, units, "", {}, NOW)

    steady = build_status(unitset, units, "", {}, LATER)
    units[0]["metadata"]["annotations"][ANNOTATION_MAIN_CONTAINER_VERSION] = "8.0.35"
    units[1]["status"]["task"] = "image changed"
    flipped = build_status(unitset, units, "", {}, LATER)

    assert steady["imageSyncStatus"]["lastTransitionTime"] == NOW
    assert flipped["imageSyncStatus"] == {"status": "False", "lastTransitionTime": LATER}
    assert flipped["resourceSyncStatus"]["lastTransitionTime"] == NOW
    assert flipped["inUpdate"] == "demo-1"


def test_missing_units_leave_flags_false() -> None:
    unitset = make_unitset(units=3)

    status = build_status(unitset, _units(make_unitset(units=2)), "", {}, NOW)

    assert status["imageSyncStatus"]["status"] == "False"
    assert status["pvcSyncStatus"]["status"] == "False"


def test_service_names_are_reported_when_configured() -> None:
    unitset = make_unitset(
        units=1, externalService={"type": "NodePort"}, unitService={"type": "ClusterIP"}
    )

    status = build_status(unitset, [], "demo-svc", {"demo-0": "demo-0-svc"}, NOW)

    assert status["externalService"] == {"name": "demo-svc"}
    assert status["unitService"] == {"name": {"demo-0": "demo-0-svc"}}


def test_refresh_status_skips_timestamp_only_changes() -> None:
    store = FakeStore()
    unitset = store.create(UNITSET, make_unitset(units=1))
    for unit in _units(unitset):
        store.create(UNIT, unit)
    ctx = make_ctx(store)

    refresh_status(ctx, unitset, observe_generation=True)
    store.writes.clear()
    refresh_status(ctx, unitset, observe_generation=True)
    observe_generation(ctx, unitset)

    assert store.writes == []
    assert store.get(UNITSET, NS, "demo")["status"]["observedGeneration"] == 1
