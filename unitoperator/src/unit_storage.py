from __future__ import annotations

import copy
from typing import Any

from unitoperator.src import naming
from unitoperator.src.context import ReconcileContext
from unitoperator.src.drift import quantity
from unitoperator.src.errors import PreconditionError
from unitoperator.src.kube import PERSISTENT_VOLUME_CLAIM
from unitoperator.src.podutil import labels_of, name_of, namespace_of


def _storage_request(claim_spec: dict[str, Any]) -> str | None:
    return ((claim_spec.get("resources") or {}).get("requests") or {}).get("storage")


def reconcile_claims(ctx: ReconcileContext, unit: dict[str, Any]) -> None:
    """Create each declared claim, or raise its storage request when the declaration grew.

    A claim is never shrunk. Creating a claim whose name is still bound by a
    leftover PersistentVolume is refused with :class:`PreconditionError` so a
    stale volume is never silently re-attached.
    """
    unit_name = name_of(unit)
    namespace = namespace_of(unit)
    for template in (unit.get("spec") or {}).get("volumeClaimTemplates") or []:
        claim = naming.claim_name(unit_name, template.get("name", ""))
        desired_spec = template.get("spec") or {}
        current = ctx.store.get(PERSISTENT_VOLUME_CLAIM, namespace, claim)

        if current is None:
            dangling = ctx.store.persistent_volumes_for_claim(claim)
            if dangling:
                names = sorted(name_of(volume) for volume in dangling)
                raise PreconditionError(
                    f"pv {names} already exists, please delete them first"
                )
            ctx.store.create(
                PERSISTENT_VOLUME_CLAIM,
                {
                    "apiVersion": "v1",
                    "kind": "PersistentVolumeClaim",
                    "metadata": {
                        "name": claim,
                        "namespace": namespace,
                        "labels": dict(labels_of(unit)),
                    },
                    "spec": copy.deepcopy(desired_spec),
                },
            )
            ctx.logger.info("Created claim %s/%s", namespace, claim)
            continue

        desired = _storage_request(desired_spec)
        live = _storage_request(current.get("spec") or {})
        if desired and quantity(desired) > quantity(live):
            current["spec"].setdefault("resources", {}).setdefault("requests", {})[
                "storage"
            ] = desired
            ctx.store.replace(PERSISTENT_VOLUME_CLAIM, current)
            ctx.logger.info(
                "Expanded claim %s/%s from %s to %s", namespace, claim, live, desired
            )
