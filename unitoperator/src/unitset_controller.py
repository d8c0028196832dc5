from __future__ import annotations

from typing import Any

from unitoperator.src import (
    unitset_access,
    unitset_certs,
    unitset_config,
    unitset_delete,
    unitset_monitor,
    unitset_network,
    unitset_scale,
    unitset_status,
    unitset_template,
    unitset_update,
)
from unitoperator.src.concurrency import retry_on_conflict
from unitoperator.src.constants import FINALIZER_CONFIGMAP_DELETE, FINALIZER_UNIT_DELETE
from unitoperator.src.context import ReconcileContext
from unitoperator.src.errors import PreconditionError
from unitoperator.src.kube import UNITSET
from unitoperator.src.podutil import is_deleting, name_of, namespace_of

FLEET_FINALIZERS = (FINALIZER_UNIT_DELETE, FINALIZER_CONFIGMAP_DELETE)


class UnitSetReconciler:
    """Converges a UnitSet's shared artifacts and its set of Units.

    Steps run in a fixed order and the pass stops at the first failure. A
    failure is recorded as a ``Failed`` warning event on the fleet and
    re-raised for the runner to requeue.
    """

    controller_name = "unitset"

    def __init__(self, ctx: ReconcileContext) -> None:
        self.ctx = ctx
        self.logger = ctx.logger

    def reconcile(self, namespace: str, name: str) -> bool:
        """Run one pass for the object; returns False once it no longer exists."""
        unitset = self.ctx.store.get(UNITSET, namespace, name)
        if unitset is None:
            self.logger.debug("UnitSet %s/%s no longer exists", namespace, name)
            return False
        try:
            self._reconcile(unitset)
        except Exception as exc:
            self.ctx.events.warning(unitset, "Failed", str(exc))
            raise
        return True

    def ensure_finalizers(self, unitset: dict[str, Any]) -> dict[str, Any]:
        """Add the fleet finalizers when an object was created without them."""
        namespace = namespace_of(unitset)
        name = name_of(unitset)

        def _attempt() -> dict[str, Any]:
            current = self.ctx.store.get(UNITSET, namespace, name)
            if current is None:
                return unitset
            finalizers = list(current["metadata"].get("finalizers") or [])
            missing = [f for f in FLEET_FINALIZERS if f not in finalizers]
            if not missing:
                return current
            current["metadata"]["finalizers"] = finalizers + missing
            return self.ctx.store.replace(UNITSET, current)

        return retry_on_conflict(_attempt)

    def _reconcile(self, unitset: dict[str, Any]) -> None:
        ctx = self.ctx
        if is_deleting(unitset):
            self.logger.info(
                "UnitSet %s/%s is being deleted, finalizers: %s",
                namespace_of(unitset),
                name_of(unitset),
                unitset["metadata"].get("finalizers") or [],
            )
            unitset_delete.finalize_unitset(ctx, unitset)
            return

        unitset = self.ensure_finalizers(unitset)

        unitset_config.reconcile_config(ctx, unitset)
        pod_template = unitset_template.ensure_pod_template(ctx, unitset)
        ports = unitset_template.main_ports(unitset, pod_template)
        if not ports:
            raise PreconditionError(
                f"pod template {name_of(pod_template)} declares no ports on container "
                f"{(unitset.get('spec') or {}).get('type')}"
            )

        unitset_network.reconcile_headless_service(ctx, unitset, ports)
        unitset_network.reconcile_external_service(ctx, unitset, ports)
        unitset_network.reconcile_unit_services(ctx, unitset, ports)
        unitset_access.reconcile_service_account(ctx, unitset)
        unitset_certs.reconcile_certificates(ctx, unitset)

        unitset = unitset_status.refresh_status(ctx, unitset)

        if unitset_scale.reconcile_units(ctx, unitset, pod_template):
            unitset_status.observe_generation(ctx, unitset)
        unitset = self._latest(unitset)
        unitset_scale.backfill_node_names(ctx, unitset)
        unitset = self._latest(unitset)

        unitset_monitor.reconcile_pod_monitor(ctx, unitset)

        unitset_update.reconcile_image_version(ctx, unitset, pod_template)
        unitset_update.reconcile_resources(ctx, unitset)
        unitset_update.reconcile_labels_annotations(ctx, unitset)
        unitset_update.reconcile_storage(ctx, unitset)

        unitset_status.refresh_status(ctx, unitset, observe_generation=True)

    def _latest(self, unitset: dict[str, Any]) -> dict[str, Any]:
        return self.ctx.store.get(UNITSET, namespace_of(unitset), name_of(unitset)) or unitset
