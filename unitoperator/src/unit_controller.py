from __future__ import annotations

from typing import Any

from unitoperator.src import unit_agent, unit_delete, unit_status, unit_storage
from unitoperator.src.concurrency import poll_until
from unitoperator.src.constants import PHASE_FAILED, PHASE_SUCCEEDED
from unitoperator.src.context import ReconcileContext
from unitoperator.src.drift import build_pod, pod_patch, recreate_reason
from unitoperator.src.errors import ReconcileError, WaitTimeoutError
from unitoperator.src.kube import POD, UNIT
from unitoperator.src.metrics import METRICS
from unitoperator.src.podutil import (
    in_maintenance,
    is_deleting,
    name_of,
    namespace_of,
    pod_phase,
    pod_scheduled,
)

DEFAULT_RECONCILE_THRESHOLD = 6


class UnitReconciler:
    """Drives one Unit's pod, claims, config and process toward its declaration.

    Each pass runs a fixed sequence of steps and stops at the first failure;
    the failure is recorded as a ``Failed`` warning event on the unit and
    re-raised so the runner requeues the key.
    """

    controller_name = "unit"

    def __init__(self, ctx: ReconcileContext) -> None:
        self.ctx = ctx
        self.logger = ctx.logger

    def reconcile(self, namespace: str, name: str) -> bool:
        """Run one pass for the object; returns False once it no longer exists."""
        unit = self.ctx.store.get(UNIT, namespace, name)
        if unit is None:
            self.logger.debug("Unit %s/%s no longer exists", namespace, name)
            return False
        try:
            self._reconcile(unit)
        except Exception as exc:
            self.ctx.events.warning(unit, "Failed", str(exc))
            raise
        return True

    def _reconcile(self, unit: dict[str, Any]) -> None:
        if is_deleting(unit):
            self.logger.info(
                "Unit %s/%s is being deleted, finalizers: %s",
                namespace_of(unit),
                name_of(unit),
                unit["metadata"].get("finalizers") or [],
            )
            unit_delete.finalize_unit(self.ctx, unit)
            return

        if in_maintenance(unit):
            self.logger.info("Unit %s/%s is in maintenance mode", namespace_of(unit), name_of(unit))
            unit_status.refresh_status(self.ctx, unit)
            return

        unit_storage.reconcile_claims(self.ctx, unit)
        unit = unit_status.refresh_status(self.ctx, unit)
        self.recover_failed_pod(unit)
        self.reconcile_pod(unit)
        self.wait_until_scheduled(unit)
        unit = unit_status.refresh_status(self.ctx, unit)
        unit_agent.sync_config(self.ctx, unit)
        unit = self.ctx.store.get(UNIT, namespace_of(unit), name_of(unit)) or unit
        unit_agent.reconcile_service(self.ctx, unit)
        unit_status.refresh_status(self.ctx, unit)

    # ------------------------------------------------------------------
    # Pod
    # ------------------------------------------------------------------

    def _wait_pod_gone(self, unit: dict[str, Any], interval: float, timeout: float) -> None:
        namespace = namespace_of(unit)
        name = name_of(unit)
        poll_until(
            lambda: self.ctx.store.get(POD, namespace, name) is None,
            interval=interval,
            timeout=timeout,
            stop_event=self.ctx.stop_event,
            description=f"pod {namespace}/{name} deletion",
        )

    def recover_failed_pod(self, unit: dict[str, Any]) -> None:
        """Recreate a pod stuck in Failed or Succeeded once the grace window runs out."""
        namespace = namespace_of(unit)
        name = name_of(unit)
        pod = self.ctx.store.get(POD, namespace, name)
        if pod is None or pod_phase(pod) not in (PHASE_FAILED, PHASE_SUCCEEDED):
            return
        policy = (unit.get("spec") or {}).get("failedPodRecoveryPolicy") or {}
        if not policy.get("enabled", True):
            self.logger.info("Pod %s/%s is %s but recovery is disabled", namespace, name, pod_phase(pod))
            return

        threshold = policy.get("reconcileThreshold") or DEFAULT_RECONCILE_THRESHOLD
        interval = self.ctx.waits.recovery_check_interval
        try:
            poll_until(
                lambda: pod_phase(self.ctx.store.get(POD, namespace, name))
                not in (PHASE_FAILED, PHASE_SUCCEEDED),
                interval=interval,
                timeout=interval * threshold,
                stop_event=self.ctx.stop_event,
                description=f"pod {namespace}/{name} recovery",
            )
            return
        except WaitTimeoutError:
            self.logger.info("Pod %s/%s did not recover, recreating", namespace, name)

        self.ctx.store.delete(POD, namespace, name)
        wait = self.ctx.waits.recovery_pod_gone
        self._wait_pod_gone(unit, wait.interval, wait.timeout)
        self.ctx.store.create(POD, build_pod(unit))
        METRICS.pod_recreates_total.labels(reason="failed pod recovery").inc()
        self.ctx.events.normal(unit, "SuccessCreated", f"recovery: recreated pod {name}")

    def reconcile_pod(self, unit: dict[str, Any]) -> None:
        """Create the pod, recreate it on drift that cannot be patched, or patch it in place."""
        namespace = namespace_of(unit)
        name = name_of(unit)
        pod = self.ctx.store.get(POD, namespace, name)

        if pod is None:
            self.ctx.store.create(POD, build_pod(unit))
            self.ctx.events.normal(unit, "SuccessCreated", f"created pod {name}")
            self.logger.info("Created pod %s/%s", namespace, name)
            return

        if is_deleting(pod):
            raise ReconcileError(f"pod {namespace}/{name} is being deleted")

        reason = recreate_reason(unit, pod)
        if reason:
            self.recreate_pod(unit, pod, reason)
            return

        patch = pod_patch(unit, pod)
        if patch:
            self.ctx.store.patch(POD, namespace, name, patch)
            self.ctx.events.normal(unit, "SuccessUpdated", f"patched pod {name}")
            self.logger.info("Patched pod %s/%s", namespace, name)

    def recreate_pod(self, unit: dict[str, Any], pod: dict[str, Any], reason: str) -> None:
        namespace = namespace_of(unit)
        name = name_of(unit)
        self.ctx.events.normal(
            unit, "ResourceCheck", f"[{reason}] regenerating pod: stop service, delete pod, create pod"
        )
        unit_status.mark_recreating(self.ctx, unit, reason)
        unit_agent.stop_best_effort(self.ctx, unit, pod)

        self.ctx.store.delete(POD, namespace, name)
        wait = self.ctx.waits.pod_gone
        self._wait_pod_gone(unit, wait.interval, wait.timeout)

        latest = self.ctx.store.get(UNIT, namespace, name)
        if latest is None:
            raise ReconcileError(f"unit {namespace}/{name} disappeared during pod recreation")
        self.ctx.store.create(POD, build_pod(latest))
        METRICS.pod_recreates_total.labels(reason=reason).inc()
        self.ctx.events.normal(unit, "SuccessCreated", f"regenerated pod {name}")
        self.logger.info("Recreated pod %s/%s: %s", namespace, name, reason)

    def wait_until_scheduled(self, unit: dict[str, Any]) -> None:
        namespace = namespace_of(unit)
        name = name_of(unit)
        wait = self.ctx.waits.pod_scheduled
        poll_until(
            lambda: pod_scheduled(self.ctx.store.get(POD, namespace, name)),
            interval=wait.interval,
            timeout=wait.timeout,
            stop_event=self.ctx.stop_event,
            description=f"pod {namespace}/{name} scheduling",
        )
