from __future__ import annotations

from typing import Any

from unitoperator.src import naming
from unitoperator.src.concurrency import fan_out, poll_until, retry_on_conflict
from unitoperator.src.constants import FINALIZER_POD_DELETE, FINALIZER_PVC_DELETE
from unitoperator.src.context import ReconcileContext
from unitoperator.src.kube import PERSISTENT_VOLUME, PERSISTENT_VOLUME_CLAIM, POD, UNIT
from unitoperator.src.podutil import force_delete_requested, has_finalizer, name_of, namespace_of


def remove_finalizer(ctx: ReconcileContext, kind: str, obj: dict[str, Any], finalizer: str) -> None:
    """Drop ``finalizer`` from the live object, re-reading it on every conflict."""
    namespace = namespace_of(obj)
    name = name_of(obj)

    def _attempt() -> None:
        current = ctx.store.get(kind, namespace, name)
        if current is None:
            return
        if not has_finalizer(current, finalizer):
            return
        current["metadata"]["finalizers"] = [
            f for f in current["metadata"]["finalizers"] if f != finalizer
        ]
        ctx.store.replace(kind, current)

    retry_on_conflict(_attempt)
    ctx.logger.info("Removed finalizer %s from %s %s/%s", finalizer, kind, namespace, name)


def _delete_pod(ctx: ReconcileContext, unit: dict[str, Any]) -> None:
    namespace = namespace_of(unit)
    name = name_of(unit)
    grace = 0 if force_delete_requested(unit) else None
    ctx.store.delete(POD, namespace, name, grace_period_seconds=grace)
    wait = ctx.waits.pod_gone
    poll_until(
        lambda: ctx.store.get(POD, namespace, name) is None,
        interval=wait.interval,
        timeout=wait.timeout,
        stop_event=ctx.stop_event,
        description=f"pod {namespace}/{name} deletion",
    )
    remove_finalizer(ctx, UNIT, unit, FINALIZER_POD_DELETE)


def _delete_claim(ctx: ReconcileContext, unit: dict[str, Any], claim: str) -> None:
    namespace = namespace_of(unit)
    force = force_delete_requested(unit)
    grace = 0 if force else None
    volumes = ctx.store.persistent_volumes_for_claim(claim) if force else []

    ctx.store.delete(PERSISTENT_VOLUME_CLAIM, namespace, claim, grace_period_seconds=grace)
    for volume in volumes:
        ctx.logger.info("Force deleting volume %s bound to claim %s", name_of(volume), claim)
        ctx.store.delete(PERSISTENT_VOLUME, "", name_of(volume), grace_period_seconds=0)

    wait = ctx.waits.claim_gone
    poll_until(
        lambda: ctx.store.get(PERSISTENT_VOLUME_CLAIM, namespace, claim) is None,
        interval=wait.interval,
        timeout=wait.timeout,
        stop_event=ctx.stop_event,
        description=f"claim {namespace}/{claim} deletion",
    )
    for volume in volumes:
        volume_wait = ctx.waits.volume_gone
        poll_until(
            lambda volume_name=name_of(volume): ctx.store.get(PERSISTENT_VOLUME, "", volume_name)
            is None,
            interval=volume_wait.interval,
            timeout=volume_wait.timeout,
            stop_event=ctx.stop_event,
            description=f"volume {name_of(volume)} deletion",
        )


def _delete_claims(ctx: ReconcileContext, unit: dict[str, Any]) -> None:
    claims = [
        naming.claim_name(name_of(unit), template.get("name", ""))
        for template in (unit.get("spec") or {}).get("volumeClaimTemplates") or []
        if template.get("name")
    ]
    fan_out(claims, lambda claim: _delete_claim(ctx, unit, claim))
    remove_finalizer(ctx, UNIT, unit, FINALIZER_PVC_DELETE)


HANDLERS = {
    FINALIZER_POD_DELETE: _delete_pod,
    FINALIZER_PVC_DELETE: _delete_claims,
}


def finalize_unit(ctx: ReconcileContext, unit: dict[str, Any]) -> None:
    """Tear down a deleting unit's dependents, one concurrent task per finalizer.

    A finalizer is removed only after its dependents are confirmed gone; a
    failed or timed-out task leaves its finalizer in place for the next pass.
    """
    finalizers = [
        finalizer
        for finalizer in (unit.get("metadata") or {}).get("finalizers") or []
        if finalizer in HANDLERS
    ]
    fan_out(finalizers, lambda finalizer: HANDLERS[finalizer](ctx, unit))
