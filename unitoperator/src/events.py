from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from unitoperator.src.constants import EVENT_SOURCE_COMPONENT
from unitoperator.src.kube import EVENT, ResourceStore

NORMAL = "Normal"
WARNING = "Warning"


def utc_now_rfc3339() -> str:
    """Return the current UTC time as a compact RFC 3339 string (e.g. ``2024-01-15T08:30:00Z``)."""
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


class EventRecorder:
    """Writes core/v1 Events against Units and UnitSets.

    Recording is best effort: a failed write is logged and never interrupts
    the reconcile that produced it.
    """

    def __init__(
        self,
        store: ResourceStore,
        logger: logging.Logger | None = None,
        now_fn: Callable[[], str] = utc_now_rfc3339,
    ) -> None:
        self.store = store
        self.logger = logger or logging.getLogger(__name__)
        self.now_fn = now_fn

    def event(self, obj: dict[str, Any], event_type: str, reason: str, message: str) -> None:
        metadata = obj.get("metadata") or {}
        namespace = metadata.get("namespace") or "default"
        name = metadata.get("name", "")
        now = self.now_fn()
        body = {
            "apiVersion": "v1",
            "kind": "Event",
            "metadata": {
                "name": f"{name}.{uuid.uuid4().hex[:16]}",
                "namespace": namespace,
            },
            "involvedObject": {
                "apiVersion": obj.get("apiVersion", ""),
                "kind": obj.get("kind", ""),
                "name": name,
                "namespace": namespace,
                "uid": metadata.get("uid", ""),
            },
            "type": event_type,
            "reason": reason,
            "message": message,
            "source": {"component": EVENT_SOURCE_COMPONENT},
            "firstTimestamp": now,
            "lastTimestamp": now,
            "count": 1,
        }
        try:
            self.store.create(EVENT, body)
        except Exception:
            self.logger.warning(
                "Failed to record %s event %s for %s/%s", event_type, reason, namespace, name,
                exc_info=True,
            )

    def normal(self, obj: dict[str, Any], reason: str, message: str) -> None:
        self.event(obj, NORMAL, reason, message)

    def warning(self, obj: dict[str, Any], reason: str, message: str) -> None:
        self.event(obj, WARNING, reason, message)
