from __future__ import annotations

import heapq
import itertools
import logging
import random
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from kubernetes import watch
from kubernetes.client import ApiException

from unitoperator.src.constants import LABEL_UNIT_NAME, LABEL_UNITSET_NAME, UNIT_KIND, UNITSET_KIND
from unitoperator.src.kube import ResourceStore
from unitoperator.src.logs import reconcile_context
from unitoperator.src.metrics import METRICS

Key = tuple[str, str]

WATCH_TIMEOUT_SECONDS = 300
MAX_BACKOFF_SECONDS = 30


class Reconciler(Protocol):
    controller_name: str

    def reconcile(self, namespace: str, name: str) -> bool: ...


class WorkQueue:
    """Deduplicating work queue with delayed adds.

    A key is handed to at most one worker at a time. Adding a key while it is
    being processed marks it dirty, and it is queued again once the worker
    calls :meth:`done`.
    """

    def __init__(self, name: str, clock: Callable[[], float] = time.monotonic) -> None:
        self.name = name
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: deque[Key] = deque()
        self._queued: set[Key] = set()
        self._processing: set[Key] = set()
        self._dirty: set[Key] = set()
        self._delayed: list[tuple[float, int, Key]] = []
        self._sequence = itertools.count()
        self._shutdown = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def _enqueue(self, key: Key) -> None:
        if key in self._processing:
            self._dirty.add(key)
            return
        if key in self._queued:
            return
        self._queued.add(key)
        self._queue.append(key)
        METRICS.queue_depth.labels(controller=self.name).set(len(self._queue))
        self._cond.notify()

    def add(self, key: Key) -> None:
        with self._cond:
            if self._shutdown:
                return
            self._enqueue(key)

    def add_after(self, key: Key, delay: float) -> None:
        if delay <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutdown:
                return
            heapq.heappush(self._delayed, (self._clock() + delay, next(self._sequence), key))
            self._cond.notify()

    def _promote_due(self) -> float | None:
        """Move due delayed keys onto the queue; return seconds until the next one."""
        now = self._clock()
        while self._delayed and self._delayed[0][0] <= now:
            _, _, key = heapq.heappop(self._delayed)
            self._enqueue(key)
        if self._delayed:
            return self._delayed[0][0] - now
        return None

    def get(self, timeout: float | None = None) -> Key | None:
        """Block until a key is ready and mark it as processing.

        Returns None on shutdown or when ``timeout`` elapses first.
        """
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                if self._shutdown:
                    return None
                next_due = self._promote_due()
                if self._queue:
                    key = self._queue.popleft()
                    self._queued.discard(key)
                    self._processing.add(key)
                    METRICS.queue_depth.labels(controller=self.name).set(len(self._queue))
                    return key
                wait = next_due
                if deadline is not None:
                    remaining = deadline - self._clock()
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(timeout=wait)

    def done(self, key: Key) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._dirty.discard(key)
                self._enqueue(key)

    def shutdown(self) -> None:
        with self._cond:
            self._shutdown = True
            self._cond.notify_all()


def _self_key(obj: dict[str, Any]) -> list[Key]:
    meta = obj.get("metadata") or {}
    return [(meta.get("namespace", ""), meta.get("name", ""))]


def _owner_key(owner_kind: str, label: str) -> Callable[[dict[str, Any]], list[Key]]:
    """Map a dependent object to its owner via the owner label or its ownerReferences."""

    def _keys(obj: dict[str, Any]) -> list[Key]:
        meta = obj.get("metadata") or {}
        namespace = meta.get("namespace", "")
        owner = (meta.get("labels") or {}).get(label)
        if owner:
            return [(namespace, owner)]
        return [
            (namespace, ref.get("name", ""))
            for ref in meta.get("ownerReferences") or []
            if ref.get("kind") == owner_kind and ref.get("name")
        ]

    return _keys


unit_of = _owner_key(UNIT_KIND, LABEL_UNIT_NAME)
unitset_of = _owner_key(UNITSET_KIND, LABEL_UNITSET_NAME)


@dataclass(frozen=True)
class WatchSource:
    """One watched kind and how its objects map to reconcile keys."""

    kind: str
    keys: Callable[[dict[str, Any]], list[Key]] = _self_key
    label_selector: str | None = None


class ControllerRunner:
    """Runs one reconciler: list-then-watch feeding a work queue drained by worker threads.

    Every watch source keeps its own list/watch loop. ``410 Gone`` re-lists,
    ``401``/``403`` stop the loop and clear readiness, and other errors back
    off with jitter up to 30 seconds. Every processed key is requeued after
    ``requeue_seconds`` as a safety net for missed events.
    """

    def __init__(
        self,
        reconciler: Reconciler,
        store: ResourceStore,
        sources: list[WatchSource],
        *,
        namespace: str = "",
        workers: int = 10,
        requeue_seconds: float = 10,
        logger: logging.Logger | None = None,
    ) -> None:
        self.reconciler = reconciler
        self.name = reconciler.controller_name
        self.store = store
        self.sources = list(sources)
        self.namespace = namespace or None
        self.workers = workers
        self.requeue_seconds = requeue_seconds
        self.logger = logger or logging.getLogger(__name__)
        self.queue = WorkQueue(self.name)
        self.ready = threading.Event()
        self._listed: set[str] = set()
        self._listed_lock = threading.Lock()
        self._external_stop = threading.Event()
        self._watchers: dict[str, watch.Watch] = {}
        self._watcher_lock = threading.Lock()

    def request_stop(self) -> None:
        """Request a cooperative stop and interrupt any open watch stream."""
        self._external_stop.set()
        self.queue.shutdown()
        with self._watcher_lock:
            watchers = list(self._watchers.values())
        for watcher in watchers:
            watcher.stop()

    def _should_stop(self, stop: threading.Event) -> bool:
        return stop.is_set() or self._external_stop.is_set()

    def _mark_listed(self, source: WatchSource) -> None:
        with self._listed_lock:
            self._listed.add(source.kind)
            if len(self._listed) == len(self.sources):
                self.ready.set()

    def _mark_denied(self, source: WatchSource, phase: str, status: int) -> None:
        self.logger.error(
            "Kubernetes API access denied during %s of %s (status=%s). "
            "Check operator RBAC and service account permissions.",
            phase,
            source.kind,
            status,
        )
        METRICS.watch_errors_total.labels(controller=self.name).inc()
        with self._listed_lock:
            self._listed.discard(source.kind)
        self.ready.clear()

    def _enqueue(self, source: WatchSource, obj: dict[str, Any]) -> None:
        for key in source.keys(obj):
            if key[1]:
                self.queue.add(key)

    def _list(self, source: WatchSource) -> str | None:
        items, resource_version = self.store.list_snapshot(
            source.kind, self.namespace, source.label_selector
        )
        for item in items:
            self._enqueue(source, item)
        return resource_version

    def _backoff(self, stop: threading.Event, backoff_seconds: float) -> float:
        jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
        stop.wait(timeout=jittered)
        return min(backoff_seconds * 2, MAX_BACKOFF_SECONDS)

    def watch_source(self, source: WatchSource, stop: threading.Event) -> None:
        resource_version: str | None = None
        backoff_seconds: float = 1
        while not self._should_stop(stop):
            try:
                resource_version = self._list(source)
                self._mark_listed(source)
                self.logger.info(
                    "%s controller watching %s from resourceVersion %s",
                    self.name,
                    source.kind,
                    resource_version,
                )
                break
            except ApiException as exc:
                if exc.status in {401, 403}:
                    self._mark_denied(source, "initial list", exc.status)
                    return
                self.logger.exception("Initial list of %s failed", source.kind)
                METRICS.watch_errors_total.labels(controller=self.name).inc()
            except Exception:
                self.logger.exception("Unexpected error during initial list of %s", source.kind)
                METRICS.watch_errors_total.labels(controller=self.name).inc()
            backoff_seconds = self._backoff(stop, backoff_seconds)

        backoff_seconds = 1
        stream_count = 0
        while not self._should_stop(stop):
            watcher = watch.Watch()
            with self._watcher_lock:
                self._watchers[source.kind] = watcher
            try:
                if stream_count > 0:
                    METRICS.watch_reconnects_total.labels(controller=self.name).inc()
                stream_count += 1
                func, kwargs = self.store.list_function(source.kind, self.namespace)
                if source.label_selector:
                    kwargs["label_selector"] = source.label_selector
                stream = watcher.stream(
                    func,
                    resource_version=resource_version,
                    timeout_seconds=WATCH_TIMEOUT_SECONDS,
                    **kwargs,
                )
                for event in stream:
                    if self._should_stop(stop):
                        break
                    obj = event.get("raw_object")
                    if not isinstance(obj, dict):
                        continue
                    rv = (obj.get("metadata") or {}).get("resourceVersion")
                    if rv:
                        resource_version = rv
                    if event.get("type") == "BOOKMARK":
                        continue
                    self._enqueue(source, obj)
                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning("Watch of %s expired, re-listing", source.kind)
                    try:
                        resource_version = self._list(source)
                    except ApiException as relist_exc:
                        if relist_exc.status in {401, 403}:
                            self._mark_denied(source, "410 re-list", relist_exc.status)
                            return
                        self.logger.exception("Failed to re-list %s after 410", source.kind)
                        METRICS.watch_errors_total.labels(controller=self.name).inc()
                        resource_version = None
                    continue
                if exc.status in {401, 403}:
                    self._mark_denied(source, "watch", exc.status)
                    return
                self.logger.exception("Kubernetes API watch error on %s", source.kind)
                METRICS.watch_errors_total.labels(controller=self.name).inc()
                backoff_seconds = self._backoff(stop, backoff_seconds)
            except Exception:
                self.logger.exception("Unexpected watch error on %s", source.kind)
                METRICS.watch_errors_total.labels(controller=self.name).inc()
                backoff_seconds = self._backoff(stop, backoff_seconds)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._watchers.get(source.kind) is watcher:
                        del self._watchers[source.kind]

    def process(self, key: Key) -> bool:
        """Reconcile one key, record its outcome and schedule its safety-net requeue.

        Keys whose object is gone are not requeued; a later watch event
        brings them back if the object is recreated.
        """
        namespace, name = key
        started = time.monotonic()
        result = "success"
        requeue = True
        try:
            requeue = self.reconciler.reconcile(namespace, name)
        except Exception:
            result = "error"
            self.logger.exception(
                "Reconcile of %s %s/%s failed",
                self.name,
                namespace,
                name,
                extra=reconcile_context(self.name, namespace, name),
            )
        finally:
            METRICS.reconcile_duration_seconds.labels(controller=self.name).observe(
                time.monotonic() - started
            )
            METRICS.reconcile_total.labels(controller=self.name, result=result).inc()
            self.queue.done(key)
        if requeue:
            self.queue.add_after(key, self.requeue_seconds)
        return result == "success"

    def _work(self, stop: threading.Event) -> None:
        while not self._should_stop(stop):
            key = self.queue.get(timeout=1)
            if key is None:
                continue
            self.process(key)

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Start the watch and worker threads and block until shutdown.

        Returns early when every watch loop has exited, which only happens
        when API access was denied.
        """
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()

        watch_threads = [
            threading.Thread(
                target=self.watch_source,
                args=(source, stop),
                name=f"{self.name}-watch-{source.kind.lower()}",
                daemon=True,
            )
            for source in self.sources
        ]
        worker_threads = [
            threading.Thread(target=self._work, args=(stop,), name=f"{self.name}-worker-{i}", daemon=True)
            for i in range(self.workers)
        ]
        for thread in watch_threads + worker_threads:
            thread.start()

        while not self._should_stop(stop):
            if not any(thread.is_alive() for thread in watch_threads):
                self.logger.error("All %s watch loops exited; stopping controller", self.name)
                break
            stop.wait(timeout=1)

        self.request_stop()
        for thread in watch_threads + worker_threads:
            thread.join(timeout=5)
        self.ready.clear()
        self.logger.info("%s controller stopped", self.name)
