from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from typing import Any, TypeVar

from unitoperator.src.errors import (
    AggregateError,
    WaitCancelledError,
    WaitTimeoutError,
    is_conflict,
)

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

MAX_FAN_OUT_WORKERS = 16
CONFLICT_RETRY_STEPS = 5
CONFLICT_RETRY_DELAY_SECONDS = 0.01
CONFLICT_RETRY_JITTER = 0.1


def fan_out(
    items: Iterable[T],
    task: Callable[[T], Any],
    *,
    key: Callable[[T], str] = str,
    max_workers: int = MAX_FAN_OUT_WORKERS,
) -> None:
    """Run ``task`` for every item concurrently and wait for all of them.

    Every task runs to completion even when siblings fail. All failures are
    raised together as one :class:`AggregateError` keyed by ``key(item)``.
    """
    items = list(items)
    if not items:
        return
    if len(items) == 1:
        # Keep single-item calls on the caller's thread; errors still aggregate.
        try:
            task(items[0])
        except Exception as exc:
            raise AggregateError({key(items[0]): exc}) from exc
        return

    errors: dict[str, BaseException] = {}
    with ThreadPoolExecutor(max_workers=min(max_workers, len(items))) as pool:
        futures = {key(item): pool.submit(task, item) for item in items}
        for name, future in futures.items():
            exc = future.exception()
            if exc is not None:
                errors[name] = exc
    if errors:
        raise AggregateError(errors)


def poll_until(
    condition: Callable[[], bool],
    *,
    interval: float,
    timeout: float,
    stop_event: threading.Event | None = None,
    immediate: bool = True,
    description: str = "condition",
) -> None:
    """Evaluate ``condition`` every ``interval`` seconds until it returns True.

    Raises :class:`WaitTimeoutError` once ``timeout`` elapses and
    :class:`WaitCancelledError` as soon as ``stop_event`` is set. Exceptions
    raised by ``condition`` propagate unchanged.
    """
    stop = stop_event or threading.Event()
    deadline = time.monotonic() + timeout
    if not immediate and stop.wait(timeout=interval):
        raise WaitCancelledError(f"cancelled while waiting for {description}")
    while True:
        if stop.is_set():
            raise WaitCancelledError(f"cancelled while waiting for {description}")
        if condition():
            return
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise WaitTimeoutError(f"timed out after {timeout}s waiting for {description}")
        if stop.wait(timeout=min(interval, remaining)):
            raise WaitCancelledError(f"cancelled while waiting for {description}")


def retry_on_conflict(fn: Callable[[], T], *, steps: int = CONFLICT_RETRY_STEPS) -> T:
    """Call ``fn`` again whenever it fails with HTTP 409, up to ``steps`` attempts.

    ``fn`` must re-read the object it writes so each attempt carries a fresh
    resourceVersion.
    """
    for attempt in range(1, steps + 1):
        try:
            return fn()
        except Exception as exc:
            if not is_conflict(exc) or attempt == steps:
                raise
            LOGGER.debug("Write conflict, retrying (attempt %d/%d)", attempt, steps)
            delay = CONFLICT_RETRY_DELAY_SECONDS * (1 + CONFLICT_RETRY_JITTER * random.random())  # noqa: S311
            time.sleep(delay)
    raise AssertionError("unreachable")
