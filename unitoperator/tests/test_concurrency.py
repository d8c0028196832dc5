from __future__ import annotations

import threading
from unittest.mock import MagicMock

import pytest
from kubernetes.client import ApiException

from unitoperator.src.concurrency import fan_out, poll_until, retry_on_conflict
from unitoperator.src.errors import AggregateError, WaitCancelledError, WaitTimeoutError


def test_fan_out_runs_every_task_and_collects_all_failures() -> None:
    seen: list[str] = []
    lock = threading.Lock()

    def _task(name: str) -> None:
        with lock:
            seen.append(name)
        if name in ("b", "c"):
            raise RuntimeError(f"{name} failed")

    with pytest.raises(AggregateError) as excinfo:
        fan_out(["c", "a", "b"], _task)

    assert sorted(seen) == ["a", "b", "c"]
    assert list(excinfo.value.errors) == ["b", "c"]
    assert "2 error(s)" in str(excinfo.value)


def test_fan_out_wraps_single_item_failure() -> None:
    def _task(name: str) -> None:
        raise ValueError("nope")

    with pytest.raises(AggregateError) as excinfo:
        fan_out(["only"], _task)

    assert isinstance(excinfo.value.errors["only"], ValueError)


def test_fan_out_with_no_items_is_a_no_op() -> None:
    task = MagicMock()

    fan_out([], task)

    task.assert_not_called()


def test_poll_until_returns_once_condition_holds() -> None:
    results = iter([False, False, True])

    poll_until(lambda: next(results), interval=0.001, timeout=1)


def test_poll_until_times_out() -> None:
    with pytest.raises(WaitTimeoutError, match="pod demo-0 to go away"):
        poll_until(lambda: False, interval=0.01, timeout=0.03, description="pod demo-0 to go away")


def test_poll_until_is_cancelled_by_stop_event() -> None:
    stop = threading.Event()
    stop.set()

    with pytest.raises(WaitCancelledError):
        poll_until(lambda: True, interval=0.01, timeout=1, stop_event=stop)


def test_poll_until_propagates_condition_errors() -> None:
    def _boom() -> bool:
        raise RuntimeError("read failed")

    with pytest.raises(RuntimeError, match="read failed"):
        poll_until(_boom, interval=0.01, timeout=1)


def test_retry_on_conflict_retries_only_conflicts() -> None:
    fn = MagicMock(side_effect=[ApiException(status=409), ApiException(status=409), "ok"])

    assert retry_on_conflict(fn) == "ok"
    assert fn.call_count == 3


def test_retry_on_conflict_gives_up_after_steps() -> None:
    fn = MagicMock(side_effect=ApiException(status=409))

    with pytest.raises(ApiException):
        retry_on_conflict(fn, steps=2)

    assert fn.call_count == 2


def test_retry_on_conflict_propagates_other_errors_immediately() -> None:
    fn = MagicMock(side_effect=ApiException(status=500))

    with pytest.raises(ApiException):
        retry_on_conflict(fn)

    assert fn.call_count == 1
