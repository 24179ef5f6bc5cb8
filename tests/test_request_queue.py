from __future__ import annotations

import logging
import threading
import time

import pytest

from broker_sync.core.exceptions import TaskRetryExhaustedError
from broker_sync.execution.request_queue import QueueStatus, RequestQueue


def _recorder(log: list[str], label: str):
    def _op() -> str:
        log.append(label)
        return label

    return _op


def test_dispatches_by_priority_then_fifo() -> None:
    order: list[str] = []
    q = RequestQueue(max_concurrent=1, retry_delay_seconds=0)
    futures = [
        q.enqueue(_recorder(order, "a"), priority=1),
        q.enqueue(_recorder(order, "b"), priority=5),
        q.enqueue(_recorder(order, "c"), priority=1),
    ]
    with q:
        assert [f.result(timeout=5) for f in futures] == ["a", "b", "c"]
    assert order == ["b", "a", "c"]


def test_status_counts_queued_tasks() -> None:
    q = RequestQueue(max_concurrent=2)
    for _ in range(3):
        q.enqueue(lambda: None)
    assert q.status() == QueueStatus(length=3, active=0, pending=3)


def test_retry_then_success(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.DEBUG, logger="broker_sync.queue")
    calls = 0

    def flaky() -> str:
        nonlocal calls
        calls += 1
        if calls <= 2:
            raise ConnectionError("429 too many requests")
        return "ok"

    with RequestQueue(max_concurrent=1, max_retries=3, retry_delay_seconds=0) as q:
        assert q.enqueue(flaky).result(timeout=5) == "ok"
    assert calls == 3

    retries = [r.retry_count for r in caplog.records if r.getMessage() == "task failed, retrying"]
    assert retries == [1, 2]
    (done,) = [r for r in caplog.records if r.getMessage() == "task completed"]
    assert done.retries == 2


def test_exhausted_retries_fail_with_last_error() -> None:
    calls = 0
    errors: list[Exception] = []

    def always_fails() -> None:
        nonlocal calls
        calls += 1
        exc = RuntimeError(f"boom {calls}")
        errors.append(exc)
        raise exc

    with RequestQueue(max_concurrent=1, max_retries=2, retry_delay_seconds=0) as q:
        fut = q.enqueue(always_fails)
        with pytest.raises(TaskRetryExhaustedError) as info:
            fut.result(timeout=5)

    assert calls == 3
    assert info.value.attempts == 3
    assert info.value.last_error is errors[-1]
    assert info.value.__cause__ is errors[-1]


def test_retried_task_goes_to_back_of_its_band() -> None:
    order: list[str] = []
    failed = False

    def first() -> str:
        nonlocal failed
        order.append("first")
        if not failed:
            failed = True
            raise RuntimeError("transient")
        return "first"

    q = RequestQueue(max_concurrent=1, retry_delay_seconds=0)
    f1 = q.enqueue(first)
    f2 = q.enqueue(_recorder(order, "second"))
    with q:
        f1.result(timeout=5)
        f2.result(timeout=5)
    assert order == ["first", "second", "first"]


def test_linear_backoff_delays_retry() -> None:
    stamps: list[float] = []

    def op() -> None:
        stamps.append(time.monotonic())
        if len(stamps) < 3:
            raise RuntimeError("again")

    with RequestQueue(max_concurrent=1, max_retries=3, retry_delay_seconds=0.05) as q:
        q.enqueue(op).result(timeout=5)

    assert len(stamps) == 3
    assert stamps[1] - stamps[0] >= 0.05
    assert stamps[2] - stamps[1] >= 0.10


def test_concurrency_is_capped() -> None:
    lock = threading.Lock()
    running = 0
    peak = 0

    def op() -> None:
        nonlocal running, peak
        with lock:
            running += 1
            peak = max(peak, running)
        time.sleep(0.02)
        with lock:
            running -= 1

    with RequestQueue(max_concurrent=2) as q:
        futures = [q.enqueue(op) for _ in range(8)]
        for f in futures:
            f.result(timeout=5)
    assert peak <= 2


def test_failure_of_one_task_does_not_affect_others() -> None:
    def bad() -> None:
        raise ValueError("bad request")

    with RequestQueue(max_concurrent=2, max_retries=0) as q:
        failing = q.enqueue(bad)
        ok = q.enqueue(lambda: 7)
        assert ok.result(timeout=5) == 7
        assert isinstance(failing.exception(timeout=5), TaskRetryExhaustedError)


def test_enqueue_after_stop_is_rejected() -> None:
    q = RequestQueue(max_concurrent=1)
    with q:
        assert q.enqueue(lambda: 1).result(timeout=5) == 1
    with pytest.raises(RuntimeError, match="request queue stopped"):
        q.enqueue(lambda: 2)
    assert q.status().length == 0


def test_queue_can_be_restarted_after_stop() -> None:
    q = RequestQueue(max_concurrent=1)
    q.start()
    q.stop()
    with q:
        assert q.enqueue(lambda: "again").result(timeout=5) == "again"
