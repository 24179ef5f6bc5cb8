from __future__ import annotations

import itertools
import logging
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable

from broker_sync.core.exceptions import TaskRetryExhaustedError
from broker_sync.core.utils import utc_now


class TaskState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class QueuedTask:
    id: str
    operation: Callable[[], Any]
    priority: int
    enqueued_at: datetime
    seq: int
    future: Future = field(default_factory=Future)
    retry_count: int = 0
    state: TaskState = TaskState.PENDING
    eligible_at: float = 0.0
    last_error: BaseException | None = None

    def sort_key(self) -> tuple[int, int]:
        return (-self.priority, self.seq)


@dataclass(frozen=True)
class QueueStatus:
    length: int
    active: int
    pending: int


class RequestQueue:
    """Priority dispatcher for calls against rate-limited remote APIs.

    Tasks run highest priority first, FIFO within a priority, with at most
    ``max_concurrent`` running at once. A failed task is retried up to
    ``max_retries`` times, going to the back of its priority band and
    becoming eligible again after ``retry_delay_seconds * retry_count``.
    Callers get a ``concurrent.futures.Future`` per enqueued operation.
    """

    def __init__(
        self,
        *,
        max_concurrent: int = 5,
        max_retries: int = 3,
        retry_delay_seconds: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self.max_concurrent = int(max_concurrent)
        self.max_retries = int(max_retries)
        self.retry_delay_seconds = float(retry_delay_seconds)
        self._clock = clock
        self._log = logging.getLogger("broker_sync.queue")
        self._cond = threading.Condition()
        self._seq = itertools.count()
        self._pending: list[QueuedTask] = []
        self._active = 0
        self._running = False
        self._stopped = False
        self._dispatcher: threading.Thread | None = None
        self._executor: ThreadPoolExecutor | None = None

    def __enter__(self) -> "RequestQueue":
        self.start()
        return self

    def __exit__(self, *exc: object) -> None:
        self.stop()

    def enqueue(self, operation: Callable[[], Any], priority: int = 0) -> Future:
        task = QueuedTask(
            id=uuid.uuid4().hex[:12],
            operation=operation,
            priority=int(priority),
            enqueued_at=utc_now(),
            seq=next(self._seq),
        )
        with self._cond:
            if self._stopped:
                raise RuntimeError("request queue stopped")
            self._pending.append(task)
            length = len(self._pending) + self._active
            self._cond.notify_all()
        self._log.debug("task enqueued", extra={"task_id": task.id, "priority": task.priority, "queue_length": length})
        return task.future

    def status(self) -> QueueStatus:
        with self._cond:
            length = len(self._pending) + self._active
            return QueueStatus(length=length, active=self._active, pending=length - self._active)

    def start(self) -> None:
        with self._cond:
            if self._running:
                return
            self._running = True
            self._stopped = False
            self._executor = ThreadPoolExecutor(max_workers=self.max_concurrent, thread_name_prefix="request-queue")
            self._dispatcher = threading.Thread(target=self._dispatch_loop, name="request-queue-dispatcher", daemon=True)
            self._dispatcher.start()

    def stop(self, *, wait: bool = True) -> None:
        """Stop dispatching. Running tasks finish; tasks still queued are failed or cancelled."""
        with self._cond:
            if not self._running:
                return
            self._running = False
            self._stopped = True
            self._cond.notify_all()
            dispatcher, executor = self._dispatcher, self._executor
            self._dispatcher = None
            self._executor = None
        if dispatcher is not None:
            dispatcher.join(timeout=5.0)
        if executor is not None:
            executor.shutdown(wait=wait)

        with self._cond:
            leftovers, self._pending = self._pending, []
        for task in leftovers:
            if not task.future.cancel():
                task.future.set_exception(RuntimeError("request queue stopped"))
        if leftovers:
            self._log.warning("queue stopped with pending tasks", extra={"dropped": len(leftovers)})

    def _next_eligible(self, now: float) -> QueuedTask | None:
        eligible = [t for t in self._pending if t.eligible_at <= now]
        if not eligible:
            return None
        return min(eligible, key=QueuedTask.sort_key)

    def _wait_timeout(self, now: float) -> float | None:
        if self._active >= self.max_concurrent or not self._pending:
            return None
        return max(0.0, min(t.eligible_at for t in self._pending) - now)

    def _dispatch_loop(self) -> None:
        while True:
            with self._cond:
                task = None
                while self._running:
                    now = self._clock()
                    if self._active < self.max_concurrent:
                        task = self._next_eligible(now)
                        if task is not None:
                            break
                    self._cond.wait(timeout=self._wait_timeout(now))
                if task is None:
                    return
                self._pending.remove(task)
                if task.retry_count == 0 and not task.future.set_running_or_notify_cancel():
                    self._log.debug("task cancelled before dispatch", extra={"task_id": task.id})
                    continue
                task.state = TaskState.RUNNING
                self._active += 1
                executor = self._executor
            assert executor is not None
            executor.submit(self._run_task, task)

    def _run_task(self, task: QueuedTask) -> None:
        try:
            result = task.operation()
        except Exception as exc:
            self._on_failure(task, exc)
        else:
            task.state = TaskState.COMPLETED
            task.future.set_result(result)
            self._log.debug("task completed", extra={"task_id": task.id, "retries": task.retry_count})
        finally:
            with self._cond:
                self._active -= 1
                self._cond.notify_all()

    def _on_failure(self, task: QueuedTask, exc: Exception) -> None:
        task.last_error = exc
        if task.retry_count < self.max_retries:
            task.retry_count += 1
            task.state = TaskState.RETRYING
            delay = self.retry_delay_seconds * task.retry_count
            self._log.warning(
                "task failed, retrying",
                extra={"task_id": task.id, "retry_count": task.retry_count, "delay_s": delay, "error": str(exc)},
            )
            with self._cond:
                if self._stopped:
                    task.state = TaskState.FAILED
                    task.future.set_exception(RuntimeError("request queue stopped"))
                    return
                task.seq = next(self._seq)
                task.eligible_at = self._clock() + delay
                task.state = TaskState.PENDING
                self._pending.append(task)
                self._cond.notify_all()
            return

        task.state = TaskState.FAILED
        attempts = task.retry_count + 1
        self._log.error(
            "task failed permanently",
            extra={"task_id": task.id, "attempts": attempts, "error": str(exc)},
        )
        error = TaskRetryExhaustedError(
            f"task {task.id} failed after {attempts} attempts: {exc}",
            task_id=task.id,
            attempts=attempts,
            last_error=exc,
        )
        error.__cause__ = exc
        task.future.set_exception(error)
