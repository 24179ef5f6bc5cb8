from __future__ import annotations

import queue
from dataclasses import dataclass


@dataclass(frozen=True)
class MetricsRequested:
    user_id: str
    ticket: int
    trade_id: int


class EventQueue:
    def __init__(self, maxsize: int = 0) -> None:
        self._q: "queue.Queue[MetricsRequested]" = queue.Queue(maxsize=maxsize)

    def publish(self, event: MetricsRequested) -> None:
        self._q.put_nowait(event)

    def get(self, timeout: float | None = None) -> MetricsRequested | None:
        try:
            return self._q.get(timeout=timeout)
        except queue.Empty:
            return None

    def get_nowait(self) -> MetricsRequested | None:
        try:
            return self._q.get_nowait()
        except queue.Empty:
            return None

    def pending(self) -> int:
        return self._q.qsize()
