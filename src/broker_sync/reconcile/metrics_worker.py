from __future__ import annotations

import logging
import threading
import traceback
from typing import Callable

from broker_sync.persistence.base import TradeStore
from broker_sync.persistence.repos import ErrorRepo
from broker_sync.reconcile.events import EventQueue, MetricsRequested


class MetricsWorker:
    """Consumes MetricsRequested events and recomputes derived trade metrics.

    Failures are logged (and recorded when an ErrorRepo is given); they never
    reach the reconciler or its caller.
    """

    def __init__(
        self,
        *,
        events: EventQueue,
        store: TradeStore,
        errors: ErrorRepo | None = None,
        on_thread_exit: Callable[[], None] | None = None,
        poll_seconds: float = 0.5,
    ) -> None:
        self.events = events
        self.store = store
        self.errors = errors
        self._on_thread_exit = on_thread_exit
        self._poll_seconds = poll_seconds
        self._log = logging.getLogger("broker_sync.metrics")
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.processed = 0
        self.failed = 0

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="metrics-worker", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def drain(self) -> int:
        """Process every pending event on the calling thread."""
        handled = 0
        while True:
            event = self.events.get_nowait()
            if event is None:
                return handled
            self._handle(event)
            handled += 1

    def _run(self) -> None:
        try:
            while not self._stop.is_set():
                event = self.events.get(timeout=self._poll_seconds)
                if event is not None:
                    self._handle(event)
            self.drain()
        finally:
            if self._on_thread_exit is not None:
                self._on_thread_exit()

    def _handle(self, event: MetricsRequested) -> None:
        try:
            metrics = self.store.compute_trade_metrics(event.trade_id)
        except Exception as exc:
            self.failed += 1
            self._log.error(
                "metrics computation failed",
                extra={"user_id": event.user_id, "ticket": event.ticket, "trade_id": event.trade_id, "error": str(exc)},
            )
            self._record_error(event, exc)
            return
        self.processed += 1
        self._log.debug(
            "metrics computed",
            extra={"ticket": event.ticket, "trade_id": event.trade_id, "win_loss": metrics.win_loss},
        )

    def _record_error(self, event: MetricsRequested, exc: Exception) -> None:
        if self.errors is None:
            return
        try:
            self.errors.insert(
                component="metrics",
                severity="ERROR",
                message=str(exc),
                traceback="".join(traceback.format_exception(exc)),
                context={"user_id": event.user_id, "ticket": event.ticket, "trade_id": event.trade_id},
            )
        except Exception as rec_exc:
            self._log.warning("error record failed", extra={"error": str(rec_exc)})
