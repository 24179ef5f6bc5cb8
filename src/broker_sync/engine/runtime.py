from __future__ import annotations

import logging
import threading
from pathlib import Path

from broker_sync.connectors.base import TerminalSession
from broker_sync.connectors.bridge import BridgeSession
from broker_sync.connectors.mt5_connector import MT5Session
from broker_sync.core.config import AppConfig
from broker_sync.execution.request_queue import RequestQueue
from broker_sync.monitoring.health import HealthMonitor
from broker_sync.persistence.db import Database
from broker_sync.reconcile.events import EventQueue
from broker_sync.reconcile.metrics_worker import MetricsWorker
from broker_sync.reconcile.reconciler import TradeReconciler
from broker_sync.reports.parser import ReportParser
from broker_sync.services.importer import ImportService
from broker_sync.services.sync import SyncService
from broker_sync.sessions.pool import SessionFactory, SessionPool


def session_factory_for(config: AppConfig) -> SessionFactory:
    if config.sync.connector == "mt5":
        return MT5Session.from_env

    def _bridge(account_id: str) -> TerminalSession:
        return BridgeSession.from_env(
            account_id,
            base_url=config.bridge.base_url,
            timeout_seconds=config.bridge.timeout_seconds,
        )

    return _bridge


class SyncRuntime:
    """Wires every component from one AppConfig and owns their background threads."""

    def __init__(
        self,
        *,
        config: AppConfig,
        db: Database | None = None,
        session_factory: SessionFactory | None = None,
    ) -> None:
        self.config = config
        self.db = db or Database(Path(config.persistence.db_path))
        self.db.initialize()
        self._log = logging.getLogger("broker_sync.runtime")
        self._stop = threading.Event()

        self.trades = self.db.trade_repo()
        self.events = EventQueue()
        self.reconciler = TradeReconciler(
            self.trades,
            events=self.events,
            batch_size=config.reconcile.batch_size,
        )
        self.metrics_worker = MetricsWorker(
            events=self.events,
            store=self.trades,
            errors=self.db.error_repo(),
            on_thread_exit=self.db.close_thread_connection,
        )
        self.pool = SessionPool(
            idle_timeout_seconds=config.pool.idle_timeout_seconds,
            sweep_interval_seconds=config.pool.sweep_interval_seconds,
        )
        self.monitor = HealthMonitor(self.pool, interval_seconds=config.health.interval_seconds)
        self.queue = RequestQueue(
            max_concurrent=config.queue.max_concurrent,
            max_retries=config.queue.max_retries,
            retry_delay_seconds=config.queue.retry_delay_seconds,
        )
        self.importer = ImportService(
            parser=ReportParser(config.parser),
            reconciler=self.reconciler,
            imports=self.db.import_repo(),
        )
        self.sync = SyncService(
            pool=self.pool,
            monitor=self.monitor,
            queue=self.queue,
            reconciler=self.reconciler,
            session_factory=session_factory or session_factory_for(config),
            history_days=config.sync.history_days,
            default_priority=config.sync.priority,
        )

    def __enter__(self) -> "SyncRuntime":
        self.start()
        return self

    def __exit__(self, *exc: object) -> None:
        self.stop()

    def start(self) -> None:
        self.metrics_worker.start()
        self.pool.start()
        self.monitor.start()
        self.queue.start()
        self._log.info("runtime started", extra={"connector": self.config.sync.connector})

    def request_stop(self) -> None:
        self._stop.set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until request_stop() is called or the timeout passes. True when stopping."""
        return self._stop.wait(timeout)

    def stop(self) -> None:
        self._stop.set()
        self.queue.stop()
        self.monitor.stop()
        self.pool.stop()
        self.pool.close_all()
        self.metrics_worker.stop()
        # events published after the worker exited
        self.metrics_worker.drain()
        self.db.close_thread_connection()
        self._log.info(
            "runtime stopped",
            extra={"metrics_processed": self.metrics_worker.processed, "metrics_failed": self.metrics_worker.failed},
        )
