from __future__ import annotations

import logging
from concurrent.futures import Future
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable

from broker_sync.core.exceptions import BrokerConnectionError
from broker_sync.core.utils import utc_now
from broker_sync.execution.request_queue import RequestQueue
from broker_sync.monitoring.health import HealthMonitor, HealthRecord
from broker_sync.reconcile.reconciler import ReconcileResult, TradeReconciler
from broker_sync.reports.models import NormalizedTrade
from broker_sync.sessions.pool import SessionPool, SessionFactory

CONNECTED = "connected"
DISCONNECTED = "disconnected"
ERROR = "error"


@dataclass(frozen=True)
class SyncStatus:
    account_id: str
    connection_state: str  # connected | disconnected | error
    health: HealthRecord | None = None
    pull: Future | None = None
    error: str | None = None


def merge_pulled_trades(closed: list[NormalizedTrade], open_: list[NormalizedTrade]) -> list[NormalizedTrade]:
    """One trade per ticket; a closed record wins over an open one."""
    by_ticket: dict[int, NormalizedTrade] = {t.ticket: t for t in open_}
    for t in closed:
        by_ticket[t.ticket] = t
    return sorted(by_ticket.values(), key=lambda t: (t.open_time, t.ticket))


class SyncService:
    def __init__(
        self,
        *,
        pool: SessionPool,
        monitor: HealthMonitor,
        queue: RequestQueue,
        reconciler: TradeReconciler,
        session_factory: SessionFactory,
        history_days: int = 30,
        default_priority: int = 0,
    ) -> None:
        self.pool = pool
        self.monitor = monitor
        self.queue = queue
        self.reconciler = reconciler
        self.session_factory = session_factory
        self.history_days = int(history_days)
        self.default_priority = int(default_priority)
        self._log = logging.getLogger("broker_sync.sync")

    def sync(self, user_id: str, account_id: str, priority: int | None = None) -> SyncStatus:
        try:
            session = self.pool.acquire(account_id, self.session_factory)
        except BrokerConnectionError as exc:
            self._log.warning("sync connect failed", extra={"account_id": account_id, "error": str(exc)})
            return SyncStatus(account_id=account_id, connection_state=ERROR, error=str(exc))

        healthy = self.monitor.check(account_id, session)
        health = self.monitor.status(account_id)
        if not healthy:
            # next acquire reconnects
            self.pool.mark_disconnected(account_id)
            self._log.warning(
                "sync skipped, session unhealthy",
                extra={"account_id": account_id, "detail": health.detail if health else None},
            )
            return SyncStatus(account_id=account_id, connection_state=DISCONNECTED, health=health)

        prio = self.default_priority if priority is None else int(priority)
        pull = self.queue.enqueue(self._pull_job(user_id, account_id), priority=prio)
        self._log.info("sync queued", extra={"user_id": user_id, "account_id": account_id, "priority": prio})
        return SyncStatus(account_id=account_id, connection_state=CONNECTED, health=health, pull=pull)

    def latest_status(self, account_id: str) -> HealthRecord | None:
        return self.monitor.status(account_id)

    def _pull_job(self, user_id: str, account_id: str) -> Callable[[], ReconcileResult]:
        def _pull() -> ReconcileResult:
            # per attempt, so a session evicted while queued is reopened
            session = self.pool.acquire(account_id, self.session_factory)
            to_utc = utc_now()
            from_utc = to_utc - timedelta(days=self.history_days)
            closed = session.list_closed_trades(from_utc, to_utc)
            open_ = session.list_open_trades()
            trades = merge_pulled_trades(closed, open_)
            self._log.debug(
                "trades pulled",
                extra={"account_id": account_id, "closed": len(closed), "open": len(open_)},
            )
            return self.reconciler.reconcile(user_id, trades)

        return _pull
