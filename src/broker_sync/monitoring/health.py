from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

from broker_sync.core.exceptions import HealthCheckError
from broker_sync.core.utils import utc_now
from broker_sync.sessions.pool import SessionPool

NO_POOLED_SESSION = "no pooled session"


@dataclass(frozen=True)
class HealthRecord:
    account_id: str
    healthy: bool
    last_checked_at: datetime
    detail: str | None = None


def _probe(connection: Any) -> str | None:
    """Return None when healthy, otherwise the failing condition(s)."""
    try:
        connected = bool(connection.connected)
        synchronized = bool(connection.synchronized)
    except Exception as exc:
        raise HealthCheckError(str(exc) or type(exc).__name__) from exc
    problems = []
    if not connected:
        problems.append("disconnected")
    if not synchronized:
        problems.append("not synchronized")
    return " and ".join(problems) or None


class HealthMonitor:
    """Keeps the latest health observation per account.

    Reads sessions through ``SessionPool.peek`` only; it never evicts or
    refreshes pool entries.
    """

    def __init__(
        self,
        pool: SessionPool,
        *,
        interval_seconds: float = 30.0,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self.pool = pool
        self.interval_seconds = float(interval_seconds)
        self._now = now
        self._log = logging.getLogger("broker_sync.health")
        self._records: dict[str, HealthRecord] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def check(self, account_id: str, connection: Any) -> bool:
        try:
            detail = _probe(connection)
        except HealthCheckError as exc:
            detail = str(exc)
            self._log.warning("health probe failed", extra={"account_id": account_id, "error": detail})
            return self._record(account_id, healthy=False, detail=detail)
        return self._record(account_id, healthy=detail is None, detail=detail)

    def _record(self, account_id: str, *, healthy: bool, detail: str | None) -> bool:
        record = HealthRecord(
            account_id=account_id,
            healthy=healthy,
            last_checked_at=self._now(),
            detail=detail,
        )
        with self._lock:
            previous = self._records.get(account_id)
            self._records[account_id] = record
        if previous is None or previous.healthy != healthy:
            level = logging.INFO if healthy else logging.WARNING
            self._log.log(level, "health changed", extra={"account_id": account_id, "healthy": healthy, "detail": detail})
        return healthy

    def status(self, account_id: str) -> HealthRecord | None:
        with self._lock:
            return self._records.get(account_id)

    def statuses(self) -> dict[str, HealthRecord]:
        with self._lock:
            return dict(self._records)

    def forget(self, account_id: str) -> None:
        with self._lock:
            self._records.pop(account_id, None)

    def sweep(self) -> int:
        """Re-check accounts whose record is older than the interval (or missing). Returns checks made."""
        cutoff = self._now() - timedelta(seconds=self.interval_seconds)
        with self._lock:
            tracked = set(self._records)
            stale = {a for a, r in self._records.items() if r.last_checked_at <= cutoff}
        pooled = set(self.pool.account_ids())
        due = stale | (pooled - tracked)

        for account_id in sorted(due):
            entry = self.pool.peek(account_id)
            if entry is None:
                self._record(account_id, healthy=False, detail=NO_POOLED_SESSION)
                continue
            self.check(account_id, entry.connection)
        return len(due)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="health-monitor", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self.sweep()
            except Exception:
                self._log.exception("health sweep failed")
