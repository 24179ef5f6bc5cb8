from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable

from broker_sync.connectors.base import TerminalSession
from broker_sync.core.exceptions import BrokerConnectionError

SessionFactory = Callable[[str], TerminalSession]


@dataclass
class PooledSession:
    account_id: str
    connection: TerminalSession
    last_used_at: float
    connected: bool = True


class SessionPool:
    """Caches one live terminal session per account and evicts idle ones.

    Creation is single-flight per account: concurrent acquires for the same
    account wait on that account's lock and share the session the first
    caller created. Different accounts never block each other on creation.
    """

    def __init__(
        self,
        *,
        idle_timeout_seconds: float = 300.0,
        sweep_interval_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.idle_timeout_seconds = float(idle_timeout_seconds)
        self.sweep_interval_seconds = float(sweep_interval_seconds)
        self._clock = clock
        self._log = logging.getLogger("broker_sync.pool")
        self._entries: dict[str, PooledSession] = {}
        self._lock = threading.Lock()
        self._key_locks: dict[str, threading.Lock] = {}
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def _key_lock(self, account_id: str) -> threading.Lock:
        with self._lock:
            lock = self._key_locks.get(account_id)
            if lock is None:
                lock = threading.Lock()
                self._key_locks[account_id] = lock
            return lock

    def acquire(self, account_id: str, create_fn: SessionFactory) -> TerminalSession:
        entry = self._touch(account_id)
        if entry is not None:
            return entry.connection

        with self._key_lock(account_id):
            # another caller may have finished creating while we waited
            entry = self._touch(account_id)
            if entry is not None:
                return entry.connection

            stale = self._pop(account_id)
            if stale is not None:
                self._close(stale, reason="reconnect")

            try:
                connection = create_fn(account_id)
            except Exception as exc:
                self._log.warning(
                    "session create failed", extra={"account_id": account_id, "error": str(exc)}
                )
                raise BrokerConnectionError(
                    f"could not connect account {account_id}: {exc}", account_id=account_id
                ) from exc

            with self._lock:
                self._entries[account_id] = PooledSession(
                    account_id=account_id,
                    connection=connection,
                    last_used_at=self._clock(),
                    connected=True,
                )
            self._log.info("session created", extra={"account_id": account_id})
            return connection

    def _touch(self, account_id: str) -> PooledSession | None:
        with self._lock:
            entry = self._entries.get(account_id)
            if entry is None or not entry.connected:
                return None
            entry.last_used_at = self._clock()
            return entry

    def _pop(self, account_id: str) -> PooledSession | None:
        with self._lock:
            return self._entries.pop(account_id, None)

    def peek(self, account_id: str) -> PooledSession | None:
        """Return the cached entry without refreshing its idle clock."""
        with self._lock:
            return self._entries.get(account_id)

    def mark_disconnected(self, account_id: str) -> None:
        with self._lock:
            entry = self._entries.get(account_id)
            if entry is not None:
                entry.connected = False

    def account_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._entries)

    def release(self, account_id: str) -> None:
        entry = self._pop(account_id)
        if entry is not None:
            self._close(entry, reason="release")

    def sweep(self) -> int:
        """Close and drop sessions idle longer than the timeout. Returns the number evicted."""
        now = self._clock()
        expired: list[PooledSession] = []
        with self._lock:
            for account_id, entry in list(self._entries.items()):
                if now - entry.last_used_at > self.idle_timeout_seconds:
                    expired.append(self._entries.pop(account_id))
        for entry in expired:
            self._close(entry, reason="idle")
        return len(expired)

    def close_all(self) -> None:
        with self._lock:
            entries = list(self._entries.values())
            self._entries.clear()
        for entry in entries:
            self._close(entry, reason="shutdown")

    def _close(self, entry: PooledSession, *, reason: str) -> None:
        try:
            entry.connection.close()
        except Exception as exc:
            self._log.warning(
                "session close failed",
                extra={"account_id": entry.account_id, "reason": reason, "error": str(exc)},
            )
            return
        self._log.info("session closed", extra={"account_id": entry.account_id, "reason": reason})

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="session-sweeper", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.wait(self.sweep_interval_seconds):
            try:
                evicted = self.sweep()
            except Exception:
                self._log.exception("session sweep failed")
                continue
            if evicted:
                self._log.info("idle sessions evicted", extra={"count": evicted})
