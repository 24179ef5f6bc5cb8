from __future__ import annotations

from datetime import datetime, timedelta, timezone

from broker_sync.monitoring.health import NO_POOLED_SESSION, HealthMonitor
from broker_sync.sessions.pool import SessionPool


class FakeSession:
    def __init__(self, account_id: str, *, connected: bool = True, synchronized: bool = True) -> None:
        self.account_id = account_id
        self.connected = connected
        self.synchronized = synchronized
        self.closed = False

    def close(self) -> None:
        self.closed = True


class ExplodingSession:
    account_id = "boom"

    @property
    def connected(self) -> bool:
        raise RuntimeError("terminal handle released")

    def close(self) -> None:
        pass


class FakeNow:
    def __init__(self) -> None:
        self.value = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.value


def test_healthy_when_connected_and_synchronized() -> None:
    monitor = HealthMonitor(SessionPool())
    assert monitor.check("acc-1", FakeSession("acc-1"))
    record = monitor.status("acc-1")
    assert record is not None
    assert record.healthy
    assert record.detail is None


def test_detail_names_failing_conditions() -> None:
    monitor = HealthMonitor(SessionPool())
    assert not monitor.check("a", FakeSession("a", synchronized=False))
    assert monitor.status("a").detail == "not synchronized"
    assert not monitor.check("b", FakeSession("b", connected=False, synchronized=False))
    assert monitor.status("b").detail == "disconnected and not synchronized"


def test_probe_exception_is_recorded_not_raised() -> None:
    monitor = HealthMonitor(SessionPool())
    assert monitor.check("boom", ExplodingSession()) is False
    record = monitor.status("boom")
    assert record is not None and not record.healthy
    assert record.detail == "terminal handle released"


def test_record_is_overwritten() -> None:
    monitor = HealthMonitor(SessionPool())
    monitor.check("acc-1", FakeSession("acc-1", connected=False))
    monitor.check("acc-1", FakeSession("acc-1"))
    assert monitor.status("acc-1").healthy
    assert list(monitor.statuses()) == ["acc-1"]


def test_sweep_rechecks_only_stale_records() -> None:
    now = FakeNow()
    pool = SessionPool()
    session = pool.acquire("acc-1", FakeSession)
    monitor = HealthMonitor(pool, interval_seconds=30, now=now)

    assert monitor.sweep() == 1  # pooled but never checked
    first = monitor.status("acc-1")

    now.value += timedelta(seconds=10)
    assert monitor.sweep() == 0
    assert monitor.status("acc-1") is first

    session.synchronized = False
    now.value += timedelta(seconds=30)
    assert monitor.sweep() == 1
    assert monitor.status("acc-1").detail == "not synchronized"


def test_evicted_session_is_reported_unhealthy() -> None:
    now = FakeNow()
    pool = SessionPool()
    session = pool.acquire("acc-1", FakeSession)
    monitor = HealthMonitor(pool, interval_seconds=30, now=now)
    monitor.check("acc-1", session)

    pool.release("acc-1")
    now.value += timedelta(seconds=31)
    monitor.sweep()

    record = monitor.status("acc-1")
    assert not record.healthy
    assert record.detail == NO_POOLED_SESSION


def test_sweep_does_not_touch_pool() -> None:
    now = FakeNow()
    pool = SessionPool()
    pool.acquire("acc-1", FakeSession)
    before = pool.peek("acc-1").last_used_at
    HealthMonitor(pool, now=now).sweep()
    entry = pool.peek("acc-1")
    assert entry.last_used_at == before
    assert entry.connected


def test_forget_drops_record() -> None:
    monitor = HealthMonitor(SessionPool())
    monitor.check("acc-1", FakeSession("acc-1"))
    monitor.forget("acc-1")
    assert monitor.status("acc-1") is None
    assert monitor.statuses() == {}
