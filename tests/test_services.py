from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path

import pytest

from broker_sync.core.exceptions import ReportParseError
from broker_sync.execution.request_queue import RequestQueue
from broker_sync.monitoring.health import HealthMonitor
from broker_sync.persistence.db import Database
from broker_sync.reconcile.reconciler import TradeReconciler
from broker_sync.reports.models import NormalizedTrade, Side
from broker_sync.reports.parser import ReportParser
from broker_sync.services.importer import ImportService
from broker_sync.services.sync import CONNECTED, DISCONNECTED, ERROR, SyncService, merge_pulled_trades
from broker_sync.sessions.pool import SessionPool

REPORT = """
<html><body><table>
<tr><th colspan="13"><b>Positions</b></th></tr>
<tr><th>Time</th><th>Position</th><th>Symbol</th><th>Type</th><th>Volume</th><th>Price</th><th>S / L</th>
<th>T / P</th><th>Time</th><th>Price</th><th>Commission</th><th>Swap</th><th>Profit</th></tr>
<tr bgcolor="#FFFFFF"><td>2024.01.15 10:30:00</td><td>1001</td><td>EURUSD</td><td>buy</td><td>0.10</td>
<td>1.10000</td><td>1.09500</td><td>1.11000</td><td>2024.01.15 12:00:00</td><td>1.10500</td><td>-0.70</td><td>0.00</td><td>50.00</td></tr>
<tr bgcolor="#F7F7F7"><td>2024.01.16 09:00:00</td><td>1002</td><td>USDJPY</td><td>sell</td><td>1.00</td>
<td>145.123</td><td></td><td></td><td></td><td></td><td>0.00</td><td>0.00</td><td>0.00</td></tr>
<tr bgcolor="#FFFFFF"><td>2024.01.16 09:00:00</td><td>x</td><td>USDJPY</td><td>sell</td><td>1.00</td>
<td>145.123</td><td></td><td></td><td></td><td></td><td>0.00</td><td>0.00</td><td>0.00</td></tr>
<tr><th colspan="13"><b>Orders</b></th></tr>
</table></body></html>
"""


def _importer(tmp_path: Path) -> tuple[ImportService, Database]:
    db = Database(tmp_path / "journal.sqlite")
    db.initialize()
    service = ImportService(
        parser=ReportParser(),
        reconciler=TradeReconciler(db.trade_repo()),
        imports=db.import_repo(),
    )
    return service, db


def test_import_then_reimport(tmp_path: Path) -> None:
    service, db = _importer(tmp_path)

    first = service.import_report("user-1", REPORT.encode("utf-8"))
    second = service.import_report("user-1", REPORT.encode("utf-8"))

    assert (first.inserted, first.updated, first.skipped, first.rows_skipped) == (2, 0, 1, 1)
    assert (second.inserted, second.updated, second.skipped) == (0, 2, 1)
    assert first.message() == "2 trades imported, 1 skipped"
    assert db.trade_repo().count_trades("user-1") == 2
    runs = db.import_repo().list_recent("user-1")
    assert len(runs) == 2
    assert all(r.error is None for r in runs)


def test_parse_error_is_recorded_and_raised(tmp_path: Path) -> None:
    service, db = _importer(tmp_path)
    with pytest.raises(ReportParseError):
        service.import_report("user-1", b"<html><p>not a report</p></html>")
    (run,) = db.import_repo().list_recent("user-1")
    assert run.error
    assert run.inserted == 0


class FakeTerminal:
    def __init__(self, account_id: str, *, synchronized: bool = True) -> None:
        self.account_id = account_id
        self.connected = True
        self.synchronized = synchronized
        self.closed = False

    def list_closed_trades(self, from_utc: datetime, to_utc: datetime) -> list[NormalizedTrade]:
        if self.closed:
            raise RuntimeError("session closed")
        return [_trade(1, closed=True)]

    def list_open_trades(self) -> list[NormalizedTrade]:
        return [_trade(1, closed=False), _trade(2, closed=False)]

    def close(self) -> None:
        self.closed = True


def _trade(ticket: int, *, closed: bool) -> NormalizedTrade:
    return NormalizedTrade(
        ticket=ticket,
        symbol="EURUSD",
        side=Side.BUY,
        volume=Decimal("1"),
        open_price=Decimal("1.1"),
        open_time=datetime(2024, 1, 15, 10, ticket, tzinfo=timezone.utc),
        close_price=Decimal("1.2") if closed else None,
        close_time=datetime(2024, 1, 15, 12, tzinfo=timezone.utc) if closed else None,
    )


def _sync_service(tmp_path: Path, factory) -> tuple[SyncService, SessionPool, RequestQueue, Database]:
    db = Database(tmp_path / "journal.sqlite")
    db.initialize()
    pool = SessionPool()
    queue = RequestQueue(max_concurrent=1, retry_delay_seconds=0)
    service = SyncService(
        pool=pool,
        monitor=HealthMonitor(pool),
        queue=queue,
        reconciler=TradeReconciler(db.trade_repo()),
        session_factory=factory,
    )
    return service, pool, queue, db


def test_merge_prefers_closed_record() -> None:
    merged = merge_pulled_trades([_trade(1, closed=True)], [_trade(1, closed=False), _trade(2, closed=False)])
    assert [t.ticket for t in merged] == [1, 2]
    assert merged[0].close_time is not None


def test_healthy_sync_queues_pull_and_reconciles(tmp_path: Path) -> None:
    service, pool, queue, db = _sync_service(tmp_path, FakeTerminal)
    with queue:
        status = service.sync("user-1", "5001")
        assert status.connection_state == CONNECTED
        assert status.health is not None and status.health.healthy
        result = status.pull.result(timeout=5)
    assert (result.inserted, result.updated) == (2, 0)
    assert db.trade_repo().count_trades("user-1") == 2
    assert service.latest_status("5001") is status.health


def test_unhealthy_sync_marks_session_and_skips_pull(tmp_path: Path) -> None:
    service, pool, queue, _db = _sync_service(tmp_path, lambda a: FakeTerminal(a, synchronized=False))
    status = service.sync("user-1", "5001")
    assert status.connection_state == DISCONNECTED
    assert status.pull is None
    assert status.health.detail == "not synchronized"
    assert pool.peek("5001").connected is False
    assert queue.status().length == 0


def test_connect_failure_reports_error_state(tmp_path: Path) -> None:
    def refuse(account_id: str) -> FakeTerminal:
        raise ConnectionRefusedError("bridge down")

    service, pool, _queue, _db = _sync_service(tmp_path, refuse)
    status = service.sync("user-1", "5001")
    assert status.connection_state == ERROR
    assert "bridge down" in (status.error or "")
    assert pool.account_ids() == []


def test_pull_reopens_session_evicted_while_queued(tmp_path: Path) -> None:
    db = Database(tmp_path / "journal.sqlite")
    db.initialize()
    now = [0.0]
    created: list[FakeTerminal] = []

    def factory(account_id: str) -> FakeTerminal:
        created.append(FakeTerminal(account_id))
        return created[-1]

    pool = SessionPool(idle_timeout_seconds=60, clock=lambda: now[0])
    queue = RequestQueue(max_concurrent=1, max_retries=2, retry_delay_seconds=0)
    service = SyncService(
        pool=pool,
        monitor=HealthMonitor(pool),
        queue=queue,
        reconciler=TradeReconciler(db.trade_repo()),
        session_factory=factory,
    )

    status = service.sync("user-1", "5001")
    now[0] += 100
    assert pool.sweep() == 1
    assert created[0].closed

    with queue:
        result = status.pull.result(timeout=5)

    assert len(created) == 2
    assert (result.inserted, result.updated) == (2, 0)
    assert pool.peek("5001").connection is created[1]
