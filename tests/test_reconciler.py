from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Sequence

from broker_sync.persistence.db import Database
from broker_sync.persistence.models import UpsertOutcome
from broker_sync.reconcile.events import EventQueue, MetricsRequested
from broker_sync.reconcile.metrics_worker import MetricsWorker
from broker_sync.reconcile.reconciler import TradeReconciler
from broker_sync.reports.models import NormalizedTrade, Side, TradeStatus


def _trade(ticket: int, *, closed: bool = True, profit: str = "25.00") -> NormalizedTrade:
    return NormalizedTrade(
        ticket=ticket,
        symbol="EURUSD",
        side=Side.BUY,
        volume=Decimal("0.10"),
        open_price=Decimal("1.10000"),
        open_time=datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc),
        close_price=Decimal("1.10250") if closed else None,
        stop_loss=Decimal("1.09500"),
        take_profit=Decimal("1.11000"),
        close_time=datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc) if closed else None,
        profit=Decimal(profit) if closed else Decimal("0"),
    )


def _db(tmp_path: Path) -> Database:
    db = Database(tmp_path / "journal.sqlite")
    db.initialize()
    return db


def test_reimport_is_idempotent(tmp_path: Path) -> None:
    db = _db(tmp_path)
    reconciler = TradeReconciler(db.trade_repo())
    trades = [_trade(1), _trade(2, closed=False)]

    first = reconciler.reconcile("user-1", trades)
    second = reconciler.reconcile("user-1", trades)

    assert (first.inserted, first.updated, first.skipped) == (2, 0, 0)
    assert (second.inserted, second.updated, second.skipped) == (0, 2, 0)
    assert db.trade_repo().count_trades("user-1") == 2


def test_latest_import_overwrites_fields(tmp_path: Path) -> None:
    db = _db(tmp_path)
    reconciler = TradeReconciler(db.trade_repo())
    reconciler.reconcile("user-1", [_trade(7, closed=False)])
    reconciler.reconcile("user-1", [_trade(7, profit="-12.50")])

    (stored,) = db.trade_repo().list_trades("user-1")
    assert stored.trade.status == TradeStatus.CLOSED
    assert stored.trade.profit == Decimal("-12.50")
    assert stored.trade.open_price == Decimal("1.10000")


def test_tickets_are_scoped_per_user(tmp_path: Path) -> None:
    db = _db(tmp_path)
    reconciler = TradeReconciler(db.trade_repo())
    reconciler.reconcile("user-1", [_trade(1)])
    result = reconciler.reconcile("user-2", [_trade(1)])
    assert result.inserted == 1
    assert db.trade_repo().count_trades("user-1") == 1
    assert db.trade_repo().count_trades("user-2") == 1


class _FlakyStore:
    def __init__(self, fail_on_call: int) -> None:
        self.calls = 0
        self.fail_on_call = fail_on_call
        self.saved: list[int] = []

    def upsert_trades(self, user_id: str, trades: Sequence[NormalizedTrade]) -> list[UpsertOutcome]:
        self.calls += 1
        if self.calls == self.fail_on_call:
            raise RuntimeError("database is locked")
        self.saved.extend(t.ticket for t in trades)
        return [UpsertOutcome(ticket=t.ticket, trade_id=t.ticket, created=True, status=t.status) for t in trades]


def test_failed_batch_is_counted_as_skipped_and_others_proceed() -> None:
    store = _FlakyStore(fail_on_call=2)
    reconciler = TradeReconciler(store, batch_size=2)  # type: ignore[arg-type]

    result = reconciler.reconcile("user-1", [_trade(i) for i in range(1, 6)])

    assert result.inserted == 3
    assert result.skipped == 2
    assert len(result.errors) == 1
    assert "database is locked" in result.errors[0]
    assert not result.ok
    assert store.saved == [1, 2, 5]


def test_closed_trades_request_metrics(tmp_path: Path) -> None:
    db = _db(tmp_path)
    events = EventQueue()
    reconciler = TradeReconciler(db.trade_repo(), events=events)
    reconciler.reconcile("user-1", [_trade(1), _trade(2, closed=False), _trade(3, profit="-5")])

    assert events.pending() == 2
    worker = MetricsWorker(events=events, store=db.trade_repo(), errors=db.error_repo())
    assert worker.drain() == 2
    assert worker.processed == 2

    by_ticket = {s.trade.ticket: s for s in db.trade_repo().list_trades("user-1")}
    assert by_ticket[1].metrics is not None
    assert by_ticket[1].metrics.win_loss == "win"
    assert by_ticket[1].metrics.risk_reward_ratio == Decimal("2.00")
    assert by_ticket[3].metrics is not None and by_ticket[3].metrics.win_loss == "loss"
    assert by_ticket[2].metrics is None


class _BrokenEvents(EventQueue):
    def publish(self, event: MetricsRequested) -> None:
        raise RuntimeError("queue full")


def test_event_publish_failure_does_not_fail_reconcile(tmp_path: Path) -> None:
    db = _db(tmp_path)
    reconciler = TradeReconciler(db.trade_repo(), events=_BrokenEvents())
    result = reconciler.reconcile("user-1", [_trade(1)])
    assert result.inserted == 1
    assert result.ok


def test_metrics_failure_is_recorded_not_raised(tmp_path: Path) -> None:
    db = _db(tmp_path)
    events = EventQueue()
    events.publish(MetricsRequested(user_id="user-1", ticket=42, trade_id=9999))
    worker = MetricsWorker(events=events, store=db.trade_repo(), errors=db.error_repo())

    assert worker.drain() == 1
    assert worker.failed == 1
    (err,) = db.error_repo().list_recent()
    assert err["component"] == "metrics"


def test_list_trades_returns_tags_and_notes(tmp_path: Path) -> None:
    db = _db(tmp_path)
    repo = db.trade_repo()
    (outcome, _other) = repo.upsert_trades("user-1", [_trade(11), _trade(12, closed=False)])

    repo.add_tag(outcome.trade_id, "breakout")
    repo.add_tag(outcome.trade_id, "a-setup")
    repo.add_tag(outcome.trade_id, "breakout")
    repo.add_note(outcome.trade_id, note_type="review", content="entered early", screenshot_url="https://img/1.png")

    by_ticket = {s.trade.ticket: s for s in repo.list_trades("user-1")}
    tagged = by_ticket[11]
    assert tagged.tags == ["a-setup", "breakout"]
    (note,) = tagged.notes
    assert (note.note_type, note.content, note.screenshot_url) == ("review", "entered early", "https://img/1.png")
    assert by_ticket[12].tags == [] and by_ticket[12].notes == []


def test_reimport_keeps_tags(tmp_path: Path) -> None:
    db = _db(tmp_path)
    repo = db.trade_repo()
    (outcome,) = repo.upsert_trades("user-1", [_trade(21, closed=False)])
    repo.add_tag(outcome.trade_id, "swing")

    TradeReconciler(repo).reconcile("user-1", [_trade(21)])

    (stored,) = repo.list_trades("user-1")
    assert stored.id == outcome.trade_id
    assert stored.tags == ["swing"]
