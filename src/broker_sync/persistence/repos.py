from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Sequence

from broker_sync.analytics.metrics import TradeMetrics, compute_trade_metrics
from broker_sync.core.exceptions import PersistenceError
from broker_sync.core.utils import iso_utc, parse_iso_utc, safe_json_dumps
from broker_sync.persistence.base import TradeStore
from broker_sync.persistence.models import ImportRunRow, StoredTrade, TradeNote, UpsertOutcome
from broker_sync.reports.models import NormalizedTrade, Side


def _utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _dec(value: Decimal | None) -> str | None:
    return str(value) if value is not None else None


def _to_dec(value: Any) -> Decimal | None:
    return Decimal(str(value)) if value is not None else None


def _trade_from_row(row: sqlite3.Row) -> NormalizedTrade:
    return NormalizedTrade(
        ticket=int(row["ticket"]),
        symbol=str(row["symbol"]),
        side=Side(row["side"]),
        volume=Decimal(row["volume"]),
        open_price=Decimal(row["open_price"]),
        open_time=parse_iso_utc(row["open_time"]),
        close_price=_to_dec(row["close_price"]),
        stop_loss=_to_dec(row["stop_loss"]),
        take_profit=_to_dec(row["take_profit"]),
        close_time=parse_iso_utc(row["close_time"]),
        commission=Decimal(row["commission"]),
        swap=Decimal(row["swap"]),
        profit=Decimal(row["profit"]),
    )


class TradeRepo(TradeStore):
    def __init__(self, db: "Database") -> None:
        self.db = db

    def upsert_trades(self, user_id: str, trades: Sequence[NormalizedTrade]) -> list[UpsertOutcome]:
        sql = """
        INSERT INTO trades(
          user_id, ticket, symbol, side, volume, open_price, close_price, stop_loss,
          take_profit, commission, swap, profit, open_time, close_time, status,
          created_at, updated_at
        ) VALUES(?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)
        ON CONFLICT(user_id, ticket) DO UPDATE SET
          symbol=excluded.symbol,
          side=excluded.side,
          volume=excluded.volume,
          open_price=excluded.open_price,
          close_price=excluded.close_price,
          stop_loss=excluded.stop_loss,
          take_profit=excluded.take_profit,
          commission=excluded.commission,
          swap=excluded.swap,
          profit=excluded.profit,
          open_time=excluded.open_time,
          close_time=excluded.close_time,
          status=excluded.status,
          updated_at=excluded.updated_at
        """
        outcomes: list[UpsertOutcome] = []
        now = _utc_iso()
        try:
            with self.db.transaction() as conn:
                for t in trades:
                    existing = conn.execute(
                        "SELECT id FROM trades WHERE user_id=? AND ticket=?", (user_id, t.ticket)
                    ).fetchone()
                    conn.execute(
                        sql,
                        (
                            user_id,
                            t.ticket,
                            t.symbol,
                            t.side.value,
                            str(t.volume),
                            str(t.open_price),
                            _dec(t.close_price),
                            _dec(t.stop_loss),
                            _dec(t.take_profit),
                            str(t.commission),
                            str(t.swap),
                            str(t.profit),
                            iso_utc(t.open_time),
                            iso_utc(t.close_time) if t.close_time else None,
                            t.status.value,
                            now,
                            now,
                        ),
                    )
                    if existing is None:
                        row = conn.execute(
                            "SELECT id FROM trades WHERE user_id=? AND ticket=?", (user_id, t.ticket)
                        ).fetchone()
                        trade_id = int(row["id"])
                    else:
                        trade_id = int(existing["id"])
                    outcomes.append(
                        UpsertOutcome(ticket=t.ticket, trade_id=trade_id, created=existing is None, status=t.status)
                    )
        except sqlite3.Error as exc:
            raise PersistenceError(str(exc)) from exc
        return outcomes

    def get(self, trade_id: int) -> NormalizedTrade | None:
        row = self.db.query_one("SELECT * FROM trades WHERE id=?", (trade_id,))
        return _trade_from_row(row) if row else None

    def compute_trade_metrics(self, trade_id: int) -> TradeMetrics:
        trade = self.get(trade_id)
        if trade is None:
            raise PersistenceError(f"trade {trade_id} not found")
        metrics = compute_trade_metrics(trade)
        self.db.execute(
            """
            INSERT INTO trade_metrics(trade_id, risk_amount, reward_amount, risk_reward_ratio, win_loss, computed_at)
            VALUES(?,?,?,?,?,?)
            ON CONFLICT(trade_id) DO UPDATE SET
              risk_amount=excluded.risk_amount,
              reward_amount=excluded.reward_amount,
              risk_reward_ratio=excluded.risk_reward_ratio,
              win_loss=excluded.win_loss,
              computed_at=excluded.computed_at
            """,
            (
                trade_id,
                _dec(metrics.risk_amount),
                _dec(metrics.reward_amount),
                _dec(metrics.risk_reward_ratio),
                metrics.win_loss,
                _utc_iso(),
            ),
        )
        return metrics

    def list_trades(self, user_id: str, *, limit: int | None = None) -> list[StoredTrade]:
        sql = """
        SELECT t.*, m.risk_amount AS m_risk, m.reward_amount AS m_reward,
               m.risk_reward_ratio AS m_ratio, m.win_loss AS m_win_loss
        FROM trades t LEFT JOIN trade_metrics m ON m.trade_id = t.id
        WHERE t.user_id = ?
        ORDER BY t.open_time DESC, t.id DESC
        """
        params: list[Any] = [user_id]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        rows = self.db.query_all(sql, params)
        ids = [int(r["id"]) for r in rows]
        tags = self._tags_for(ids)
        notes = self._notes_for(ids)
        out: list[StoredTrade] = []
        for r in rows:
            metrics = None
            if r["m_win_loss"] is not None:
                metrics = TradeMetrics(
                    risk_amount=_to_dec(r["m_risk"]),
                    reward_amount=_to_dec(r["m_reward"]),
                    risk_reward_ratio=_to_dec(r["m_ratio"]),
                    win_loss=str(r["m_win_loss"]),
                )
            trade_id = int(r["id"])
            out.append(
                StoredTrade(
                    id=trade_id,
                    user_id=str(r["user_id"]),
                    trade=_trade_from_row(r),
                    metrics=metrics,
                    tags=tags.get(trade_id, []),
                    notes=notes.get(trade_id, []),
                )
            )
        return out

    def count_trades(self, user_id: str) -> int:
        row = self.db.query_one("SELECT COUNT(*) AS n FROM trades WHERE user_id=?", (user_id,))
        return int(row["n"]) if row else 0

    def add_tag(self, trade_id: int, tag: str) -> None:
        self.db.execute("INSERT OR IGNORE INTO trade_tags(trade_id, tag) VALUES(?,?)", (trade_id, tag))

    def add_note(self, trade_id: int, *, note_type: str, content: str, screenshot_url: str | None = None) -> None:
        self.db.execute(
            "INSERT INTO trade_notes(trade_id, note_type, content, screenshot_url, created_at) VALUES(?,?,?,?,?)",
            (trade_id, note_type, content, screenshot_url, _utc_iso()),
        )

    def _tags_for(self, ids: list[int]) -> dict[int, list[str]]:
        if not ids:
            return {}
        marks = ",".join("?" * len(ids))
        rows = self.db.query_all(f"SELECT trade_id, tag FROM trade_tags WHERE trade_id IN ({marks}) ORDER BY tag", ids)
        out: dict[int, list[str]] = {}
        for r in rows:
            out.setdefault(int(r["trade_id"]), []).append(str(r["tag"]))
        return out

    def _notes_for(self, ids: list[int]) -> dict[int, list[TradeNote]]:
        if not ids:
            return {}
        marks = ",".join("?" * len(ids))
        rows = self.db.query_all(
            f"SELECT * FROM trade_notes WHERE trade_id IN ({marks}) ORDER BY created_at, id", ids
        )
        out: dict[int, list[TradeNote]] = {}
        for r in rows:
            out.setdefault(int(r["trade_id"]), []).append(
                TradeNote(
                    id=int(r["id"]),
                    note_type=str(r["note_type"]),
                    content=str(r["content"]),
                    screenshot_url=r["screenshot_url"],
                    created_at=str(r["created_at"]),
                )
            )
        return out


class ImportRepo:
    def __init__(self, db: "Database") -> None:
        self.db = db

    def insert(
        self,
        *,
        user_id: str,
        source: str,
        inserted: int,
        updated: int,
        skipped: int,
        error: str | None = None,
    ) -> None:
        self.db.execute(
            """
            INSERT INTO import_runs(created_at, user_id, source, inserted, updated, skipped, error)
            VALUES(?,?,?,?,?,?,?)
            """,
            (_utc_iso(), user_id, source, inserted, updated, skipped, error),
        )

    def list_recent(self, user_id: str, limit: int = 20) -> list[ImportRunRow]:
        rows = self.db.query_all(
            "SELECT * FROM import_runs WHERE user_id=? ORDER BY id DESC LIMIT ?", (user_id, limit)
        )
        return [ImportRunRow(**dict(r)) for r in rows]


class ErrorRepo:
    def __init__(self, db: "Database") -> None:
        self.db = db

    def insert(
        self,
        *,
        component: str,
        severity: str,
        message: str,
        traceback: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        self.db.execute(
            """
            INSERT INTO errors(created_at, component, severity, message, traceback, context_json)
            VALUES(?,?,?,?,?,?)
            """,
            (
                _utc_iso(),
                component,
                severity,
                message,
                traceback,
                safe_json_dumps(context) if context else None,
            ),
        )

    def list_recent(self, limit: int = 50) -> list[dict[str, Any]]:
        rows = self.db.query_all("SELECT * FROM errors ORDER BY id DESC LIMIT ?", (limit,))
        return [dict(r) for r in rows]


if TYPE_CHECKING:  # pragma: no cover
    from broker_sync.persistence.db import Database
