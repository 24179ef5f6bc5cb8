from __future__ import annotations

import sqlite3
from datetime import datetime, timezone


LATEST_VERSION = 1


def _utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def ensure_migrations_table(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations(
          version INTEGER PRIMARY KEY,
          applied_at TEXT NOT NULL
        )
        """
    )


def current_version(conn: sqlite3.Connection) -> int:
    ensure_migrations_table(conn)
    row = conn.execute("SELECT MAX(version) AS v FROM schema_migrations").fetchone()
    if row is None:
        return 0
    v = row[0]
    return int(v) if v is not None else 0


def apply_migrations(conn: sqlite3.Connection) -> None:
    ensure_migrations_table(conn)
    v = current_version(conn)
    if v < 1:
        _migration_v1(conn)
        conn.execute(
            "INSERT INTO schema_migrations(version, applied_at) VALUES(?,?)",
            (1, _utc_iso()),
        )
        conn.commit()


def _migration_v1(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        PRAGMA foreign_keys = ON;

        CREATE TABLE IF NOT EXISTS trades(
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          user_id TEXT NOT NULL,
          ticket INTEGER NOT NULL,
          symbol TEXT NOT NULL,
          side TEXT NOT NULL,
          volume TEXT NOT NULL,
          open_price TEXT NOT NULL,
          close_price TEXT,
          stop_loss TEXT,
          take_profit TEXT,
          commission TEXT NOT NULL,
          swap TEXT NOT NULL,
          profit TEXT NOT NULL,
          open_time TEXT NOT NULL,
          close_time TEXT,
          status TEXT NOT NULL,
          created_at TEXT NOT NULL,
          updated_at TEXT NOT NULL,
          UNIQUE(user_id, ticket)
        );
        CREATE INDEX IF NOT EXISTS idx_trades_user_open_time ON trades(user_id, open_time);
        CREATE INDEX IF NOT EXISTS idx_trades_symbol ON trades(symbol);

        CREATE TABLE IF NOT EXISTS trade_metrics(
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          trade_id INTEGER NOT NULL UNIQUE REFERENCES trades(id) ON DELETE CASCADE,
          risk_amount TEXT,
          reward_amount TEXT,
          risk_reward_ratio TEXT,
          win_loss TEXT NOT NULL,
          computed_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS trade_tags(
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          trade_id INTEGER NOT NULL REFERENCES trades(id) ON DELETE CASCADE,
          tag TEXT NOT NULL,
          UNIQUE(trade_id, tag)
        );

        CREATE TABLE IF NOT EXISTS trade_notes(
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          trade_id INTEGER NOT NULL REFERENCES trades(id) ON DELETE CASCADE,
          note_type TEXT NOT NULL,
          content TEXT NOT NULL,
          screenshot_url TEXT,
          created_at TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_trade_notes_trade ON trade_notes(trade_id);

        CREATE TABLE IF NOT EXISTS import_runs(
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          created_at TEXT NOT NULL,
          user_id TEXT NOT NULL,
          source TEXT NOT NULL,
          inserted INTEGER NOT NULL,
          updated INTEGER NOT NULL,
          skipped INTEGER NOT NULL,
          error TEXT
        );
        CREATE INDEX IF NOT EXISTS idx_import_runs_user ON import_runs(user_id);

        CREATE TABLE IF NOT EXISTS errors(
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          created_at TEXT NOT NULL,
          component TEXT NOT NULL,
          severity TEXT NOT NULL,
          message TEXT NOT NULL,
          traceback TEXT,
          context_json TEXT
        );
        CREATE INDEX IF NOT EXISTS idx_errors_created_at ON errors(created_at);
        """
    )
