from __future__ import annotations

import argparse
import csv
import sys
from pathlib import Path

from broker_sync.core.config import load_config
from broker_sync.persistence.db import Database

FIELDS = [
    "ticket",
    "symbol",
    "side",
    "volume",
    "open_time",
    "open_price",
    "stop_loss",
    "take_profit",
    "close_time",
    "close_price",
    "commission",
    "swap",
    "profit",
    "status",
    "risk_reward_ratio",
    "win_loss",
    "tags",
]


def _parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="export_trades_csv")
    p.add_argument("--config", type=str, default="config/config.yaml")
    p.add_argument("--user", type=str, required=True)
    p.add_argument("--out", type=str, default="trades.csv")
    p.add_argument("--limit", type=int, default=5000)
    return p.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv or sys.argv[1:])
    cfg = load_config(args.config)
    db = Database(Path(cfg.persistence.db_path))
    db.initialize()
    stored = db.trade_repo().list_trades(args.user, limit=int(args.limit))
    out = Path(args.out)
    out.parent.mkdir(parents=True, exist_ok=True)
    with out.open("w", newline="", encoding="utf-8") as f:
        w = csv.DictWriter(f, fieldnames=FIELDS)
        w.writeheader()
        for s in stored:
            t = s.trade
            w.writerow(
                {
                    "ticket": t.ticket,
                    "symbol": t.symbol,
                    "side": t.side.value,
                    "volume": t.volume,
                    "open_time": t.open_time.isoformat(),
                    "open_price": t.open_price,
                    "stop_loss": t.stop_loss,
                    "take_profit": t.take_profit,
                    "close_time": t.close_time.isoformat() if t.close_time else "",
                    "close_price": t.close_price,
                    "commission": t.commission,
                    "swap": t.swap,
                    "profit": t.profit,
                    "status": t.status.value,
                    "risk_reward_ratio": s.metrics.risk_reward_ratio if s.metrics else "",
                    "win_loss": s.metrics.win_loss if s.metrics else "",
                    "tags": ";".join(s.tags),
                }
            )
    print(f"Wrote {len(stored)} rows to {out}")
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
