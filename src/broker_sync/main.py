from __future__ import annotations

import argparse
import logging
import signal
import sys
from dataclasses import asdict
from pathlib import Path

from broker_sync.analytics.metrics import summarize
from broker_sync.core.config import AppConfig, load_config
from broker_sync.core.exceptions import BrokerSyncError, ReportParseError, TaskRetryExhaustedError
from broker_sync.core.utils import safe_json_dumps, setup_logging
from broker_sync.engine.runtime import SyncRuntime
from broker_sync.reports.models import ReportFormat


def _parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="broker-sync")
    p.add_argument("--config", type=str, default=None, help="Path to config.yaml")
    p.add_argument("--log-level", type=str, default=None)
    sub = p.add_subparsers(dest="command", required=True)

    imp = sub.add_parser("import", help="Import a broker history report")
    imp.add_argument("--user", required=True)
    imp.add_argument("report", type=str)
    imp.add_argument("--format", choices=[f.value for f in ReportFormat], default=None)

    tr = sub.add_parser("trades", help="List stored trades")
    tr.add_argument("--user", required=True)
    tr.add_argument("--limit", type=int, default=50)

    sm = sub.add_parser("summary", help="Aggregate statistics for a user's trades")
    sm.add_argument("--user", required=True)
    sm.add_argument("--starting-balance", type=float, default=0.0)

    sy = sub.add_parser("sync", help="Pull trades from a live terminal session")
    sy.add_argument("--user", required=True)
    sy.add_argument("--account", required=True)
    sy.add_argument("--priority", type=int, default=None)
    sy.add_argument("--watch", type=float, default=None, help="Repeat every N seconds until interrupted")
    return p.parse_args(argv)


def _guess_format(path: Path) -> ReportFormat:
    return ReportFormat.CSV if path.suffix.lower() in {".csv", ".txt"} else ReportFormat.HTML


def _cmd_import(rt: SyncRuntime, args: argparse.Namespace) -> int:
    path = Path(args.report)
    fmt = ReportFormat(args.format) if args.format else _guess_format(path)
    try:
        summary = rt.importer.import_report(args.user, path.read_bytes(), fmt)
    except ReportParseError as exc:
        print(f"Import failed: {exc}", file=sys.stderr)
        return 2
    rt.metrics_worker.drain()
    print(summary.message())
    return 0


def _cmd_trades(rt: SyncRuntime, args: argparse.Namespace) -> int:
    for stored in rt.trades.list_trades(args.user, limit=int(args.limit)):
        t = stored.trade
        row = {
            "ticket": t.ticket,
            "symbol": t.symbol,
            "side": t.side,
            "volume": t.volume,
            "open_time": t.open_time,
            "open_price": t.open_price,
            "close_time": t.close_time,
            "close_price": t.close_price,
            "profit": t.profit,
            "status": t.status,
            "win_loss": stored.metrics.win_loss if stored.metrics else None,
            "tags": stored.tags,
        }
        print(safe_json_dumps(row))
    return 0


def _cmd_summary(rt: SyncRuntime, args: argparse.Namespace) -> int:
    trades = [s.trade for s in rt.trades.list_trades(args.user)]
    summary = summarize(trades, starting_balance=float(args.starting_balance))
    print(safe_json_dumps(asdict(summary)))
    return 0


def _sync_once(rt: SyncRuntime, args: argparse.Namespace, log: logging.Logger) -> int:
    status = rt.sync.sync(args.user, args.account, priority=args.priority)
    if status.pull is None:
        detail = status.error or (status.health.detail if status.health else None)
        print(f"{args.account}: {status.connection_state} ({detail})")
        return 1
    try:
        result = status.pull.result()
    except TaskRetryExhaustedError as exc:
        log.error("sync failed", extra={"account_id": args.account, "attempts": exc.attempts})
        print(f"{args.account}: error ({exc.last_error})")
        return 1
    print(f"{args.account}: {status.connection_state}, {result.inserted} new, {result.updated} updated, {result.skipped} skipped")
    return 0


def _cmd_sync(rt: SyncRuntime, args: argparse.Namespace, log: logging.Logger) -> int:
    if args.watch is None:
        return _sync_once(rt, args, log)
    rc = 0
    while True:
        rc = _sync_once(rt, args, log)
        if rt.wait(float(args.watch)):
            return rc


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv if argv is not None else sys.argv[1:])
    try:
        config = load_config(args.config)
    except BrokerSyncError as exc:
        print(f"Config error: {exc}", file=sys.stderr)
        return 2
    _apply_overrides(config, args)
    setup_logging(config.logging.log_dir, level=config.logging.level)
    log = logging.getLogger("broker_sync")

    rt = SyncRuntime(config=config)
    stop_requested = False

    def _handle_sig(signum: int, _frame: object) -> None:
        nonlocal stop_requested
        if stop_requested:
            return
        stop_requested = True
        log.warning("shutdown requested", extra={"signal": signum})
        rt.request_stop()

    signal.signal(signal.SIGINT, _handle_sig)
    signal.signal(signal.SIGTERM, _handle_sig)

    with rt:
        if args.command == "import":
            return _cmd_import(rt, args)
        if args.command == "trades":
            return _cmd_trades(rt, args)
        if args.command == "summary":
            return _cmd_summary(rt, args)
        return _cmd_sync(rt, args, log)


def _apply_overrides(config: AppConfig, args: argparse.Namespace) -> None:
    if args.log_level:
        config.logging.level = str(args.log_level).upper()


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
