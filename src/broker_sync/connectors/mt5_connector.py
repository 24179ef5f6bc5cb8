from __future__ import annotations

import logging
import os
import time
from collections import defaultdict
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any

from broker_sync.connectors.base import OrderRequest, OrderResult, TerminalSession
from broker_sync.core.exceptions import BrokerConnectionError, BrokerError, RetryableBrokerError
from broker_sync.reports.models import NormalizedTrade, Side
from broker_sync.reports.normalize import build_trade, parse_decimal, round_price

_TERMINAL_EXECUTABLES = ("terminal64.exe", "terminal.exe")


def _safe_get(obj: Any, name: str, default: Any = None) -> Any:
    try:
        return getattr(obj, name)
    except Exception:
        return default


def resolve_terminal_path(path: str | None) -> str | None:
    """Accept either the terminal executable or its install directory."""
    if not path:
        return None
    p = Path(path)
    if p.is_dir():
        for name in _TERMINAL_EXECUTABLES:
            candidate = p / name
            if candidate.exists():
                return str(candidate)
    return str(p)


class MT5Session(TerminalSession):
    """TerminalSession over the MetaTrader5 package.

    The MetaTrader5 module drives a single local terminal per process, so a
    pool holding MT5 sessions should only ever hold one account.
    """

    def __init__(
        self,
        *,
        login: int,
        password: str,
        server: str,
        path: str | None = None,
        connect_retries: int = 3,
    ) -> None:
        self._log = logging.getLogger("broker_sync.mt5")
        self._login = int(login)
        self._password = password
        self._server = server
        self._path = resolve_terminal_path(path)

        try:
            import MetaTrader5 as mt5  # type: ignore
        except Exception as exc:  # pragma: no cover
            raise BrokerConnectionError(
                "Failed to import MetaTrader5. On Linux, the official package "
                "requires running under Wine + Windows Python.",
                account_id=str(login),
            ) from exc
        self._mt5 = mt5

        self._ensure_connected(retries=connect_retries)

    @classmethod
    def from_env(cls, account_id: str) -> "MT5Session":
        password = os.getenv(f"BROKER_PASSWORD_{account_id}") or os.getenv("BROKER_PASSWORD")
        server = os.getenv(f"BROKER_SERVER_{account_id}") or os.getenv("BROKER_SERVER")
        path = os.getenv("MT5_PATH") or None
        missing = [k for k, v in [("BROKER_PASSWORD", password), ("BROKER_SERVER", server)] if not v]
        if missing:
            raise BrokerConnectionError(f"Missing required env vars: {', '.join(missing)}", account_id=account_id)
        if not account_id.isdigit():
            raise BrokerConnectionError(f"MT5 login must be numeric: {account_id}", account_id=account_id)
        return cls(login=int(account_id), password=str(password), server=str(server), path=path)

    @property
    def account_id(self) -> str:
        return str(self._login)

    @property
    def connected(self) -> bool:
        try:
            return self._mt5.terminal_info() is not None and self._mt5.account_info() is not None
        except Exception:
            return False

    @property
    def synchronized(self) -> bool:
        ti = self._mt5.terminal_info()
        ai = self._mt5.account_info()
        if ti is None or ai is None:
            return False
        return bool(_safe_get(ti, "connected", False)) and _safe_get(ai, "login") == self._login

    def close(self) -> None:
        self._mt5.shutdown()

    def _initialize(self) -> None:
        kwargs: dict[str, Any] = {
            "login": self._login,
            "password": self._password,
            "server": self._server,
        }
        if self._path:
            kwargs["path"] = self._path
        ok = self._mt5.initialize(**kwargs)
        if not ok:
            code, msg = self._mt5.last_error()
            raise BrokerConnectionError(f"mt5.initialize failed: {code} {msg}", account_id=self.account_id)

    def _ensure_connected(self, retries: int = 1) -> None:
        last_exc: Exception | None = None
        for attempt in range(1, retries + 1):
            if self.connected:
                return
            try:
                self._initialize()
                if self.connected:
                    self._log.info("mt5 connected", extra={"server": self._server, "login": self._login})
                    return
            except BrokerConnectionError as exc:
                last_exc = exc
                self._log.warning(
                    "mt5 connect failed",
                    extra={"attempt": attempt, "retries": retries, "error": str(exc)},
                )
                if attempt < retries:
                    time.sleep(min(2.0 * attempt, 5.0))
        raise BrokerConnectionError(str(last_exc) if last_exc else "mt5 not connected", account_id=self.account_id)

    def _call(self, fn_name: str, *args: Any, **kwargs: Any) -> Any:
        if not self.connected:
            raise RetryableBrokerError(f"MT5 terminal disconnected before {fn_name}")
        fn = getattr(self._mt5, fn_name)
        try:
            return fn(*args, **kwargs)
        except Exception as exc:
            raise RetryableBrokerError(f"MT5 call failed: {fn_name}: {exc}") from exc

    def list_open_trades(self) -> list[NormalizedTrade]:
        positions = self._call("positions_get")
        if positions is None:
            return []
        out: list[NormalizedTrade] = []
        for p in positions:
            side = Side.SELL if _safe_get(p, "type") == self._mt5.POSITION_TYPE_SELL else Side.BUY
            trade = build_trade(
                ticket=_safe_get(p, "ticket"),
                symbol=_safe_get(p, "symbol"),
                side=side.value,
                volume=_safe_get(p, "volume"),
                open_price=_safe_get(p, "price_open"),
                open_time=_safe_get(p, "time"),
                stop_loss=_safe_get(p, "sl"),
                take_profit=_safe_get(p, "tp"),
                swap=_safe_get(p, "swap"),
                profit=_safe_get(p, "profit"),
            )
            if trade is not None:
                out.append(trade)
        return out

    def list_closed_trades(self, from_utc: datetime, to_utc: datetime) -> list[NormalizedTrade]:
        deals = self._call("history_deals_get", from_utc, to_utc)
        if deals is None:
            return []
        return self._trades_from_deals(deals)

    def _trades_from_deals(self, deals: Any) -> list[NormalizedTrade]:
        """Fold entry/exit deals into one closed trade per position id."""
        trade_types = {self._mt5.DEAL_TYPE_BUY, self._mt5.DEAL_TYPE_SELL}
        by_position: dict[int, list[Any]] = defaultdict(list)
        for d in deals:
            if _safe_get(d, "type") in trade_types and _safe_get(d, "position_id"):
                by_position[int(_safe_get(d, "position_id"))].append(d)

        out: list[NormalizedTrade] = []
        for position_id, group in by_position.items():
            entries, exits = self._split_deals(group)
            if exits and not entries:
                # opened before the window; the entry deal is only in the position's own history
                full = self._call("history_deals_get", position=position_id) or []
                entries, exits = self._split_deals([d for d in full if _safe_get(d, "type") in trade_types])
                group = entries + exits
            if not entries or not exits:
                continue
            opened = entries[0]
            in_volume = sum((parse_decimal(_safe_get(d, "volume")) or Decimal(0)) for d in entries)
            out_volume = sum((parse_decimal(_safe_get(d, "volume")) or Decimal(0)) for d in exits)
            if out_volume < in_volume:
                # partially closed; still reported by positions_get
                continue
            symbol = str(_safe_get(opened, "symbol"))
            exit_value = sum(
                (parse_decimal(_safe_get(d, "price")) or Decimal(0)) * (parse_decimal(_safe_get(d, "volume")) or Decimal(0))
                for d in exits
            )
            close_price = round_price(symbol, exit_value / out_volume) if out_volume else None
            side = Side.BUY if _safe_get(opened, "type") == self._mt5.DEAL_TYPE_BUY else Side.SELL
            trade = build_trade(
                ticket=position_id,
                symbol=symbol,
                side=side.value,
                volume=in_volume,
                open_price=_safe_get(opened, "price"),
                open_time=_safe_get(opened, "time"),
                close_price=close_price,
                close_time=_safe_get(exits[-1], "time"),
                commission=sum((parse_decimal(_safe_get(d, "commission")) or Decimal(0)) for d in group),
                swap=sum((parse_decimal(_safe_get(d, "swap")) or Decimal(0)) for d in group),
                profit=sum((parse_decimal(_safe_get(d, "profit")) or Decimal(0)) for d in group),
            )
            if trade is not None:
                out.append(trade)
        return out

    def _split_deals(self, group: list[Any]) -> tuple[list[Any], list[Any]]:
        group = sorted(group, key=lambda d: (_safe_get(d, "time", 0), _safe_get(d, "ticket", 0)))
        entries = [d for d in group if _safe_get(d, "entry") == self._mt5.DEAL_ENTRY_IN]
        exits = [
            d
            for d in group
            if _safe_get(d, "entry") in (self._mt5.DEAL_ENTRY_OUT, self._mt5.DEAL_ENTRY_OUT_BY)
        ]
        return entries, exits

    def place_order(self, req: OrderRequest) -> OrderResult:
        info = self._call("symbol_info", req.symbol)
        if info is None:
            raise BrokerError(f"Unknown symbol: {req.symbol}")
        if not self._call("symbol_select", req.symbol, True):
            raise BrokerError(f"symbol_select failed: {req.symbol}")
        tick = self._call("symbol_info_tick", req.symbol)
        if tick is None:
            raise RetryableBrokerError(f"No tick for symbol: {req.symbol}")

        price = float(_safe_get(tick, "ask") if req.side == Side.BUY else _safe_get(tick, "bid"))
        request: dict[str, Any] = {
            "action": self._mt5.TRADE_ACTION_DEAL,
            "symbol": req.symbol,
            "volume": float(req.volume),
            "type": self._mt5.ORDER_TYPE_BUY if req.side == Side.BUY else self._mt5.ORDER_TYPE_SELL,
            "price": price,
            "comment": str(req.comment)[:31],
            "type_time": self._mt5.ORDER_TIME_GTC,
            "type_filling": self._mt5.ORDER_FILLING_IOC,
        }
        if req.stop_loss is not None:
            request["sl"] = float(req.stop_loss)
        if req.take_profit is not None:
            request["tp"] = float(req.take_profit)
        return self._send(request)

    def modify_position(self, *, ticket: int, stop_loss: Decimal | None, take_profit: Decimal | None) -> bool:
        req = {
            "action": self._mt5.TRADE_ACTION_SLTP,
            "position": int(ticket),
            "sl": float(stop_loss) if stop_loss is not None else 0.0,
            "tp": float(take_profit) if take_profit is not None else 0.0,
        }
        return self._send(req).success

    def close_position(self, ticket: int) -> bool:
        positions = self._call("positions_get", ticket=int(ticket))
        if not positions:
            return False
        p = positions[0]
        symbol = str(_safe_get(p, "symbol"))
        tick = self._call("symbol_info_tick", symbol)
        if tick is None:
            raise RetryableBrokerError(f"No tick for symbol: {symbol}")
        is_buy = _safe_get(p, "type") == self._mt5.POSITION_TYPE_BUY
        req = {
            "action": self._mt5.TRADE_ACTION_DEAL,
            "position": int(ticket),
            "symbol": symbol,
            "volume": float(_safe_get(p, "volume", 0.0)),
            "type": self._mt5.ORDER_TYPE_SELL if is_buy else self._mt5.ORDER_TYPE_BUY,
            "price": float(_safe_get(tick, "bid") if is_buy else _safe_get(tick, "ask")),
            "type_time": self._mt5.ORDER_TIME_GTC,
            "type_filling": self._mt5.ORDER_FILLING_IOC,
        }
        return self._send(req).success

    def _send(self, request: dict[str, Any]) -> OrderResult:
        res = self._call("order_send", request)
        if res is None:
            code, msg = self._mt5.last_error()
            return OrderResult(
                success=False,
                ticket=None,
                comment=f"order_send returned None: {msg}",
                raw={"request": request, "last_error": [code, msg]},
            )
        retcode = int(_safe_get(res, "retcode", -1) or -1)
        success_codes = {
            getattr(self._mt5, "TRADE_RETCODE_DONE", 10009),
            getattr(self._mt5, "TRADE_RETCODE_PLACED", 10008),
            getattr(self._mt5, "TRADE_RETCODE_DONE_PARTIAL", 10010),
        }
        order_ticket = _safe_get(res, "order")
        comment = _safe_get(res, "comment")
        return OrderResult(
            success=retcode in success_codes,
            ticket=int(order_ticket) if order_ticket else None,
            comment=str(comment) if comment is not None else None,
            raw={"retcode": retcode, "order": order_ticket, "deal": _safe_get(res, "deal"), "request": request},
        )
