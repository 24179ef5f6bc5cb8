from __future__ import annotations

import logging
import os
from datetime import datetime
from decimal import Decimal
from typing import Any

import requests

from broker_sync.connectors.base import OrderRequest, OrderResult, TerminalSession
from broker_sync.core.exceptions import BrokerConnectionError, BrokerError, RetryableBrokerError
from broker_sync.core.utils import iso_utc
from broker_sync.reports.models import NormalizedTrade
from broker_sync.reports.normalize import build_trade


def _trade_from_payload(item: dict[str, Any]) -> NormalizedTrade | None:
    return build_trade(
        ticket=item.get("ticket"),
        symbol=item.get("symbol"),
        side=item.get("type"),
        volume=item.get("volume"),
        open_price=item.get("openPrice"),
        open_time=item.get("openTime"),
        close_price=item.get("closePrice"),
        stop_loss=item.get("sl"),
        take_profit=item.get("tp"),
        close_time=item.get("closeTime"),
        commission=item.get("commission"),
        swap=item.get("swap"),
        profit=item.get("profit"),
    )


class BridgeSession(TerminalSession):
    """Session against the HTTP terminal bridge (one bridge-side connection id per account)."""

    def __init__(
        self,
        *,
        base_url: str,
        account_id: str,
        connection_id: str,
        timeout_seconds: float = 10.0,
        http: requests.Session | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._account_id = account_id
        self._connection_id = connection_id
        self._timeout = timeout_seconds
        self._http = http or requests.Session()
        self._log = logging.getLogger("broker_sync.bridge")
        self._closed = False

    @classmethod
    def connect(
        cls,
        *,
        base_url: str,
        login: str,
        password: str,
        server: str,
        timeout_seconds: float = 10.0,
        http: requests.Session | None = None,
    ) -> "BridgeSession":
        http = http or requests.Session()
        url = f"{base_url.rstrip('/')}/connect"
        try:
            r = http.post(url, json={"login": login, "password": password, "server": server}, timeout=timeout_seconds)
        except requests.RequestException as exc:
            raise BrokerConnectionError(f"bridge connect failed: {exc}", account_id=login) from exc
        if r.status_code >= 400:
            raise BrokerConnectionError(
                f"bridge connect rejected: {r.status_code} {r.text[:200]}", account_id=login
            )
        connection_id = str(r.json().get("id") or "")
        if not connection_id:
            raise BrokerConnectionError("bridge connect returned no connection id", account_id=login)
        return cls(
            base_url=base_url,
            account_id=login,
            connection_id=connection_id,
            timeout_seconds=timeout_seconds,
            http=http,
        )

    @classmethod
    def from_env(cls, account_id: str, *, base_url: str, timeout_seconds: float = 10.0) -> "BridgeSession":
        password = os.getenv(f"BROKER_PASSWORD_{account_id}") or os.getenv("BROKER_PASSWORD")
        server = os.getenv(f"BROKER_SERVER_{account_id}") or os.getenv("BROKER_SERVER")
        missing = [k for k, v in [("BROKER_PASSWORD", password), ("BROKER_SERVER", server)] if not v]
        if missing:
            raise BrokerConnectionError(f"Missing required env vars: {', '.join(missing)}", account_id=account_id)
        return cls.connect(
            base_url=base_url,
            login=account_id,
            password=str(password),
            server=str(server),
            timeout_seconds=timeout_seconds,
        )

    @property
    def account_id(self) -> str:
        return self._account_id

    @property
    def connected(self) -> bool:
        return bool(self._status().get("connected"))

    @property
    def synchronized(self) -> bool:
        return bool(self._status().get("synchronized"))

    def _status(self) -> dict[str, Any]:
        if self._closed:
            return {"connected": False, "synchronized": False}
        return self._request("GET", f"/status/{self._connection_id}")

    def list_open_trades(self) -> list[NormalizedTrade]:
        data = self._request("GET", f"/positions/{self._connection_id}")
        return self._trades(data.get("positions") or [])

    def list_closed_trades(self, from_utc: datetime, to_utc: datetime) -> list[NormalizedTrade]:
        data = self._request(
            "GET",
            f"/trades/{self._connection_id}",
            params={"from": iso_utc(from_utc), "to": iso_utc(to_utc)},
        )
        trades = self._trades(data.get("trades") or [])
        # the bridge may ignore the window
        return [t for t in trades if t.close_time is not None and from_utc <= t.close_time <= to_utc]

    def _trades(self, items: list[dict[str, Any]]) -> list[NormalizedTrade]:
        out: list[NormalizedTrade] = []
        for item in items:
            trade = _trade_from_payload(item)
            if trade is None:
                self._log.debug("bridge trade skipped", extra={"ticket": item.get("ticket")})
                continue
            out.append(trade)
        return out

    def place_order(self, req: OrderRequest) -> OrderResult:
        payload = {
            "symbol": req.symbol,
            "type": req.side.value,
            "volume": float(req.volume),
            "stopLoss": float(req.stop_loss) if req.stop_loss is not None else None,
            "takeProfit": float(req.take_profit) if req.take_profit is not None else None,
            "comment": req.comment,
        }
        data = self._request("POST", f"/order/{self._connection_id}", json=payload)
        ticket = data.get("ticket") or data.get("orderId")
        return OrderResult(
            success=bool(data.get("success", True)),
            ticket=int(ticket) if ticket else None,
            comment=data.get("comment"),
            raw=data,
        )

    def modify_position(self, *, ticket: int, stop_loss: Decimal | None, take_profit: Decimal | None) -> bool:
        data = self._request(
            "PUT",
            f"/position/{self._connection_id}/{int(ticket)}",
            json={
                "stopLoss": float(stop_loss) if stop_loss is not None else None,
                "takeProfit": float(take_profit) if take_profit is not None else None,
            },
        )
        return bool(data.get("success", True))

    def close_position(self, ticket: int) -> bool:
        data = self._request("DELETE", f"/position/{self._connection_id}/{int(ticket)}")
        return bool(data.get("success", True))

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._http.post(f"{self._base_url}/disconnect/{self._connection_id}", timeout=self._timeout)
        finally:
            self._http.close()

    def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        url = f"{self._base_url}{path}"
        try:
            r = self._http.request(method, url, timeout=self._timeout, **kwargs)
        except requests.RequestException as exc:
            raise RetryableBrokerError(f"bridge {method} {path} failed: {exc}") from exc
        if r.status_code == 429 or r.status_code >= 500:
            raise RetryableBrokerError(f"bridge {method} {path}: {r.status_code}")
        if r.status_code >= 400:
            raise BrokerError(f"bridge {method} {path}: {r.status_code} {r.text[:200]}")
        if not r.content:
            return {}
        body = r.json()
        return body if isinstance(body, dict) else {"data": body}


