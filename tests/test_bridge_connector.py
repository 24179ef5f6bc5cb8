from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

import pytest
import requests

from broker_sync.connectors.base import OrderRequest
from broker_sync.connectors.bridge import BridgeSession
from broker_sync.core.exceptions import BrokerConnectionError, BrokerError, RetryableBrokerError
from broker_sync.reports.models import Side, TradeStatus


class _Response:
    def __init__(self, status_code: int = 200, payload: Any = None) -> None:
        self.status_code = status_code
        self._payload = payload
        self.content = b"" if payload is None else b"{}"
        self.text = "" if payload is None else str(payload)

    def json(self) -> Any:
        return self._payload


class FakeHttp:
    """Routes (method, path suffix) to canned responses and records calls."""

    def __init__(self, routes: dict[tuple[str, str], Any]) -> None:
        self.routes = routes
        self.calls: list[tuple[str, str, dict[str, Any]]] = []
        self.closed = False

    def request(self, method: str, url: str, **kwargs: Any) -> _Response:
        self.calls.append((method, url, kwargs))
        for (m, suffix), result in self.routes.items():
            if m == method and url.endswith(suffix):
                if isinstance(result, Exception):
                    raise result
                return result
        return _Response(404, {"error": "not found"})

    def post(self, url: str, **kwargs: Any) -> _Response:
        return self.request("POST", url, **kwargs)

    def close(self) -> None:
        self.closed = True


def _session(http: FakeHttp) -> BridgeSession:
    return BridgeSession(base_url="http://bridge/api/", account_id="5001", connection_id="c1", http=http)  # type: ignore[arg-type]


def test_connect_returns_session_with_connection_id() -> None:
    http = FakeHttp({("POST", "/connect"): _Response(200, {"id": "abc"})})
    session = BridgeSession.connect(base_url="http://bridge/api", login="5001", password="pw", server="Demo", http=http)  # type: ignore[arg-type]
    assert session.account_id == "5001"
    method, url, kwargs = http.calls[0]
    assert url == "http://bridge/api/connect"
    assert kwargs["json"] == {"login": "5001", "password": "pw", "server": "Demo"}


def test_connect_failure_raises_connection_error() -> None:
    http = FakeHttp({("POST", "/connect"): requests.ConnectionError("refused")})
    with pytest.raises(BrokerConnectionError):
        BridgeSession.connect(base_url="http://bridge/api", login="5001", password="pw", server="Demo", http=http)  # type: ignore[arg-type]

    http = FakeHttp({("POST", "/connect"): _Response(401, {"error": "invalid credentials"})})
    with pytest.raises(BrokerConnectionError):
        BridgeSession.connect(base_url="http://bridge/api", login="5001", password="pw", server="Demo", http=http)  # type: ignore[arg-type]


def test_status_flags() -> None:
    http = FakeHttp({("GET", "/status/c1"): _Response(200, {"connected": True, "synchronized": False})})
    session = _session(http)
    assert session.connected
    assert not session.synchronized


def test_closed_trades_are_normalized_and_windowed() -> None:
    payload = {
        "trades": [
            {
                "ticket": 11, "symbol": "XAUUSD", "type": "BUY", "volume": 0.5,
                "openPrice": 2034.567, "closePrice": 2040.124, "sl": 0, "tp": 2050,
                "profit": 275.5, "commission": -3.5, "swap": 0,
                "openTime": "2024-01-15T10:00:00Z", "closeTime": "2024-01-15T14:00:00Z",
            },
            {
                "ticket": 12, "symbol": "EURUSD", "type": "sell", "volume": 0.1,
                "openPrice": 1.1, "closePrice": 1.09, "profit": 10,
                "openTime": "2023-12-01T10:00:00Z", "closeTime": "2023-12-01T11:00:00Z",
            },
            {"ticket": "bad", "symbol": "EURUSD", "type": "buy", "volume": 1, "openPrice": 1.1, "openTime": "2024-01-15T10:00:00Z"},
        ]
    }
    http = FakeHttp({("GET", "/trades/c1"): _Response(200, payload)})
    session = _session(http)

    trades = session.list_closed_trades(
        datetime(2024, 1, 1, tzinfo=timezone.utc), datetime(2024, 2, 1, tzinfo=timezone.utc)
    )

    (trade,) = trades
    assert trade.ticket == 11
    assert trade.side == Side.BUY
    assert trade.open_price == Decimal("2034.57")
    assert trade.close_price == Decimal("2040.12")
    assert trade.stop_loss is None
    assert trade.status == TradeStatus.CLOSED
    assert http.calls[0][2]["params"]["from"].startswith("2024-01-01T00:00:00")


def test_server_errors_are_retryable_and_client_errors_are_not() -> None:
    session = _session(FakeHttp({("GET", "/positions/c1"): _Response(503, {"error": "busy"})}))
    with pytest.raises(RetryableBrokerError):
        session.list_open_trades()

    session = _session(FakeHttp({("GET", "/positions/c1"): requests.Timeout("slow")}))
    with pytest.raises(RetryableBrokerError):
        session.list_open_trades()

    session = _session(FakeHttp({("PUT", "/position/c1/9"): _Response(400, {"error": "invalid stops"})}))
    with pytest.raises(BrokerError):
        session.modify_position(ticket=9, stop_loss=Decimal("1.1"), take_profit=None)


def test_order_and_close_round_trip() -> None:
    http = FakeHttp(
        {
            ("POST", "/order/c1"): _Response(200, {"success": True, "ticket": 321}),
            ("DELETE", "/position/c1/321"): _Response(200, {"success": True}),
        }
    )
    session = _session(http)
    result = session.place_order(OrderRequest(symbol="EURUSD", side=Side.SELL, volume=Decimal("0.1")))
    assert result.success and result.ticket == 321
    assert http.calls[0][2]["json"]["type"] == "sell"
    assert session.close_position(321)


def test_close_disconnects_and_is_idempotent() -> None:
    http = FakeHttp({("POST", "/disconnect/c1"): _Response(200, {})})
    session = _session(http)
    session.close()
    session.close()
    assert http.closed
    assert len(http.calls) == 1
    assert not session.connected
