from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any

from broker_sync.reports.models import NormalizedTrade, Side


@dataclass(frozen=True)
class OrderRequest:
    symbol: str
    side: Side
    volume: Decimal
    stop_loss: Decimal | None = None
    take_profit: Decimal | None = None
    comment: str = ""


@dataclass(frozen=True)
class OrderResult:
    success: bool
    ticket: int | None
    comment: str | None
    raw: dict[str, Any] = field(default_factory=dict)


class TerminalSession(ABC):
    """One live connection to a remote trading terminal for a single account."""

    @property
    @abstractmethod
    def account_id(self) -> str:
        raise NotImplementedError

    @property
    @abstractmethod
    def connected(self) -> bool:
        raise NotImplementedError

    @property
    @abstractmethod
    def synchronized(self) -> bool:
        raise NotImplementedError

    @abstractmethod
    def list_open_trades(self) -> list[NormalizedTrade]:
        raise NotImplementedError

    @abstractmethod
    def list_closed_trades(self, from_utc: datetime, to_utc: datetime) -> list[NormalizedTrade]:
        raise NotImplementedError

    @abstractmethod
    def place_order(self, req: OrderRequest) -> OrderResult:
        raise NotImplementedError

    @abstractmethod
    def modify_position(self, *, ticket: int, stop_loss: Decimal | None, take_profit: Decimal | None) -> bool:
        raise NotImplementedError

    @abstractmethod
    def close_position(self, ticket: int) -> bool:
        raise NotImplementedError

    @abstractmethod
    def close(self) -> None:
        raise NotImplementedError
