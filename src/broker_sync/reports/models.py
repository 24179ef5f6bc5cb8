from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum

RawReportRow = tuple[str, ...]

ZERO = Decimal("0")


class Side(str, Enum):
    BUY = "buy"
    SELL = "sell"


class TradeStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class ReportFormat(str, Enum):
    HTML = "html"
    CSV = "csv"


@dataclass(frozen=True)
class NormalizedTrade:
    ticket: int
    symbol: str
    side: Side
    volume: Decimal
    open_price: Decimal
    open_time: datetime
    close_price: Decimal | None = None
    stop_loss: Decimal | None = None
    take_profit: Decimal | None = None
    close_time: datetime | None = None
    commission: Decimal = ZERO
    swap: Decimal = ZERO
    profit: Decimal = ZERO

    @property
    def status(self) -> TradeStatus:
        return TradeStatus.CLOSED if self.close_time is not None else TradeStatus.OPEN


@dataclass(frozen=True)
class ParsedReport:
    trades: list[NormalizedTrade] = field(default_factory=list)
    skipped_rows: int = 0
