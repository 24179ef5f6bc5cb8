from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Sequence

from broker_sync.analytics.metrics import TradeMetrics
from broker_sync.persistence.models import StoredTrade, UpsertOutcome
from broker_sync.reports.models import NormalizedTrade


class TradeStore(ABC):
    """Record sink/source the reconciler writes through."""

    @abstractmethod
    def upsert_trades(self, user_id: str, trades: Sequence[NormalizedTrade]) -> list[UpsertOutcome]:
        """Upsert one batch atomically, keyed by (user_id, ticket)."""
        raise NotImplementedError

    @abstractmethod
    def compute_trade_metrics(self, trade_id: int) -> TradeMetrics:
        raise NotImplementedError

    @abstractmethod
    def list_trades(self, user_id: str, *, limit: int | None = None) -> list[StoredTrade]:
        raise NotImplementedError

    @abstractmethod
    def count_trades(self, user_id: str) -> int:
        raise NotImplementedError
