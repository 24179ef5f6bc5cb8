from __future__ import annotations

from dataclasses import dataclass, field

from broker_sync.analytics.metrics import TradeMetrics
from broker_sync.reports.models import NormalizedTrade, TradeStatus


@dataclass(frozen=True)
class UpsertOutcome:
    ticket: int
    trade_id: int
    created: bool
    status: TradeStatus


@dataclass(frozen=True)
class TradeNote:
    id: int
    note_type: str
    content: str
    screenshot_url: str | None
    created_at: str


@dataclass(frozen=True)
class StoredTrade:
    id: int
    user_id: str
    trade: NormalizedTrade
    metrics: TradeMetrics | None = None
    tags: list[str] = field(default_factory=list)
    notes: list[TradeNote] = field(default_factory=list)


@dataclass(frozen=True)
class ImportRunRow:
    id: int
    created_at: str
    user_id: str
    source: str
    inserted: int
    updated: int
    skipped: int
    error: str | None

