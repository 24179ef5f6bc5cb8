from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Sequence

from broker_sync.core.exceptions import ReconcileBatchError
from broker_sync.core.utils import chunked
from broker_sync.persistence.base import TradeStore
from broker_sync.persistence.models import UpsertOutcome
from broker_sync.reconcile.events import EventQueue, MetricsRequested
from broker_sync.reports.models import NormalizedTrade, TradeStatus

DEFAULT_BATCH_SIZE = 50


@dataclass
class ReconcileResult:
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


class TradeReconciler:
    """Upserts normalized trades in independent batches keyed by (user_id, ticket).

    A failed batch is counted as skipped and reported; earlier batches stay
    committed. Re-running an import is safe because the upsert is idempotent.
    """

    def __init__(
        self,
        store: TradeStore,
        *,
        events: EventQueue | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.store = store
        self.events = events
        self.batch_size = batch_size
        self._log = logging.getLogger("broker_sync.reconciler")

    def reconcile(self, user_id: str, trades: Sequence[NormalizedTrade]) -> ReconcileResult:
        result = ReconcileResult()
        for index, batch in enumerate(chunked(list(trades), self.batch_size)):
            try:
                outcomes = self._upsert_batch(user_id, index, batch)
            except ReconcileBatchError as exc:
                result.skipped += exc.size
                result.errors.append(str(exc))
                self._log.error(
                    "reconcile batch failed",
                    extra={"user_id": user_id, "batch": index, "size": exc.size, "error": str(exc)},
                )
                continue
            for outcome in outcomes:
                if outcome.created:
                    result.inserted += 1
                else:
                    result.updated += 1
                if outcome.status == TradeStatus.CLOSED:
                    self._request_metrics(user_id, outcome)

        self._log.info(
            "reconcile complete",
            extra={
                "user_id": user_id,
                "inserted": result.inserted,
                "updated": result.updated,
                "skipped": result.skipped,
            },
        )
        return result

    def _upsert_batch(self, user_id: str, index: int, batch: Sequence[NormalizedTrade]) -> list[UpsertOutcome]:
        try:
            return self.store.upsert_trades(user_id, batch)
        except Exception as exc:
            raise ReconcileBatchError(
                f"batch {index} failed: {exc}", batch_index=index, size=len(batch)
            ) from exc

    def _request_metrics(self, user_id: str, outcome: UpsertOutcome) -> None:
        if self.events is None:
            return
        try:
            self.events.publish(MetricsRequested(user_id=user_id, ticket=outcome.ticket, trade_id=outcome.trade_id))
        except Exception as exc:
            self._log.warning(
                "metrics request not published",
                extra={"user_id": user_id, "ticket": outcome.ticket, "error": str(exc)},
            )
