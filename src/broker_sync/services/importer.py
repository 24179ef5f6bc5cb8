from __future__ import annotations

import logging
from dataclasses import dataclass

from broker_sync.core.exceptions import ReportParseError
from broker_sync.persistence.repos import ImportRepo
from broker_sync.reconcile.reconciler import TradeReconciler
from broker_sync.reports.models import ReportFormat
from broker_sync.reports.parser import ReportParser


@dataclass(frozen=True)
class ImportSummary:
    inserted: int
    updated: int
    skipped: int
    rows_skipped: int
    errors: tuple[str, ...] = ()

    def message(self) -> str:
        imported = self.inserted + self.updated
        return f"{imported} trades imported, {self.skipped} skipped"


class ImportService:
    """Report file -> parser -> reconciler, with one import_runs row per call."""

    def __init__(
        self,
        *,
        parser: ReportParser,
        reconciler: TradeReconciler,
        imports: ImportRepo | None = None,
    ) -> None:
        self.parser = parser
        self.reconciler = reconciler
        self.imports = imports
        self._log = logging.getLogger("broker_sync.import")

    def import_report(
        self,
        user_id: str,
        data: bytes | str,
        fmt: ReportFormat | str = ReportFormat.HTML,
    ) -> ImportSummary:
        fmt = ReportFormat(fmt)
        source = f"report:{fmt.value}"
        try:
            parsed = self.parser.parse_report(data, fmt)
        except ReportParseError as exc:
            self._log.warning("import rejected", extra={"user_id": user_id, "format": fmt.value, "error": str(exc)})
            self._record(user_id, source, 0, 0, 0, error=str(exc))
            raise

        result = self.reconciler.reconcile(user_id, parsed.trades)
        summary = ImportSummary(
            inserted=result.inserted,
            updated=result.updated,
            skipped=result.skipped + parsed.skipped_rows,
            rows_skipped=parsed.skipped_rows,
            errors=tuple(result.errors),
        )
        self._record(
            user_id,
            source,
            summary.inserted,
            summary.updated,
            summary.skipped,
            error="; ".join(result.errors) or None,
        )
        self._log.info(
            "import complete",
            extra={
                "user_id": user_id,
                "inserted": summary.inserted,
                "updated": summary.updated,
                "skipped": summary.skipped,
            },
        )
        return summary

    def _record(self, user_id: str, source: str, inserted: int, updated: int, skipped: int, *, error: str | None) -> None:
        if self.imports is None:
            return
        try:
            self.imports.insert(
                user_id=user_id,
                source=source,
                inserted=inserted,
                updated=updated,
                skipped=skipped,
                error=error,
            )
        except Exception as exc:
            self._log.warning("import run not recorded", extra={"user_id": user_id, "error": str(exc)})
