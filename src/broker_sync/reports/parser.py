from __future__ import annotations

import csv
import io
import logging
import re
from dataclasses import dataclass, fields
from datetime import tzinfo
from typing import Sequence

import pandas as pd

from broker_sync.core.config import ParserConfig
from broker_sync.core.exceptions import ReportParseError
from broker_sync.reports.html_table import HtmlRow, HtmlTable, decode_report, extract_tables
from broker_sync.reports.models import NormalizedTrade, ParsedReport, RawReportRow, ReportFormat
from broker_sync.reports.normalize import build_trade


@dataclass(frozen=True)
class PositionRow:
    """One positions-table row in export column order."""

    open_time: str
    ticket: str
    symbol: str
    side: str
    volume: str
    open_price: str
    stop_loss: str
    take_profit: str
    close_time: str
    close_price: str
    commission: str
    swap: str
    profit: str

    @classmethod
    def from_cells(cls, cells: RawReportRow) -> "PositionRow":
        names = [f.name for f in fields(cls)]
        return cls(**{name: cells[i] for i, name in enumerate(names)})

    def to_trade(self, tz: tzinfo) -> NormalizedTrade | None:
        return build_trade(
            ticket=self.ticket,
            symbol=self.symbol,
            side=self.side,
            volume=self.volume,
            open_price=self.open_price,
            open_time=self.open_time,
            close_price=self.close_price,
            stop_loss=self.stop_loss,
            take_profit=self.take_profit,
            close_time=self.close_time,
            commission=self.commission,
            swap=self.swap,
            profit=self.profit,
            tz=tz,
        )


POSITION_FIELDS = tuple(f.name for f in fields(PositionRow))

# Normalized (lowercase, no whitespace) CSV header -> PositionRow field.
# pandas suffixes repeated headers, so MT5's second Time/Price become time.1/price.1.
CSV_HEADER_ALIASES: dict[str, str] = {
    "time": "open_time",
    "opentime": "open_time",
    "open_time": "open_time",
    "hora": "open_time",
    "fecha": "open_time",
    "position": "ticket",
    "ticket": "ticket",
    "posición": "ticket",
    "posicion": "ticket",
    "symbol": "symbol",
    "símbolo": "symbol",
    "simbolo": "symbol",
    "type": "side",
    "tipo": "side",
    "side": "side",
    "volume": "volume",
    "volumen": "volume",
    "lots": "volume",
    "price": "open_price",
    "openprice": "open_price",
    "open_price": "open_price",
    "precio": "open_price",
    "s/l": "stop_loss",
    "sl": "stop_loss",
    "stoploss": "stop_loss",
    "t/p": "take_profit",
    "tp": "take_profit",
    "takeprofit": "take_profit",
    "time.1": "close_time",
    "hora.1": "close_time",
    "fecha.1": "close_time",
    "closetime": "close_time",
    "close_time": "close_time",
    "price.1": "close_price",
    "precio.1": "close_price",
    "closeprice": "close_price",
    "close_price": "close_price",
    "commission": "commission",
    "comisión": "commission",
    "comision": "commission",
    "swap": "swap",
    "profit": "profit",
    "beneficio": "profit",
}

CSV_REQUIRED_FIELDS = ("ticket", "symbol", "side", "volume", "open_price", "open_time")

_WS_RE = re.compile(r"\s+")


def _is_column_header(row: HtmlRow) -> bool:
    """MT5 writes the column-label row as bold <td> cells under the same row marker as the data."""
    cells = [c for c in row.cells if c.text and "hidden" not in c.classes]
    if not cells:
        return False
    if all(c.bold for c in cells):
        return True
    return all(_WS_RE.sub("", c.text.lower()) in CSV_HEADER_ALIASES for c in cells)


class ReportParser:
    def __init__(self, config: ParserConfig | None = None) -> None:
        self.config = config or ParserConfig()
        self._tz = self.config.tzinfo()
        self._markers = [m.lower() for m in self.config.positions_markers]
        self._log = logging.getLogger("broker_sync.parser")

    def parse(self, data: bytes | str, fmt: ReportFormat | str = ReportFormat.HTML) -> list[NormalizedTrade]:
        return self.parse_report(data, fmt).trades

    def parse_report(self, data: bytes | str, fmt: ReportFormat | str = ReportFormat.HTML) -> ParsedReport:
        fmt = ReportFormat(fmt)
        text = decode_report(data)
        if fmt == ReportFormat.CSV:
            rows = self._csv_rows(text)
        else:
            rows = self._html_rows(text)

        trades: list[NormalizedTrade] = []
        skipped = 0
        for index, cells in enumerate(rows):
            trade = self._row_to_trade(index, cells)
            if trade is None:
                skipped += 1
                continue
            trades.append(trade)

        self._log.info(
            "report parsed",
            extra={"format": fmt.value, "trades": len(trades), "skipped_rows": skipped},
        )
        return ParsedReport(trades=trades, skipped_rows=skipped)

    def _row_to_trade(self, index: int, cells: RawReportRow) -> NormalizedTrade | None:
        if len(cells) < self.config.min_columns:
            self._log.debug("row skipped", extra={"row": index, "reason": "too few columns", "cells": len(cells)})
            return None
        trade = PositionRow.from_cells(cells).to_trade(self._tz)
        if trade is None:
            self._log.debug("row skipped", extra={"row": index, "reason": "invalid required field", "cells": list(cells[:4])})
        return trade

    # ----------------- html -----------------

    def _html_rows(self, text: str) -> list[RawReportRow]:
        tables = extract_tables(text)
        located = self._locate_positions_table(tables)
        if located is None:
            raise ReportParseError("Could not find positions table in the report")
        table, marker_index = located
        return [self._cell_texts(row) for row in self._section_rows(table, marker_index) if self._is_data_row(row)]

    def _locate_positions_table(self, tables: Sequence[HtmlTable]) -> tuple[HtmlTable, int] | None:
        for table in tables:
            for i, row in enumerate(table.rows):
                if any(self._is_marker(c.text) for c in row.header_cells):
                    return table, i
        return None

    def _is_marker(self, text: str) -> bool:
        lowered = text.lower()
        return any(m in lowered for m in self._markers)

    def _section_rows(self, table: HtmlTable, marker_index: int) -> list[HtmlRow]:
        marker_row = table.rows[marker_index]
        if not marker_row.is_section_title():
            return table.rows
        # MT5 keeps Positions, Orders and Deals in one table separated by title rows.
        out: list[HtmlRow] = []
        for row in table.rows[marker_index + 1 :]:
            if row.is_section_title():
                break
            out.append(row)
        return out

    def _is_data_row(self, row: HtmlRow) -> bool:
        if row.header_cells or _is_column_header(row):
            return False
        attr = self.config.row_marker_attribute
        return attr is None or row.has_attr(attr.lower())

    @staticmethod
    def _cell_texts(row: HtmlRow) -> RawReportRow:
        return tuple(c.text for c in row.cells if "hidden" not in c.classes)

    # ----------------- csv -----------------

    def _csv_rows(self, text: str) -> list[RawReportRow]:
        try:
            df = pd.read_csv(
                io.StringIO(text),
                dtype=str,
                keep_default_na=False,
                sep=None,
                engine="python",
            )
        except (pd.errors.ParserError, pd.errors.EmptyDataError, csv.Error, ValueError) as exc:
            raise ReportParseError(f"Unreadable CSV report: {exc}") from exc

        mapping: dict[str, str] = {}
        for column in df.columns:
            key = _WS_RE.sub("", str(column).lower())
            target = CSV_HEADER_ALIASES.get(key)
            if target and target not in mapping.values():
                mapping[column] = target
        missing = [f for f in CSV_REQUIRED_FIELDS if f not in mapping.values()]
        if missing:
            raise ReportParseError(f"Could not find positions columns in CSV report: {', '.join(missing)}")

        by_field = {target: column for column, target in mapping.items()}
        ordered = pd.DataFrame(
            {name: (df[by_field[name]] if name in by_field else "") for name in POSITION_FIELDS},
            index=df.index,
        )
        ordered = ordered.fillna("").astype(str).apply(lambda col: col.str.strip())
        return [tuple(values) for values in ordered.itertuples(index=False, name=None)]
