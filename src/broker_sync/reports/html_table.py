from __future__ import annotations

import codecs
from dataclasses import dataclass, field
from html.parser import HTMLParser


@dataclass
class HtmlCell:
    text: str
    is_header: bool
    attrs: dict[str, str]
    bold: bool = False

    @property
    def classes(self) -> set[str]:
        return set(self.attrs.get("class", "").split())


@dataclass
class HtmlRow:
    attrs: dict[str, str]
    cells: list[HtmlCell] = field(default_factory=list)

    def has_attr(self, name: str) -> bool:
        return name in self.attrs

    @property
    def header_cells(self) -> list[HtmlCell]:
        return [c for c in self.cells if c.is_header]

    def is_section_title(self) -> bool:
        return len(self.cells) == 1 and self.cells[0].is_header


@dataclass
class HtmlTable:
    rows: list[HtmlRow] = field(default_factory=list)
    _row: HtmlRow | None = None
    _cell: HtmlCell | None = None
    _buf: list[str] = field(default_factory=list)

    def header_texts(self) -> list[str]:
        return [c.text for r in self.rows for c in r.header_cells]


def decode_report(data: bytes | str) -> str:
    """Decode an exported report. MT5 writes UTF-16 with a BOM; others use UTF-8."""
    if isinstance(data, str):
        return data
    if data.startswith((codecs.BOM_UTF16_LE, codecs.BOM_UTF16_BE)):
        return data.decode("utf-16")
    if data.startswith(codecs.BOM_UTF8):
        return data.decode("utf-8-sig")
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        return data.decode("cp1252", errors="replace")


class _TableCollector(HTMLParser):
    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self.tables: list[HtmlTable] = []
        self._open: list[HtmlTable] = []

    @property
    def _current(self) -> HtmlTable | None:
        return self._open[-1] if self._open else None

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        attr_map = {k.lower(): (v or "") for k, v in attrs}
        if tag == "table":
            table = HtmlTable()
            self.tables.append(table)
            self._open.append(table)
            return
        table = self._current
        if table is None:
            return
        if tag == "tr":
            self._close_row(table)
            table._row = HtmlRow(attrs=attr_map)
        elif tag in ("td", "th"):
            self._close_cell(table)
            if table._row is None:
                table._row = HtmlRow(attrs={})
            table._cell = HtmlCell(text="", is_header=(tag == "th"), attrs=attr_map)
            table._buf = []
        elif tag == "br" and table._cell is not None:
            table._buf.append(" ")
        elif tag in ("b", "strong") and table._cell is not None:
            table._cell.bold = True

    def handle_endtag(self, tag: str) -> None:
        table = self._current
        if table is None:
            return
        if tag == "table":
            self._close_row(table)
            self._open.pop()
        elif tag == "tr":
            self._close_row(table)
        elif tag in ("td", "th"):
            self._close_cell(table)

    def handle_data(self, data: str) -> None:
        table = self._current
        if table is not None and table._cell is not None:
            table._buf.append(data)

    def _close_cell(self, table: HtmlTable) -> None:
        if table._cell is None:
            return
        table._cell.text = " ".join("".join(table._buf).split())
        if table._row is not None:
            table._row.cells.append(table._cell)
        table._cell = None
        table._buf = []

    def _close_row(self, table: HtmlTable) -> None:
        self._close_cell(table)
        if table._row is not None:
            table.rows.append(table._row)
            table._row = None


def extract_tables(html: str) -> list[HtmlTable]:
    collector = _TableCollector()
    collector.feed(html)
    collector.close()
    for table in collector._open:
        collector._close_row(table)
    return collector.tables
