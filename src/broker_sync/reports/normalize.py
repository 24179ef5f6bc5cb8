"""Field-level coercion shared by the report parser and the terminal connectors.

Every helper returns ``None`` for a value it cannot interpret instead of
raising; callers decide whether a missing field skips the row.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone, tzinfo
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from broker_sync.reports.models import ZERO, NormalizedTrade, Side

_NON_NUMERIC_RE = re.compile(r"[^\d.\-]")

_TIMESTAMP_FORMATS = (
    "%Y.%m.%d %H:%M:%S",
    "%Y.%m.%d %H:%M",
    "%Y.%m.%d",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
)

# Symbol classes are prefix/substring heuristics, not a full instrument taxonomy.
METAL_PREFIXES = ("XAU",)
INDEX_MARKERS = ("US30", "GER40")


def price_decimals(symbol: str) -> int:
    s = symbol.upper()
    if "JPY" in s:
        return 3
    if s.startswith(METAL_PREFIXES):
        return 2
    if any(m in s for m in INDEX_MARKERS):
        return 1
    return 5


def round_price(symbol: str, price: Decimal) -> Decimal:
    quantum = Decimal(1).scaleb(-price_decimals(symbol))
    return price.quantize(quantum, rounding=ROUND_HALF_UP)


def parse_decimal(value: Any) -> Decimal | None:
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value if value.is_finite() else None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        value = str(value)
    text = _NON_NUMERIC_RE.sub("", str(value))
    if not text or text in {"-", ".", "-."}:
        return None
    try:
        d = Decimal(text)
    except InvalidOperation:
        return None
    return d if d.is_finite() else None


def parse_ticket(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    text = str(value).strip()
    if not text.isdigit():
        return None
    ticket = int(text)
    return ticket if ticket > 0 else None


def parse_side(value: Any) -> Side | None:
    if value is None:
        return None
    try:
        return Side(str(value).strip().lower())
    except ValueError:
        return None


def parse_timestamp(value: Any, *, tz: tzinfo = timezone.utc) -> datetime | None:
    """Parse MT5 (`2024.01.15 10:30:00`) or ISO timestamps into aware UTC datetimes.

    Naive values are taken to be in ``tz`` (the broker server timezone).
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    else:
        text = str(value).strip()
        if not text or text == "-":
            return None
        dt = _parse_timestamp_text(text)
        if dt is None:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=tz)
    return dt.astimezone(timezone.utc)


def _parse_timestamp_text(text: str) -> datetime | None:
    for fmt in _TIMESTAMP_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None


def _optional_price(symbol: str, value: Any) -> Decimal | None:
    d = parse_decimal(value)
    # MT5 prints 0 for "not set"
    if d is None or d == 0:
        return None
    return round_price(symbol, d)


def build_trade(
    *,
    ticket: Any,
    symbol: Any,
    side: Any,
    volume: Any,
    open_price: Any,
    open_time: Any,
    close_price: Any = None,
    stop_loss: Any = None,
    take_profit: Any = None,
    close_time: Any = None,
    commission: Any = None,
    swap: Any = None,
    profit: Any = None,
    tz: tzinfo = timezone.utc,
) -> NormalizedTrade | None:
    """Validate each field independently; ``None`` when a required field is unusable."""
    ticket_num = parse_ticket(ticket)
    if ticket_num is None:
        return None
    sym = str(symbol).strip() if symbol is not None else ""
    if not sym:
        return None
    side_value = parse_side(side)
    if side_value is None:
        return None
    vol = parse_decimal(volume)
    if vol is None or vol <= 0:
        return None
    price = parse_decimal(open_price)
    if price is None or price <= 0:
        return None
    opened = parse_timestamp(open_time, tz=tz)
    if opened is None:
        return None

    return NormalizedTrade(
        ticket=ticket_num,
        symbol=sym,
        side=side_value,
        volume=vol,
        open_price=round_price(sym, price),
        open_time=opened,
        close_price=_optional_price(sym, close_price),
        stop_loss=_optional_price(sym, stop_loss),
        take_profit=_optional_price(sym, take_profit),
        close_time=parse_timestamp(close_time, tz=tz),
        commission=parse_decimal(commission) or ZERO,
        swap=parse_decimal(swap) or ZERO,
        profit=parse_decimal(profit) or ZERO,
    )
