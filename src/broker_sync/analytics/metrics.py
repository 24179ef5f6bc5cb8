from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable

import numpy as np
import pandas as pd

from broker_sync.reports.models import NormalizedTrade, TradeStatus

WIN = "win"
LOSS = "loss"
BREAKEVEN = "breakeven"

_RATIO_QUANTUM = Decimal("0.01")


@dataclass(frozen=True)
class TradeMetrics:
    """Risk/reward in price distance times lots; not converted to account currency."""

    risk_amount: Decimal | None
    reward_amount: Decimal | None
    risk_reward_ratio: Decimal | None
    win_loss: str


def win_loss(profit: Decimal) -> str:
    if profit > 0:
        return WIN
    if profit < 0:
        return LOSS
    return BREAKEVEN


def compute_trade_metrics(trade: NormalizedTrade) -> TradeMetrics:
    risk = None
    reward = None
    if trade.stop_loss is not None:
        risk = abs(trade.open_price - trade.stop_loss) * trade.volume
    if trade.take_profit is not None:
        reward = abs(trade.take_profit - trade.open_price) * trade.volume
    ratio = None
    if risk is not None and reward is not None and risk > 0:
        ratio = (reward / risk).quantize(_RATIO_QUANTUM, rounding=ROUND_HALF_UP)
    return TradeMetrics(
        risk_amount=risk,
        reward_amount=reward,
        risk_reward_ratio=ratio,
        win_loss=win_loss(trade.profit),
    )


@dataclass(frozen=True)
class AccountSummary:
    total_trades: int
    closed_trades: int
    open_trades: int
    winning_trades: int
    losing_trades: int
    win_rate_pct: float
    profit_factor: float
    net_profit: float
    average_win: float
    average_loss: float
    largest_win: float
    largest_loss: float
    max_drawdown_pct: float


def summarize(trades: Iterable[NormalizedTrade], *, starting_balance: float = 0.0) -> AccountSummary:
    """Aggregate closed-trade statistics for the journal dashboard."""
    rows = [
        {
            "close_time": t.close_time,
            "net": float(t.profit + t.commission + t.swap),
            "profit": float(t.profit),
            "closed": t.status == TradeStatus.CLOSED,
        }
        for t in trades
    ]
    if not rows:
        return AccountSummary(0, 0, 0, 0, 0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0)

    df = pd.DataFrame(rows)
    closed = df[df["closed"]].sort_values("close_time")
    profits = closed["profit"]
    wins = profits[profits > 0]
    losses = profits[profits < 0]

    gross_win = float(wins.sum())
    gross_loss = float(abs(losses.sum()))
    profit_factor = gross_win if gross_loss == 0 else gross_win / gross_loss
    win_rate = float(len(wins) / len(closed) * 100) if len(closed) else 0.0

    return AccountSummary(
        total_trades=int(len(df)),
        closed_trades=int(len(closed)),
        open_trades=int(len(df) - len(closed)),
        winning_trades=int(len(wins)),
        losing_trades=int(len(losses)),
        win_rate_pct=win_rate,
        profit_factor=float(profit_factor),
        net_profit=float(closed["net"].sum()),
        average_win=float(wins.mean()) if len(wins) else 0.0,
        average_loss=float(abs(losses.mean())) if len(losses) else 0.0,
        largest_win=float(max(profits.max(), 0.0)) if len(profits) else 0.0,
        largest_loss=float(abs(min(profits.min(), 0.0))) if len(profits) else 0.0,
        max_drawdown_pct=max_drawdown_pct(closed["net"].to_numpy(), starting_balance=starting_balance),
    )


def max_drawdown_pct(pnl: np.ndarray, *, starting_balance: float = 0.0) -> float:
    """Largest peak-to-trough fall of the equity curve, as a percentage of the peak."""
    if pnl.size == 0:
        return 0.0
    equity = starting_balance + np.cumsum(pnl)
    peaks = np.maximum.accumulate(np.concatenate(([starting_balance], equity)))[1:]
    with np.errstate(divide="ignore", invalid="ignore"):
        dd = np.where(peaks > 0, (peaks - equity) / peaks, 0.0)
    return float(dd.max() * 100)

