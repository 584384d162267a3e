"""
Performance metrics over closed trades: Sharpe, Sortino, max drawdown,
win rate, profit factor, expectancy, plus the backtest summary block.

Return series are per trade (trade PnL / equity before the trade), so the
annualization factor is a convention, not a calendar fact.
"""

from __future__ import annotations
from dataclasses import asdict, dataclass
from typing import List, Optional, Sequence

import numpy as np

from perp_bot.core.types import Trade

# crypto trades every day of the year
PERIODS_PER_YEAR = 365.0


@dataclass
class PerformanceMetrics:
    total_return_pct: float
    sharpe_ratio: float
    sortino_ratio: float
    max_drawdown_pct: float
    win_rate: float
    profit_factor: float
    expectancy: float
    total_trades: int
    winning_trades: int
    losing_trades: int
    avg_win: float
    avg_loss: float


@dataclass
class BacktestSummary:
    """Headline numbers of one backtest run, in quote currency unless noted."""
    trades: int
    win_rate: float
    expectancy: float
    total_pnl: float
    avg_win: float
    avg_loss: float
    total_fees: float
    ending_equity: float
    max_drawdown: float
    max_drawdown_pct: float
    loss_streak_end: int

    def to_dict(self) -> dict:
        return asdict(self)


def sharpe_ratio(returns: Sequence[float], risk_free_rate: float = 0.0, periods_per_year: float = PERIODS_PER_YEAR) -> float:
    if len(returns) < 2:
        return 0.0
    excess = np.asarray(returns, dtype=float) - risk_free_rate / periods_per_year
    sd = excess.std()
    if sd <= 1e-12:
        return 0.0
    return float(np.sqrt(periods_per_year) * excess.mean() / sd)


def sortino_ratio(returns: Sequence[float], risk_free_rate: float = 0.0, periods_per_year: float = PERIODS_PER_YEAR) -> float:
    """Like Sharpe, but only downside deviation in the denominator."""
    if len(returns) < 2:
        return 0.0
    arr = np.asarray(returns, dtype=float)
    excess = arr - risk_free_rate / periods_per_year
    downside = np.minimum(arr, 0.0)
    dd = np.sqrt(np.mean(downside ** 2))
    if dd <= 1e-12:
        return sharpe_ratio(returns, risk_free_rate, periods_per_year)
    return float(np.sqrt(periods_per_year) * excess.mean() / dd)


def max_drawdown(equity: Sequence[float]) -> float:
    """Largest peak-to-trough decline of an equity series, as a positive percent."""
    if len(equity) == 0:
        return 0.0
    arr = np.asarray(equity, dtype=float)
    peak = np.maximum.accumulate(arr)
    dd = (peak - arr) / np.where(peak > 0, peak, 1.0)
    return float(dd.max()) * 100.0


def win_rate(pnls: Sequence[float]) -> float:
    if not pnls:
        return 0.0
    return sum(1 for p in pnls if p > 0) / len(pnls)


def profit_factor(pnls: Sequence[float]) -> float:
    """Gross profit / gross loss; inf with wins and no losses."""
    gains = sum(p for p in pnls if p > 0)
    losses = -sum(p for p in pnls if p < 0)
    if losses <= 0:
        return float("inf") if gains > 0 else 0.0
    return gains / losses


def expectancy(pnls: Sequence[float]) -> float:
    return sum(pnls) / len(pnls) if pnls else 0.0


def equity_from_pnls(pnls: Sequence[float], initial_capital: float) -> List[float]:
    curve = [initial_capital]
    for p in pnls:
        curve.append(curve[-1] + p)
    return curve


def compute_metrics(
    pnls: Sequence[float],
    initial_capital: float = 1.0,
    risk_free_rate: float = 0.0,
    periods_per_year: float = PERIODS_PER_YEAR,
) -> PerformanceMetrics:
    """Metrics from trade PnLs in order, compounding on initial_capital."""
    pnls = list(pnls)
    if not pnls:
        return PerformanceMetrics(
            total_return_pct=0.0, sharpe_ratio=0.0, sortino_ratio=0.0, max_drawdown_pct=0.0,
            win_rate=0.0, profit_factor=0.0, expectancy=0.0,
            total_trades=0, winning_trades=0, losing_trades=0, avg_win=0.0, avg_loss=0.0,
        )
    curve = equity_from_pnls(pnls, initial_capital)
    base = np.asarray(curve[:-1], dtype=float)
    rets = (np.asarray(pnls, dtype=float) / np.where(base != 0, base, 1.0)).tolist()
    wins = [p for p in pnls if p > 0]
    losses = [p for p in pnls if p <= 0]
    return PerformanceMetrics(
        total_return_pct=(curve[-1] / initial_capital - 1.0) * 100.0 if initial_capital else 0.0,
        sharpe_ratio=sharpe_ratio(rets, risk_free_rate, periods_per_year),
        sortino_ratio=sortino_ratio(rets, risk_free_rate, periods_per_year),
        max_drawdown_pct=max_drawdown(curve),
        win_rate=win_rate(pnls),
        profit_factor=profit_factor(pnls),
        expectancy=expectancy(pnls),
        total_trades=len(pnls),
        winning_trades=len(wins),
        losing_trades=len(losses),
        avg_win=sum(wins) / len(wins) if wins else 0.0,
        avg_loss=sum(losses) / len(losses) if losses else 0.0,
    )


def summarize_backtest(
    trades: Sequence[Trade],
    equity_curve: Sequence[dict],
    initial_capital: float,
    loss_streak_end: int = 0,
    ending_equity: Optional[float] = None,
) -> BacktestSummary:
    """
    Summary block. Losses are trades with pnl <= 0 (breakeven counts against).
    Drawdown comes from equity_curve points ({time, equity, peak, drawdown}).
    """
    pnls = [t.pnl for t in trades]
    wins = [p for p in pnls if p > 0]
    losses = [p for p in pnls if p <= 0]
    max_dd = max((pt["drawdown"] for pt in equity_curve), default=0.0)
    max_dd_pct = max(
        (pt["drawdown"] / pt["peak"] * 100.0 for pt in equity_curve if pt["peak"] > 0),
        default=0.0,
    )
    if ending_equity is None:
        ending_equity = equity_curve[-1]["equity"] if equity_curve else initial_capital + sum(pnls)
    return BacktestSummary(
        trades=len(pnls),
        win_rate=len(wins) / len(pnls) if pnls else 0.0,
        expectancy=expectancy(pnls),
        total_pnl=sum(pnls),
        avg_win=sum(wins) / len(wins) if wins else 0.0,
        avg_loss=sum(losses) / len(losses) if losses else 0.0,
        total_fees=sum(t.fees for t in trades),
        ending_equity=ending_equity,
        max_drawdown=max_dd,
        max_drawdown_pct=max_dd_pct,
        loss_streak_end=loss_streak_end,
    )
