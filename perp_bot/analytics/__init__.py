"""Analytics: performance metrics, backtest summary, daily post-mortem."""

from perp_bot.analytics.metrics import (
    BacktestSummary,
    PerformanceMetrics,
    compute_metrics,
    summarize_backtest,
    sharpe_ratio,
    sortino_ratio,
    max_drawdown,
    win_rate,
    profit_factor,
    expectancy,
)
from perp_bot.analytics.postmortem import daily_report

__all__ = [
    "BacktestSummary",
    "PerformanceMetrics",
    "compute_metrics",
    "summarize_backtest",
    "sharpe_ratio",
    "sortino_ratio",
    "max_drawdown",
    "win_rate",
    "profit_factor",
    "expectancy",
    "daily_report",
]
