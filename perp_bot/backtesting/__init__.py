"""Backtesting: bar-by-bar replay of the live decision path, history cache, parameter grid."""

from perp_bot.backtesting.engine import BacktestCosts, BacktestEngine, BacktestResult, build_engine
from perp_bot.backtesting.data import fetch_history, load_csv, save_csv, cache_path
from perp_bot.backtesting.grid import GridRow, run_grid, expand_grid, grid_score

__all__ = [
    "BacktestCosts",
    "BacktestEngine",
    "BacktestResult",
    "build_engine",
    "fetch_history",
    "load_csv",
    "save_csv",
    "cache_path",
    "GridRow",
    "run_grid",
    "expand_grid",
    "grid_score",
]
