"""
Parameter grid over independent backtests, run in worker processes.

Grid keys are "section.field" (strategy.adx_min, risk.trail_atr_mult,
sizing.risk_pct, ...). Rows are ranked by pnl - 0.1 * max drawdown + 0.001 * trades.
"""

from __future__ import annotations
import copy
import itertools
import logging
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import pandas as pd

from perp_bot.backtesting.engine import build_engine

logger = logging.getLogger("perp_bot.backtest.grid")

SECTIONS = ("strategy", "risk", "sizing", "gate")


@dataclass
class GridRow:
    params: Dict[str, object]
    ok: bool = True
    trades: int = 0
    win_rate: float = 0.0
    total_pnl: float = 0.0
    max_drawdown: float = 0.0
    ending_equity: float = 0.0
    total_fees: float = 0.0
    error: str = ""
    score: float = field(init=False, default=0.0)

    def __post_init__(self):
        self.score = grid_score(self) if self.ok else float("-inf")


def grid_score(row: GridRow) -> float:
    """Positive PnL first, then smaller drawdown, then more trades."""
    return row.total_pnl - 0.1 * row.max_drawdown + 0.001 * row.trades


def expand_grid(grid: Dict[str, Sequence]) -> List[Dict[str, object]]:
    keys = sorted(grid)
    for k in keys:
        if "." not in k or k.split(".", 1)[0] not in SECTIONS:
            raise ValueError(f"grid key must be <section>.<field> with section in {SECTIONS}: {k}")
    return [dict(zip(keys, values)) for values in itertools.product(*(grid[k] for k in keys))]


def apply_overrides(base: dict, overrides: Dict[str, object]) -> dict:
    settings = copy.deepcopy(base)
    for key, value in overrides.items():
        section, name = key.split(".", 1)
        settings.setdefault(section, {})[name] = value
    return settings


def run_one(settings: dict, overrides: Dict[str, object], bias_df: pd.DataFrame, entry_df: pd.DataFrame, start=None) -> GridRow:
    engine = build_engine(apply_overrides(settings, overrides))
    s = engine.run(bias_df, entry_df, settings.get("symbol", ""), start=start).summary
    return GridRow(
        params=overrides, trades=s.trades, win_rate=s.win_rate, total_pnl=s.total_pnl,
        max_drawdown=s.max_drawdown, ending_equity=s.ending_equity, total_fees=s.total_fees,
    )


def run_grid(
    base_config: dict,
    grid: Dict[str, Sequence],
    bias_df: pd.DataFrame,
    entry_df: pd.DataFrame,
    workers: Optional[int] = None,
    start=None,
) -> List[GridRow]:
    """Run every combination; best score first. Failed combinations sort last with ok=False."""
    combos = expand_grid(grid)
    logger.info("Grid: %d combinations on %s worker(s)", len(combos), workers or "default")
    rows: List[GridRow] = []
    with ProcessPoolExecutor(max_workers=workers or None) as pool:
        futures = {
            pool.submit(run_one, base_config, combo, bias_df, entry_df, start): combo
            for combo in combos
        }
        for fut in as_completed(futures):
            combo = futures[fut]
            try:
                row = fut.result()
            except Exception as e:
                logger.warning("Grid combination %s failed: %s", combo, e)
                row = GridRow(params=combo, ok=False, error=f"{type(e).__name__}: {e}")
            rows.append(row)
    rows.sort(key=lambda r: r.score, reverse=True)
    return rows
