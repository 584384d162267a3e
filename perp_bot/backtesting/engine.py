"""
Backtest engine: replays the live decision path bar by bar.

Per entry bar (closed bars only): day rollover, signal evaluation on the
trailing window, then either the open position is advanced through the state
machine with the bar's high/low/close, or the plan goes through the same
execution gate as live with the bar close as the clock. Entries fill at the
close plus adverse slippage; fees are charged on entry and exit notional.
"""

from __future__ import annotations
import bisect
import logging
from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Dict, List, Optional

import pandas as pd

from perp_bot.analytics.metrics import (
    BacktestSummary,
    PerformanceMetrics,
    compute_metrics,
    summarize_backtest,
)
from perp_bot.core.types import BotState, Position, SignalSide, Trade, bars_from_frame
from perp_bot.risk.gate import ExecutionGate, GateLimits
from perp_bot.risk.manager import RiskManager
from perp_bot.risk.position import PositionStateMachine
from perp_bot.strategies.base import BaseStrategy
from perp_bot.utils.timeframes import timeframe_delta, timeframe_minutes

logger = logging.getLogger("perp_bot.backtest")


@dataclass
class BacktestCosts:
    fee_pct: float = 0.0004
    slippage_pct: float = 0.0002

    @classmethod
    def from_bps(cls, fee_bps: float, slippage_bps: float) -> "BacktestCosts":
        return cls(fee_pct=fee_bps / 10_000.0, slippage_pct=slippage_bps / 10_000.0)

    def entry_price(self, side: SignalSide, price: float) -> float:
        return price * (1 + side.sign * self.slippage_pct)

    def exit_price(self, side: SignalSide, price: float) -> float:
        return price * (1 - side.sign * self.slippage_pct)


@dataclass
class BacktestResult:
    trades: List[Trade] = field(default_factory=list)
    equity_curve: List[dict] = field(default_factory=list)
    summary: Optional[BacktestSummary] = None
    metrics: Optional[PerformanceMetrics] = None
    skips: Dict[str, int] = field(default_factory=dict)
    signals: Dict[str, int] = field(default_factory=dict)


class BacktestEngine:
    """Single-symbol, single-position replay with the live components."""

    def __init__(
        self,
        strategy: BaseStrategy,
        state_machine: PositionStateMachine,
        risk_manager: RiskManager,
        gate_limits: Optional[GateLimits] = None,
        costs: Optional[BacktestCosts] = None,
        initial_capital: float = 1000.0,
        timezone: Optional[str] = None,
        bias_timeframe: str = "1h",
        entry_timeframe: str = "15m",
        history_bars: int = 300,
    ):
        self.strategy = strategy
        self.machine = state_machine
        self.risk_manager = risk_manager
        limits = gate_limits or GateLimits()
        if timezone:
            limits = replace(limits, timezone=timezone)
        self.gate = ExecutionGate(limits)
        self.costs = costs or BacktestCosts()
        self.initial_capital = initial_capital
        self.bias_step = timeframe_delta(bias_timeframe)
        self.entry_step = timeframe_delta(entry_timeframe)
        self.history_bars = history_bars

    def run(
        self,
        bias_df: pd.DataFrame,
        entry_df: pd.DataFrame,
        symbol: str,
        start: Optional[datetime] = None,
    ) -> BacktestResult:
        """
        bias_df / entry_df: kline frames (time = bar open, UTC). start trims the
        traded range; earlier bars still feed indicator warm-up.
        """
        entry_bars = bars_from_frame(entry_df)
        bias_bars = bars_from_frame(bias_df)
        bias_closes = [b.time + self.bias_step for b in bias_bars]

        state = BotState()
        day = state.day
        equity = self.initial_capital
        peak = equity
        curve: List[dict] = []
        trades: List[Trade] = []
        skips: Counter = Counter()
        signals: Counter = Counter()

        first = self.strategy.params.min_entry_bars - 1
        if start is not None:
            start_ts = pd.Timestamp(start)
            start_ts = start_ts.tz_localize("UTC") if start_ts.tzinfo is None else start_ts
            first = max(first, bisect.bisect_left([b.time for b in entry_bars], start_ts.to_pydatetime()))

        def mark(ts: datetime) -> None:
            nonlocal peak
            peak = max(peak, equity)
            curve.append({"time": ts, "equity": equity, "peak": peak, "drawdown": peak - equity})

        def close(position: Position, raw_price: float, ts: datetime, reason: str) -> None:
            nonlocal equity
            exit_px = self.costs.exit_price(position.side, raw_price)
            fee = exit_px * position.quantity * self.costs.fee_pct
            trade = self.machine.close(position, exit_px, ts, reason, exit_fee=fee)
            # entry fee was taken from equity at open
            equity += trade.gross_pnl - fee
            self.gate.record_close(day, trade.pnl, ts, position.side)
            trades.append(trade)
            state.position = None

        for i in range(max(first, 0), len(entry_bars)):
            bar = entry_bars[i]
            now = bar.time + self.entry_step
            self.gate.roll_day(day, now)

            j = bisect.bisect_right(bias_closes, now)
            evaluation = self.strategy.evaluate(
                bias_bars[max(0, j - self.history_bars):j],
                entry_bars[max(0, i + 1 - self.history_bars):i + 1],
                cycle_id=bar.time.isoformat(),
                symbol=symbol,
                reentry_side=day.last_exit_side,
            )
            signals[evaluation.note or "none"] += 1

            if state.position is not None:
                decision = self.machine.evaluate(
                    state.position, bar.high, bar.low, bar.close, now, signal_side=evaluation.side,
                )
                if decision.should_close:
                    close(state.position, decision.price, now, decision.reason)
                mark(now)
                continue

            plan = evaluation.plan
            if plan is not None:
                verdict = self.gate.check(plan, None, day, now)
                if not verdict.allowed:
                    skips[verdict.reason] += 1
                else:
                    atr = evaluation.meta.get("atr")
                    entry_px = self.costs.entry_price(plan.side, bar.close)
                    size = self.risk_manager.size(
                        equity, entry_px, self.machine.stop_distance(entry_px, atr),
                        day.loss_streak, round_lots=False,
                    )
                    if not size.allowed:
                        skips[f"sizing: {size.reason}"] += 1
                    else:
                        fee = size.notional * self.costs.fee_pct
                        equity -= fee
                        state.position = self.machine.open(
                            plan, entry_px, size.quantity, size.notional, atr, now, entry_fee=fee,
                            meta={"idempotency_key": verdict.key},
                        )
                        self.gate.record_open(day, plan, verdict.key, now)
            mark(now)

        if state.position is not None and entry_bars:
            last = entry_bars[-1]
            close(state.position, last.close, last.time + self.entry_step, "end_of_data")
            mark(last.time + self.entry_step)

        summary = summarize_backtest(trades, curve, self.initial_capital, day.loss_streak, equity)
        metrics = compute_metrics([t.pnl for t in trades], self.initial_capital)
        logger.info(
            "Backtest %s: %d trades, pnl=%.2f, max dd=%.2f (%.2f%%)",
            symbol, summary.trades, summary.total_pnl, summary.max_drawdown, summary.max_drawdown_pct,
        )
        return BacktestResult(
            trades=trades,
            equity_curve=curve,
            summary=summary,
            metrics=metrics,
            skips=dict(skips),
            signals=dict(signals),
        )


def build_engine(settings: dict) -> BacktestEngine:
    """
    Engine from plain settings (see Config.backtest_settings), so grid workers
    can rebuild it in another process.
    """
    from perp_bot.core.config import build_params
    from perp_bot.risk.position import RiskParams
    from perp_bot.strategies.base import StrategyParams, build_strategy

    risk = build_params(RiskParams, settings.get("risk"), "risk_")
    timeout_bars = settings.get("timeout_bars")
    if timeout_bars:
        risk = replace(risk, max_hold_minutes=float(timeout_bars) * timeframe_minutes(settings.get("entry_timeframe", "15m")))
    return BacktestEngine(
        strategy=build_strategy(settings.get("strategy_name", "retest"),
                                build_params(StrategyParams, settings.get("strategy"), "strategy_")),
        state_machine=PositionStateMachine(risk),
        risk_manager=RiskManager(**(settings.get("sizing") or {})),
        gate_limits=build_params(GateLimits, settings.get("gate"), "gate_"),
        costs=BacktestCosts.from_bps(settings.get("fee_bps", 4.0), settings.get("slippage_bps", 2.0)),
        initial_capital=float(settings.get("initial_capital", 1000.0)),
        bias_timeframe=settings.get("bias_timeframe", "1h"),
        entry_timeframe=settings.get("entry_timeframe", "15m"),
        history_bars=int(settings.get("history_bars", 300)),
    )
