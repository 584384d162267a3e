"""
Breakout-retest entry with EMA re-entry.

Primary: scan back over the retest window for the most recent Donchian breakout
in the bias direction; signal when the current bar retests that level within
retest_tol_atr * ATR and closes back beyond it.
Secondary: trend re-entry when the current bar retests EMA(reentry_ema) within
reentry_tol_atr * ATR and closes back in the bias direction.
"""

from __future__ import annotations
from typing import Optional, Sequence

from perp_bot.core.types import Bar, Bias, PlanLevel, SignalEvaluation, SignalSide, TradePlan
from perp_bot.strategies import indicators as ind
from perp_bot.strategies.base import BaseStrategy, register_strategy


def _touch_and_confirm(side: SignalSide, bar: Bar, level: float, tol: float) -> bool:
    if side is SignalSide.LONG:
        return bar.low <= level + tol and bar.close > level
    return bar.high >= level - tol and bar.close < level


def find_breakout(
    bars: Sequence[Bar], side: SignalSide, lookback: int, window: int
) -> Optional[tuple]:
    """Most recent breakout before the last bar: (level, index) or None."""
    i = len(bars) - 1
    start = max(lookback + 2, i - window)
    for j in range(i - 1, start - 1, -1):
        close = bars[j].close
        if side is SignalSide.LONG:
            level = ind.donchian_high(bars, j - 1, lookback)
            if level is not None and close > level:
                return level, j
        else:
            level = ind.donchian_low(bars, j - 1, lookback)
            if level is not None and close < level:
                return level, j
    return None


@register_strategy
class RetestReentryStrategy(BaseStrategy):
    """Bias EMA/ADX on the coarse timeframe, Donchian retest or EMA re-entry on the fine one."""

    name = "retest"

    def find_entry(
        self,
        bias: Bias,
        entry_bars: Sequence[Bar],
        meta: dict,
        *,
        cycle_id: str,
        symbol: str,
        reentry_side: Optional[SignalSide] = None,
    ) -> SignalEvaluation:
        p = self.params
        side = bias.as_side()
        bar = entry_bars[-1]
        atr_val = ind.atr(entry_bars, p.atr_period)[-1]
        meta = dict(meta, bias=bias.value, atr=atr_val, bar_time=bar.time.isoformat())
        if atr_val is None or atr_val <= 0:
            return SignalEvaluation(bias=bias, note="atr_unavailable", meta=meta)

        breakout = find_breakout(entry_bars, side, p.entry_lookback, p.retest_window_bars)
        if breakout is not None:
            level, at_index = breakout
            tol = p.retest_tol_atr * atr_val
            meta["breakout"] = {
                "level": level,
                "time": entry_bars[at_index].time.isoformat(),
            }
            if _touch_and_confirm(side, bar, level, tol):
                return SignalEvaluation(
                    bias=bias,
                    plan=TradePlan(
                        cycle_id=cycle_id,
                        symbol=symbol,
                        side=side,
                        level=PlanLevel(p.level),
                        reason=f"retest: bias={bias.value}; level={level:.2f}; tol={tol:.2f}",
                        source_level=level,
                        source_tolerance=tol,
                    ),
                    note="retest",
                    meta=meta,
                )

        if p.reentry_enabled and (not p.reentry_requires_exit or reentry_side is side):
            ema_val = ind.ema(ind.closes(entry_bars), p.reentry_ema)[-1]
            if ema_val is not None:
                tol = p.reentry_tol_atr * atr_val
                meta["reentry_ema"] = ema_val
                if _touch_and_confirm(side, bar, ema_val, tol):
                    return SignalEvaluation(
                        bias=bias,
                        plan=TradePlan(
                            cycle_id=cycle_id,
                            symbol=symbol,
                            side=side,
                            level=PlanLevel(p.level),
                            reason=f"reentry: bias={bias.value}; ema{p.reentry_ema}={ema_val:.2f}; tol={tol:.2f}",
                            source_level=ema_val,
                            source_tolerance=tol,
                        ),
                        note="reentry",
                        meta=meta,
                    )

        return SignalEvaluation(bias=bias, note="no_setup", meta=meta)
