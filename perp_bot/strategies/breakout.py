"""Immediate Donchian breakout on close, filtered by the same bias."""

from __future__ import annotations
from typing import Optional, Sequence

from perp_bot.core.types import Bar, Bias, PlanLevel, SignalEvaluation, SignalSide, TradePlan
from perp_bot.strategies import indicators as ind
from perp_bot.strategies.base import BaseStrategy, register_strategy


@register_strategy
class BreakoutStrategy(BaseStrategy):
    """Enter when the current close clears the previous Donchian channel plus a buffer."""

    name = "breakout"

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
        i = len(entry_bars) - 1
        bar = entry_bars[i]
        atr_val = ind.atr(entry_bars, p.atr_period)[-1]
        meta = dict(meta, bias=bias.value, atr=atr_val, bar_time=bar.time.isoformat())
        if atr_val is None or atr_val <= 0:
            return SignalEvaluation(bias=bias, note="atr_unavailable", meta=meta)
        buf = p.breakout_buffer_atr * atr_val
        if side is SignalSide.LONG:
            level = ind.donchian_high(entry_bars, i - 1, p.entry_lookback)
            hit = level is not None and bar.close > level + buf
        else:
            level = ind.donchian_low(entry_bars, i - 1, p.entry_lookback)
            hit = level is not None and bar.close < level - buf
        if not hit:
            return SignalEvaluation(bias=bias, note="no_setup", meta=meta)
        return SignalEvaluation(
            bias=bias,
            plan=TradePlan(
                cycle_id=cycle_id,
                symbol=symbol,
                side=side,
                level=PlanLevel(p.level),
                reason=f"breakout: bias={bias.value}; level={level:.2f}; buffer={buf:.2f}",
                source_level=level,
                source_tolerance=buf,
            ),
            note="breakout",
            meta=meta,
        )
