"""Abstract strategy: higher-timeframe bias + lower-timeframe entry trigger."""

from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Tuple, Type

from perp_bot.core.types import Bar, Bias, SignalEvaluation, SignalSide
from perp_bot.strategies import indicators as ind


@dataclass
class StrategyParams:
    """Signal parameters shared by all strategy variants."""
    bias_ema_fast: int = 20
    bias_ema_slow: int = 50
    adx_period: int = 14
    adx_min: float = 15.0
    atr_period: int = 14
    entry_lookback: int = 15
    retest_window_bars: int = 32
    retest_tol_atr: float = 0.25
    reentry_enabled: bool = True
    reentry_ema: int = 20
    reentry_tol_atr: float = 0.35
    reentry_requires_exit: bool = False
    breakout_buffer_atr: float = 0.0
    level: str = "strong"

    @property
    def min_bias_bars(self) -> int:
        return max(self.bias_ema_slow, self.adx_period * 2)

    @property
    def min_entry_bars(self) -> int:
        return max(self.entry_lookback + 3, self.atr_period + 1)


class BaseStrategy(ABC):
    """
    A strategy reads two closed-bar series and returns a SignalEvaluation with
    at most one TradePlan. An evaluation without a plan is normal.
    """

    name = "base"

    def __init__(self, params: Optional[StrategyParams] = None):
        self.params = params or StrategyParams()

    def compute_bias(self, bias_bars: Sequence[Bar]) -> Tuple[Bias, dict, str]:
        """Bias from EMA fast/slow at the last bias bar, gated by ADX >= adx_min."""
        p = self.params
        c = ind.closes(bias_bars)
        e_fast = ind.ema(c, p.bias_ema_fast)[-1]
        e_slow = ind.ema(c, p.bias_ema_slow)[-1]
        a = ind.adx(bias_bars, p.adx_period)[-1]
        meta = {"ema_fast": e_fast, "ema_slow": e_slow, "adx": a}
        if e_fast is None or e_slow is None or a is None or a < p.adx_min:
            return Bias.NONE, meta, "bias_filtered"
        if e_fast > e_slow:
            return Bias.LONG, meta, ""
        if e_fast < e_slow:
            return Bias.SHORT, meta, ""
        return Bias.NONE, meta, "bias_none"

    def evaluate(
        self,
        bias_bars: Sequence[Bar],
        entry_bars: Sequence[Bar],
        *,
        cycle_id: str,
        symbol: str,
        reentry_side: Optional[SignalSide] = None,
    ) -> SignalEvaluation:
        """Run bias then entry. Both series must contain closed bars only."""
        p = self.params
        if len(bias_bars) < p.min_bias_bars or len(entry_bars) < p.min_entry_bars:
            return SignalEvaluation(
                bias=Bias.NONE,
                note="insufficient_bars",
                meta={"bias_bars": len(bias_bars), "entry_bars": len(entry_bars)},
            )
        bias, meta, note = self.compute_bias(bias_bars)
        if bias is Bias.NONE:
            return SignalEvaluation(bias=bias, note=note, meta=meta)
        return self.find_entry(
            bias, entry_bars, meta, cycle_id=cycle_id, symbol=symbol, reentry_side=reentry_side,
        )

    @abstractmethod
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
        """Entry trigger on the last entry bar, given a directional bias."""
        pass


_REGISTRY: Dict[str, Type[BaseStrategy]] = {}


def register_strategy(cls: Type[BaseStrategy]) -> Type[BaseStrategy]:
    _REGISTRY[cls.name] = cls
    return cls


def build_strategy(name: str, params: Optional[StrategyParams] = None) -> BaseStrategy:
    """Instantiate a registered strategy by name."""
    try:
        cls = _REGISTRY[name]
    except KeyError:
        raise ValueError(f"Unknown strategy: {name} (known: {sorted(_REGISTRY)})") from None
    return cls(params)


def available_strategies() -> list:
    return sorted(_REGISTRY)
