"""
Indicator library: pure functions over bar sequences.
Each function returns a list aligned to its input, with None where undefined.
Live signals and the backtester call the same functions.
"""

from __future__ import annotations
from typing import List, Optional, Sequence, Tuple

from perp_bot.core.types import Bar

# The first ADX value is the raw DX of the first smoothing window, not an
# average of `period` DX readings. Kept so live and backtest agree.
ADX_SEED_IS_RAW_DX = True


def ema(values: Sequence[float], period: int) -> List[Optional[float]]:
    """EMA seeded with the SMA of the first `period` values."""
    if period <= 0:
        raise ValueError("period must be > 0")
    out: List[Optional[float]] = [None] * len(values)
    if len(values) < period:
        return out
    k = 2.0 / (period + 1)
    e = sum(values[:period]) / period
    out[period - 1] = e
    for i in range(period, len(values)):
        e = values[i] * k + e * (1 - k)
        out[i] = e
    return out


def sma(values: Sequence[Optional[float]], period: int) -> List[Optional[float]]:
    """Simple moving average; None while any value in the window is None."""
    if period <= 0:
        raise ValueError("period must be > 0")
    out: List[Optional[float]] = [None] * len(values)
    for i in range(period - 1, len(values)):
        window = values[i - period + 1: i + 1]
        if any(v is None for v in window):
            continue
        out[i] = sum(window) / period
    return out


def true_range(bars: Sequence[Bar]) -> List[Optional[float]]:
    """True range; undefined at index 0 (no previous close)."""
    out: List[Optional[float]] = [None] * len(bars)
    for i in range(1, len(bars)):
        prev_close = bars[i - 1].close
        high, low = bars[i].high, bars[i].low
        out[i] = max(high - low, abs(high - prev_close), abs(low - prev_close))
    return out


def atr(bars: Sequence[Bar], period: int = 14) -> List[Optional[float]]:
    """Wilder ATR. First value at index `period` = mean of TR[1..period]."""
    if period <= 0:
        raise ValueError("period must be > 0")
    out: List[Optional[float]] = [None] * len(bars)
    if len(bars) < period + 1:
        return out
    tr = true_range(bars)
    a = sum(tr[1: period + 1]) / period
    out[period] = a
    for i in range(period + 1, len(bars)):
        a = (a * (period - 1) + tr[i]) / period
        out[i] = a
    return out


def adx(bars: Sequence[Bar], period: int = 14) -> List[Optional[float]]:
    """
    Wilder ADX. TR/+DM/-DM sums are seeded over bars 1..period and updated as
    s - s/period + x from bar period+1. The first ADX is the raw DX at that bar
    (see ADX_SEED_IS_RAW_DX); later values are Wilder-smoothed.
    """
    if period <= 0:
        raise ValueError("period must be > 0")
    n = len(bars)
    out: List[Optional[float]] = [None] * n
    if n < period + 2:
        return out
    tr = [0.0] * n
    plus_dm = [0.0] * n
    minus_dm = [0.0] * n
    for i in range(1, n):
        up = bars[i].high - bars[i - 1].high
        down = bars[i - 1].low - bars[i].low
        plus_dm[i] = up if (up > down and up > 0) else 0.0
        minus_dm[i] = down if (down > up and down > 0) else 0.0
        prev_close = bars[i - 1].close
        tr[i] = max(
            bars[i].high - bars[i].low,
            abs(bars[i].high - prev_close),
            abs(bars[i].low - prev_close),
        )

    tr_n = sum(tr[1: period + 1])
    p_n = sum(plus_dm[1: period + 1])
    m_n = sum(minus_dm[1: period + 1])

    value: Optional[float] = None
    for i in range(period + 1, n):
        tr_n = tr_n - tr_n / period + tr[i]
        p_n = p_n - p_n / period + plus_dm[i]
        m_n = m_n - m_n / period + minus_dm[i]
        if not tr_n > 0:
            continue
        p_di = 100.0 * p_n / tr_n
        m_di = 100.0 * m_n / tr_n
        di_sum = p_di + m_di
        dx = 0.0 if di_sum == 0 else 100.0 * abs(p_di - m_di) / di_sum
        if value is None:
            value = dx
        else:
            value = (value * (period - 1) + dx) / period
        out[i] = value
    return out


def donchian_high(bars: Sequence[Bar], end_index: int, lookback: int) -> Optional[float]:
    """Highest high over [end_index-lookback+1, end_index], clamped to the series."""
    end = min(end_index, len(bars) - 1)
    start = max(0, end_index - lookback + 1)
    if end < start:
        return None
    return max(b.high for b in bars[start: end + 1])


def donchian_low(bars: Sequence[Bar], end_index: int, lookback: int) -> Optional[float]:
    """Lowest low over [end_index-lookback+1, end_index], clamped to the series."""
    end = min(end_index, len(bars) - 1)
    start = max(0, end_index - lookback + 1)
    if end < start:
        return None
    return min(b.low for b in bars[start: end + 1])


def bollinger(
    values: Sequence[float], period: int = 20, mult: float = 2.0
) -> Tuple[List[Optional[float]], List[Optional[float]], List[Optional[float]]]:
    """Bollinger bands (middle, upper, lower) with population standard deviation."""
    if period <= 0:
        raise ValueError("period must be > 0")
    n = len(values)
    mid: List[Optional[float]] = [None] * n
    upper: List[Optional[float]] = [None] * n
    lower: List[Optional[float]] = [None] * n
    for i in range(period - 1, n):
        window = values[i - period + 1: i + 1]
        m = sum(window) / period
        var = sum((v - m) ** 2 for v in window) / period
        sd = var ** 0.5
        mid[i] = m
        upper[i] = m + mult * sd
        lower[i] = m - mult * sd
    return mid, upper, lower


def stochastic(
    bars: Sequence[Bar], k_period: int = 14, d_period: int = 3, smooth: int = 3
) -> Tuple[List[Optional[float]], List[Optional[float]]]:
    """Stochastic oscillator: raw %K smoothed by SMA(smooth), %D = SMA(d_period) of %K."""
    if k_period <= 0 or d_period <= 0 or smooth <= 0:
        raise ValueError("periods must be > 0")
    n = len(bars)
    raw: List[Optional[float]] = [None] * n
    for i in range(k_period - 1, n):
        window = bars[i - k_period + 1: i + 1]
        hh = max(b.high for b in window)
        ll = min(b.low for b in window)
        rng = hh - ll
        raw[i] = 50.0 if rng == 0 else 100.0 * (bars[i].close - ll) / rng
    k = sma(raw, smooth)
    d = sma(k, d_period)
    return k, d


def closes(bars: Sequence[Bar]) -> List[float]:
    return [b.close for b in bars]
