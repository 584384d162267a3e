"""Unit tests for strategies.indicators."""

import pytest

from perp_bot.strategies import indicators as ind
from helpers import make_bars


def _range_bars(n, width=2.0, mid=100.0):
    return make_bars([(mid, mid + width / 2, mid - width / 2, mid)] * n)


def _rising_bars(n):
    return make_bars([(100.0 + i, 101.0 + i, 99.0 + i, 100.5 + i) for i in range(n)])


def test_ema_sma_seed_and_recursion():
    out = ind.ema([1.0, 2.0, 3.0, 4.0], 3)
    assert out[:2] == [None, None]
    assert out[2] == pytest.approx(2.0)
    assert out[3] == pytest.approx(3.0)  # 4 * 0.5 + 2 * 0.5


def test_ema_short_series_all_none():
    assert ind.ema([1.0, 2.0], 3) == [None, None]


def test_ema_rejects_bad_period():
    with pytest.raises(ValueError):
        ind.ema([1.0], 0)


def test_atr_first_value_at_period():
    bars = _range_bars(6)
    out = ind.atr(bars, 3)
    assert out[:3] == [None, None, None]
    assert out[3] == pytest.approx(2.0)
    assert out[5] == pytest.approx(2.0)


def test_atr_needs_period_plus_one_bars():
    assert all(v is None for v in ind.atr(_range_bars(3), 3))


def test_adx_seed_is_raw_dx():
    assert ind.ADX_SEED_IS_RAW_DX is True
    out = ind.adx(_rising_bars(8), 3)
    assert out[:4] == [None] * 4
    # only +DM on a strictly rising series: the raw DX is 100 and becomes the seed
    assert out[4] == pytest.approx(100.0)
    assert out[-1] == pytest.approx(100.0)


def test_indicators_are_deterministic():
    bars = _rising_bars(40)
    assert ind.adx(bars, 14) == ind.adx(bars, 14)
    assert ind.atr(bars, 14) == ind.atr(bars, 14)


def test_donchian_clamps_to_series():
    bars = make_bars([(1, 2, 0.5, 1), (1, 5, 0.2, 1), (1, 3, 0.9, 1)])
    assert ind.donchian_high(bars, 10, 2) == 3
    assert ind.donchian_high(bars, 1, 50) == 5
    assert ind.donchian_low(bars, 2, 2) == pytest.approx(0.2)
    assert ind.donchian_high(bars, -1, 3) is None


def test_bollinger_flat_series():
    mid, upper, lower = ind.bollinger([5.0] * 5, period=3)
    assert mid[1] is None
    assert mid[4] == upper[4] == lower[4] == 5.0


def test_stochastic_flat_range_is_fifty():
    k, d = ind.stochastic(make_bars([(1, 1, 1, 1)] * 10), k_period=3, d_period=2, smooth=2)
    assert k[-1] == 50.0
    assert d[-1] == 50.0


def test_sma_skips_windows_with_none():
    assert ind.sma([None, 1.0, 3.0], 2) == [None, None, 2.0]
