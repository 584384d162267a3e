"""Parameter grid expansion, scoring and the process-pool runner."""

from datetime import timedelta

import pytest

from perp_bot.backtesting.grid import GridRow, apply_overrides, expand_grid, grid_score, run_grid
from helpers import bars_to_frame, make_bars


def test_expand_grid_is_cartesian_and_sorted():
    combos = expand_grid({"strategy.adx_min": [15, 20], "risk.trail_pct": [0.01]})
    assert combos == [
        {"risk.trail_pct": 0.01, "strategy.adx_min": 15},
        {"risk.trail_pct": 0.01, "strategy.adx_min": 20},
    ]


@pytest.mark.parametrize("key", ["adx_min", "market.symbol"])
def test_expand_grid_rejects_bad_keys(key):
    with pytest.raises(ValueError):
        expand_grid({key: [1]})


def test_apply_overrides_does_not_touch_base():
    base = {"strategy": {"adx_min": 15}, "risk": {}}
    out = apply_overrides(base, {"strategy.adx_min": 20, "sizing.risk_pct": 0.01})
    assert out["strategy"]["adx_min"] == 20
    assert out["sizing"] == {"risk_pct": 0.01}
    assert base["strategy"]["adx_min"] == 15


def test_score_prefers_pnl_then_drawdown_then_trades():
    a = GridRow(params={}, total_pnl=10.0, max_drawdown=5.0, trades=10)
    b = GridRow(params={}, total_pnl=10.0, max_drawdown=2.0, trades=10)
    c = GridRow(params={}, total_pnl=10.0, max_drawdown=2.0, trades=20)
    assert a.score == pytest.approx(grid_score(a)) == pytest.approx(9.51)
    assert sorted([a, b, c], key=lambda r: r.score, reverse=True) == [c, b, a]
    assert GridRow(params={}, ok=False).score == float("-inf")


def test_run_grid_ranks_rows_and_keeps_failures():
    entry = bars_to_frame(make_bars([(100.0, 100.5, 99.5, 100.0)] * 40))
    bias = bars_to_frame(make_bars([(100.0, 101.0, 99.0, 100.0)] * 12, step=timedelta(hours=1)))
    base = {"symbol": "BTCUSDT", "strategy_name": "retest", "strategy": {}, "risk": {}, "sizing": {}, "gate": {}}
    rows = run_grid(base, {"strategy.adx_min": [15, 20], "sizing.bogus": [1]}, bias, entry, workers=1)
    assert len(rows) == 2
    assert all(not r.ok for r in rows)
    assert "TypeError" in rows[0].error

    rows = run_grid(base, {"strategy.adx_min": [15, 20]}, bias, entry, workers=1)
    assert [r.ok for r in rows] == [True, True]
    assert {r.params["strategy.adx_min"] for r in rows} == {15, 20}
    assert all(r.trades == 0 for r in rows)
