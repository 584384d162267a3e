"""Unit tests for utils.timeframes."""

from datetime import timedelta

import pytest
from perp_bot.utils.timeframes import timeframe_delta, timeframe_minutes, timeframe_ms


def test_timeframe_minutes():
    assert timeframe_minutes("15m") == 15
    assert timeframe_minutes("1h") == 60
    assert timeframe_minutes("4H") == 240
    assert timeframe_minutes("1d") == 1440
    assert timeframe_minutes("1w") == 10080


def test_timeframe_delta_and_ms():
    assert timeframe_delta("15m") == timedelta(minutes=15)
    assert timeframe_ms("1m") == 60_000


@pytest.mark.parametrize("bad", ["1x", "m", "", "h1"])
def test_timeframe_invalid(bad):
    with pytest.raises(ValueError):
        timeframe_minutes(bad)
