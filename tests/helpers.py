"""Bar, frame and plan builders shared by the tests."""

from datetime import datetime, timedelta, timezone

import pandas as pd

from perp_bot.core.types import Bar, PlanLevel, SignalSide, TradePlan

T0 = datetime(2025, 1, 6, 0, 0, tzinfo=timezone.utc)


def make_bars(rows, step=timedelta(minutes=15), start=T0):
    """rows: iterable of (open, high, low, close)."""
    return [
        Bar(time=start + i * step, open=o, high=h, low=l, close=c, volume=1.0)
        for i, (o, h, l, c) in enumerate(rows)
    ]


def bars_to_frame(bars):
    return pd.DataFrame({
        "time": [b.time for b in bars],
        "open": [b.open for b in bars],
        "high": [b.high for b in bars],
        "low": [b.low for b in bars],
        "close": [b.close for b in bars],
        "volume": [b.volume for b in bars],
    })


def make_plan(side=SignalSide.LONG, cycle_id="2025-01-06T00:00:00+00:00", symbol="BTCUSDT"):
    return TradePlan(
        cycle_id=cycle_id,
        symbol=symbol,
        side=side,
        level=PlanLevel.STRONG,
        reason="test",
        source_level=100.0,
        source_tolerance=0.5,
    )


