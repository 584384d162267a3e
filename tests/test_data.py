"""History paging and the CSV cache."""

from datetime import timedelta

import pandas as pd

from perp_bot.backtesting.data import cache_path, fetch_history, load_csv, save_csv
from helpers import T0, bars_to_frame, make_bars


class PagedKlines:
    def __init__(self, df):
        self.df = df
        self.calls = 0

    def get_klines(self, symbol, interval, limit=300, start=None):
        self.calls += 1
        rows = self.df[self.df["time"] >= pd.Timestamp(start)]
        return rows.head(limit).reset_index(drop=True)


def test_fetch_history_pages_until_end():
    full = bars_to_frame(make_bars([(1.0, 2.0, 0.5, 1.5)] * 25))
    client = PagedKlines(full)
    df = fetch_history(client, "BTCUSDT", "15m", T0, T0 + timedelta(minutes=15 * 20), page_limit=10)
    assert len(df) == 20
    assert df["time"].is_monotonic_increasing
    assert client.calls == 2


def test_csv_cache_round_trip(tmp_path):
    df = bars_to_frame(make_bars([(1.0, 2.0, 0.5, 1.5)] * 8))
    path = cache_path(tmp_path, "BTCUSDT", "15m")
    assert load_csv(path) is None
    save_csv(df, path)
    loaded = load_csv(path, start=T0 + timedelta(minutes=30))
    assert len(loaded) == 6
    assert loaded["time"].iloc[0] == pd.Timestamp(T0 + timedelta(minutes=30))
    assert list(loaded.columns) == ["time", "open", "high", "low", "close", "volume"]
