"""Historical klines: paged download from the exchange and a CSV cache."""

from __future__ import annotations
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import pandas as pd

from perp_bot.utils.timeframes import timeframe_delta

logger = logging.getLogger("perp_bot.backtest.data")

COLUMNS = ["time", "open", "high", "low", "close", "volume"]
PAGE_LIMIT = 1500


def _utc(ts) -> pd.Timestamp:
    t = pd.Timestamp(ts)
    return t.tz_localize("UTC") if t.tzinfo is None else t.tz_convert("UTC")


def fetch_history(
    client,
    symbol: str,
    timeframe: str,
    start,
    end=None,
    page_limit: int = PAGE_LIMIT,
) -> pd.DataFrame:
    """
    Page klines forward from start until end (default now). client must accept
    get_klines(symbol, interval, limit=, start=) like BinanceFuturesClient.
    """
    cursor = _utc(start)
    stop = _utc(end) if end is not None else pd.Timestamp(datetime.now(timezone.utc))
    step = timeframe_delta(timeframe)
    frames = []
    while cursor < stop:
        page = client.get_klines(symbol, timeframe, limit=page_limit, start=cursor.to_pydatetime())
        if page is None or page.empty:
            break
        frames.append(page)
        last = _utc(page["time"].iloc[-1])
        if last + step <= cursor:
            break
        cursor = last + step
        logger.debug("Fetched %d %s bars up to %s", len(page), timeframe, last)
        if len(page) < page_limit:
            break
    if not frames:
        return pd.DataFrame(columns=COLUMNS)
    df = pd.concat(frames, ignore_index=True)
    df["time"] = pd.to_datetime(df["time"], utc=True)
    df = df.drop_duplicates(subset="time").sort_values("time")
    df = df[df["time"] < stop].reset_index(drop=True)
    logger.info("History %s %s: %d bars from %s", symbol, timeframe, len(df),
                df["time"].iloc[0] if len(df) else "-")
    return df[COLUMNS]


def cache_path(data_dir: Path, symbol: str, timeframe: str) -> Path:
    return Path(data_dir) / f"{symbol}_{timeframe}.csv"


def save_csv(df: pd.DataFrame, path: Path) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    out = df[COLUMNS].copy()
    out["time"] = pd.to_datetime(out["time"], utc=True).dt.strftime("%Y-%m-%dT%H:%M:%SZ")
    out.to_csv(path, index=False)


def load_csv(path: Path, start=None, end=None) -> Optional[pd.DataFrame]:
    """Cached frame or None when the file is missing."""
    path = Path(path)
    if not path.exists():
        return None
    df = pd.read_csv(path)
    df["time"] = pd.to_datetime(df["time"], utc=True)
    df[COLUMNS[1:]] = df[COLUMNS[1:]].astype(float)
    if start is not None:
        df = df[df["time"] >= _utc(start)]
    if end is not None:
        df = df[df["time"] < _utc(end)]
    return df.reset_index(drop=True)[COLUMNS]
