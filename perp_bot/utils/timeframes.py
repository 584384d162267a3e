"""Binance-style timeframe strings ('15m', '1h', '1d', '1w')."""

from datetime import timedelta

_UNIT_MINUTES = {"m": 1, "h": 60, "d": 60 * 24, "w": 60 * 24 * 7}


def timeframe_minutes(tf: str) -> int:
    """Convert a timeframe string to minutes."""
    tf = tf.strip().lower()
    unit = tf[-1:]
    if unit not in _UNIT_MINUTES or not tf[:-1].isdigit():
        raise ValueError(f"Unsupported timeframe: {tf}")
    return int(tf[:-1]) * _UNIT_MINUTES[unit]


def timeframe_delta(tf: str) -> timedelta:
    return timedelta(minutes=timeframe_minutes(tf))


def timeframe_ms(tf: str) -> int:
    return timeframe_minutes(tf) * 60_000
