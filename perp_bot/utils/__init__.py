"""Utils: Telegram alerts, timeframes, exchange filters."""

from perp_bot.utils.telegram import send_telegram, TelegramAlerter
from perp_bot.utils.timeframes import timeframe_minutes, timeframe_delta, timeframe_ms
from perp_bot.utils.exchange_filters import SymbolFilters, parse_symbol_filters, round_quantity, round_price

__all__ = [
    "send_telegram",
    "TelegramAlerter",
    "timeframe_minutes",
    "timeframe_delta",
    "timeframe_ms",
    "SymbolFilters",
    "parse_symbol_filters",
    "round_quantity",
    "round_price",
]
