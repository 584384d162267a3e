"""Core: config, types, errors, logging."""

from perp_bot.core.config import load_config, Config
from perp_bot.core.errors import (
    PerpBotError,
    ConfigError,
    ExchangeError,
    TransientExchangeError,
    NoPositionToClose,
    OrderRejected,
    ExecutionFailure,
    CycleTimeout,
)
from perp_bot.core.types import (
    Bar,
    Bias,
    BotState,
    Position,
    SignalEvaluation,
    SignalSide,
    Trade,
    TradePlan,
)
from perp_bot.core.logger import setup_logging

__all__ = [
    "load_config",
    "Config",
    "PerpBotError",
    "ConfigError",
    "ExchangeError",
    "TransientExchangeError",
    "NoPositionToClose",
    "OrderRejected",
    "ExecutionFailure",
    "CycleTimeout",
    "Bar",
    "Bias",
    "BotState",
    "Position",
    "SignalEvaluation",
    "SignalSide",
    "Trade",
    "TradePlan",
    "setup_logging",
]
