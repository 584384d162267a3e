"""Strategies: base interface, registry, and implementations."""

from perp_bot.strategies.base import BaseStrategy, StrategyParams, build_strategy, available_strategies
from perp_bot.strategies.retest import RetestReentryStrategy
from perp_bot.strategies.breakout import BreakoutStrategy

__all__ = [
    "BaseStrategy",
    "StrategyParams",
    "build_strategy",
    "available_strategies",
    "RetestReentryStrategy",
    "BreakoutStrategy",
]
