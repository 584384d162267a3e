"""Exception hierarchy for the bot."""

from __future__ import annotations


class PerpBotError(Exception):
    """Base class for bot errors."""


class ConfigError(PerpBotError):
    """Invalid configuration value."""


class ExchangeError(PerpBotError):
    """Exchange call failed."""


class TransientExchangeError(ExchangeError):
    """Timeout, connection reset, or rate limit. Safe to retry."""


class NoPositionToClose(ExchangeError):
    """Exchange rejected a reduce-only close because nothing is open."""


class OrderRejected(ExchangeError):
    """Exchange refused an order outright; nothing was filled."""


class ExecutionFailure(PerpBotError):
    """An order was placed but a required follow-up step failed."""

    def __init__(self, message: str, order_id: str | None = None):
        super().__init__(message)
        self.order_id = order_id


class CycleTimeout(PerpBotError):
    """A live cycle ran past its wall-clock deadline."""
