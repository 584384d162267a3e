"""Execution: exchange abstraction, Binance Futures and paper clients, reconciliation."""

from perp_bot.execution.base import ExecutionClient, OrderResult
from perp_bot.execution.binance_futures import BinanceFuturesClient
from perp_bot.execution.paper import PaperExchangeClient
from perp_bot.execution.reconcile import ReconcileResult, reconcile, reconcile_no_position

__all__ = [
    "ExecutionClient",
    "OrderResult",
    "BinanceFuturesClient",
    "PaperExchangeClient",
    "ReconcileResult",
    "reconcile",
    "reconcile_no_position",
]
