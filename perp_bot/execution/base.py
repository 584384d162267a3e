"""Abstract execution interface: market data, account trades, and order placement."""

from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

import pandas as pd

from perp_bot.core.types import ExchangeTrade, SignalSide


@dataclass
class OrderResult:
    """Result of placing an order."""
    success: bool
    order_id: Optional[str] = None
    avg_price: Optional[float] = None
    quantity: Optional[float] = None
    protective_orders: bool = False
    message: str = ""


class ExecutionClient(ABC):
    """Exchange boundary used by the live cycle. All calls are blocking."""

    @abstractmethod
    def get_klines(self, symbol: str, interval: str, limit: int = 300) -> pd.DataFrame:
        """Return OHLCV DataFrame with columns: time, open, high, low, close, volume."""
        pass

    @abstractmethod
    def get_last_price(self, symbol: str) -> float:
        """Last traded price."""
        pass

    @abstractmethod
    def fetch_recent_trades(
        self, symbol: str, since: datetime, position_side: Optional[SignalSide] = None,
    ) -> List[ExchangeTrade]:
        """
        Account fills on symbol at or after since, oldest first. position_side is
        the locally held side, used to tell closing fills from opening ones.
        """
        pass

    @abstractmethod
    def place_market_order(
        self,
        symbol: str,
        side: SignalSide,
        quantity: float,
        reduce_only: bool = False,
        stop_price: Optional[float] = None,
        take_profit_price: Optional[float] = None,
    ) -> OrderResult:
        """
        Market order. side is the position side being opened, or closed when
        reduce_only=True. stop_price/take_profit_price attach reduce-only
        protective orders after the fill.
        Raises NoPositionToClose when a reduce-only order finds nothing to close.
        """
        pass

    @abstractmethod
    def cancel_open_orders(self, symbol: str) -> None:
        """Cancel every resting order on symbol (protective stop/take-profit included)."""
        pass

    @abstractmethod
    def set_leverage(self, symbol: str, leverage: int) -> None:
        """Set leverage for symbol."""
        pass

    def get_symbol_info(self, symbol: str) -> Optional[dict]:
        """Exchange symbol info (filters, etc.). Default none."""
        return None

    def get_equity(self) -> Optional[float]:
        """Account equity in quote currency, if the client can report it."""
        return None
