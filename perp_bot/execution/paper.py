"""
In-memory exchange: fills market orders at the last price. Used by dry runs,
backtest-style replays of the live cycle, and tests. Given a market client,
klines, prices and symbol info come from it while orders stay on paper.
"""

from __future__ import annotations
import itertools
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

import pandas as pd

from perp_bot.core.errors import ExecutionFailure, NoPositionToClose, TransientExchangeError
from perp_bot.core.types import ExchangeTrade, SignalSide
from perp_bot.execution.base import ExecutionClient, OrderResult

logger = logging.getLogger("perp_bot.execution.paper")


class PaperExchangeClient(ExecutionClient):
    """
    Single-symbol paper account. Klines are supplied per interval; the last
    price defaults to the latest close of the first supplied frame.
    """

    def __init__(
        self,
        equity: float = 1000.0,
        fee_rate: float = 0.0004,
        clock: Optional[Callable[[], datetime]] = None,
        market: Optional[ExecutionClient] = None,
    ):
        self.market = market
        self.equity = equity
        self.fee_rate = fee_rate
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.leverage: Dict[str, int] = {}
        self.klines: Dict[str, pd.DataFrame] = {}
        self.last_price: Optional[float] = None
        self.trades: List[ExchangeTrade] = []
        self.position: Optional[dict] = None
        self.open_orders: List[dict] = []
        self.cancel_calls = 0
        self.fail_protective = False
        self.fail_fetch = False
        self._ids = itertools.count(1)

    def set_klines(self, interval: str, df: pd.DataFrame) -> None:
        self.klines[interval] = df.reset_index(drop=True)
        if self.last_price is None and len(df):
            self.last_price = float(df["close"].iloc[-1])

    def get_klines(self, symbol: str, interval: str, limit: int = 300) -> pd.DataFrame:
        if self.market is not None:
            return self.market.get_klines(symbol, interval, limit=limit)
        df = self.klines.get(interval)
        if df is None:
            return pd.DataFrame(columns=["time", "open", "high", "low", "close", "volume"])
        return df.tail(limit).reset_index(drop=True)

    def get_last_price(self, symbol: str) -> float:
        if self.market is not None:
            self.last_price = self.market.get_last_price(symbol)
        if self.last_price is None:
            raise TransientExchangeError("no price available")
        return self.last_price

    def get_symbol_info(self, symbol: str) -> Optional[dict]:
        return self.market.get_symbol_info(symbol) if self.market is not None else None

    def fetch_recent_trades(
        self, symbol: str, since: datetime, position_side: Optional[SignalSide] = None,
    ) -> List[ExchangeTrade]:
        if self.fail_fetch:
            raise TransientExchangeError("trade history unavailable")
        return [t for t in self.trades if t.timestamp >= since]

    def set_leverage(self, symbol: str, leverage: int) -> None:
        self.leverage[symbol] = leverage

    def cancel_open_orders(self, symbol: str) -> None:
        self.cancel_calls += 1
        self.open_orders = []

    def get_equity(self) -> Optional[float]:
        return self.equity

    def _close_position(self, price: float, at: datetime, order_id: str) -> float:
        pos = self.position
        gross = (price - pos["entry"]) * pos["qty"] * pos["side"].sign
        fee = price * pos["qty"] * self.fee_rate
        profit = gross - fee
        self.equity += profit
        self.trades.append(ExchangeTrade(
            timestamp=at, price=price, is_close=True, order_id=order_id,
            reported_profit=profit, trade_id=str(len(self.trades) + 1),
        ))
        self.position = None
        return profit

    def place_market_order(
        self,
        symbol: str,
        side: SignalSide,
        quantity: float,
        reduce_only: bool = False,
        stop_price: Optional[float] = None,
        take_profit_price: Optional[float] = None,
    ) -> OrderResult:
        price = self.get_last_price(symbol)
        now = self.clock()
        order_id = f"paper-{next(self._ids)}"
        if reduce_only:
            if self.position is None or self.position["side"] is not side:
                raise NoPositionToClose(f"no {side.value} position on {symbol}")
            qty = self.position["qty"]
            self._close_position(price, now, order_id)
            logger.info("Paper close %s %s qty=%.6f at %.4f", side.value, symbol, qty, price)
            return OrderResult(True, order_id, price, qty)

        fee = price * quantity * self.fee_rate
        self.equity -= fee
        self.position = {"side": side, "qty": quantity, "entry": price}
        self.trades.append(ExchangeTrade(
            timestamp=now, price=price, is_close=False, order_id=order_id,
            trade_id=str(len(self.trades) + 1),
        ))
        logger.info("Paper open %s %s qty=%.6f at %.4f", side.value, symbol, quantity, price)
        if self.fail_protective and (stop_price is not None or take_profit_price is not None):
            raise ExecutionFailure(f"protective orders failed for order {order_id}", order_id)
        for kind, level in (("STOP_MARKET", stop_price), ("TAKE_PROFIT_MARKET", take_profit_price)):
            if level is not None:
                self.open_orders.append({"type": kind, "side": side.close_side, "stop_price": level})
        protected = stop_price is not None or take_profit_price is not None
        return OrderResult(True, order_id, price, quantity, protective_orders=protected)

    def close_externally(self, price: float, at: Optional[datetime] = None) -> None:
        """Simulate an exchange-side close (protective order hit or manual close)."""
        if self.position is None:
            return
        self._close_position(price, at or self.clock(), f"paper-{next(self._ids)}")
