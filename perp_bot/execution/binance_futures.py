"""
Binance USDT-M Futures execution with retry and rate-limit handling.
"""

from __future__ import annotations
import functools
import logging
import time
from datetime import datetime, timezone
from typing import List, Optional

import pandas as pd
import requests

from binance.client import Client
from binance.exceptions import BinanceAPIException, BinanceRequestException

from perp_bot.core.errors import (
    ExecutionFailure,
    NoPositionToClose,
    OrderRejected,
    TransientExchangeError,
)
from perp_bot.core.types import ExchangeTrade, SignalSide
from perp_bot.execution.base import ExecutionClient, OrderResult
from perp_bot.utils.exchange_filters import round_price, parse_symbol_filters

logger = logging.getLogger("perp_bot.execution.binance")

RATE_LIMIT_CODES = (429, 418)
# -2022: ReduceOnly order is rejected (nothing left to reduce)
NO_POSITION_CODES = (-2022,)
NETWORK_ERRORS = (
    requests.exceptions.ConnectionError,
    requests.exceptions.Timeout,
    BinanceRequestException,
)


def retry_transient(max_retries: int = 3, base_delay: float = 0.4, network: bool = True):
    """
    Decorator: retry on rate limits and 5xx, and on timeouts/connection resets
    when network=True. Raises TransientExchangeError once retries run out.
    Order placement passes network=False: a timed-out order may have filled.
    """
    def decorator(f):
        @functools.wraps(f)
        def wrapped(*args, **kwargs):
            last_exc: Optional[Exception] = None
            for attempt in range(max_retries):
                try:
                    return f(*args, **kwargs)
                except BinanceAPIException as e:
                    if e.status_code not in RATE_LIMIT_CODES and e.status_code < 500:
                        raise
                    last_exc = e
                except NETWORK_ERRORS as e:
                    if not network:
                        raise TransientExchangeError(f"{f.__name__}: {e}") from e
                    last_exc = e
                if attempt < max_retries - 1:
                    delay = base_delay * (2 ** attempt)
                    logger.warning("%s transient failure, retry in %.1fs (attempt %d): %s",
                                   f.__name__, delay, attempt + 1, last_exc)
                    time.sleep(delay)
            raise TransientExchangeError(f"{f.__name__}: {last_exc}") from last_exc
        return wrapped
    return decorator


def _ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


def _from_ms(value) -> datetime:
    return datetime.fromtimestamp(int(value) / 1000.0, tz=timezone.utc)


def parse_account_trade(raw: dict, position_side: Optional[SignalSide] = None) -> ExchangeTrade:
    """
    Map a futures account trade. In hedge mode positionSide tells open from close.
    In one-way mode a fill against the held position_side is a close, breakeven
    ones included; without a known side a non-zero realized PnL marks a close.
    """
    side = str(raw.get("side", "")).upper()
    hedge_side = str(raw.get("positionSide", "BOTH")).upper()
    realized = float(raw.get("realizedPnl", 0.0) or 0.0)
    if hedge_side == "LONG":
        is_close = side == "SELL"
    elif hedge_side == "SHORT":
        is_close = side == "BUY"
    elif position_side is not None:
        is_close = side == position_side.close_side
    else:
        is_close = realized != 0.0
    commission = float(raw.get("commission", 0.0) or 0.0)
    return ExchangeTrade(
        timestamp=_from_ms(raw.get("time", 0)),
        price=float(raw.get("price", 0.0)),
        is_close=is_close,
        order_id=str(raw.get("orderId")) if raw.get("orderId") is not None else None,
        reported_profit=(realized - commission) if is_close else None,
        trade_id=str(raw.get("id")) if raw.get("id") is not None else None,
    )


class BinanceFuturesClient(ExecutionClient):
    """Binance USDT-M Futures client (testnet and live). Without keys only public market data works."""

    def __init__(
        self,
        api_key: Optional[str],
        api_secret: Optional[str],
        testnet: bool = True,
        request_timeout: float = 25.0,
    ):
        self._client = Client(api_key, api_secret, testnet=testnet, requests_params={"timeout": request_timeout})
        if testnet:
            logger.info("Binance Futures: using TESTNET")
        else:
            logger.info("Binance Futures: using LIVE")
        self._symbol_info_cache: dict = {}

    @retry_transient(max_retries=3)
    def get_klines(self, symbol: str, interval: str, limit: int = 300, start: Optional[datetime] = None) -> pd.DataFrame:
        kwargs = {"symbol": symbol, "interval": interval, "limit": limit}
        if start is not None:
            kwargs["startTime"] = _ms(start)
        raw = self._client.futures_klines(**kwargs)
        df = pd.DataFrame(raw, columns=[
            "open_time", "open", "high", "low", "close", "volume",
            "close_time", "quote_av", "num_trades", "tb_base_av", "tb_quote_av", "ignore"
        ])
        df[["open", "high", "low", "close", "volume"]] = df[["open", "high", "low", "close", "volume"]].astype(float)
        df["time"] = pd.to_datetime(df["open_time"], unit="ms", utc=True)
        return df[["time", "open", "high", "low", "close", "volume"]]

    @retry_transient(max_retries=3)
    def get_last_price(self, symbol: str) -> float:
        res = self._client.futures_symbol_ticker(symbol=symbol)
        return float(res["price"])

    @retry_transient(max_retries=2)
    def get_symbol_info(self, symbol: str) -> Optional[dict]:
        if symbol in self._symbol_info_cache:
            return self._symbol_info_cache[symbol]
        info = self._client.futures_exchange_info()
        for s in info.get("symbols", []):
            if s.get("symbol") == symbol:
                self._symbol_info_cache[symbol] = s
                return s
        return None

    @retry_transient(max_retries=2)
    def get_equity(self) -> Optional[float]:
        for bal in self._client.futures_account_balance():
            if bal.get("asset") == "USDT":
                return float(bal.get("balance", 0.0))
        return None

    @retry_transient(max_retries=3)
    def fetch_recent_trades(
        self, symbol: str, since: datetime, position_side: Optional[SignalSide] = None,
    ) -> List[ExchangeTrade]:
        raw = self._client.futures_account_trades(symbol=symbol, startTime=_ms(since), limit=500)
        trades = [parse_account_trade(t, position_side) for t in raw]
        trades.sort(key=lambda t: t.timestamp)
        return trades

    @retry_transient(max_retries=3)
    def cancel_open_orders(self, symbol: str) -> None:
        self._client.futures_cancel_all_open_orders(symbol=symbol)
        logger.info("Cancelled open orders on %s", symbol)

    def set_leverage(self, symbol: str, leverage: int) -> None:
        try:
            self._client.futures_change_leverage(symbol=symbol, leverage=leverage)
            logger.info("Leverage set to %sx for %s", leverage, symbol)
        except BinanceAPIException as e:
            logger.warning("Could not set leverage: %s", e)

    @retry_transient(max_retries=3, network=False)
    def _create_order(self, **params) -> dict:
        return self._client.futures_create_order(**params)

    @retry_transient(max_retries=3)
    def _get_order(self, symbol: str, order_id: str) -> dict:
        return self._client.futures_get_order(symbol=symbol, orderId=order_id)

    def place_market_order(
        self,
        symbol: str,
        side: SignalSide,
        quantity: float,
        reduce_only: bool = False,
        stop_price: Optional[float] = None,
        take_profit_price: Optional[float] = None,
    ) -> OrderResult:
        """Market order; when opening, attach reduce-only SL/TP after the fill."""
        order_side = side.close_side if reduce_only else side.order_side
        params = {"symbol": symbol, "side": order_side, "type": "MARKET", "quantity": str(quantity)}
        if reduce_only:
            params["reduceOnly"] = "true"
        try:
            res = self._create_order(**params)
        except BinanceAPIException as e:
            if e.code in NO_POSITION_CODES:
                raise NoPositionToClose(str(e)) from e
            logger.error("Binance order rejected: %s", e)
            raise OrderRejected(str(e)) from e

        order_id = str(res.get("orderId"))
        try:
            filled = res
            if float(filled.get("avgPrice") or 0.0) <= 0 or float(filled.get("executedQty") or 0.0) <= 0:
                filled = self._get_order(symbol, order_id)
            avg = float(filled.get("avgPrice") or 0.0)
            qty = float(filled.get("executedQty") or 0.0)
        except (BinanceAPIException, TransientExchangeError, ValueError) as e:
            raise ExecutionFailure(f"fill details unavailable for order {order_id}: {e}", order_id) from e
        if qty <= 0 or avg <= 0:
            raise ExecutionFailure(f"order {order_id} reports no fill (qty={qty}, avg={avg})", order_id)

        protected = False
        if not reduce_only and (stop_price is not None or take_profit_price is not None):
            price_tick = parse_symbol_filters(self.get_symbol_info(symbol)).price_tick
            close_side = side.close_side
            try:
                if stop_price is not None:
                    self._create_order(
                        symbol=symbol, side=close_side, type="STOP_MARKET",
                        stopPrice=str(round_price(stop_price, price_tick)), closePosition="true",
                    )
                if take_profit_price is not None:
                    self._create_order(
                        symbol=symbol, side=close_side, type="TAKE_PROFIT_MARKET",
                        stopPrice=str(round_price(take_profit_price, price_tick)), closePosition="true",
                    )
                protected = True
            except (BinanceAPIException, TransientExchangeError) as e:
                raise ExecutionFailure(f"protective orders failed for order {order_id}: {e}", order_id) from e

        return OrderResult(
            success=True, order_id=order_id, avg_price=avg, quantity=qty, protective_orders=protected,
        )
