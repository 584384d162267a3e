"""
Reconcile the local position with exchange fills.

The exchange is the source of truth: a close fill at or after the local
open means the position is already gone (protective order hit, manual
close), so it is booked locally with the exchange price and profit.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from perp_bot.core.types import ExchangeTrade, Position, Trade
from perp_bot.execution.base import ExecutionClient
from perp_bot.risk.position import PositionStateMachine

logger = logging.getLogger("perp_bot.execution.reconcile")

LOOKBACK = timedelta(minutes=10)


@dataclass
class ReconcileResult:
    trade: Trade
    exchange_trade: Optional[ExchangeTrade] = None


def _book(
    position: Position,
    price: float,
    at: datetime,
    reason: str,
    profit: Optional[float],
    machine: Optional[PositionStateMachine],
    order_id: Optional[str] = None,
) -> Trade:
    machine = machine or PositionStateMachine()
    if profit is None:
        profit = (price - position.entry_price) * position.quantity * position.side.sign
    return machine.close(position, price, at, reason, realized_pnl=profit, order_id=order_id)


def reconcile(
    client: ExecutionClient,
    position: Position,
    last_price: float,
    machine: Optional[PositionStateMachine] = None,
) -> Optional[ReconcileResult]:
    """
    Look for an exchange-side close of position. Returns None while the position
    is still open. ExchangeError from the trade fetch propagates to the caller.
    """
    since = position.opened_at - LOOKBACK
    fills = client.fetch_recent_trades(position.symbol, since, position.side)

    closes = [t for t in fills if t.is_close and t.timestamp >= position.opened_at]
    if not closes:
        return None
    latest = max(closes, key=lambda t: t.timestamp)
    logger.warning(
        "Reconcile: exchange closed %s %s at %.4f (%s); local state follows",
        position.side.value, position.symbol, latest.price, latest.timestamp.isoformat(),
    )
    trade = _book(
        position, latest.price, latest.timestamp, "exchange_reconciled",
        latest.reported_profit, machine, latest.order_id,
    )
    return ReconcileResult(trade=trade, exchange_trade=latest)


def reconcile_no_position(
    position: Position,
    last_price: float,
    now: datetime,
    machine: Optional[PositionStateMachine] = None,
) -> ReconcileResult:
    """A close order found nothing to close: book it flat at the last price."""
    logger.warning("Reconcile: exchange reports no %s position on %s; closing locally at %.4f",
                   position.side.value, position.symbol, last_price)
    trade = _book(position, last_price, now, "exchange_no_position", None, machine)
    return ReconcileResult(trade=trade)
