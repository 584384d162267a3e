"""Reconciliation against exchange fills."""

from datetime import timedelta

import pytest

from perp_bot.core.errors import TransientExchangeError
from perp_bot.core.types import ExchangeTrade, SignalSide
from perp_bot.execution.paper import PaperExchangeClient
from perp_bot.execution.reconcile import reconcile, reconcile_no_position
from perp_bot.risk.position import PositionStateMachine
from helpers import T0, make_plan


@pytest.fixture
def clock():
    return {"now": T0}


@pytest.fixture
def client(clock):
    c = PaperExchangeClient(equity=1000.0, fee_rate=0.0, clock=lambda: clock["now"])
    c.last_price = 100.0
    return c


@pytest.fixture
def position(client):
    res = client.place_market_order("BTCUSDT", SignalSide.LONG, 1.0, stop_price=96.4)
    return PositionStateMachine().open(make_plan(), res.avg_price, res.quantity, 100.0, 2.0, T0,
                                       order_id=res.order_id)


def test_open_position_stays_open(client, position):
    assert reconcile(client, position, 100.0) is None


def test_exchange_close_is_booked_locally(client, position, clock):
    client.close_externally(96.4, at=T0 + timedelta(minutes=40))
    res = reconcile(client, position, 97.0)
    assert res is not None
    assert res.trade.exit_reason == "exchange_reconciled"
    assert res.trade.exit_price == 96.4
    assert res.trade.pnl == pytest.approx(-3.6)
    assert res.exchange_trade.is_close


def test_close_before_open_is_ignored(client, position):
    client.trades.append(ExchangeTrade(timestamp=T0 - timedelta(minutes=5), price=90.0, is_close=True))
    assert reconcile(client, position, 100.0) is None


def test_latest_close_wins(client, position):
    client.trades.append(ExchangeTrade(timestamp=T0 + timedelta(minutes=5), price=99.0, is_close=True,
                                       reported_profit=-1.0))
    client.trades.append(ExchangeTrade(timestamp=T0 + timedelta(minutes=9), price=98.0, is_close=True,
                                       reported_profit=-2.0))
    res = reconcile(client, position, 100.0)
    assert (res.trade.exit_price, res.trade.pnl) == (98.0, -2.0)


def test_missing_profit_uses_price_formula(client, position):
    client.trades.append(ExchangeTrade(timestamp=T0 + timedelta(minutes=5), price=103.0, is_close=True))
    res = reconcile(client, position, 103.0)
    assert res.trade.pnl == pytest.approx(3.0)


def test_fetch_failure_reaches_the_caller(client, position):
    client.close_externally(96.4, at=T0 + timedelta(minutes=40))
    client.fail_fetch = True
    with pytest.raises(TransientExchangeError):
        reconcile(client, position, 97.0)


def test_no_position_books_at_last_price(position):
    res = reconcile_no_position(position, 101.5, T0 + timedelta(hours=1))
    assert res.trade.exit_reason == "exchange_no_position"
    assert res.trade.exit_price == 101.5
    assert res.trade.pnl == pytest.approx(1.5)
    assert res.exchange_trade is None


def test_held_side_is_passed_to_trade_fetch(client, position):
    seen = []
    fetch = client.fetch_recent_trades

    def spy(symbol, since, position_side=None):
        seen.append(position_side)
        return fetch(symbol, since, position_side)

    client.fetch_recent_trades = spy
    reconcile(client, position, 100.0)
    assert seen == [SignalSide.LONG]
