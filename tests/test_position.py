"""Position state machine: stops, trailing, timeout, reverse-signal exits."""

from datetime import timedelta

import pytest

from perp_bot.core.types import SignalSide
from perp_bot.risk.position import PositionStateMachine, RiskParams
from helpers import T0, make_plan


def _open(side=SignalSide.LONG, atr=2.0, **params):
    machine = PositionStateMachine(RiskParams(**params))
    pos = machine.open(make_plan(side), entry_price=100.0, quantity=1.0, notional=100.0,
                       atr=atr, opened_at=T0, entry_fee=0.04)
    return machine, pos


def test_initial_stop_from_atr():
    _, pos = _open()
    assert pos.initial_stop == pytest.approx(96.4)
    assert pos.take_profit is None


def test_percent_stop_without_atr():
    machine, pos = _open(atr=None, stop_loss_pct=0.02, take_profit_pct=0.03)
    assert pos.initial_stop == pytest.approx(98.0)
    assert pos.take_profit == pytest.approx(103.0)
    assert pos.trailing.mode == "percent"


def test_bar_through_stop_closes_at_stop():
    machine, pos = _open()
    d = machine.evaluate(pos, high=100.5, low=96.0, close=97.0, now=T0 + timedelta(minutes=15))
    assert d.action == "close"
    assert d.reason == "stop_loss"
    assert d.price == pytest.approx(96.4)


def test_short_stop_mirrors_long():
    machine, pos = _open(side=SignalSide.SHORT)
    assert pos.initial_stop == pytest.approx(103.6)
    d = machine.evaluate(pos, high=104.0, low=99.0, close=103.0, now=T0 + timedelta(minutes=15))
    assert (d.reason, d.price) == ("stop_loss", pytest.approx(103.6))


def test_hard_stop_wins_tie_with_take_profit():
    machine, pos = _open(take_profit_atr_mult=1.0)
    d = machine.evaluate(pos, high=103.0, low=96.0, close=100.0, now=T0 + timedelta(minutes=15))
    assert d.reason == "stop_loss"


def test_take_profit_hit():
    machine, pos = _open(take_profit_atr_mult=1.0, trailing_enabled=False)
    d = machine.evaluate(pos, high=102.5, low=99.5, close=102.0, now=T0 + timedelta(minutes=15))
    assert (d.action, d.reason, d.price) == ("close", "take_profit", 102.0)


def test_trailing_activates_and_only_ratchets_toward_price():
    machine, pos = _open(trail_activate_atr=1.0, trail_atr_mult=1.5)
    t = T0
    stops = []
    for high, low, close in [(101.0, 99.5, 100.8), (103.0, 100.5, 102.8), (105.0, 102.5, 104.5), (104.0, 102.5, 103.0)]:
        t += timedelta(minutes=15)
        d = machine.evaluate(pos, high=high, low=low, close=close, now=t)
        assert d.action == "hold"
        stops.append(pos.trailing.current_stop)
    assert stops[0] is None
    assert pos.trailing.active
    assert stops[1] == pytest.approx(100.0)
    assert stops[2] == pytest.approx(102.0)
    # best price unchanged on the pullback: stop must not move back
    assert stops[3] == pytest.approx(102.0)
    t += timedelta(minutes=15)
    d = machine.evaluate(pos, high=103.0, low=101.5, close=101.8, now=t)
    assert (d.reason, d.price) == ("trailing_stop", pytest.approx(102.0))


def test_timeout_closes_losing_position():
    machine, pos = _open(max_hold_minutes=60)
    d = machine.evaluate(pos, high=100.0, low=99.0, close=99.5, now=T0 + timedelta(minutes=60))
    assert (d.action, d.reason, d.price) == ("close", "timeout", 99.5)


def test_timeout_in_profit_tightens_trailing():
    machine, pos = _open(max_hold_minutes=60, timeout_trail_pct=0.0025, trail_activate_atr=5.0)
    d = machine.evaluate(pos, high=101.0, low=100.2, close=100.8, now=T0 + timedelta(minutes=60))
    assert d.action == "hold"
    assert d.reason == "timeout_tighten_trailing"
    assert pos.trailing.tightened and pos.trailing.active
    assert pos.trailing.current_stop == pytest.approx(101.0 - 101.0 * 0.0025)


def test_reverse_signal_needs_consecutive_confirmations():
    machine, pos = _open(reverse_confirmations=2, trailing_enabled=False)
    t = T0 + timedelta(minutes=15)
    d = machine.evaluate(pos, 100.5, 99.5, 100.0, t, signal_side=SignalSide.SHORT)
    assert d.reason == "reverse_signal_pending"
    # a same-side or empty signal resets the count
    d = machine.evaluate(pos, 100.5, 99.5, 100.0, t + timedelta(minutes=15), signal_side=None)
    assert pos.reverse.count == 0
    machine.evaluate(pos, 100.5, 99.5, 100.0, t + timedelta(minutes=30), signal_side=SignalSide.SHORT)
    d = machine.evaluate(pos, 100.5, 99.5, 99.8, t + timedelta(minutes=45), signal_side=SignalSide.SHORT)
    assert (d.action, d.reason, d.price) == ("close", "reverse_signal", 99.8)


def test_reverse_exit_disabled_with_zero_confirmations():
    machine, pos = _open(reverse_confirmations=0)
    for i in range(5):
        d = machine.evaluate(pos, 100.5, 99.5, 100.0, T0 + timedelta(minutes=15 * (i + 1)),
                             signal_side=SignalSide.SHORT)
        assert d.action == "hold"


def test_close_books_both_fees():
    machine, pos = _open()
    trade = machine.close(pos, exit_price=102.0, exit_time=T0 + timedelta(hours=2),
                          reason="take_profit", exit_fee=0.05)
    assert trade.gross_pnl == pytest.approx(2.0)
    assert trade.fees == pytest.approx(0.09)
    assert trade.pnl == pytest.approx(1.91)
    assert trade.hold_minutes == pytest.approx(120.0)
    assert trade.pnl_pct == pytest.approx(1.91)


def test_reported_pnl_overrides_formula():
    machine, pos = _open()
    trade = machine.close(pos, 101.0, T0 + timedelta(hours=1), "exchange_reconciled", realized_pnl=0.7)
    assert trade.pnl == 0.7


def test_position_round_trips_through_dict():
    from perp_bot.core.types import Position
    machine, pos = _open()
    machine.evaluate(pos, 104.0, 100.0, 103.5, T0 + timedelta(minutes=15), signal_side=SignalSide.SHORT)
    restored = Position.from_dict(pos.to_dict())
    assert restored == pos
