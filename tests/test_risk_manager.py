"""Unit tests for risk.manager and the exchange filter helpers."""

import pytest
from perp_bot.risk.manager import RiskManager
from perp_bot.utils.exchange_filters import parse_symbol_filters, round_price, round_quantity


def test_zero_stop_distance_rejected():
    r = RiskManager().size(1000.0, 100.0, 0.0)
    assert r.allowed is False
    assert "zero" in r.reason.lower()


def test_risk_based_quantity():
    rm = RiskManager(risk_pct=0.015, max_notional=1e6, max_leverage=10)
    r = rm.size(equity=1000.0, entry_price=100.0, stop_distance=3.6)
    assert r.allowed
    # 15 USD at risk over a 3.6 stop
    assert r.quantity == pytest.approx(4.166)
    assert r.notional == pytest.approx(416.6)


def test_max_notional_caps_size():
    r = RiskManager(max_notional=80.0).size(1000.0, 100.0, 3.6)
    assert r.quantity == pytest.approx(0.8)


def test_leverage_caps_size():
    rm = RiskManager(risk_pct=0.5, max_notional=1e6, max_leverage=2)
    r = rm.size(100.0, 100.0, 3.6)
    assert r.notional == pytest.approx(200.0)


def test_min_notional_floor():
    rm = RiskManager(max_notional=1e6)
    r = rm.size(10.0, 100.0, 3.6)
    assert r.notional == pytest.approx(5.0)


def test_loss_streak_throttles_risk():
    rm = RiskManager(risk_pct=0.015, throttle_after=3, throttle_risk_pct=0.008, max_notional=1e6)
    assert rm.current_risk_pct(2) == 0.015
    r = rm.size(1000.0, 100.0, 3.6, loss_streak=3)
    assert r.risk_pct == 0.008
    assert r.quantity == pytest.approx(2.222)


def test_throttle_never_raises_risk():
    rm = RiskManager(risk_pct=0.005, throttle_risk_pct=0.008)
    assert rm.current_risk_pct(10) == 0.005
    assert RiskManager(throttle_enabled=False).current_risk_pct(10) == 0.015


def test_quantity_below_lot_rejected():
    r = RiskManager(max_notional=80.0).size(1000.0, 100000.0, 500.0)
    assert r.allowed is False
    assert r.reason == "qty rounded to 0"


def test_fractional_size_without_lot_rounding():
    r = RiskManager(max_notional=80.0).size(1000.0, 100000.0, 500.0, round_lots=False)
    assert r.allowed
    assert r.quantity == pytest.approx(0.0008)


def test_symbol_filters_from_exchange_info():
    info = {"filters": [
        {"filterType": "PRICE_FILTER", "tickSize": "0.10"},
        {"filterType": "LOT_SIZE", "minQty": "0.001", "stepSize": "0.001"},
        {"filterType": "MARKET_LOT_SIZE", "minQty": "0.001", "stepSize": "0.01"},
        {"filterType": "MIN_NOTIONAL", "notional": "100"},
    ]}
    f = parse_symbol_filters(info)
    assert f.price_tick == 0.1
    assert f.lot_step == 0.01
    assert f.min_notional == 100.0
    assert parse_symbol_filters(None).lot_step == 0.001
    rm = RiskManager(max_notional=1e6, symbol_info=info)
    assert rm.size(1000.0, 100.0, 3.6).quantity == pytest.approx(4.16)
    assert rm.round_price(100.04) == pytest.approx(100.0)


def test_round_helpers():
    assert round_quantity(0.0123, 0.001, 0.001) == pytest.approx(0.012)
    assert round_quantity(0.0009, 0.001, 0.001) == 0.0
    assert round_quantity(0.3, 0.001, 0.1) == pytest.approx(0.3)
    assert round_price(96.437, 0.01) == pytest.approx(96.44)


def test_lot_rounding_below_min_notional_steps_up_one_lot():
    # 5 USD floor at 3000 is 0.00166 -> floored to 0.001 (3 USD); one more lot gives 6 USD
    r = RiskManager(risk_pct=0.015, min_notional=5.0, max_notional=80.0).size(10.0, 3000.0, 3000.0)
    assert r.allowed
    assert r.quantity == pytest.approx(0.002)
    assert r.notional == pytest.approx(6.0)


def test_lot_rounding_below_min_notional_rejected_when_caps_bind():
    r = RiskManager(risk_pct=0.015, min_notional=5.0, max_notional=5.5).size(10.0, 3000.0, 3000.0)
    assert r.allowed is False
    assert r.reason == "below_min_notional"


def test_exchange_min_notional_applies_after_rounding():
    info = {"filters": [{"filterType": "MIN_NOTIONAL", "notional": "100"}]}
    rm = RiskManager(max_notional=80.0, symbol_info=info)
    r = rm.size(1000.0, 100.0, 3.6)
    assert r.allowed is False
    assert r.reason == "below_min_notional"
