"""Execution gate: ordered checks, day rollover, idempotency, halt latch."""

import json
from datetime import timedelta

import pytest

from perp_bot.core.types import AccountDayState, SignalSide
from perp_bot.news.gate import FileNewsSource, NewsDecision
from perp_bot.risk.gate import ExecutionGate, GateLimits, idempotency_key, local_date
from perp_bot.risk.position import PositionStateMachine
from helpers import T0, make_plan


@pytest.fixture
def gate():
    return ExecutionGate(GateLimits(max_daily_loss=4.0, max_trades_per_day=3, min_interval_minutes=20))


@pytest.fixture
def day(gate):
    d = AccountDayState()
    gate.roll_day(d, T0)
    return d


def test_clean_state_allows(gate, day, plan):
    res = gate.check(plan, None, day, T0)
    assert res.allowed
    assert res.key == idempotency_key(plan.cycle_id, "long", "strong", "BTCUSDT")


def test_daily_loss_cap_blocks_after_losses(gate, day, plan):
    gate.record_close(day, -5.0, T0 - timedelta(hours=1))
    res = gate.check(plan, None, day, T0)
    assert (res.allowed, res.reason) == (False, "daily_loss_cap")
    assert day.loss_streak == 1


def test_checks_run_in_order(gate, day, plan):
    pos = PositionStateMachine().open(plan, 100.0, 1.0, 100.0, 2.0, T0)
    gate.halt(day, "manual")
    day.realized_pnl_today = -10.0
    assert gate.check(plan, pos, day, T0).reason == "halted"
    gate.resume(day)
    assert gate.check(plan, pos, day, T0).reason == "position_open"
    assert gate.check(plan, None, day, T0).reason == "daily_loss_cap"
    day.realized_pnl_today = 0.0
    day.trades_opened_today = 3
    assert gate.check(plan, None, day, T0).reason == "daily_trade_cap"


def test_disabled_gate_blocks_everything(day, plan):
    res = ExecutionGate(GateLimits(enabled=False)).check(plan, None, day, T0)
    assert res.reason == "auto_disabled"


def test_min_interval_since_last_trade(gate, day, plan):
    gate.record_close(day, 1.0, T0)
    assert gate.check(plan, None, day, T0 + timedelta(minutes=19)).reason == "min_interval"
    assert gate.check(plan, None, day, T0 + timedelta(minutes=20)).allowed


def test_news_blocks_only_the_flagged_side(gate, day, plan):
    news = NewsDecision(ok=True, blocked_sides={"long": True, "short": False})
    assert gate.check(plan, None, day, T0, news).reason == "blocked_by_news"
    short = make_plan(SignalSide.SHORT)
    assert gate.check(short, None, day, T0, news).allowed
    unavailable = NewsDecision(ok=False, blocked_sides={"long": True, "short": True})
    assert gate.check(plan, None, day, T0, unavailable).allowed


def test_same_cycle_is_not_executed_twice(gate, day, plan):
    res = gate.check(plan, None, day, T0)
    gate.record_open(day, plan, res.key, T0)
    assert day.trades_opened_today == 1
    assert day.last_executed["key"] == res.key
    later = T0 + timedelta(hours=1)
    assert gate.check(plan, None, day, later).reason == "idempotent_skip"
    nxt = make_plan(cycle_id="2025-01-06T01:00:00+00:00")
    assert gate.check(nxt, None, day, later).allowed


def test_idempotency_key_is_stable_and_field_sensitive():
    a = idempotency_key("c1", "long", "strong", "BTCUSDT")
    assert a == idempotency_key("c1", "long", "strong", "BTCUSDT")
    assert len(a) == 40
    assert a != idempotency_key("c1", "short", "strong", "BTCUSDT")
    assert a != idempotency_key("c2", "long", "strong", "BTCUSDT")


def test_rollover_resets_counters_but_keeps_latch_and_streak(gate, day, plan):
    gate.record_open(day, plan, "k", T0)
    gate.record_close(day, -1.0, T0 + timedelta(minutes=30))
    gate.halt(day, "unprotected")
    # 16:00 UTC is midnight in Shanghai
    rolled = gate.roll_day(day, T0 + timedelta(hours=16))
    assert rolled
    assert day.date == "2025-01-07"
    assert day.trades_opened_today == 0
    assert day.realized_pnl_today == 0.0
    assert day.last_trade_at is None
    assert day.halted and day.loss_streak == 1
    assert not gate.roll_day(day, T0 + timedelta(hours=17))


def test_local_date_uses_timezone():
    assert local_date(T0 - timedelta(hours=1), "Asia/Shanghai") == "2025-01-06"
    assert local_date(T0 - timedelta(hours=1), "UTC") == "2025-01-05"


def test_record_close_tracks_streak_and_exit_side(gate, day):
    gate.record_close(day, -1.0, T0, SignalSide.LONG)
    gate.record_close(day, 0.0, T0, SignalSide.LONG)
    assert day.loss_streak == 2
    gate.record_close(day, 2.0, T0, SignalSide.SHORT)
    assert day.loss_streak == 0
    assert day.last_exit_side is SignalSide.SHORT
    assert day.realized_pnl_today == pytest.approx(1.0)


def test_executed_keys_are_bounded(gate, day, plan):
    for i in range(250):
        gate.record_open(day, plan, f"k{i}", T0)
    assert len(day.executed_keys) == 200
    assert day.executed_keys[-1] == "k249"


def test_file_news_source(tmp_path):
    path = tmp_path / "news.json"
    src = FileNewsSource(path, max_age_minutes=90)
    assert src.latest(T0).ok is False
    path.write_text(json.dumps({
        "ok": True,
        "blockedSides": {"long": False, "short": True},
        "reasons": {"short": ["etf inflows"]},
        "generatedAt": (T0 - timedelta(minutes=10)).isoformat(),
    }))
    decision = src.latest(T0)
    assert decision.blocks(SignalSide.SHORT)
    assert not decision.blocks(SignalSide.LONG)
    assert decision.reasons_for(SignalSide.SHORT) == ["etf inflows"]
    assert src.latest(T0 + timedelta(hours=3)).ok is False
    path.write_text("{not json")
    assert src.latest(T0).ok is False
