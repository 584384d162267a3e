"""File-backed state, ledgers, health counter and the cycle lock."""

import json

import pytest

from perp_bot.core.types import BotState, SignalSide
from perp_bot.risk.gate import ExecutionGate
from perp_bot.risk.position import PositionStateMachine
from perp_bot.storage.state_store import CycleLocked, StateStore
from helpers import T0, make_plan


@pytest.fixture
def store(tmp_path):
    return StateStore(tmp_path / "state")


def test_missing_state_loads_flat(store):
    state = store.load()
    assert state.position is None
    assert state.version == 0


def test_save_and_load_round_trip(store):
    state = BotState()
    state.position = PositionStateMachine().open(make_plan(), 100.0, 0.8, 80.0, 2.0, T0)
    ExecutionGate.record_open(state.day, make_plan(), "key-1", T0)
    ExecutionGate.record_close(state.day, -1.0, T0, SignalSide.LONG)
    store.save(state)
    store.save(state)
    loaded = store.load()
    assert loaded.version == 2
    assert loaded.position == state.position
    assert loaded.day == state.day
    assert not list(store.state_dir.glob("_tmp_*"))


def test_ledgers_append_and_skip_bad_lines(store):
    store.append_trade_event("open", {"side": "long"}, at=T0)
    store.append_cycle({"outcome": "hold"})
    with open(store.cycles_path, "a") as f:
        f.write("garbage\n\n")
    store.append_cycle({"outcome": "no_plan"})
    trades = store.read_jsonl(store.trades_path)
    assert trades == [{"event": "open", "side": "long", "ts": T0.isoformat()}]
    assert [r["outcome"] for r in store.read_jsonl(store.cycles_path)] == ["hold", "no_plan"]
    assert store.read_jsonl(store.state_dir / "missing.jsonl") == []


def test_cycle_log_keeps_newest_lines(tmp_path):
    store = StateStore(tmp_path / "state", max_cycle_lines=3)
    for n in range(5):
        store.append_cycle({"n": n})
    assert [r["n"] for r in store.read_jsonl(store.cycles_path)] == [2, 3, 4]
    assert store.prune_jsonl(store.cycles_path, 2) == 1
    assert store.prune_jsonl(store.state_dir / "missing.jsonl", 2) == 0


def test_unbounded_cycle_log_by_default(store):
    for n in range(5):
        store.append_cycle({"n": n})
    assert len(store.read_jsonl(store.cycles_path)) == 5


def test_health_counter(store):
    assert store.consecutive_errors() == 0
    assert store.record_health(False, "boom") == 1
    assert store.record_health(False, "boom") == 2
    assert json.loads((store.state_dir / "health.json").read_text())["last_error"] == "boom"
    assert store.record_health(True) == 0


def test_cycle_lock_is_exclusive(store):
    with store.cycle_lock():
        with pytest.raises(CycleLocked):
            with store.cycle_lock():
                pass
    with store.cycle_lock():
        pass
