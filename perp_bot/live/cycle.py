"""
One live evaluation cycle: load state, fetch closed bars, reconcile, manage
the open position or gate a new plan, persist, log the outcome.

Cycles are non-reentrant (file lock) and bounded by a wall-clock deadline
that is checked before each exchange step up to order placement. Once an
order has been placed the cycle always persists what it knows.
"""

from __future__ import annotations
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence

from perp_bot.core.errors import (
    CycleTimeout,
    ExchangeError,
    ExecutionFailure,
    NoPositionToClose,
    PerpBotError,
    TransientExchangeError,
)
from perp_bot.core.types import (
    Bar,
    BotState,
    Position,
    SignalEvaluation,
    Trade,
    TradePlan,
    bars_from_frame,
)
from perp_bot.execution.base import ExecutionClient
from perp_bot.execution.reconcile import reconcile, reconcile_no_position
from perp_bot.news.gate import FileNewsSource
from perp_bot.risk.gate import ExecutionGate
from perp_bot.risk.manager import RiskManager
from perp_bot.risk.position import PositionStateMachine
from perp_bot.storage.state_store import CycleLocked, StateStore
from perp_bot.strategies.base import BaseStrategy
from perp_bot.utils.timeframes import timeframe_delta

logger = logging.getLogger("perp_bot.live")

FAILURE_OUTCOMES = ("transient_error", "error", "cycle_timeout", "reconcile_unavailable")


@dataclass
class CycleResult:
    outcome: str
    reason: str = ""
    cycle_id: str = ""
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    evaluation: Optional[SignalEvaluation] = None
    plan: Optional[TradePlan] = None
    gate_reason: str = ""
    trade: Optional[Trade] = None
    position: Optional[Position] = None
    escalated: bool = False

    def to_record(self) -> dict:
        ev = self.evaluation
        return {
            "ts": self.started_at.isoformat(),
            "cycle_id": self.cycle_id,
            "outcome": self.outcome,
            "reason": self.reason,
            "plan": self.plan.to_dict() if self.plan else None,
            "signal": {"bias": ev.bias.value, "note": ev.note, "meta": ev.meta} if ev else None,
            "gate_reason": self.gate_reason,
            "trade": self.trade.to_dict() if self.trade else None,
            "position": self.position.to_dict() if self.position else None,
            "escalated": self.escalated,
        }


def closed_bars(bars: Sequence[Bar], timeframe: str, now: datetime) -> List[Bar]:
    """Drop the still-forming candle: a bar is closed once open time + timeframe <= now."""
    step = timeframe_delta(timeframe)
    return [b for b in bars if b.time + step <= now]


class CycleRunner:
    """Composes strategy, gate, sizing, state machine and reconciliation for one symbol."""

    def __init__(
        self,
        client: ExecutionClient,
        store: StateStore,
        strategy: BaseStrategy,
        machine: PositionStateMachine,
        gate: ExecutionGate,
        sizer: RiskManager,
        *,
        symbol: str,
        bias_timeframe: str,
        entry_timeframe: str,
        news: Optional[FileNewsSource] = None,
        alert: Optional[Callable[..., bool]] = None,
        dry_run: bool = False,
        kline_limit: int = 300,
        fee_rate: float = 0.0004,
        cycle_timeout_seconds: float = 45.0,
        error_threshold: int = 3,
        fallback_equity: float = 1000.0,
        clock: Optional[Callable[[], datetime]] = None,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.store = store
        self.strategy = strategy
        self.machine = machine
        self.gate = gate
        self.sizer = sizer
        self.symbol = symbol
        self.bias_timeframe = bias_timeframe
        self.entry_timeframe = entry_timeframe
        self.news = news
        self.alert = alert or (lambda title, **details: False)
        self.dry_run = dry_run
        self.kline_limit = kline_limit
        self.fee_rate = fee_rate
        self.cycle_timeout_seconds = cycle_timeout_seconds
        self.error_threshold = error_threshold
        self.fallback_equity = fallback_equity
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.monotonic = monotonic
        self._deadline = 0.0

    @classmethod
    def from_config(cls, config, client: ExecutionClient, store: Optional[StateStore] = None, **overrides) -> "CycleRunner":
        from perp_bot.strategies.base import build_strategy
        from perp_bot.utils.telegram import TelegramAlerter

        news = None
        if config.news_enabled and config.news_path:
            news = FileNewsSource(config.news_path, config.news_max_age_minutes)
        sizer = config.risk_manager()
        sizer.update_symbol_info(client.get_symbol_info(config.symbol))
        kwargs = dict(
            symbol=config.symbol,
            bias_timeframe=config.bias_timeframe,
            entry_timeframe=config.entry_timeframe,
            news=news,
            alert=TelegramAlerter(config.telegram_bot_token, config.telegram_chat_id, f"perp-bot {config.symbol}"),
            dry_run=config.dry_run,
            kline_limit=config.kline_limit,
            fee_rate=config.fee_bps / 10_000.0,
            cycle_timeout_seconds=config.cycle_timeout_seconds,
            error_threshold=config.error_threshold,
            fallback_equity=config.backtest_initial_capital,
        )
        kwargs.update(overrides)
        return cls(
            client,
            store or StateStore(config.state_dir, config.cycle_log_max_lines),
            build_strategy(config.strategy_name, config.strategy_params()),
            PositionStateMachine(config.risk_params()),
            ExecutionGate(config.gate_limits()),
            sizer,
            **kwargs,
        )

    def run_once(self) -> CycleResult:
        """Run one cycle under the lock and append its outcome to the cycle log."""
        now = self.clock()
        try:
            with self.store.cycle_lock():
                result = self._guarded(now)
                self._track_health(result)
                self.store.append_cycle(result.to_record())
        except CycleLocked:
            logger.warning("Another cycle is running; skipping")
            result = CycleResult("cycle_in_progress", started_at=now)
            self.store.append_cycle(result.to_record())
        logger.info("Cycle %s -> %s%s", result.cycle_id or "-", result.outcome,
                    f" ({result.reason})" if result.reason else "")
        return result

    def _guarded(self, now: datetime) -> CycleResult:
        try:
            return self._run(now)
        except CycleTimeout as e:
            logger.warning("Cycle deadline passed before %s; state left unchanged", e)
            return CycleResult("cycle_timeout", str(e), started_at=now)
        except TransientExchangeError as e:
            return CycleResult("transient_error", str(e), started_at=now)
        except PerpBotError as e:
            logger.error("Cycle failed: %s", e)
            return CycleResult("error", f"{type(e).__name__}: {e}", started_at=now)
        except Exception as e:
            logger.exception("Cycle crashed: %s", e)
            return CycleResult("error", f"{type(e).__name__}: {e}", started_at=now)

    def _track_health(self, result: CycleResult) -> None:
        failed = result.outcome in FAILURE_OUTCOMES
        count = self.store.record_health(not failed, result.reason if failed else "")
        if failed and count >= self.error_threshold:
            result.escalated = True
            logger.error("%d consecutive failed cycles; last: %s %s", count, result.outcome, result.reason)
            self.alert("Repeated cycle failures", count=count, outcome=result.outcome, reason=result.reason)

    def _check_deadline(self, step: str) -> None:
        if self.monotonic() > self._deadline:
            raise CycleTimeout(step)

    def _fetch_bars(self, timeframe: str, now: datetime) -> List[Bar]:
        """The last kline_limit closed bars; one extra is fetched for the forming candle."""
        df = self.client.get_klines(self.symbol, timeframe, limit=self.kline_limit + 1)
        if df is None or df.empty:
            return []
        return closed_bars(bars_from_frame(df), timeframe, now)[-self.kline_limit:]

    def _run(self, now: datetime) -> CycleResult:
        self._deadline = self.monotonic() + self.cycle_timeout_seconds
        state = self.store.load()
        self.gate.roll_day(state.day, now)

        self._check_deadline("klines")
        entry_bars = self._fetch_bars(self.entry_timeframe, now)
        bias_bars = self._fetch_bars(self.bias_timeframe, now)
        cycle_id = entry_bars[-1].time.isoformat() if entry_bars else now.isoformat()

        self._check_deadline("price")
        last_price = self.client.get_last_price(self.symbol)

        evaluation = self.strategy.evaluate(
            bias_bars, entry_bars, cycle_id=cycle_id, symbol=self.symbol,
            reentry_side=state.day.last_exit_side,
        )
        if state.position is not None:
            return self._manage(state, evaluation, last_price, now, cycle_id)
        return self._maybe_open(state, evaluation, last_price, now, cycle_id)

    def _finish_close(self, state: BotState, trade: Trade, now: datetime) -> None:
        self.gate.record_close(state.day, trade.pnl, now, trade.side)
        state.position = None
        self.store.save(state)
        self.store.append_trade_event("close", trade.to_dict(), now)
        self.alert(
            "Position closed", side=trade.side.value, reason=trade.exit_reason,
            exit=f"{trade.exit_price:.4f}", pnl=f"{trade.pnl:.4f}",
        )
        self._cancel_leftover_orders()

    def _cancel_leftover_orders(self) -> None:
        """Clear the protective orders the closed position left on the exchange."""
        try:
            self.client.cancel_open_orders(self.symbol)
        except ExchangeError as e:
            logger.error("Could not cancel open orders on %s after close: %s", self.symbol, e)
            self.alert("Open orders may be left after close", symbol=self.symbol, error=str(e))

    def _manage(
        self, state: BotState, evaluation: SignalEvaluation, last_price: float, now: datetime, cycle_id: str,
    ) -> CycleResult:
        position = state.position
        self._check_deadline("reconcile")
        reconcile_error = ""
        try:
            rec = reconcile(self.client, position, last_price, self.machine)
        except ExchangeError as e:
            # local exits still run, but the cycle counts as failed
            logger.warning("Reconcile unavailable, managing the position locally: %s", e)
            rec, reconcile_error = None, str(e)
        if rec is not None:
            self._finish_close(state, rec.trade, now)
            return CycleResult("reconciled", rec.trade.exit_reason, cycle_id, now, evaluation, trade=rec.trade)

        decision = self.machine.evaluate(
            position, last_price, last_price, last_price, now, signal_side=evaluation.side,
        )
        if not decision.should_close:
            self.store.save(state)
            if reconcile_error:
                return CycleResult(
                    "reconcile_unavailable", reconcile_error, cycle_id, now, evaluation, position=position,
                )
            return CycleResult("hold", decision.reason, cycle_id, now, evaluation, position=position)

        self._check_deadline("close order")
        try:
            res = self.client.place_market_order(self.symbol, position.side, position.quantity, reduce_only=True)
        except NoPositionToClose:
            rec = reconcile_no_position(position, last_price, now, self.machine)
            self._finish_close(state, rec.trade, now)
            return CycleResult("reconciled", rec.trade.exit_reason, cycle_id, now, evaluation, trade=rec.trade)

        exit_price = res.avg_price or last_price
        exit_fee = exit_price * position.quantity * self.fee_rate
        trade = self.machine.close(
            position, exit_price, now, decision.reason, exit_fee=exit_fee, order_id=res.order_id,
        )
        self._finish_close(state, trade, now)
        return CycleResult("closed", decision.reason, cycle_id, now, evaluation, trade=trade)

    def _equity(self) -> float:
        equity = self.client.get_equity()
        return equity if equity is not None else self.fallback_equity

    def _maybe_open(
        self, state: BotState, evaluation: SignalEvaluation, last_price: float, now: datetime, cycle_id: str,
    ) -> CycleResult:
        plan = evaluation.plan
        if plan is None:
            self.store.save(state)
            return CycleResult("no_plan", evaluation.note, cycle_id, now, evaluation)

        news = self.news.latest(now) if self.news is not None else None
        verdict = self.gate.check(plan, state.position, state.day, now, news)
        if not verdict.allowed:
            self.store.save(state)
            return CycleResult("skipped", verdict.reason, cycle_id, now, evaluation, plan, verdict.reason)

        atr = evaluation.meta.get("atr")
        stop_distance = self.machine.stop_distance(last_price, atr)
        self._check_deadline("equity")
        size = self.sizer.size(self._equity(), last_price, stop_distance, state.day.loss_streak)
        if not size.allowed:
            self.store.save(state)
            return CycleResult("skipped", f"sizing: {size.reason}", cycle_id, now, evaluation, plan)

        # levels from the last price; the exchange orders are a backstop for the local exits
        stop, take_profit = self.machine.exit_levels(plan.side, last_price, atr)
        if self.dry_run:
            logger.info("Dry run: would open %s qty=%.6f at ~%.4f stop=%.4f",
                        plan.side.value, size.quantity, last_price, stop)
            self.store.save(state)
            return CycleResult("dry_run_open", f"qty={size.quantity} stop={stop:.4f}", cycle_id, now, evaluation, plan)

        self._check_deadline("cancel orders")
        self.client.cancel_open_orders(self.symbol)
        self._check_deadline("open order")
        try:
            res = self.client.place_market_order(
                self.symbol, plan.side, size.quantity,
                stop_price=self.sizer.round_price(stop),
                take_profit_price=self.sizer.round_price(take_profit) if take_profit is not None else None,
            )
        except ExecutionFailure as e:
            draft = self.machine.open(
                plan, last_price, size.quantity, size.notional, atr, now,
                entry_fee=size.notional * self.fee_rate,
            )
            return self._halt_after_fill(state, plan, verdict.key, draft, e, now, cycle_id, evaluation)

        fill = res.avg_price or last_price
        qty = res.quantity or size.quantity
        position = self.machine.open(
            plan, fill, qty, fill * qty, atr, now, order_id=res.order_id,
            entry_fee=fill * qty * self.fee_rate,
            meta={"protective_orders": res.protective_orders, "idempotency_key": verdict.key},
        )
        state.position = position
        self.gate.record_open(state.day, plan, verdict.key, now)
        self.store.save(state)
        self.store.append_trade_event("open", {"plan": plan.to_dict(), "position": position.to_dict()}, now)
        self.alert(
            "Position opened", side=plan.side.value, qty=qty, entry=f"{fill:.4f}",
            stop=f"{position.initial_stop:.4f}", reason=plan.reason,
        )
        return CycleResult("opened", evaluation.note, cycle_id, now, evaluation, plan, position=position)

    def _halt_after_fill(
        self,
        state: BotState,
        plan: TradePlan,
        key: str,
        draft: Position,
        error: ExecutionFailure,
        now: datetime,
        cycle_id: str,
        evaluation: SignalEvaluation,
    ) -> CycleResult:
        """The entry may be live without protection: persist it, latch the halt, tell the operator."""
        draft.order_id = error.order_id
        draft.meta["idempotency_key"] = key
        draft.meta["unprotected"] = True
        draft.meta["execution_error"] = str(error)
        state.position = draft
        self.gate.record_open(state.day, plan, key, now)
        self.gate.halt(state.day, f"execution_failure: {error}")
        self.store.save(state)
        self.store.append_trade_event("open", {"plan": plan.to_dict(), "position": draft.to_dict()}, now)
        self.alert("HALTED: position may be unprotected", order_id=error.order_id, error=str(error))
        return CycleResult("halted", str(error), cycle_id, now, evaluation, plan, position=draft)
