"""
Position state machine: Flat -> Open -> Flat for the single position.

Per evaluation while open, in order: best-price update, trailing activation
and ratchet, stop checks (hard stop, then trailing stop, then take-profit),
timeout, reverse-signal exit. Reconciliation with the exchange happens in the
caller before evaluate(). The same code runs per bar in the backtester and per
cycle live (where high == low == close == last price).
"""

from __future__ import annotations
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Tuple

from perp_bot.core.types import (
    ExitDecision,
    Position,
    ReverseSignalState,
    SignalSide,
    Trade,
    TradePlan,
    TrailingState,
)

logger = logging.getLogger("perp_bot.risk.position")


@dataclass
class RiskParams:
    """Exit parameters. ATR multiples apply when ATR at entry is known, percents otherwise."""
    stop_atr_mult: float = 1.8
    take_profit_atr_mult: float = 0.0  # 0 = no fixed target
    stop_loss_pct: float = 0.02
    take_profit_pct: float = 0.0
    trailing_enabled: bool = True
    trailing_mode: str = "atr"  # "atr" | "percent"
    trail_activate_atr: float = 1.2
    trail_atr_mult: float = 2.2
    trail_activation_pct: float = 0.01
    trail_pct: float = 0.008
    timeout_trail_pct: float = 0.0025
    max_hold_minutes: float = 14400.0  # 0 = no timeout
    reverse_confirmations: int = 2  # 0 = reverse-signal exit off


class PositionStateMachine:
    """Opens, evaluates, and closes the single position. Holds no state of its own."""

    def __init__(self, params: Optional[RiskParams] = None):
        self.params = params or RiskParams()

    def stop_distance(self, entry_price: float, atr: Optional[float]) -> float:
        """Distance from entry to the initial stop."""
        if atr is not None and atr > 0:
            return atr * self.params.stop_atr_mult
        return entry_price * self.params.stop_loss_pct

    def exit_levels(self, side: SignalSide, entry_price: float, atr: Optional[float]) -> Tuple[float, Optional[float]]:
        """(initial stop, take-profit or None) for an entry at entry_price."""
        p = self.params
        sign = side.sign
        stop = entry_price - sign * self.stop_distance(entry_price, atr)
        take_profit = None
        if atr is not None and atr > 0:
            if p.take_profit_atr_mult > 0:
                take_profit = entry_price + sign * atr * p.take_profit_atr_mult
        elif p.take_profit_pct > 0:
            take_profit = entry_price * (1 + sign * p.take_profit_pct)
        return stop, take_profit

    def open(
        self,
        plan: TradePlan,
        entry_price: float,
        quantity: float,
        notional: float,
        atr: Optional[float],
        opened_at: datetime,
        order_id: Optional[str] = None,
        entry_fee: float = 0.0,
        meta: Optional[dict] = None,
    ) -> Position:
        p = self.params
        side = plan.side
        use_atr = atr is not None and atr > 0
        stop, take_profit = self.exit_levels(side, entry_price, atr)

        if use_atr and p.trailing_mode == "atr":
            mode = "atr"
            activation = atr * p.trail_activate_atr
            trail = atr * p.trail_atr_mult
        else:
            mode = "percent"
            activation = entry_price * p.trail_activation_pct
            trail = entry_price * p.trail_pct

        position_meta = {
            "cycle_id": plan.cycle_id,
            "reason": plan.reason,
            "level": plan.level.value,
            "atr_at_entry": atr,
            "unprotected": False,
        }
        position_meta.update(meta or {})
        position = Position(
            symbol=plan.symbol,
            side=side,
            entry_price=entry_price,
            quantity=quantity,
            notional=notional,
            opened_at=opened_at,
            initial_stop=stop,
            take_profit=take_profit,
            trailing=TrailingState(
                enabled=p.trailing_enabled,
                mode=mode,
                activation_distance=activation,
                trail_distance=trail,
                best_price=entry_price,
            ),
            reverse=ReverseSignalState(required=p.reverse_confirmations),
            order_id=order_id,
            entry_fee=entry_fee,
            meta=position_meta,
        )
        logger.info(
            "Open %s %s qty=%.6f entry=%.4f stop=%.4f tp=%s",
            side.value, plan.symbol, quantity, entry_price, stop,
            f"{take_profit:.4f}" if take_profit is not None else "-",
        )
        return position

    @staticmethod
    def unrealized_pnl(position: Position, price: float) -> float:
        return (price - position.entry_price) * position.quantity * position.side.sign

    def _ratchet(self, position: Position) -> None:
        """Move the trailing stop toward price; never away from it."""
        tr = position.trailing
        if tr.tightened and self.params.timeout_trail_pct > 0:
            tr.trail_distance = tr.best_price * self.params.timeout_trail_pct
        if position.side is SignalSide.LONG:
            candidate = tr.best_price - tr.trail_distance
            tr.current_stop = candidate if tr.current_stop is None else max(tr.current_stop, candidate)
        else:
            candidate = tr.best_price + tr.trail_distance
            tr.current_stop = candidate if tr.current_stop is None else min(tr.current_stop, candidate)

    def _check_stops(self, position: Position, high: float, low: float) -> Optional[ExitDecision]:
        """Hard stop wins ties with trailing stop and target on the same bar."""
        tr = position.trailing
        trail_live = tr.enabled and tr.active and tr.current_stop is not None
        if position.side is SignalSide.LONG:
            if low <= position.initial_stop:
                return ExitDecision("close", "stop_loss", position.initial_stop)
            if trail_live and low <= tr.current_stop:
                return ExitDecision("close", "trailing_stop", tr.current_stop)
            if position.take_profit is not None and high >= position.take_profit:
                return ExitDecision("close", "take_profit", position.take_profit)
        else:
            if high >= position.initial_stop:
                return ExitDecision("close", "stop_loss", position.initial_stop)
            if trail_live and high >= tr.current_stop:
                return ExitDecision("close", "trailing_stop", tr.current_stop)
            if position.take_profit is not None and low <= position.take_profit:
                return ExitDecision("close", "take_profit", position.take_profit)
        return None

    def evaluate(
        self,
        position: Position,
        high: float,
        low: float,
        close: float,
        now: datetime,
        signal_side: Optional[SignalSide] = None,
    ) -> ExitDecision:
        """
        Advance the position by one observation and decide hold or close.
        Mutates the trailing and reverse-signal state in place.
        """
        p = self.params
        position.bars_held += 1
        tr = position.trailing

        if position.side is SignalSide.LONG:
            tr.best_price = max(tr.best_price, high)
        else:
            tr.best_price = min(tr.best_price, low)

        if tr.enabled:
            favorable = (tr.best_price - position.entry_price) * position.side.sign
            if not tr.active and favorable >= tr.activation_distance:
                tr.active = True
                logger.info("Trailing stop activated at best=%.4f", tr.best_price)
            if tr.active:
                self._ratchet(position)

        decision = self._check_stops(position, high, low)
        if decision is not None:
            return decision

        hold_reason = "in_range"
        held_minutes = (now - position.opened_at).total_seconds() / 60.0
        if p.max_hold_minutes and held_minutes >= p.max_hold_minutes:
            if self.unrealized_pnl(position, close) > 0:
                if tr.enabled and p.timeout_trail_pct > 0:
                    tr.active = True
                    tr.tightened = True
                    self._ratchet(position)
                hold_reason = "timeout_tighten_trailing"
            else:
                return ExitDecision("close", "timeout", close)

        rs = position.reverse
        if p.reverse_confirmations > 0:
            opposite = signal_side is not None and signal_side is not position.side
            if opposite:
                rs.count += 1
                rs.last_side = signal_side
                if rs.count >= rs.required:
                    return ExitDecision("close", "reverse_signal", close)
                hold_reason = "reverse_signal_pending"
            else:
                rs.count = 0
                rs.last_side = signal_side

        return ExitDecision("hold", hold_reason, None)

    def close(
        self,
        position: Position,
        exit_price: float,
        exit_time: datetime,
        reason: str,
        exit_fee: float = 0.0,
        realized_pnl: Optional[float] = None,
        order_id: Optional[str] = None,
    ) -> Trade:
        """Terminal transition. Returns the ledger entry; the caller clears the position."""
        gross = self.unrealized_pnl(position, exit_price)
        fees = position.entry_fee + exit_fee
        pnl = realized_pnl if realized_pnl is not None else gross - fees
        notional = position.quantity * position.entry_price
        hold_minutes = (exit_time - position.opened_at).total_seconds() / 60.0
        logger.info(
            "Close %s %s reason=%s exit=%.4f pnl=%.4f",
            position.side.value, position.symbol, reason, exit_price, pnl,
        )
        return Trade(
            symbol=position.symbol,
            side=position.side,
            quantity=position.quantity,
            entry_price=position.entry_price,
            exit_price=exit_price,
            pnl=pnl,
            pnl_pct=(pnl / notional * 100.0) if notional > 0 else 0.0,
            entry_time=position.opened_at,
            exit_time=exit_time,
            exit_reason=reason,
            fees=fees,
            gross_pnl=gross,
            notional=notional,
            hold_minutes=hold_minutes,
            order_id=order_id,
        )
