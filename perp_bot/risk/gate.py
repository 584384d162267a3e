"""
Execution gate: decides whether a TradePlan may become an open position.

Checks run in a fixed order and stop at the first failure:
auto_disabled, halted, position_open, daily_loss_cap, daily_trade_cap,
min_interval, blocked_by_news, idempotent_skip.
"""

from __future__ import annotations
import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo

from perp_bot.core.types import AccountDayState, Position, SignalSide, TradePlan
from perp_bot.news.gate import NewsDecision

logger = logging.getLogger("perp_bot.risk.gate")

MAX_EXECUTED_KEYS = 200


@dataclass
class GateLimits:
    enabled: bool = True
    max_daily_loss: float = 2.0
    max_trades_per_day: int = 60
    min_interval_minutes: float = 20.0
    timezone: str = "Asia/Shanghai"


@dataclass
class GateResult:
    allowed: bool
    reason: str = ""
    key: str = ""


def idempotency_key(cycle_id: Optional[str], side: str, level: str, symbol: str) -> str:
    """SHA-1 of the canonical (sorted-key) JSON of the intent."""
    payload = {"cycleId": cycle_id, "level": level, "side": side, "symbol": symbol}
    raw = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha1(raw.encode("utf-8")).hexdigest()


def local_date(now: datetime, tz_name: str) -> str:
    return now.astimezone(ZoneInfo(tz_name)).date().isoformat()


class ExecutionGate:
    """Stateless checks over AccountDayState; mutations go through record_* helpers."""

    def __init__(self, limits: Optional[GateLimits] = None):
        self.limits = limits or GateLimits()

    def roll_day(self, day: AccountDayState, now: datetime) -> bool:
        """Reset daily counters when the local calendar day changes. Returns True on rollover."""
        today = local_date(now, self.limits.timezone)
        if day.date == today:
            return False
        if day.date is not None:
            logger.info("Day rollover %s -> %s (trades=%d pnl=%.4f)",
                        day.date, today, day.trades_opened_today, day.realized_pnl_today)
        day.date = today
        day.trades_opened_today = 0
        day.realized_pnl_today = 0.0
        day.last_trade_at = None
        return True

    def check(
        self,
        plan: TradePlan,
        position: Optional[Position],
        day: AccountDayState,
        now: datetime,
        news: Optional[NewsDecision] = None,
    ) -> GateResult:
        lim = self.limits
        key = idempotency_key(plan.cycle_id, plan.side.value, plan.level.value, plan.symbol)
        if not lim.enabled:
            return GateResult(False, "auto_disabled", key)
        if day.halted:
            return GateResult(False, "halted", key)
        if position is not None:
            return GateResult(False, "position_open", key)
        if day.realized_pnl_today <= -abs(lim.max_daily_loss):
            return GateResult(False, "daily_loss_cap", key)
        if day.trades_opened_today >= lim.max_trades_per_day:
            return GateResult(False, "daily_trade_cap", key)
        if day.last_trade_at is not None:
            elapsed = (now - day.last_trade_at).total_seconds() / 60.0
            if elapsed < lim.min_interval_minutes:
                return GateResult(False, "min_interval", key)
        if news is not None and news.blocks(plan.side):
            return GateResult(False, "blocked_by_news", key)
        if plan.cycle_id and key in day.executed_keys:
            return GateResult(False, "idempotent_skip", key)
        return GateResult(True, "", key)

    @staticmethod
    def record_open(day: AccountDayState, plan: TradePlan, key: str, now: datetime) -> None:
        """Count one successful open and remember its idempotency key."""
        day.trades_opened_today += 1
        day.last_trade_at = now
        day.last_executed = {"cycle_id": plan.cycle_id, "key": key, "at": now.isoformat()}
        if key not in day.executed_keys:
            day.executed_keys.append(key)
            del day.executed_keys[:-MAX_EXECUTED_KEYS]

    @staticmethod
    def record_close(
        day: AccountDayState, pnl: Optional[float], now: datetime, side: Optional[SignalSide] = None,
    ) -> None:
        """Book realized PnL and update the loss streak used by sizing."""
        if side is not None:
            day.last_exit_side = side
        if pnl is not None:
            day.realized_pnl_today += pnl
            if pnl <= 0:
                day.loss_streak += 1
            else:
                day.loss_streak = 0
        day.last_trade_at = now

    @staticmethod
    def halt(day: AccountDayState, reason: str) -> None:
        day.halted = True
        day.halt_reason = reason
        logger.error("Automated opens halted: %s", reason)

    @staticmethod
    def resume(day: AccountDayState) -> None:
        day.halted = False
        day.halt_reason = ""
