"""
Core data types for bars, plans, positions, day state, and trades.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Optional

import pandas as pd


class SignalSide(str, Enum):
    LONG = "long"
    SHORT = "short"

    @property
    def order_side(self) -> str:
        """Exchange order side that opens this side."""
        return "BUY" if self is SignalSide.LONG else "SELL"

    @property
    def close_side(self) -> str:
        return "SELL" if self is SignalSide.LONG else "BUY"

    @property
    def sign(self) -> int:
        return 1 if self is SignalSide.LONG else -1


class Bias(str, Enum):
    LONG = "long"
    SHORT = "short"
    NONE = "none"

    def as_side(self) -> Optional[SignalSide]:
        if self is Bias.NONE:
            return None
        return SignalSide(self.value)


class PlanLevel(str, Enum):
    STRONG = "strong"
    VERY_STRONG = "very-strong"


def _iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _opt_float(value: Any) -> Optional[float]:
    return None if value is None else float(value)


@dataclass(frozen=True)
class Bar:
    """OHLCV candle. `time` is the candle open time (UTC)."""
    time: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float


def bars_from_frame(df: pd.DataFrame) -> List[Bar]:
    """Convert a kline DataFrame (time, open, high, low, close, volume) to bars."""
    bars: List[Bar] = []
    for row in df[["time", "open", "high", "low", "close", "volume"]].itertuples(index=False):
        ts = pd.Timestamp(row.time)
        if ts.tzinfo is None:
            ts = ts.tz_localize("UTC")
        bars.append(Bar(
            time=ts.to_pydatetime(),
            open=float(row.open),
            high=float(row.high),
            low=float(row.low),
            close=float(row.close),
            volume=float(row.volume),
        ))
    return bars


@dataclass(frozen=True)
class TradePlan:
    """One actionable intent from a signal evaluation."""
    cycle_id: str
    symbol: str
    side: SignalSide
    level: PlanLevel
    reason: str
    source_level: float
    source_tolerance: float

    def handoff(self) -> dict:
        """Serializable payload handed to the execution gate."""
        return {
            "cycle_id": self.cycle_id,
            "symbol": self.symbol,
            "side": self.side.value,
            "level": self.level.value,
            "reason": self.reason,
        }

    def to_dict(self) -> dict:
        d = self.handoff()
        d["source_level"] = self.source_level
        d["source_tolerance"] = self.source_tolerance
        return d

    @classmethod
    def from_dict(cls, d: dict) -> "TradePlan":
        return cls(
            cycle_id=str(d["cycle_id"]),
            symbol=d["symbol"],
            side=SignalSide(d["side"]),
            level=PlanLevel(d.get("level", PlanLevel.STRONG.value)),
            reason=d.get("reason", ""),
            source_level=float(d.get("source_level", 0.0)),
            source_tolerance=float(d.get("source_tolerance", 0.0)),
        )


@dataclass
class SignalEvaluation:
    """Result of one signal evaluation. plan is None when nothing is actionable."""
    bias: Bias
    plan: Optional[TradePlan] = None
    note: str = ""
    meta: dict = field(default_factory=dict)

    @property
    def side(self) -> Optional[SignalSide]:
        return self.plan.side if self.plan is not None else None


@dataclass
class TrailingState:
    """Trailing stop state. Distances are in price units."""
    enabled: bool
    mode: str  # "atr" | "percent"
    activation_distance: float
    trail_distance: float
    best_price: float
    current_stop: Optional[float] = None
    active: bool = False
    tightened: bool = False

    def to_dict(self) -> dict:
        return {
            "enabled": self.enabled,
            "mode": self.mode,
            "activation_distance": self.activation_distance,
            "trail_distance": self.trail_distance,
            "best_price": self.best_price,
            "current_stop": self.current_stop,
            "active": self.active,
            "tightened": self.tightened,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "TrailingState":
        return cls(
            enabled=bool(d.get("enabled", False)),
            mode=d.get("mode", "atr"),
            activation_distance=float(d.get("activation_distance", 0.0)),
            trail_distance=float(d.get("trail_distance", 0.0)),
            best_price=float(d["best_price"]),
            current_stop=_opt_float(d.get("current_stop")),
            active=bool(d.get("active", False)),
            tightened=bool(d.get("tightened", False)),
        )


@dataclass
class ReverseSignalState:
    count: int = 0
    last_side: Optional[SignalSide] = None
    required: int = 2

    def to_dict(self) -> dict:
        return {
            "count": self.count,
            "last_side": self.last_side.value if self.last_side else None,
            "required": self.required,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "ReverseSignalState":
        last = d.get("last_side")
        return cls(
            count=int(d.get("count", 0)),
            last_side=SignalSide(last) if last else None,
            required=int(d.get("required", 2)),
        )


@dataclass
class Position:
    """The single open position."""
    symbol: str
    side: SignalSide
    entry_price: float
    quantity: float
    notional: float
    opened_at: datetime
    initial_stop: float
    trailing: TrailingState
    reverse: ReverseSignalState = field(default_factory=ReverseSignalState)
    take_profit: Optional[float] = None
    bars_held: int = 0
    order_id: Optional[str] = None
    entry_fee: float = 0.0
    meta: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "side": self.side.value,
            "entry_price": self.entry_price,
            "quantity": self.quantity,
            "notional": self.notional,
            "opened_at": _iso(self.opened_at),
            "initial_stop": self.initial_stop,
            "take_profit": self.take_profit,
            "trailing": self.trailing.to_dict(),
            "reverse": self.reverse.to_dict(),
            "bars_held": self.bars_held,
            "order_id": self.order_id,
            "entry_fee": self.entry_fee,
            "meta": dict(self.meta),
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Position":
        return cls(
            symbol=d["symbol"],
            side=SignalSide(d["side"]),
            entry_price=float(d["entry_price"]),
            quantity=float(d["quantity"]),
            notional=float(d.get("notional", 0.0)),
            opened_at=_from_iso(d["opened_at"]),
            initial_stop=float(d["initial_stop"]),
            take_profit=_opt_float(d.get("take_profit")),
            trailing=TrailingState.from_dict(d["trailing"]),
            reverse=ReverseSignalState.from_dict(d.get("reverse") or {}),
            bars_held=int(d.get("bars_held", 0)),
            order_id=d.get("order_id"),
            entry_fee=float(d.get("entry_fee", 0.0)),
            meta=dict(d.get("meta") or {}),
        )


@dataclass
class AccountDayState:
    """Per-local-day counters plus the cross-day halt latch and loss streak."""
    date: Optional[str] = None
    trades_opened_today: int = 0
    realized_pnl_today: float = 0.0
    last_trade_at: Optional[datetime] = None
    loss_streak: int = 0
    last_executed: Optional[dict] = None
    executed_keys: List[str] = field(default_factory=list)
    halted: bool = False
    halt_reason: str = ""
    last_exit_side: Optional[SignalSide] = None

    def to_dict(self) -> dict:
        return {
            "date": self.date,
            "trades_opened_today": self.trades_opened_today,
            "realized_pnl_today": self.realized_pnl_today,
            "last_trade_at": _iso(self.last_trade_at),
            "loss_streak": self.loss_streak,
            "last_executed": self.last_executed,
            "executed_keys": list(self.executed_keys),
            "halted": self.halted,
            "halt_reason": self.halt_reason,
            "last_exit_side": self.last_exit_side.value if self.last_exit_side else None,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "AccountDayState":
        return cls(
            date=d.get("date"),
            trades_opened_today=int(d.get("trades_opened_today", 0)),
            realized_pnl_today=float(d.get("realized_pnl_today", 0.0)),
            last_trade_at=_from_iso(d.get("last_trade_at")),
            loss_streak=int(d.get("loss_streak", 0)),
            last_executed=d.get("last_executed"),
            executed_keys=list(d.get("executed_keys") or []),
            halted=bool(d.get("halted", False)),
            halt_reason=d.get("halt_reason", ""),
            last_exit_side=SignalSide(d["last_exit_side"]) if d.get("last_exit_side") else None,
        )


@dataclass
class BotState:
    """Everything a cycle reads and writes: the position and the day state."""
    position: Optional[Position] = None
    day: AccountDayState = field(default_factory=AccountDayState)
    version: int = 0

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "position": self.position.to_dict() if self.position else None,
            "day": self.day.to_dict(),
        }

    @classmethod
    def from_dict(cls, d: dict) -> "BotState":
        pos = d.get("position")
        return cls(
            position=Position.from_dict(pos) if pos else None,
            day=AccountDayState.from_dict(d.get("day") or {}),
            version=int(d.get("version", 0)),
        )


@dataclass
class Trade:
    """Closed trade for the ledger and analytics."""
    symbol: str
    side: SignalSide
    quantity: float
    entry_price: float
    exit_price: float
    pnl: float
    pnl_pct: float
    entry_time: datetime
    exit_time: datetime
    exit_reason: str  # stop_loss | trailing_stop | take_profit | timeout | reverse_signal | exchange_reconciled | ...
    fees: float = 0.0
    gross_pnl: float = 0.0
    notional: float = 0.0
    hold_minutes: float = 0.0
    order_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "side": self.side.value,
            "quantity": self.quantity,
            "entry_price": self.entry_price,
            "exit_price": self.exit_price,
            "pnl": self.pnl,
            "pnl_pct": self.pnl_pct,
            "entry_time": _iso(self.entry_time),
            "exit_time": _iso(self.exit_time),
            "exit_reason": self.exit_reason,
            "fees": self.fees,
            "gross_pnl": self.gross_pnl,
            "notional": self.notional,
            "hold_minutes": self.hold_minutes,
            "order_id": self.order_id,
        }


@dataclass
class ExchangeTrade:
    """Account fill as reported by the exchange."""
    timestamp: datetime
    price: float
    is_close: bool
    order_id: Optional[str] = None
    reported_profit: Optional[float] = None
    trade_id: Optional[str] = None


@dataclass
class ExitDecision:
    """Outcome of one exit evaluation."""
    action: str  # "hold" | "close"
    reason: str
    price: Optional[float] = None

    @property
    def should_close(self) -> bool:
        return self.action == "close"
