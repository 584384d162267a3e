"""Risk: position sizing, execution gate, position state machine."""

from perp_bot.risk.manager import RiskManager, SizeResult
from perp_bot.risk.gate import ExecutionGate, GateLimits, GateResult, idempotency_key
from perp_bot.risk.position import PositionStateMachine, RiskParams

__all__ = [
    "RiskManager",
    "SizeResult",
    "ExecutionGate",
    "GateLimits",
    "GateResult",
    "idempotency_key",
    "PositionStateMachine",
    "RiskParams",
]
