"""Live loop: one-shot cycles composed from signal, gate, state machine and reconciliation."""

from perp_bot.live.cycle import CycleRunner, CycleResult, closed_bars

__all__ = ["CycleRunner", "CycleResult", "closed_bars"]
