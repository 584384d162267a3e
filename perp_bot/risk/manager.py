"""
Risk manager: risk-based position sizing with a loss-streak throttle.
notional = min(max(equity * risk_pct / stop_distance * entry, min_notional), max_notional, equity * max_leverage)
After lot rounding the order must still reach max(min_notional, exchange MIN_NOTIONAL).
"""

from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Optional

from perp_bot.utils.exchange_filters import round_price, round_quantity, parse_symbol_filters

logger = logging.getLogger("perp_bot.risk")


@dataclass
class SizeResult:
    """Result of sizing: allowed or rejected + reason."""
    allowed: bool
    quantity: float = 0.0
    notional: float = 0.0
    risk_pct: float = 0.0
    reason: str = ""


class RiskManager:
    """
    Sizes the position so that a stop-out loses about equity * risk_pct.
    Once loss_streak reaches throttle_after, risk_pct drops to throttle_risk_pct.
    Risk only ever scales down with losses, never up.
    """

    def __init__(
        self,
        risk_pct: float = 0.015,
        min_notional: float = 5.0,
        max_notional: float = 80.0,
        max_leverage: float = 10.0,
        throttle_enabled: bool = True,
        throttle_after: int = 3,
        throttle_risk_pct: float = 0.008,
        symbol_info: Optional[dict] = None,
    ):
        self.risk_pct = risk_pct
        self.min_notional = min_notional
        self.max_notional = max_notional
        self.max_leverage = max_leverage
        self.throttle_enabled = throttle_enabled
        self.throttle_after = throttle_after
        self.throttle_risk_pct = throttle_risk_pct
        self.filters = parse_symbol_filters(symbol_info)

    def current_risk_pct(self, loss_streak: int) -> float:
        if self.throttle_enabled and loss_streak >= self.throttle_after:
            return min(self.risk_pct, self.throttle_risk_pct)
        return self.risk_pct

    def notional_for(self, equity: float, entry_price: float, stop_distance: float, loss_streak: int = 0) -> float:
        """Unrounded target notional for the given stop distance."""
        rp = self.current_risk_pct(loss_streak)
        risk_usd = max(0.0, equity) * rp
        qty_risk = risk_usd / max(1e-9, stop_distance)
        notional = max(qty_risk * entry_price, self.min_notional)
        return min(notional, self.max_notional, max(0.0, equity) * self.max_leverage)

    def size(
        self,
        equity: float,
        entry_price: float,
        stop_distance: float,
        loss_streak: int = 0,
        round_lots: bool = True,
    ) -> SizeResult:
        """Compute quantity and notional. round_lots=False keeps fractional size (backtests)."""
        if stop_distance <= 0:
            return SizeResult(allowed=False, reason="zero stop distance")
        if entry_price <= 0:
            return SizeResult(allowed=False, reason="invalid entry price")
        rp = self.current_risk_pct(loss_streak)
        notional = self.notional_for(equity, entry_price, stop_distance, loss_streak)
        qty = notional / entry_price
        floor = self.min_notional
        if round_lots:
            qty = round_quantity(qty, self.filters.min_qty, self.filters.lot_step)
            floor = max(floor, self.filters.min_notional)
        if qty <= 0:
            return SizeResult(allowed=False, risk_pct=rp, reason="qty rounded to 0")
        if qty * entry_price < floor - 1e-9:
            # flooring to the lot step can undershoot the minimum; one more lot if the caps allow
            bumped = round(qty + self.filters.lot_step, 8) if round_lots else floor / entry_price
            cap = min(self.max_notional, max(0.0, equity) * self.max_leverage)
            if bumped * entry_price < floor - 1e-9 or bumped * entry_price > cap + 1e-9:
                logger.info("Size rejected: notional %.4f below minimum %.4f", qty * entry_price, floor)
                return SizeResult(allowed=False, risk_pct=rp, reason="below_min_notional")
            qty = bumped
        if rp < self.risk_pct:
            logger.info("Loss streak %d: risk throttled to %.4f", loss_streak, rp)
        return SizeResult(allowed=True, quantity=qty, notional=qty * entry_price, risk_pct=rp)

    def round_price(self, price: float) -> float:
        return round_price(price, self.filters.price_tick)

    def update_symbol_info(self, symbol_info: Optional[dict]) -> None:
        """Update lot/price filters when symbol or exchange info changes."""
        self.filters = parse_symbol_filters(symbol_info)
