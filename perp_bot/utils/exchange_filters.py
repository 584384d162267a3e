"""Lot size, price tick and minimum-notional filters from futures exchange info."""

from __future__ import annotations
import math
from typing import NamedTuple, Optional


class SymbolFilters(NamedTuple):
    min_qty: float = 0.001
    lot_step: float = 0.001
    price_tick: float = 0.01
    min_notional: float = 5.0


def parse_symbol_filters(symbol_info: Optional[dict]) -> SymbolFilters:
    """
    Read LOT_SIZE, MARKET_LOT_SIZE, PRICE_FILTER and MIN_NOTIONAL from a
    futures_exchange_info symbol entry. Missing info yields the defaults.
    """
    defaults = SymbolFilters()
    if not symbol_info:
        return defaults
    min_qty, lot_step = defaults.min_qty, defaults.lot_step
    price_tick, min_notional = defaults.price_tick, defaults.min_notional
    market_lot = None
    for f in symbol_info.get("filters", []):
        kind = f.get("filterType")
        if kind == "LOT_SIZE":
            min_qty = float(f.get("minQty", min_qty))
            lot_step = float(f.get("stepSize", lot_step))
        elif kind == "MARKET_LOT_SIZE":
            market_lot = (float(f.get("minQty", min_qty)), float(f.get("stepSize", lot_step)))
        elif kind == "PRICE_FILTER":
            price_tick = float(f.get("tickSize", price_tick))
        elif kind == "MIN_NOTIONAL":
            min_notional = float(f.get("notional", f.get("minNotional", min_notional)))
    # market orders obey MARKET_LOT_SIZE when the exchange publishes a usable one
    if market_lot and market_lot[1] > 0:
        min_qty, lot_step = max(min_qty, market_lot[0]), max(lot_step, market_lot[1])
    return SymbolFilters(min_qty, lot_step, price_tick, min_notional)


def round_quantity(qty: float, min_qty: float, step_size: float) -> float:
    """Floor to the lot step; 0 when the result is under min_qty."""
    if qty <= 0 or step_size <= 0:
        return 0.0
    steps = math.floor(qty / step_size + 1e-9)
    rounded = round(steps * step_size, 8)
    return rounded if rounded >= min_qty else 0.0


def round_price(price: float, tick_size: float) -> float:
    if tick_size <= 0:
        return price
    return round(round(price / tick_size) * tick_size, 8)
