"""
Daily post-mortem over the live ledgers: opens, closes, realized PnL,
exit reasons and cycle outcomes for one local calendar day.
"""

from __future__ import annotations
from collections import Counter
from datetime import datetime
from pathlib import Path
from typing import List, Optional
from zoneinfo import ZoneInfo

from perp_bot.storage.state_store import StateStore


def _local_date(ts: Optional[str], tz: ZoneInfo) -> Optional[str]:
    if not ts:
        return None
    try:
        dt = datetime.fromisoformat(str(ts))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=ZoneInfo("UTC"))
    return dt.astimezone(tz).date().isoformat()


def _counts(counter: Counter) -> str:
    return ", ".join(f"{k}:{v}" for k, v in counter.most_common()) or "none"


def daily_report(
    trades_path: Path,
    cycles_path: Path,
    date: Optional[str] = None,
    tz: str = "Asia/Shanghai",
) -> str:
    """Plain-text report for date (YYYY-MM-DD, default today in tz)."""
    zone = ZoneInfo(tz)
    date = date or datetime.now(zone).date().isoformat()
    events = [e for e in StateStore.read_jsonl(trades_path) if _local_date(e.get("ts"), zone) == date]
    cycles = [c for c in StateStore.read_jsonl(cycles_path) if _local_date(c.get("ts"), zone) == date]

    opens = [e for e in events if e.get("event") == "open"]
    closes = [e for e in events if e.get("event") == "close"]
    pnls: List[float] = [float(c["pnl"]) for c in closes if c.get("pnl") is not None]
    holds = [float(c["hold_minutes"]) for c in closes if c.get("hold_minutes") is not None]

    sides = Counter((o.get("plan") or {}).get("side", "unknown") for o in opens)
    levels = Counter((o.get("plan") or {}).get("level", "unknown") for o in opens)
    reasons = Counter(c.get("exit_reason", "unknown") for c in closes)
    outcomes = Counter(c.get("outcome", "unknown") for c in cycles)
    skips = Counter(c.get("reason") or "unknown" for c in cycles if c.get("outcome") == "skipped")

    lines = [
        f"Perp bot daily report | {date} ({tz})",
        f"- opens: {len(opens)} ({_counts(sides)}; levels {_counts(levels)})",
        f"- closes: {len(closes)}",
        f"- realized pnl: {sum(pnls):.4f}",
        f"- win/loss/flat: {sum(1 for p in pnls if p > 0)}/{sum(1 for p in pnls if p < 0)}/{sum(1 for p in pnls if p == 0)}",
        f"- avg hold: {sum(holds) / len(holds):.1f} min" if holds else "- avg hold: n/a",
        "",
        "Exit reasons:",
    ]
    lines += [f"- {k}: {v}" for k, v in reasons.most_common()] or ["- none"]
    lines += ["", f"Cycles: {len(cycles)}"]
    lines += [f"- {k}: {v}" for k, v in outcomes.most_common(8)]
    if skips:
        lines += ["", "Skip reasons:"]
        lines += [f"- {k}: {v}" for k, v in skips.most_common()]
    if any(c.get("outcome") == "halted" for c in cycles):
        lines += ["", "HALTED during this day: check the position and run `main.py resume`."]
    return "\n".join(lines)
