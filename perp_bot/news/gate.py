"""
News gate boundary. The classifier runs elsewhere and writes its decision as
JSON; this module only reads the allow/block shape per side.
"""

from __future__ import annotations
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from perp_bot.core.types import SignalSide

logger = logging.getLogger("perp_bot.news")


@dataclass
class NewsDecision:
    """ok=False means the feed is unavailable; an unavailable feed blocks nothing."""
    ok: bool = False
    blocked_sides: Dict[str, bool] = field(default_factory=lambda: {"long": False, "short": False})
    reasons: Dict[str, List[str]] = field(default_factory=lambda: {"long": [], "short": []})
    generated_at: Optional[datetime] = None

    def blocks(self, side: SignalSide) -> bool:
        return self.ok and bool(self.blocked_sides.get(side.value, False))

    def reasons_for(self, side: SignalSide) -> List[str]:
        return list(self.reasons.get(side.value, []))

    @classmethod
    def from_dict(cls, d: dict) -> "NewsDecision":
        blocked = d.get("blockedSides") or d.get("blocked_sides") or {}
        reasons = d.get("reasons") or {}
        ts = d.get("generatedAt") or d.get("generated_at")
        generated_at = None
        if ts:
            generated_at = datetime.fromisoformat(str(ts))
            if generated_at.tzinfo is None:
                generated_at = generated_at.replace(tzinfo=timezone.utc)
        return cls(
            ok=d.get("ok") is True,
            blocked_sides={
                "long": bool(blocked.get("long", False)),
                "short": bool(blocked.get("short", False)),
            },
            reasons={
                "long": [str(r) for r in reasons.get("long", [])],
                "short": [str(r) for r in reasons.get("short", [])],
            },
            generated_at=generated_at,
        )


class FileNewsSource:
    """Reads the latest decision file written by the external classifier."""

    def __init__(self, path: Optional[Path], max_age_minutes: float = 90.0):
        self.path = Path(path) if path else None
        self.max_age_minutes = max_age_minutes

    def latest(self, now: Optional[datetime] = None) -> NewsDecision:
        now = now or datetime.now(timezone.utc)
        if self.path is None or not self.path.exists():
            return NewsDecision(ok=False)
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                decision = NewsDecision.from_dict(json.load(f))
        except (OSError, ValueError) as e:
            logger.warning("News decision unreadable (%s): %s", self.path, e)
            return NewsDecision(ok=False)
        if decision.generated_at is not None and self.max_age_minutes > 0:
            age = (now - decision.generated_at).total_seconds() / 60.0
            if age > self.max_age_minutes:
                logger.info("News decision stale (%.0f min old), ignoring", age)
                return NewsDecision(ok=False)
        return decision
