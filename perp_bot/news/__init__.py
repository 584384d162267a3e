"""News gate boundary: per-side block decisions from an external classifier."""

from perp_bot.news.gate import NewsDecision, FileNewsSource

__all__ = ["NewsDecision", "FileNewsSource"]
