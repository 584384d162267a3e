"""
File-backed state for the live loop: state.json (position + day state),
append-only trades.jsonl, cycles.jsonl (trimmed to the newest lines when a
cap is set), health.json and the cycle lock.
"""

from __future__ import annotations
import fcntl
import json
import logging
import os
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, List, Optional

from perp_bot.core.types import BotState

logger = logging.getLogger("perp_bot.storage")

STATE_FILE = "state.json"
TRADES_FILE = "trades.jsonl"
CYCLES_FILE = "cycles.jsonl"
HEALTH_FILE = "health.json"
LOCK_FILE = "cycle.lock"


class CycleLocked(Exception):
    """Another cycle holds the lock."""


def _atomic_write(target: Path, data: bytes) -> None:
    """Write to a temp file in the same directory, fsync, then os.replace."""
    tmp = target.parent / f"_tmp_{uuid.uuid4().hex}"
    fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o644)
    try:
        os.write(fd, data)
        os.fsync(fd)
    finally:
        os.close(fd)
    os.replace(tmp, target)


class StateStore:
    """All persisted live state lives under one directory."""

    def __init__(self, state_dir: Path, max_cycle_lines: int = 0):
        self.state_dir = Path(state_dir)
        self.max_cycle_lines = max_cycle_lines
        self.state_dir.mkdir(parents=True, exist_ok=True)

    @property
    def trades_path(self) -> Path:
        return self.state_dir / TRADES_FILE

    @property
    def cycles_path(self) -> Path:
        return self.state_dir / CYCLES_FILE

    def load(self) -> BotState:
        path = self.state_dir / STATE_FILE
        if not path.exists():
            return BotState()
        with open(path, "r", encoding="utf-8") as f:
            return BotState.from_dict(json.load(f))

    def save(self, state: BotState) -> None:
        state.version += 1
        payload = json.dumps(state.to_dict(), indent=2, sort_keys=True, default=str)
        _atomic_write(self.state_dir / STATE_FILE, payload.encode("utf-8"))

    def _append(self, path: Path, record: dict) -> None:
        line = json.dumps(record, sort_keys=True, default=str)
        with open(path, "a", encoding="utf-8") as f:
            f.write(line + "\n")

    def append_trade_event(self, event: str, record: dict, at: Optional[datetime] = None) -> None:
        """event is "open" or "close"."""
        at = at or datetime.now(timezone.utc)
        self._append(self.trades_path, {"event": event, "ts": at.isoformat(), **record})

    def append_cycle(self, record: dict) -> None:
        self._append(self.cycles_path, record)
        if self.max_cycle_lines > 0:
            self.prune_jsonl(self.cycles_path, self.max_cycle_lines)

    @staticmethod
    def prune_jsonl(path: Path, max_lines: int) -> int:
        """Keep the newest max_lines non-empty lines of path. Returns how many were dropped."""
        path = Path(path)
        if not path.is_file():
            return 0
        with open(path, "r", encoding="utf-8") as f:
            lines = [line for line in f if line.strip()]
        dropped = len(lines) - max(1, max_lines)
        if dropped <= 0:
            return 0
        _atomic_write(path, "".join(lines[dropped:]).encode("utf-8"))
        logger.debug("Pruned %d lines from %s", dropped, path)
        return dropped

    @staticmethod
    def read_jsonl(path: Path) -> List[dict]:
        if not Path(path).exists():
            return []
        rows = []
        with open(path, "r", encoding="utf-8") as f:
            for n, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    rows.append(json.loads(line))
                except ValueError:
                    logger.warning("Skipping malformed line %d in %s", n, path)
        return rows

    def consecutive_errors(self) -> int:
        path = self.state_dir / HEALTH_FILE
        if not path.exists():
            return 0
        with open(path, "r", encoding="utf-8") as f:
            return int(json.load(f).get("consecutive_errors", 0))

    def record_health(self, ok: bool, error: str = "") -> int:
        """Reset on success, increment on failure. Returns the new count."""
        count = 0 if ok else self.consecutive_errors() + 1
        payload = {
            "consecutive_errors": count,
            "last_error": error,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }
        _atomic_write(self.state_dir / HEALTH_FILE, json.dumps(payload).encode("utf-8"))
        return count

    @contextmanager
    def cycle_lock(self) -> Iterator[None]:
        """Exclusive non-blocking lock; raises CycleLocked if another cycle runs."""
        fh = open(self.state_dir / LOCK_FILE, "a+")
        try:
            try:
                fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError as e:
                raise CycleLocked(str(self.state_dir / LOCK_FILE)) from e
            try:
                yield
            finally:
                fcntl.flock(fh.fileno(), fcntl.LOCK_UN)
        finally:
            fh.close()
