"""
Logging setup for the perp_bot logger tree. Console plus optional file.
"""

from __future__ import annotations
import logging
import sys
from pathlib import Path
from typing import Optional

FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(
    level: str = "INFO",
    log_dir: Optional[Path] = None,
    log_file: Optional[str] = None,
) -> logging.Logger:
    """
    Configure the "perp_bot" logger: stdout and, when log_dir and log_file are
    given, a UTF-8 file. Never log API keys or secrets.
    """
    log_level = getattr(logging, str(level).upper(), logging.INFO)
    root = logging.getLogger("perp_bot")
    root.setLevel(log_level)
    root.handlers.clear()
    root.propagate = False

    formatter = logging.Formatter(FORMAT, datefmt=DATE_FORMAT)

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(formatter)
    root.addHandler(console)

    if log_dir and log_file:
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(log_dir / log_file, encoding="utf-8")
        fh.setFormatter(formatter)
        root.addHandler(fh)

    return root
