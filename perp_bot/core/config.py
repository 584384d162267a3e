"""
Load configuration from config.yaml and .env. API keys only from env.

Parameter sections (strategy, risk, gate) map onto the component dataclasses;
any field can be overridden by an environment variable named after the
section and field (STRATEGY_ADX_MIN, RISK_TRAIL_PCT, GATE_MAX_DAILY_LOSS, ...).
"""

from __future__ import annotations
import os
from dataclasses import fields
from pathlib import Path
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from dotenv import load_dotenv

from perp_bot.core.errors import ConfigError


def _env_path(project_root: Optional[Path] = None) -> Path:
    root = project_root or Path(__file__).resolve().parents[2]
    return root / ".env"


def load_dotenv_if_exists(project_root: Optional[Path] = None) -> None:
    """Load .env from project root if present."""
    path = _env_path(project_root)
    if path.exists():
        load_dotenv(path)


def env(key: str, default: str = "") -> str:
    return os.getenv(key, default).strip()


def env_bool(key: str, default: bool = False) -> bool:
    return os.getenv(key, str(default)).lower() in ("true", "1", "yes")


def _coerce(name: str, value: Any, like: Any) -> Any:
    """Cast value to the type of the field default."""
    try:
        if isinstance(like, bool):
            if isinstance(value, str):
                return value.strip().lower() in ("true", "1", "yes")
            return bool(value)
        if isinstance(like, int):
            return int(value)
        if isinstance(like, float):
            return float(value)
        return str(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{name}: cannot use {value!r} ({e})") from e


def build_params(cls, section: Optional[dict], prefix: str = ""):
    """
    Build a parameter dataclass from a config section overlaid by env.
    Unknown keys in the section are an error so typos do not pass silently.
    """
    section = dict(section or {})
    known = {f.name for f in fields(cls)}
    unknown = set(section) - known
    if unknown:
        raise ConfigError(f"{cls.__name__}: unknown keys {sorted(unknown)}")
    defaults = cls()
    kwargs = {}
    for f in fields(cls):
        like = getattr(defaults, f.name)
        raw = os.getenv(f"{prefix}{f.name}".upper())
        if raw is None:
            raw = section.get(f.name, like)
        kwargs[f.name] = _coerce(f.name, raw, like)
    return cls(**kwargs)


def load_config(config_path: Optional[Path] = None, project_root: Optional[Path] = None) -> "Config":
    """Load config.yaml and overlay with env. Returns Config."""
    load_dotenv_if_exists(project_root)
    root = project_root or Path(__file__).resolve().parents[2]
    path = Path(config_path) if config_path else root / "config.yaml"
    data: dict[str, Any] = {}
    if path.exists():
        with open(path, "r", encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"{path}: {e}") from e
    elif config_path:
        raise ConfigError(f"config file not found: {path}")

    api = data.get("api") or {}
    market = data.get("market") or {}
    execution = data.get("execution") or {}
    news = data.get("news") or {}
    storage = data.get("storage") or {}
    telegram = data.get("telegram") or {}
    logging_cfg = data.get("logging") or {}
    backtest = data.get("backtest") or {}

    use_testnet = env_bool("USE_TESTNET", api.get("use_testnet", True))
    # Prefer dedicated testnet/mainnet keys so both can live in .env and USE_TESTNET switches
    if use_testnet:
        binance_api_key = env("BINANCE_TESTNET_API_KEY") or env("BINANCE_API_KEY")
        binance_api_secret = env("BINANCE_TESTNET_API_SECRET") or env("BINANCE_API_SECRET")
    else:
        binance_api_key = env("BINANCE_MAINNET_API_KEY") or env("BINANCE_API_KEY")
        binance_api_secret = env("BINANCE_MAINNET_API_SECRET") or env("BINANCE_API_SECRET")

    def num(key: str, section: dict, default, cast=float):
        raw = os.getenv(key.upper())
        value = raw if raw is not None else section.get(key, default)
        try:
            return cast(value)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"{key}: cannot use {value!r}") from e

    cfg = Config(
        binance_api_key=binance_api_key,
        binance_api_secret=binance_api_secret,
        use_testnet=use_testnet,
        symbol=env("SYMBOL", market.get("symbol", "BTCUSDT")).upper(),
        bias_timeframe=env("BIAS_TIMEFRAME", market.get("bias_timeframe", "1h")),
        entry_timeframe=env("ENTRY_TIMEFRAME", market.get("entry_timeframe", "15m")),
        strategy_name=env("STRATEGY", market.get("strategy", "retest")),
        strategy=dict(data.get("strategy") or {}),
        risk=dict(data.get("risk") or {}),
        gate=dict(data.get("gate") or {}),
        sizing=dict(data.get("sizing") or {}),
        leverage=num("leverage", execution, 5, int),
        dry_run=env_bool("DRY_RUN", execution.get("dry_run", True)),
        fee_bps=num("fee_bps", execution, 4.0),
        slippage_bps=num("slippage_bps", execution, 2.0),
        kline_limit=num("kline_limit", execution, 300, int),
        poll_seconds=num("poll_seconds", execution, 60.0),
        cycle_timeout_seconds=num("cycle_timeout_seconds", execution, 45.0),
        error_threshold=num("error_threshold", execution, 3, int),
        news_enabled=env_bool("NEWS_ENABLED", news.get("enabled", False)),
        news_path=news.get("path"),
        news_max_age_minutes=float(news.get("max_age_minutes", 90.0)),
        state_dir=Path(env("STATE_DIR", str(storage.get("state_dir", "state")))),
        cycle_log_max_lines=num("cycle_log_max_lines", storage, 2000, int),
        telegram_bot_token=env("TELEGRAM_BOT_TOKEN", telegram.get("bot_token", "")),
        telegram_chat_id=env("TELEGRAM_CHAT_ID", str(telegram.get("chat_id", ""))),
        log_level=logging_cfg.get("level", "INFO"),
        log_dir=Path(logging_cfg.get("log_dir", "logs")),
        log_file=logging_cfg.get("log_file", "perp_bot.log"),
        backtest_start=backtest.get("start_date"),
        backtest_end=backtest.get("end_date"),
        backtest_initial_capital=float(backtest.get("initial_capital", 1000.0)),
        backtest_data_dir=Path(backtest.get("data_dir", "data")),
        backtest_timeout_bars=backtest.get("timeout_bars"),
        grid=dict(backtest.get("grid") or {}),
        grid_workers=int(backtest.get("workers", 0) or 0),
    )
    cfg.validate()
    return cfg


class Config:
    """Unified configuration. Treat as read-only after load."""

    __slots__ = (
        "binance_api_key", "binance_api_secret", "use_testnet",
        "symbol", "bias_timeframe", "entry_timeframe", "strategy_name",
        "strategy", "risk", "gate", "sizing",
        "leverage", "dry_run", "fee_bps", "slippage_bps", "kline_limit",
        "poll_seconds", "cycle_timeout_seconds", "error_threshold",
        "news_enabled", "news_path", "news_max_age_minutes",
        "state_dir", "cycle_log_max_lines",
        "telegram_bot_token", "telegram_chat_id",
        "log_level", "log_dir", "log_file",
        "backtest_start", "backtest_end", "backtest_initial_capital", "backtest_data_dir",
        "backtest_timeout_bars",
        "grid", "grid_workers",
    )

    def __init__(
        self,
        binance_api_key: str = "",
        binance_api_secret: str = "",
        use_testnet: bool = True,
        symbol: str = "BTCUSDT",
        bias_timeframe: str = "1h",
        entry_timeframe: str = "15m",
        strategy_name: str = "retest",
        strategy: Optional[dict] = None,
        risk: Optional[dict] = None,
        gate: Optional[dict] = None,
        sizing: Optional[dict] = None,
        leverage: int = 5,
        dry_run: bool = True,
        fee_bps: float = 4.0,
        slippage_bps: float = 2.0,
        kline_limit: int = 300,
        poll_seconds: float = 60.0,
        cycle_timeout_seconds: float = 45.0,
        error_threshold: int = 3,
        news_enabled: bool = False,
        news_path: Optional[str] = None,
        news_max_age_minutes: float = 90.0,
        state_dir: Path = None,
        cycle_log_max_lines: int = 2000,
        telegram_bot_token: str = "",
        telegram_chat_id: str = "",
        log_level: str = "INFO",
        log_dir: Path = None,
        log_file: str = "perp_bot.log",
        backtest_start: Optional[str] = None,
        backtest_end: Optional[str] = None,
        backtest_initial_capital: float = 1000.0,
        backtest_data_dir: Path = None,
        backtest_timeout_bars: Optional[int] = None,
        grid: Optional[dict] = None,
        grid_workers: int = 0,
    ):
        self.binance_api_key = binance_api_key
        self.binance_api_secret = binance_api_secret
        self.use_testnet = use_testnet
        self.symbol = symbol
        self.bias_timeframe = bias_timeframe
        self.entry_timeframe = entry_timeframe
        self.strategy_name = strategy_name
        self.strategy = strategy or {}
        self.risk = risk or {}
        self.gate = gate or {}
        self.sizing = sizing or {}
        self.leverage = leverage
        self.dry_run = dry_run
        self.fee_bps = fee_bps
        self.slippage_bps = slippage_bps
        self.kline_limit = kline_limit
        self.poll_seconds = poll_seconds
        self.cycle_timeout_seconds = cycle_timeout_seconds
        self.error_threshold = error_threshold
        self.news_enabled = news_enabled
        self.news_path = news_path
        self.news_max_age_minutes = news_max_age_minutes
        self.state_dir = Path(state_dir) if state_dir else Path("state")
        self.cycle_log_max_lines = cycle_log_max_lines
        self.telegram_bot_token = telegram_bot_token
        self.telegram_chat_id = telegram_chat_id
        self.log_level = log_level
        self.log_dir = Path(log_dir) if log_dir else Path("logs")
        self.log_file = log_file
        self.backtest_start = backtest_start
        self.backtest_end = backtest_end
        self.backtest_initial_capital = backtest_initial_capital
        self.backtest_data_dir = Path(backtest_data_dir) if backtest_data_dir else Path("data")
        self.backtest_timeout_bars = backtest_timeout_bars
        self.grid = grid or {}
        self.grid_workers = grid_workers

    def strategy_params(self):
        from perp_bot.strategies.base import StrategyParams
        return build_params(StrategyParams, self.strategy, "strategy_")

    def risk_params(self):
        from perp_bot.risk.position import RiskParams
        return build_params(RiskParams, self.risk, "risk_")

    def gate_limits(self):
        from perp_bot.risk.gate import GateLimits
        return build_params(GateLimits, self.gate, "gate_")

    def risk_manager(self):
        """RiskManager from the sizing section; max_leverage defaults to the account leverage."""
        from perp_bot.risk.manager import RiskManager
        s = dict(self.sizing)
        s.setdefault("max_leverage", self.leverage)
        try:
            return RiskManager(**s)
        except TypeError as e:
            raise ConfigError(f"sizing: {e}") from e

    def backtest_settings(self) -> dict:
        """Plain, picklable settings for backtesting.engine.build_engine."""
        sizing = dict(self.sizing)
        sizing.setdefault("max_leverage", self.leverage)
        return {
            "symbol": self.symbol,
            "strategy_name": self.strategy_name,
            "strategy": dict(self.strategy),
            "risk": dict(self.risk),
            "sizing": sizing,
            "gate": dict(self.gate),
            "fee_bps": self.fee_bps,
            "slippage_bps": self.slippage_bps,
            "initial_capital": self.backtest_initial_capital,
            "bias_timeframe": self.bias_timeframe,
            "entry_timeframe": self.entry_timeframe,
            "history_bars": self.kline_limit,
            "timeout_bars": self.backtest_timeout_bars,
        }

    def validate(self) -> None:
        """Raise ConfigError on values no component can run with."""
        sp = self.strategy_params()
        rp = self.risk_params()
        gl = self.gate_limits()
        if sp.bias_ema_fast >= sp.bias_ema_slow:
            raise ConfigError("strategy.bias_ema_fast must be below bias_ema_slow")
        if sp.level not in ("strong", "very-strong"):
            raise ConfigError(f"strategy.level must be strong or very-strong, got {sp.level!r}")
        if min(sp.adx_period, sp.atr_period, sp.entry_lookback, sp.retest_window_bars) <= 0:
            raise ConfigError("strategy periods must be positive")
        if rp.trailing_mode not in ("atr", "percent"):
            raise ConfigError(f"risk.trailing_mode must be atr or percent, got {rp.trailing_mode!r}")
        if rp.stop_atr_mult <= 0 or rp.stop_loss_pct <= 0:
            raise ConfigError("risk stop distances must be positive")
        if rp.reverse_confirmations < 0 or rp.max_hold_minutes < 0:
            raise ConfigError("risk.reverse_confirmations and max_hold_minutes must be >= 0")
        try:
            ZoneInfo(gl.timezone)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ConfigError(f"gate.timezone: unknown zone {gl.timezone!r}") from e
        rm = self.risk_manager()
        if not 0 < rm.risk_pct < 1 or rm.min_notional > rm.max_notional:
            raise ConfigError("sizing: risk_pct must be in (0, 1) and min_notional <= max_notional")
        if self.leverage < 1:
            raise ConfigError("execution.leverage must be >= 1")
        if self.cycle_timeout_seconds <= 0 or self.poll_seconds <= 0:
            raise ConfigError("execution.cycle_timeout_seconds and poll_seconds must be positive")
        if self.cycle_log_max_lines < 0:
            raise ConfigError("storage.cycle_log_max_lines must be >= 0 (0 keeps everything)")
