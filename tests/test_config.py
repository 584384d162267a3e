"""Config loading: yaml sections, env overrides and validation."""

import pytest

from perp_bot.core.config import build_params, load_config
from perp_bot.core.errors import ConfigError
from perp_bot.risk.gate import GateLimits


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in ("GATE_MAX_DAILY_LOSS", "SYMBOL", "DRY_RUN", "USE_TESTNET", "BINANCE_API_KEY",
                "BINANCE_TESTNET_API_KEY", "STRATEGY_ADX_MIN", "LEVERAGE"):
        monkeypatch.delenv(key, raising=False)


def _write(tmp_path, text):
    path = tmp_path / "config.yaml"
    path.write_text(text)
    return path


def test_defaults_without_file(tmp_path):
    cfg = load_config(None, tmp_path)
    assert cfg.symbol == "BTCUSDT"
    assert cfg.dry_run is True
    assert cfg.strategy_params().adx_min == 15.0
    assert cfg.gate_limits().timezone == "Asia/Shanghai"
    assert cfg.risk_manager().max_leverage == 5
    assert cfg.cycle_log_max_lines == 2000


def test_sections_and_env_override(tmp_path, monkeypatch):
    path = _write(tmp_path, """
market:
  symbol: ethusdt
strategy:
  adx_min: 18
gate:
  max_daily_loss: 3.5
execution:
  leverage: 3
backtest:
  timeout_bars: 16
""")
    monkeypatch.setenv("GATE_MAX_DAILY_LOSS", "7")
    cfg = load_config(path, tmp_path)
    assert cfg.symbol == "ETHUSDT"
    assert cfg.strategy_params().adx_min == 18.0
    assert cfg.gate_limits().max_daily_loss == 7.0
    settings = cfg.backtest_settings()
    assert settings["sizing"]["max_leverage"] == 3
    assert settings["timeout_bars"] == 16


def test_api_keys_come_from_env(tmp_path, monkeypatch):
    monkeypatch.setenv("BINANCE_TESTNET_API_KEY", "k-test")
    cfg = load_config(None, tmp_path)
    assert cfg.binance_api_key == "k-test"


@pytest.mark.parametrize("text", [
    "strategy:\n  adx_mn: 18\n",
    "gate:\n  timezone: Mars/Olympus\n",
    "strategy:\n  adx_min: high\n",
    "strategy:\n  bias_ema_fast: 60\n",
    "risk:\n  trailing_mode: sideways\n",
    "sizing:\n  risk_pct: 2\n",
    "sizing:\n  leverage_max: 2\n",
    "execution:\n  leverage: lots\n",
    "storage:\n  cycle_log_max_lines: -1\n",
])
def test_invalid_values_raise(tmp_path, text):
    with pytest.raises(ConfigError):
        load_config(_write(tmp_path, text), tmp_path)


def test_missing_explicit_file(tmp_path):
    with pytest.raises(ConfigError):
        load_config(tmp_path / "nope.yaml", tmp_path)


def test_build_params_coerces_strings(monkeypatch):
    monkeypatch.setenv("GATE_ENABLED", "false")
    limits = build_params(GateLimits, {"max_trades_per_day": "12"}, "gate_")
    assert limits.enabled is False
    assert limits.max_trades_per_day == 12
