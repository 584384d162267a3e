#!/usr/bin/env python3
"""
Perp bot CLI
Usage:
  python main.py backtest [--config config.yaml] [--refresh]
  python main.py cycle    [--config config.yaml]
  python main.py live     [--config config.yaml]
  python main.py grid     [--config config.yaml] [--workers N]
  python main.py report   [--config config.yaml] [--date YYYY-MM-DD]
  python main.py resume   [--config config.yaml]
"""

from __future__ import annotations
import argparse
import logging
import sys
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pandas as pd

# Project root
ROOT = Path(__file__).resolve().parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from perp_bot.core.config import Config, load_config
from perp_bot.core.errors import ConfigError
from perp_bot.core.logger import setup_logging
from perp_bot.analytics.postmortem import daily_report
from perp_bot.backtesting.data import cache_path, fetch_history, load_csv, save_csv
from perp_bot.backtesting.engine import build_engine
from perp_bot.backtesting.grid import run_grid
from perp_bot.execution.binance_futures import BinanceFuturesClient
from perp_bot.execution.paper import PaperExchangeClient
from perp_bot.live.cycle import FAILURE_OUTCOMES, CycleRunner
from perp_bot.risk.gate import ExecutionGate
from perp_bot.storage.state_store import StateStore
from perp_bot.utils.telegram import send_telegram
from perp_bot.utils.timeframes import timeframe_delta

logger = logging.getLogger("perp_bot")


def _setup(config_path: Path | None) -> Config:
    config = load_config(config_path, ROOT)
    setup_logging(config.log_level, config.log_dir, config.log_file)
    return config


def _exchange(config: Config) -> BinanceFuturesClient:
    return BinanceFuturesClient(config.binance_api_key, config.binance_api_secret, testnet=config.use_testnet)


def _history(config: Config, refresh: bool = False) -> tuple[pd.DataFrame, pd.DataFrame, datetime | None]:
    """Bias and entry frames from the CSV cache, downloading what is missing."""
    start = pd.Timestamp(config.backtest_start or datetime.now(timezone.utc) - timedelta(days=180))
    start = start.tz_localize("UTC") if start.tzinfo is None else start
    end = pd.Timestamp(config.backtest_end) if config.backtest_end else None
    # warm-up: indicators need history before the first traded bar
    warm = max(timeframe_delta(config.bias_timeframe), timeframe_delta(config.entry_timeframe)) * config.kline_limit
    frames = []
    client = None
    for tf in (config.bias_timeframe, config.entry_timeframe):
        path = cache_path(config.backtest_data_dir, config.symbol, tf)
        df = None if refresh else load_csv(path, start - warm, end)
        if df is None or df.empty:
            client = client or _exchange(config)
            df = fetch_history(client, config.symbol, tf, start - warm, end)
            save_csv(df, path)
        frames.append(df)
    return frames[0], frames[1], start.to_pydatetime()


def run_backtest(config_path: Path | None, refresh: bool = False) -> int:
    config = _setup(config_path)
    bias_df, entry_df, start = _history(config, refresh)
    if entry_df.empty:
        logger.error("No history for %s %s", config.symbol, config.entry_timeframe)
        return 1
    engine = build_engine(config.backtest_settings())
    result = engine.run(bias_df, entry_df, config.symbol, start=start)
    s, m = result.summary, result.metrics
    print("\n--- Backtest Results ---")
    print(f"Symbol: {config.symbol}  bias={config.bias_timeframe} entry={config.entry_timeframe}  strategy={config.strategy_name}")
    print(f"Trades: {s.trades}  win rate: {s.win_rate * 100:.1f}%  expectancy: {s.expectancy:.4f}")
    print(f"Total PnL: {s.total_pnl:.4f}  avg win: {s.avg_win:.4f}  avg loss: {s.avg_loss:.4f}")
    print(f"Fees: {s.total_fees:.4f}  ending equity: {s.ending_equity:.2f}")
    print(f"Max drawdown: {s.max_drawdown:.4f} ({s.max_drawdown_pct:.2f}%)  loss streak at end: {s.loss_streak_end}")
    print(f"Sharpe: {m.sharpe_ratio:.2f}  Sortino: {m.sortino_ratio:.2f}  profit factor: {m.profit_factor:.2f}")
    if result.skips:
        print("Gate skips: " + ", ".join(f"{k}={v}" for k, v in sorted(result.skips.items())))
    return 0


def run_grid_search(config_path: Path | None, workers: int | None) -> int:
    config = _setup(config_path)
    if not config.grid:
        logger.error("backtest.grid is empty in config")
        return 1
    bias_df, entry_df, start = _history(config)
    rows = run_grid(config.backtest_settings(), config.grid, bias_df, entry_df,
                    workers or config.grid_workers or None, start=start)
    print("\n--- Grid (top 10) ---")
    for row in rows[:10]:
        status = f"score={row.score:.4f} pnl={row.total_pnl:.4f} dd={row.max_drawdown:.4f} trades={row.trades}" \
            if row.ok else f"FAILED {row.error}"
        print(f"{row.params} {status}")
    return 0


def _runner(config: Config) -> CycleRunner:
    if config.dry_run and not config.binance_api_key:
        # public klines and prices need no keys; the account side stays on paper
        logger.warning("No API keys: dry run on a paper account fed by public Binance market data")
        market = BinanceFuturesClient(None, None, testnet=config.use_testnet)
        paper = PaperExchangeClient(equity=config.backtest_initial_capital, market=market)
        return CycleRunner.from_config(config, paper)
    if not config.binance_api_key or not config.binance_api_secret:
        raise ConfigError("Missing BINANCE_API_KEY / BINANCE_API_SECRET in .env")
    client = _exchange(config)
    if not config.dry_run:
        client.set_leverage(config.symbol, config.leverage)
    return CycleRunner.from_config(config, client)


def run_cycle(config_path: Path | None) -> int:
    config = _setup(config_path)
    result = _runner(config).run_once()
    print(f"{result.outcome} {result.reason}".strip())
    return 2 if result.outcome in FAILURE_OUTCOMES else 0


def run_live(config_path: Path | None) -> int:
    """Run cycles at a fixed cadence until interrupted."""
    config = _setup(config_path)
    runner = _runner(config)
    send_telegram(
        f"Perp bot starting | {config.symbol} | testnet={config.use_testnet} | dry_run={config.dry_run}",
        config.telegram_bot_token,
        config.telegram_chat_id,
    )
    while True:
        started = time.monotonic()
        try:
            runner.run_once()
        except KeyboardInterrupt:
            logger.info("Shutdown by user")
            send_telegram("Perp bot stopped (user request).", config.telegram_bot_token, config.telegram_chat_id)
            break
        except Exception as e:
            logger.exception("Live loop error: %s", e)
        try:
            time.sleep(max(0.0, config.poll_seconds - (time.monotonic() - started)))
        except KeyboardInterrupt:
            logger.info("Shutdown by user")
            break
    return 0


def run_report(config_path: Path | None, date: str | None) -> int:
    config = _setup(config_path)
    store = StateStore(config.state_dir)
    print(daily_report(store.trades_path, store.cycles_path, date, config.gate_limits().timezone))
    return 0


def run_resume(config_path: Path | None) -> int:
    """Clear the halt latch after the operator has checked the position."""
    config = _setup(config_path)
    store = StateStore(config.state_dir)
    with store.cycle_lock():
        state = store.load()
        if not state.day.halted:
            print("Not halted.")
            return 0
        logger.warning("Clearing halt (%s)", state.day.halt_reason)
        ExecutionGate.resume(state.day)
        store.save(state)
    print("Halt cleared.")
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Perp bot CLI")
    parser.add_argument("mode", choices=["backtest", "cycle", "live", "grid", "report", "resume"])
    parser.add_argument("--config", type=Path, default=None, help="Path to config.yaml")
    parser.add_argument("--refresh", action="store_true", help="backtest: re-download history")
    parser.add_argument("--workers", type=int, default=None, help="grid: worker processes")
    parser.add_argument("--date", default=None, help="report: local date YYYY-MM-DD")
    args = parser.parse_args()
    try:
        if args.mode == "backtest":
            return run_backtest(args.config, args.refresh)
        if args.mode == "cycle":
            return run_cycle(args.config)
        if args.mode == "live":
            return run_live(args.config)
        if args.mode == "grid":
            return run_grid_search(args.config, args.workers)
        if args.mode == "report":
            return run_report(args.config, args.date)
        return run_resume(args.config)
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
