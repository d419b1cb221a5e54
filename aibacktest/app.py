"""
Application entry point.

This module defines a simple command‑line interface for running
AI-driven backtests and inspecting stored sessions.  It leverages the
modules under `aibacktest/` to load configuration, replay market data,
query the decision oracle, persist sessions and generate reports.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from typing import List, Optional

from .analysis.http_oracle import HttpDecisionOracle
from .config.instruments import normalize_symbol
from .config.schema import Config, LoggingConfig, load_config
from .data.csv_data import CSVDataLoader
from .data.mt5_data import MT5DataFeed
from .errors import BacktestError, ConfigurationError
from .execution.backtest_exec import SimulationEngine
from .execution.runner import BacktestRunner
from .reporting.report import generate_backtest_report
from .utils.persistence import JsonSessionRepository
from .utils.timeutils import to_utc

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool, config: Optional[LoggingConfig] = None) -> None:
    """Configure logging for the application.

    Safe to call twice: once with defaults before the config file is
    read, then again to apply its level and log file.
    """
    config = config or LoggingConfig()
    level = logging.DEBUG if verbose else getattr(logging, config.level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
    )
    logging.getLogger().setLevel(level)
    if config.file:
        directory = os.path.dirname(config.file)
        if directory:
            os.makedirs(directory, exist_ok=True)
        handler = logging.FileHandler(config.file, encoding='utf-8')
        handler.setFormatter(logging.Formatter('%(asctime)s [%(levelname)s] %(name)s: %(message)s'))
        logging.getLogger().addHandler(handler)


def _load(path: str) -> Config:
    if os.path.exists(path):
        return load_config(path)
    logger.warning("Config file %s not found, using defaults", path)
    return Config()


def build_market_data(config: Config):
    """Select the market data provider named by ``data.source``."""
    source = config.data.source.lower()
    if source == 'csv':
        return CSVDataLoader(config.data.csv_dir, config.data.timezone)
    if source == 'mt5':
        return MT5DataFeed(config.mt5, config.simulation.base_resolution)
    raise ConfigurationError(f"Unknown data source: {config.data.source}")


def build_engine(config: Config) -> SimulationEngine:
    return SimulationEngine(
        config=config,
        market_data=build_market_data(config),
        oracle=HttpDecisionOracle(config.oracle),
        repository=JsonSessionRepository(config.storage.results_dir),
    )


def _cmd_backtest(config: Config, args: argparse.Namespace) -> int:
    request = config.backtest
    if args.symbol:
        request.symbol = normalize_symbol(args.symbol)
    if args.start:
        request.start_date = to_utc(args.start)
    if args.end:
        request.end_date = to_utc(args.end)
    if args.balance is not None:
        request.initial_balance = args.balance

    runner = BacktestRunner(build_engine(config), max_workers=1)
    try:
        session_id = runner.submit(request)
        logger.info("Running backtest %s...", session_id)
        try:
            result = runner.wait(session_id)
        except KeyboardInterrupt:
            logger.warning("Interrupted, cancelling %s", session_id)
            runner.cancel(session_id)
            result = runner.wait(session_id)
    finally:
        runner.shutdown()

    if not result.success:
        logger.error("Backtest %s failed: %s", result.session_id, result.error)
        return 1
    if args.report:
        out_dir = os.path.join(config.storage.results_dir, 'reports', result.session_id)
        generate_backtest_report(result.session, out_dir)
        logger.info("Report written to %s", out_dir)
    print(json.dumps(result.session.performance_summary.to_dict(), indent=2))
    return 0


def _cmd_sessions(config: Config, args: argparse.Namespace) -> int:
    repo = JsonSessionRepository(config.storage.results_dir)
    for session in repo.list():
        meta = session.metadata
        summary = session.performance_summary
        print(
            f"{meta.session_id}  {meta.status.value:<9}  {meta.symbol}  "
            f"{meta.start_date.date()}..{meta.end_date.date()}  "
            f"trades={summary.total_trades}  net={summary.net_profit_loss:.2f}"
        )
    return 0


def _cmd_show(config: Config, args: argparse.Namespace) -> int:
    session = JsonSessionRepository(config.storage.results_dir).load(args.session_id)
    if session is None:
        logger.error("Session %s not found", args.session_id)
        return 1
    data = session.to_dict()
    if not args.full:
        data.pop('trades')
        data.pop('equity_curve')
    print(json.dumps(data, indent=2))
    return 0


def _cmd_delete(config: Config, args: argparse.Namespace) -> int:
    if not JsonSessionRepository(config.storage.results_dir).delete(args.session_id):
        logger.error("Session %s not found", args.session_id)
        return 1
    logger.info("Deleted session %s", args.session_id)
    return 0


def _cmd_report(config: Config, args: argparse.Namespace) -> int:
    session = JsonSessionRepository(config.storage.results_dir).load(args.session_id)
    if session is None:
        logger.error("Session %s not found", args.session_id)
        return 1
    out_dir = args.out or os.path.join(config.storage.results_dir, 'reports', args.session_id)
    generate_backtest_report(session, out_dir)
    logger.info("Report written to %s", out_dir)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Parse command‑line arguments and dispatch to the selected command."""
    parser = argparse.ArgumentParser(description="AI-driven FX backtester")
    parser.add_argument('--config', default='config.yaml', help="Path to configuration YAML file")
    parser.add_argument('-v', '--verbose', action='store_true', help="Enable debug logging")
    sub = parser.add_subparsers(dest='command', required=True)

    p_bt = sub.add_parser('backtest', help="Run a backtest from the configuration")
    p_bt.add_argument('--symbol', help="Override backtest.symbol")
    p_bt.add_argument('--start', help="Override backtest.start_date (ISO date)")
    p_bt.add_argument('--end', help="Override backtest.end_date (ISO date)")
    p_bt.add_argument('--balance', type=float, help="Override backtest.initial_balance")
    p_bt.add_argument('--report', action='store_true', help="Write CSV/JSON/PNG report after the run")
    p_bt.set_defaults(func=_cmd_backtest)

    p_ls = sub.add_parser('sessions', help="List stored sessions")
    p_ls.set_defaults(func=_cmd_sessions)

    p_show = sub.add_parser('show', help="Print a stored session")
    p_show.add_argument('session_id')
    p_show.add_argument('--full', action='store_true', help="Include trades and equity curve")
    p_show.set_defaults(func=_cmd_show)

    p_del = sub.add_parser('delete', help="Delete a stored session")
    p_del.add_argument('session_id')
    p_del.set_defaults(func=_cmd_delete)

    p_rep = sub.add_parser('report', help="Write report files for a stored session")
    p_rep.add_argument('session_id')
    p_rep.add_argument('--out', help="Output directory")
    p_rep.set_defaults(func=_cmd_report)

    args = parser.parse_args(argv)
    _setup_logging(args.verbose)

    try:
        config = _load(args.config)
        _setup_logging(args.verbose, config.logging)
        return args.func(config, args)
    except BacktestError as exc:
        logger.error("%s", exc)
        return 2


if __name__ == '__main__':
    sys.exit(main())
