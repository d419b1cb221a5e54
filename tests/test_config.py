import os
import sys
import tempfile
import textwrap
import pandas as pd

CURRENT_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, os.pardir))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from aibacktest.app import main
from aibacktest.config.schema import BacktestRequest, PromptsConfig, config_from_dict, load_config
from aibacktest.config.validation import collect_request_errors, validate_request
from aibacktest.errors import ConfigurationError

import unittest


NOW = pd.Timestamp("2024-06-01", tz="UTC")


def valid_request(**overrides) -> BacktestRequest:
    params = dict(
        symbol="EURUSD",
        start_date=pd.Timestamp("2024-01-01", tz="UTC"),
        end_date=pd.Timestamp("2024-02-01", tz="UTC"),
        initial_balance=10_000.0,
        skip_candles=6,
        analysis_window_hours=20,
        prompts=PromptsConfig("Describe the market structure", "Return the trade decision"),
    )
    params.update(overrides)
    return BacktestRequest(**params)


class TestLoadConfig(unittest.TestCase):
    def test_defaults(self) -> None:
        cfg = config_from_dict({})
        self.assertEqual(cfg.simulation.base_resolution, "M15")
        self.assertEqual(cfg.simulation.context_resolutions, ["M5", "M15", "H1"])
        self.assertEqual(cfg.simulation.order_expiry_minutes, 180)
        self.assertEqual(cfg.costs.commission_per_lot, 7.0)
        self.assertEqual(cfg.account.leverage, 100.0)
        self.assertEqual([s.name for s in cfg.charts.specs], ["h1", "m5", "m15_ema", "m15_bb"])
        self.assertEqual(cfg.backtest.skip_candles, 6)

    def test_yaml_overrides_are_merged(self) -> None:
        content = textwrap.dedent(
            """
            simulation:
              order_expiry_minutes: 60
            costs:
              commission_per_lot: 3.5
            instruments:
              pip_sizes:
                EURUSD: 0.00001
            charts:
              specs:
                - name: h4
                  resolution: H4
                  indicators: [EMA10]
            backtest:
              symbol: gbpusd
              start_date: "2024-01-01"
              end_date: "2024-01-15"
              skip_candles: 4
              prompts:
                analysis_prompt: "Analyse the chart now"
            """
        )
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "config.yaml")
            with open(path, "w", encoding="utf-8") as fh:
                fh.write(content)
            cfg = load_config(path)

        self.assertEqual(cfg.simulation.order_expiry_minutes, 60)
        self.assertEqual(cfg.simulation.base_resolution, "M15")
        self.assertEqual(cfg.costs.commission_per_lot, 3.5)
        self.assertEqual(cfg.costs.swap_buy_per_lot_day, -2.0)
        self.assertEqual(cfg.instruments.pip_sizes, {"EURUSD": 0.00001})
        self.assertEqual(cfg.charts.specs[0].indicators, ["EMA10"])
        self.assertEqual(cfg.backtest.symbol, "GBPUSD")
        self.assertEqual(cfg.backtest.start_date, pd.Timestamp("2024-01-01", tz="UTC"))
        self.assertEqual(cfg.backtest.skip_candles, 4)
        self.assertEqual(cfg.backtest.prompts.analysis_prompt, "Analyse the chart now")
        self.assertEqual(cfg.backtest.prompts.extractor_prompt, "")


class TestMalformedConfig(unittest.TestCase):
    def test_malformed_yaml(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "config.yaml")
            with open(path, "w", encoding="utf-8") as fh:
                fh.write("simulation: [unclosed\n")
            with self.assertRaises(ConfigurationError):
                load_config(path)
            with self.assertLogs("aibacktest.app", level="ERROR"):
                self.assertEqual(main(["--config", path, "sessions"]), 2)

    def test_unknown_key_is_a_configuration_error(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "config.yaml")
            with open(path, "w", encoding="utf-8") as fh:
                fh.write("costs:\n  commision_per_lot: 3.5\n")
            with self.assertRaises(ConfigurationError):
                load_config(path)


class TestRequestValidation(unittest.TestCase):
    def test_valid_request(self) -> None:
        self.assertEqual(collect_request_errors(valid_request(), now=NOW), [])
        validate_request(valid_request(), now=NOW)

    def test_collects_every_violation(self) -> None:
        bad = valid_request(symbol="EUR", initial_balance=0.0, skip_candles=0, analysis_window_hours=200)
        with self.assertRaises(ConfigurationError) as ctx:
            validate_request(bad, now=NOW)
        self.assertEqual(len(ctx.exception.errors), 4)
        self.assertIn("Invalid symbol format", str(ctx.exception))

    def test_separated_symbol_is_rejected(self) -> None:
        errors = collect_request_errors(valid_request(symbol="EUR/USD"), now=NOW)
        self.assertEqual(errors, ["Invalid symbol format"])

    def test_yaml_symbol_is_normalised(self) -> None:
        cfg = config_from_dict({"backtest": {"symbol": "eur/usd", "start_date": "2024-01-01", "end_date": "2024-02-01"}})
        self.assertEqual(cfg.backtest.symbol, "EURUSD")
        self.assertNotIn("Invalid symbol format", collect_request_errors(cfg.backtest, now=NOW))

    def test_date_rules(self) -> None:
        reversed_range = valid_request(
            start_date=pd.Timestamp("2024-02-01", tz="UTC"), end_date=pd.Timestamp("2024-01-01", tz="UTC")
        )
        self.assertIn("Start date must be before end date", collect_request_errors(reversed_range, now=NOW))

        future = valid_request(end_date=pd.Timestamp("2024-07-01", tz="UTC"))
        self.assertIn("End date cannot be in the future", collect_request_errors(future, now=NOW))

        too_long = valid_request(start_date=pd.Timestamp("2023-01-01", tz="UTC"))
        self.assertIn("Date range cannot exceed 365 days", collect_request_errors(too_long, now=NOW))

        too_short = valid_request(end_date=pd.Timestamp("2024-01-01 12:00", tz="UTC"))
        self.assertIn("Date range must be at least 1 day", collect_request_errors(too_short, now=NOW))

    def test_prompts_are_required(self) -> None:
        errors = collect_request_errors(valid_request(prompts=PromptsConfig("short", "")), now=NOW)
        self.assertEqual(len(errors), 2)


if __name__ == '__main__':
    unittest.main()
