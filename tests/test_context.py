import os
import sys
import threading
import pandas as pd

CURRENT_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, os.pardir))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from aibacktest.analysis.context import MarketContextBuilder
from aibacktest.config.schema import ChartsConfig, ChartSpec, PromptsConfig, SimulationConfig
from aibacktest.errors import AnalysisError, ChartError, DataFetchError
from aibacktest.execution.models import Candle
from aibacktest.utils.timeutils import resolution_minutes

import unittest


END = pd.Timestamp("2024-01-02 12:00", tz="UTC")


class FakeProvider:
    """Serves flat candles for any window; optional per-resolution failures."""

    def __init__(self, fail=None, transient=0):
        self.fail = fail or {}
        self.transient = transient
        self.calls = []
        self._lock = threading.Lock()

    def fetch(self, symbol, resolution, start, end):
        with self._lock:
            self.calls.append(resolution)
            if self.transient > 0:
                self.transient -= 1
                raise ConnectionError("temporary")
        if resolution in self.fail:
            raise self.fail[resolution]
        step = pd.Timedelta(minutes=resolution_minutes(resolution))
        times = pd.date_range(start, end, freq=step)
        return [Candle(ts, 1.1, 1.101, 1.099, 1.1) for ts in times]


class FakeRenderer:
    def __init__(self, broken=()):
        self.broken = set(broken)
        self.rendered = []

    def render(self, symbol, candles, indicators=None, title=None):
        if title and title.split()[-1] in self.broken:
            raise ChartError("render failed")
        self.rendered.append((title, len(candles), tuple(indicators or ())))
        return b"png"


class TestMarketContextBuilder(unittest.TestCase):
    def test_builds_all_resolutions_and_charts(self) -> None:
        provider = FakeProvider()
        renderer = FakeRenderer()
        builder = MarketContextBuilder(provider, renderer)
        ctx = builder.build("EURUSD", END, 20, PromptsConfig("a" * 10, "b" * 10))

        self.assertEqual(set(ctx.candles), {"M5", "M15", "H1"})
        self.assertEqual(ctx.window.start, END - pd.Timedelta(hours=20))
        self.assertEqual(ctx.timestamp, END)
        self.assertEqual(len(ctx.candles["H1"]), 21)
        self.assertEqual(set(ctx.charts), {"h1", "m5", "m15_ema", "m15_bb"})
        self.assertEqual(ctx.prompts.analysis_prompt, "a" * 10)
        # charts reuse the fetched data instead of fetching again
        self.assertEqual(len(provider.calls), 3)

    def test_failed_resolution_fails_the_context(self) -> None:
        provider = FakeProvider(fail={"H1": DataFetchError("no H1")})
        builder = MarketContextBuilder(provider)
        with self.assertRaises(AnalysisError) as ctx:
            builder.build("EURUSD", END, 20)
        self.assertIn("H1", str(ctx.exception))

    def test_transient_errors_are_retried(self) -> None:
        provider = FakeProvider(transient=1)
        sleeps = []
        builder = MarketContextBuilder(
            provider, simulation=SimulationConfig(data_max_retries=2, data_retry_delay=0.5), sleep=sleeps.append
        )
        ctx = builder.build("EURUSD", END, 20)
        self.assertEqual(len(ctx.candles), 3)
        self.assertEqual(sleeps, [0.5])

    def test_chart_failures_are_best_effort(self) -> None:
        renderer = FakeRenderer(broken={"m15_bb"})
        builder = MarketContextBuilder(FakeProvider(), renderer)
        ctx = builder.build("EURUSD", END, 20)
        self.assertNotIn("m15_bb", ctx.charts)
        self.assertIn("m15_ema", ctx.charts)

    def test_chart_resolution_outside_context_is_fetched(self) -> None:
        provider = FakeProvider()
        charts = ChartsConfig(specs=[ChartSpec(name="h4", resolution="H4")])
        builder = MarketContextBuilder(provider, FakeRenderer(), charts=charts)
        ctx = builder.build("EURUSD", END, 20)
        self.assertIn("h4", ctx.charts)
        self.assertIn("H4", provider.calls)

    def test_charts_disabled(self) -> None:
        builder = MarketContextBuilder(FakeProvider(), FakeRenderer(), charts=ChartsConfig(enabled=False))
        self.assertEqual(builder.build("EURUSD", END, 20).charts, {})


if __name__ == '__main__':
    unittest.main()
