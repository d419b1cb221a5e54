import os
import sys
from types import SimpleNamespace
import pandas as pd

CURRENT_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, os.pardir))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from aibacktest.config.schema import BacktestRequest, Config, PromptsConfig
from aibacktest.errors import AnalysisError, ConfigurationError, DataFetchError, PersistenceError
from aibacktest.execution.backtest_exec import SimulationEngine
from aibacktest.execution.models import Candle, ExitReason, TradeOutcome
from aibacktest.session.models import SessionStatus
from aibacktest.utils.ids import SequentialIdGenerator
from aibacktest.utils.persistence import InMemorySessionRepository

import unittest


NOW = pd.Timestamp("2024-06-01", tz="UTC")
START = pd.Timestamp("2024-01-01", tz="UTC")


def flat_candles(n: int):
    return [
        Candle(START + pd.Timedelta(minutes=15 * i), 1.1000, 1.1005, 1.0995, 1.1000)
        for i in range(n)
    ]


def make_request(**overrides) -> BacktestRequest:
    params = dict(
        symbol="EURUSD",
        start_date=START,
        end_date=START + pd.Timedelta(days=11),
        initial_balance=10_000.0,
        skip_candles=6,
        analysis_window_hours=20,
        prompts=PromptsConfig("Analyse the market please", "Extract the decision please"),
    )
    params.update(overrides)
    return BacktestRequest(**params)


class FakeMarketData:
    def __init__(self, candles=None, error=None):
        self.candles = candles or []
        self.error = error

    def fetch(self, symbol, resolution, start, end):
        if self.error is not None:
            raise self.error
        return list(self.candles)


class FakeContextBuilder:
    def build(self, symbol, end_time, window_hours, prompts=None):
        return SimpleNamespace(symbol=symbol, timestamp=end_time, window_hours=window_hours)


class ScriptedOracle:
    """Returns scripted responses, then NO_TRADE.  Exceptions in the script are raised."""

    def __init__(self, script=None, on_call=None):
        self.script = list(script or [])
        self.calls = []
        self.on_call = on_call

    def decide(self, context):
        self.calls.append(context.timestamp)
        if self.on_call is not None:
            self.on_call(len(self.calls))
        item = self.script.pop(0) if self.script else {"decision": "NO_TRADE"}
        if isinstance(item, Exception):
            raise item
        return item


class BrokenRepository(InMemorySessionRepository):
    def save(self, session):
        raise PersistenceError("disk full")


class Flag:
    def __init__(self):
        self._set = False

    def set(self):
        self._set = True

    def is_set(self):
        return self._set


def engine(candles, oracle, repository=None, config=None, market_data=None):
    return SimulationEngine(
        config=config or Config(),
        market_data=market_data or FakeMarketData(candles),
        oracle=oracle,
        repository=repository if repository is not None else InMemorySessionRepository(),
        context_builder=FakeContextBuilder(),
        id_generator=SequentialIdGenerator(),
        clock=lambda: NOW,
    )


class TestSkipCandles(unittest.TestCase):
    def test_no_trade_skips_six_candles(self) -> None:
        candles = flat_candles(1000)
        oracle = ScriptedOracle()
        result = engine(candles, oracle).run(make_request())

        self.assertTrue(result.success)
        self.assertIs(result.status, SessionStatus.COMPLETED)
        self.assertEqual(oracle.calls[0], candles[0].timestamp)
        self.assertEqual(oracle.calls[1], candles[6].timestamp)
        # no oracle call for the five candles in between
        called = set(oracle.calls)
        for i in range(1, 6):
            self.assertNotIn(candles[i].timestamp, called)
        self.assertEqual(len(oracle.calls), 167)
        self.assertEqual(len(result.session.analysis_logs), 167)

    def test_failed_analysis_advances_one_candle(self) -> None:
        candles = flat_candles(50)
        oracle = ScriptedOracle([AnalysisError("oracle down")])
        result = engine(candles, oracle).run(make_request())

        self.assertTrue(result.success)
        self.assertEqual(oracle.calls[:3], [candles[0].timestamp, candles[1].timestamp, candles[7].timestamp])
        self.assertEqual(len(result.session.error_logs), 1)
        self.assertIn("AI analysis failed", result.session.error_logs[0])
        self.assertEqual(result.session.performance_summary.ai_analysis_failures, 1)

    def test_unreadable_decision_counts_as_failure(self) -> None:
        candles = flat_candles(20)
        oracle = ScriptedOracle([{"verdict": "???"}])
        result = engine(candles, oracle).run(make_request())
        self.assertEqual(oracle.calls[1], candles[1].timestamp)
        self.assertEqual(len(result.session.error_logs), 1)

    def test_unexpected_error_is_logged_and_loop_continues(self) -> None:
        candles = flat_candles(20)
        oracle = ScriptedOracle([RuntimeError("bug in oracle")])
        result = engine(candles, oracle).run(make_request())
        self.assertTrue(result.success)
        self.assertEqual(oracle.calls[1], candles[1].timestamp)
        self.assertIn("Error processing candle", result.session.error_logs[0])


class TestTrading(unittest.TestCase):
    def _candles(self):
        candles = flat_candles(40)
        c = candles[5]
        candles[5] = Candle(c.timestamp, 1.1000, 1.1020, 1.0995, 1.1015)
        return candles

    def test_trade_decision_places_stop_order(self) -> None:
        candles = self._candles()
        trade = {
            "decision": "TRADE",
            "tradeParams": {"side": "BUY", "entryPrice": 1.1003, "stopLoss": 1.0990, "takeProfit": 1.1010},
        }
        oracle = ScriptedOracle([trade])
        repo = InMemorySessionRepository()
        result = engine(candles, oracle, repository=repo).run(make_request())
        session = result.session

        self.assertEqual(len(session.trades), 1)
        closed = session.trades[0]
        self.assertIs(closed.exit_reason, ExitReason.TAKE_PROFIT)
        self.assertIs(closed.outcome, TradeOutcome.WIN)
        self.assertEqual(closed.lot_size, 0.01)
        self.assertEqual(closed.opened_at, candles[1].timestamp)
        self.assertEqual(closed.closed_at, candles[5].timestamp)
        self.assertEqual(len(session.equity_curve), 2)
        # no decisions while the position is open, next one right after it closes
        self.assertEqual(oracle.calls[:2], [candles[0].timestamp, candles[5].timestamp])
        self.assertEqual(session.analysis_logs[0], closed.analysis_id)
        self.assertIn(closed.analysis_id, repo.analysis[session.session_id])
        archived = repo.analysis[session.session_id][closed.analysis_id]
        self.assertEqual(archived['candle']['time'], candles[0].timestamp.isoformat())
        self.assertEqual(archived['order']['kind'], 'BUY_STOP')
        self.assertEqual(archived['order']['price'], 1.1003)
        self.assertEqual(archived['order']['status'], 'PENDING')
        self.assertIsNotNone(session.performance_summary.sharpe_ratio)

        stored = repo.load(session.session_id)
        self.assertIs(stored.status, SessionStatus.COMPLETED)
        self.assertEqual(stored.trades, session.trades)

    def test_checkpoint_after_each_trade(self) -> None:
        config = Config()
        config.simulation.checkpoint_trades = True
        trade = {
            "decision": "TRADE",
            "tradeParams": {"side": "BUY", "entryPrice": 1.1003, "stopLoss": 1.0990, "takeProfit": 1.1010},
        }
        repo = InMemorySessionRepository()
        engine(self._candles(), ScriptedOracle([trade]), repository=repo, config=config).run(make_request())
        # one checkpoint plus the final snapshot
        self.assertEqual(repo.save_count, 2)

    def test_degraded_trade_is_treated_as_no_trade(self) -> None:
        candles = flat_candles(30)
        oracle = ScriptedOracle([{"decision": "TRADE", "tradeParams": {"side": "BUY"}}])
        result = engine(candles, oracle).run(make_request())
        self.assertEqual(oracle.calls[1], candles[6].timestamp)
        self.assertEqual(result.session.trades, [])


class TestRunOutcomes(unittest.TestCase):
    def test_invalid_request_fails_before_session(self) -> None:
        repo = InMemorySessionRepository()
        with self.assertRaises(ConfigurationError):
            engine(flat_candles(10), ScriptedOracle(), repository=repo).run(make_request(symbol="EUR"))
        self.assertEqual(repo.list(), [])

    def test_separated_symbol_fails_before_session(self) -> None:
        repo = InMemorySessionRepository()
        market = FakeMarketData(error=AssertionError("market data must not be touched"))
        sim = engine(flat_candles(10), ScriptedOracle(), repository=repo, market_data=market)
        with self.assertRaises(ConfigurationError):
            sim.run(make_request(symbol="EUR/USD"))
        self.assertEqual(repo.list(), [])
        self.assertEqual(repo.save_count, 0)

    def test_data_failure_fails_run(self) -> None:
        repo = InMemorySessionRepository()
        market = FakeMarketData(error=DataFetchError("no M15 data"))
        result = engine([], ScriptedOracle(), repository=repo, market_data=market).run(make_request())
        self.assertFalse(result.success)
        self.assertIs(result.status, SessionStatus.FAILED)
        self.assertEqual(result.error, "no M15 data")
        stored = repo.load(result.session_id)
        self.assertIs(stored.status, SessionStatus.FAILED)
        self.assertTrue(stored.error_logs[-1].endswith("Session failed: no M15 data"))

    def test_empty_candles_fail_run(self) -> None:
        result = engine([], ScriptedOracle()).run(make_request())
        self.assertFalse(result.success)

    def test_persistence_failure_on_finalize(self) -> None:
        result = engine(flat_candles(10), ScriptedOracle(), repository=BrokenRepository()).run(make_request())
        self.assertFalse(result.success)
        self.assertIs(result.session.status, SessionStatus.FAILED)
        self.assertIn("disk full", result.error)

    def test_cancellation_between_candles(self) -> None:
        flag = Flag()
        oracle = ScriptedOracle(on_call=lambda n: flag.set() if n == 3 else None)
        repo = InMemorySessionRepository()
        sim = engine(flat_candles(100), oracle, repository=repo)
        session = sim.start_session(make_request())
        result = sim.execute(session, cancel_event=flag)

        self.assertTrue(result.success)
        self.assertIs(result.status, SessionStatus.CANCELLED)
        self.assertEqual(len(oracle.calls), 3)
        self.assertIs(repo.load(session.session_id).status, SessionStatus.CANCELLED)

    def test_progress_callback(self) -> None:
        snapshots = []
        sim = engine(flat_candles(30), ScriptedOracle())
        session = sim.start_session(make_request())
        sim.execute(session, on_progress=snapshots.append)
        self.assertEqual(snapshots[-1].cursor, 30)
        self.assertEqual(snapshots[-1].total_candles, 30)
        self.assertEqual(snapshots[-1].percent, 100.0)
        self.assertEqual(snapshots[-1].analyses, 5)


if __name__ == '__main__':
    unittest.main()
