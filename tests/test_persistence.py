import json
import math
import os
import sys
import tempfile
import pandas as pd

CURRENT_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, os.pardir))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from aibacktest.config.schema import BacktestRequest, PromptsConfig
from aibacktest.errors import PersistenceError
from aibacktest.execution.models import ExitReason, Side, Trade, TradeOutcome
from aibacktest.reporting.report import generate_backtest_report
from aibacktest.session.ledger import add_trade, advanced_metrics, complete_session, create_session
from aibacktest.utils.persistence import InMemorySessionRepository, JsonSessionRepository

import unittest


START = pd.Timestamp("2024-01-01", tz="UTC")


def completed_session(session_id: str = "session_1", created: str = "2024-03-01"):
    req = BacktestRequest(
        symbol="EURUSD",
        start_date=START,
        end_date=START + pd.Timedelta(days=10),
        prompts=PromptsConfig("Analyse the market please", "Extract the decision please"),
    )
    session = create_session(req, session_id, pd.Timestamp(created, tz="UTC"))
    opened = START + pd.Timedelta(hours=3)
    add_trade(session, Trade(
        trade_id="trade_1", session_id=session_id, side=Side.SELL,
        entry_price=1.1, exit_price=1.095, stop_loss=1.105, take_profit=1.095, lot_size=0.1,
        opened_at=opened, closed_at=opened + pd.Timedelta(hours=2), duration_minutes=120,
        pnl=5.0, pnl_percent=0.043, outcome=TradeOutcome.WIN, exit_reason=ExitReason.TAKE_PROFIT,
        commission=0.7, swap=0.0, net_pnl=4.3, analysis_id="analysis_1",
    ))
    complete_session(session, pd.Timestamp(created, tz="UTC") + pd.Timedelta(minutes=5))
    advanced_metrics(session)
    return session


class TestJsonSessionRepository(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.repo = JsonSessionRepository(self.tmp.name)

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def test_round_trip(self) -> None:
        session = completed_session()
        self.repo.save(session)
        loaded = self.repo.load("session_1")
        self.assertEqual(loaded.trades, session.trades)
        self.assertEqual(loaded.equity_curve, session.equity_curve)
        self.assertEqual(loaded.performance_summary, session.performance_summary)
        self.assertEqual(loaded.metadata, session.metadata)
        self.assertTrue(math.isinf(loaded.performance_summary.profit_factor))

    def test_missing_session(self) -> None:
        self.assertIsNone(self.repo.load("nope"))
        self.assertFalse(self.repo.delete("nope"))

    def test_list_and_delete(self) -> None:
        self.repo.save(completed_session("session_a", "2024-03-01"))
        self.repo.save(completed_session("session_b", "2024-03-02"))
        self.repo.save_analysis("session_a", "analysis_1", {"decision": "NO_TRADE"})
        self.assertEqual([s.session_id for s in self.repo.list()], ["session_b", "session_a"])

        self.assertTrue(self.repo.delete("session_a"))
        self.assertEqual([s.session_id for s in self.repo.list()], ["session_b"])
        self.assertFalse(os.path.exists(os.path.join(self.tmp.name, "analysis", "session_a")))

    def test_last_write_wins(self) -> None:
        session = completed_session()
        self.repo.save(session)
        session.error_logs.append("later")
        self.repo.save(session)
        self.assertEqual(self.repo.load("session_1").error_logs, ["later"])

    def test_corrupt_file(self) -> None:
        os.makedirs(os.path.join(self.tmp.name, "sessions"))
        with open(os.path.join(self.tmp.name, "sessions", "bad.json"), "w", encoding="utf-8") as fh:
            fh.write("{broken")
        with self.assertRaises(PersistenceError):
            self.repo.load("bad")
        self.assertEqual(self.repo.list(), [])

    def test_rejects_path_like_ids(self) -> None:
        with self.assertRaises(PersistenceError):
            self.repo.load("../etc/passwd")


class TestInMemoryRepository(unittest.TestCase):
    def test_stores_copies(self) -> None:
        repo = InMemorySessionRepository()
        session = completed_session()
        repo.save(session)
        session.error_logs.append("mutated after save")
        self.assertEqual(repo.load("session_1").error_logs, [])
        self.assertTrue(repo.delete("session_1"))
        self.assertIsNone(repo.load("session_1"))


class TestReport(unittest.TestCase):
    def test_report_files(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            paths = generate_backtest_report(completed_session(), tmp)
            for path in paths.values():
                self.assertTrue(os.path.exists(path), msg=path)
            trades = pd.read_csv(paths['trades'])
            self.assertEqual(len(trades), 1)
            equity = pd.read_csv(paths['equity_curve'])
            self.assertEqual(len(equity), 2)
            with open(paths['summary'], encoding='utf-8') as fh:
                summary = json.load(fh)
            self.assertEqual(summary['trade_metrics']['total_trades'], 1)
            self.assertIn('total_commission', summary['trade_metrics'])


if __name__ == '__main__':
    unittest.main()
