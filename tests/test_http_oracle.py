import json
import os
import sys
from unittest import mock
import pandas as pd
import requests

CURRENT_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, os.pardir))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from aibacktest.analysis.context import AnalysisContext
from aibacktest.analysis.http_oracle import HttpDecisionOracle, extract_json
from aibacktest.config.schema import OracleConfig, PromptsConfig
from aibacktest.errors import AnalysisError
from aibacktest.execution.models import Candle
from aibacktest.utils.timeutils import analysis_window

import unittest


END = pd.Timestamp("2024-01-02 12:00", tz="UTC")


def context() -> AnalysisContext:
    candles = [
        Candle(END - pd.Timedelta(minutes=15 * i), 1.1, 1.101, 1.099, 1.1005, tick_volume=12)
        for i in reversed(range(4))
    ]
    return AnalysisContext(
        symbol="EURUSD",
        timestamp=END,
        window=analysis_window(END, 20),
        candles={"M15": candles},
        charts={"h1": b"\x89PNG fake"},
        prompts=PromptsConfig("Analyse this market", "Extract a JSON decision"),
    )


def response(text: str) -> mock.Mock:
    resp = mock.Mock()
    resp.raise_for_status.return_value = None
    resp.json.return_value = {"candidates": [{"content": {"parts": [{"text": text}]}}]}
    return resp


class TestHttpDecisionOracle(unittest.TestCase):
    def setUp(self) -> None:
        self.config = OracleConfig(
            analysis_url="https://oracle.test/analyse",
            extractor_url="https://oracle.test/extract",
            api_key="secret",
            max_retries=2,
            retry_delay=0.0,
        )
        self.http = mock.Mock(spec=requests.Session)
        self.sleeps = []
        self.oracle = HttpDecisionOracle(self.config, session=self.http, sleep=self.sleeps.append)

    def test_two_stage_decision(self) -> None:
        decision = {"decision": "TRADE", "tradeParams": {"side": "BUY", "entryPrice": 1.101}}
        self.http.post.side_effect = [
            response("Bullish structure, breakout likely."),
            response("```json\n" + json.dumps(decision) + "\n```"),
        ]
        result = self.oracle.decide(context())

        self.assertEqual(result["decision"], "TRADE")
        self.assertEqual(result["reasoning"], "Bullish structure, breakout likely.")
        self.assertEqual(self.http.post.call_count, 2)

        first_url = self.http.post.call_args_list[0].args[0]
        first_payload = self.http.post.call_args_list[0].kwargs["json"]
        self.assertEqual(first_url, "https://oracle.test/analyse")
        parts = first_payload["contents"][0]["parts"]
        self.assertEqual(parts[0]["text"], "Analyse this market")
        self.assertIn("[M15]", parts[1]["text"])
        self.assertEqual(parts[-1]["inline_data"]["mime_type"], "image/png")
        self.assertEqual(self.http.post.call_args_list[0].kwargs["headers"]["x-goog-api-key"], "secret")

        second_url = self.http.post.call_args_list[1].args[0]
        second_parts = self.http.post.call_args_list[1].kwargs["json"]["contents"][0]["parts"]
        self.assertEqual(second_url, "https://oracle.test/extract")
        self.assertEqual(second_parts[1]["text"], "Bullish structure, breakout likely.")

    def test_retries_then_succeeds(self) -> None:
        self.http.post.side_effect = [
            requests.ConnectionError("down"),
            response("narrative"),
            response('{"decision": "NO_TRADE"}'),
        ]
        result = self.oracle.decide(context())
        self.assertEqual(result["decision"], "NO_TRADE")
        self.assertEqual(len(self.sleeps), 1)

    def test_exhausted_retries_raise_analysis_error(self) -> None:
        self.http.post.side_effect = requests.Timeout("slow")
        with self.assertRaises(AnalysisError):
            self.oracle.decide(context())
        self.assertEqual(self.http.post.call_count, 3)

    def test_unexpected_shape(self) -> None:
        resp = mock.Mock()
        resp.raise_for_status.return_value = None
        resp.json.return_value = {"error": "quota"}
        self.http.post.return_value = resp
        with self.assertRaises(AnalysisError):
            self.oracle.decide(context())

    def test_missing_url(self) -> None:
        with self.assertRaises(AnalysisError):
            HttpDecisionOracle(OracleConfig())


class TestExtractJson(unittest.TestCase):
    def test_plain_and_embedded(self) -> None:
        self.assertEqual(extract_json('{"decision": "NO_TRADE"}'), {"decision": "NO_TRADE"})
        self.assertEqual(extract_json('Answer: {"decision": "TRADE"} done'), {"decision": "TRADE"})

    def test_invalid(self) -> None:
        with self.assertRaises(AnalysisError):
            extract_json("no json here")
        with self.assertRaises(AnalysisError):
            extract_json("{not json}")


if __name__ == '__main__':
    unittest.main()
