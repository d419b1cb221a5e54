"""
HTTP decision oracle.

Decisions are produced in two stages against a generative-model style
HTTP API:

1. the analysis stage receives the analysis prompt, a text summary of
   the OHLCV context and the chart images, and answers with a free-form
   market narrative;
2. the extractor stage receives the extractor prompt and that narrative
   and answers with the JSON decision object.

Both requests go through `call_with_retry`; once retries are exhausted
the failure surfaces as `AnalysisError`.
"""

from __future__ import annotations

import base64
import json
import logging
import re
from typing import Any, Dict, List, Mapping, Optional

import requests

from ..config.schema import OracleConfig
from ..errors import AnalysisError
from ..utils.retry import call_with_retry
from .context import AnalysisContext

logger = logging.getLogger(__name__)

_JSON_BLOCK_RE = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)

SUMMARY_TAIL = 50


def summarize_candles(context: AnalysisContext, tail: int = SUMMARY_TAIL) -> str:
    """Render the trailing bars of each resolution as compact CSV text."""
    lines: List[str] = [
        f"Symbol: {context.symbol}",
        f"Analysis time (UTC): {context.timestamp.isoformat()}",
        f"Window: {context.window.start.isoformat()} to {context.window.end.isoformat()}",
    ]
    for resolution, candles in context.candles.items():
        lines.append("")
        lines.append(f"[{resolution}] last {min(tail, len(candles))} of {len(candles)} bars")
        lines.append("time,open,high,low,close,volume")
        for c in candles[-tail:]:
            lines.append(
                f"{c.timestamp.strftime('%Y-%m-%d %H:%M')},{c.open:.5f},{c.high:.5f},"
                f"{c.low:.5f},{c.close:.5f},{c.tick_volume}"
            )
    return "\n".join(lines)


def extract_json(text: str) -> Dict[str, Any]:
    """Pull the first JSON object out of a model answer."""
    match = _JSON_BLOCK_RE.search(text)
    candidate = match.group(1) if match else None
    if candidate is None:
        start, end = text.find("{"), text.rfind("}")
        if start == -1 or end <= start:
            raise AnalysisError("Extractor answer contains no JSON object")
        candidate = text[start:end + 1]
    try:
        value = json.loads(candidate)
    except json.JSONDecodeError as exc:
        raise AnalysisError(f"Extractor answer is not valid JSON: {exc}") from exc
    if not isinstance(value, dict):
        raise AnalysisError("Extractor answer is not a JSON object")
    return value


def _response_text(body: Mapping[str, Any]) -> str:
    try:
        parts = body['candidates'][0]['content']['parts']
    except (KeyError, IndexError, TypeError) as exc:
        raise AnalysisError(f"Unexpected analysis response shape: {exc}") from exc
    text = "".join(p.get('text', '') for p in parts if isinstance(p, Mapping))
    if not text.strip():
        raise AnalysisError("Analysis response is empty")
    return text


class HttpDecisionOracle:
    """Two-stage oracle backed by a `requests.Session`."""

    def __init__(self, config: OracleConfig, session: Optional[requests.Session] = None, sleep=None) -> None:
        if not config.analysis_url:
            raise AnalysisError("oracle.analysis_url is not configured")
        self.config = config
        self.http = session or requests.Session()
        self._sleep = sleep

    def _payload(self, prompt: str, text: str, images: Mapping[str, bytes] = None) -> Dict[str, Any]:
        parts: List[Dict[str, Any]] = [{'text': prompt}, {'text': text}]
        for name, png in (images or {}).items():
            parts.append({'text': f"Chart: {name}"})
            parts.append({'inline_data': {'mime_type': 'image/png', 'data': base64.b64encode(png).decode('ascii')}})
        return {
            'contents': [{'role': 'user', 'parts': parts}],
            'generationConfig': {'temperature': self.config.temperature},
        }

    def _post(self, url: str, payload: Dict[str, Any], stage: str) -> str:
        headers = {'Content-Type': 'application/json'}
        if self.config.api_key:
            headers['x-goog-api-key'] = self.config.api_key

        def send() -> Dict[str, Any]:
            resp = self.http.post(url, json=payload, headers=headers, timeout=self.config.timeout)
            resp.raise_for_status()
            return resp.json()

        kwargs = {}
        if self._sleep is not None:
            kwargs['sleep'] = self._sleep
        try:
            body = call_with_retry(
                send,
                max_retries=self.config.max_retries,
                delay=self.config.retry_delay,
                retry_on=(requests.RequestException, ValueError),
                description=f"{stage} request",
                **kwargs,
            )
        except (requests.RequestException, ValueError) as exc:
            raise AnalysisError(f"{stage} request failed: {exc}") from exc
        return _response_text(body)

    def analyse(self, context: AnalysisContext) -> str:
        prompt = context.prompts.analysis_prompt
        return self._post(self.config.analysis_url, self._payload(prompt, summarize_candles(context), context.charts), "analysis")

    def extract(self, context: AnalysisContext, narrative: str) -> Dict[str, Any]:
        url = self.config.extractor_url or self.config.analysis_url
        prompt = context.prompts.extractor_prompt
        return extract_json(self._post(url, self._payload(prompt, narrative), "extraction"))

    def decide(self, context: AnalysisContext) -> Mapping[str, Any]:
        narrative = self.analyse(context)
        logger.debug("Analysis narrative for %s at %s: %s", context.symbol, context.timestamp, narrative[:200])
        decision = self.extract(context, narrative)
        decision.setdefault('reasoning', narrative)
        return decision
