"""
Market context assembly for decision requests.

For every decision the oracle receives the trailing analysis window of
market data at several resolutions plus rendered charts.  The
resolutions are fetched concurrently and all results are joined before
the context is returned, so the replay loop itself stays sequential.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
import logging
from typing import Dict, List, Optional
import pandas as pd

from ..config.schema import ChartsConfig, PromptsConfig, SimulationConfig
from ..errors import AnalysisError
from ..execution.models import Candle
from ..utils.retry import call_with_retry
from ..utils.timeutils import TimeWindow, analysis_window, normalize_resolution

logger = logging.getLogger(__name__)

COVERAGE_TOLERANCE = pd.Timedelta(hours=1)


@dataclass
class AnalysisContext:
    """Everything the decision oracle is given for one decision."""
    symbol: str
    timestamp: pd.Timestamp
    window: TimeWindow
    candles: Dict[str, List[Candle]]
    charts: Dict[str, bytes] = field(default_factory=dict)
    prompts: PromptsConfig = field(default_factory=PromptsConfig)


class MarketContextBuilder:
    """Build `AnalysisContext` objects from a data provider and a chart renderer."""

    def __init__(
        self,
        market_data,
        chart_renderer=None,
        simulation: Optional[SimulationConfig] = None,
        charts: Optional[ChartsConfig] = None,
        sleep=None,
    ) -> None:
        self.market_data = market_data
        self.chart_renderer = chart_renderer
        self.simulation = simulation or SimulationConfig()
        self.charts = charts or ChartsConfig()
        self.resolutions = [normalize_resolution(r) for r in self.simulation.context_resolutions]
        self._sleep = sleep

    def _fetch(self, symbol: str, resolution: str, window: TimeWindow) -> List[Candle]:
        kwargs = {}
        if self._sleep is not None:
            kwargs['sleep'] = self._sleep
        return call_with_retry(
            lambda: self.market_data.fetch(symbol, resolution, window.start, window.end),
            max_retries=self.simulation.data_max_retries,
            delay=self.simulation.data_retry_delay,
            retry_on=(OSError,),
            description=f"{symbol} {resolution} data request",
            **kwargs,
        )

    def fetch_all(self, symbol: str, window: TimeWindow) -> Dict[str, List[Candle]]:
        """Fetch every context resolution concurrently and join the results."""
        with ThreadPoolExecutor(max_workers=max(1, len(self.resolutions))) as pool:
            futures = {res: pool.submit(self._fetch, symbol, res, window) for res in self.resolutions}
            results: Dict[str, List[Candle]] = {}
            errors: List[str] = []
            for res, future in futures.items():
                try:
                    results[res] = future.result()
                except Exception as exc:
                    errors.append(f"{res}: {exc}")
        if errors:
            raise AnalysisError(f"Failed to fetch synchronized OHLCV data ({'; '.join(errors)})")

        for res, candles in results.items():
            if not candles:
                raise AnalysisError(f"No {res} data in analysis window for {symbol}")
            if (candles[0].timestamp > window.start + COVERAGE_TOLERANCE
                    or candles[-1].timestamp < window.end - COVERAGE_TOLERANCE):
                logger.warning(
                    "Time range coverage issue for %s %s: requested %s..%s, got %s..%s",
                    symbol, res, window.start.isoformat(), window.end.isoformat(),
                    candles[0].timestamp.isoformat(), candles[-1].timestamp.isoformat(),
                )
        return results

    def render_charts(self, symbol: str, window: TimeWindow, candles: Dict[str, List[Candle]]) -> Dict[str, bytes]:
        """Render the configured charts; failed charts are logged and left out."""
        if self.chart_renderer is None or not self.charts.enabled:
            return {}
        images: Dict[str, bytes] = {}
        for spec in self.charts.specs:
            try:
                resolution = normalize_resolution(spec.resolution)
                data = candles.get(resolution)
                if data is None:
                    data = self._fetch(symbol, resolution, window)
                images[spec.name] = self.chart_renderer.render(
                    symbol, data, spec.indicators, title=f"{symbol} {spec.name}"
                )
            except Exception as exc:
                logger.warning("Chart %s for %s failed, continuing without it: %s", spec.name, symbol, exc)
        return images

    def build(
        self,
        symbol: str,
        end_time: pd.Timestamp,
        window_hours: int,
        prompts: Optional[PromptsConfig] = None,
    ) -> AnalysisContext:
        window = analysis_window(end_time, window_hours)
        candles = self.fetch_all(symbol, window)
        charts = self.render_charts(symbol, window, candles)
        return AnalysisContext(
            symbol=symbol,
            timestamp=window.end,
            window=window,
            candles=candles,
            charts=charts,
            prompts=prompts or PromptsConfig(),
        )
