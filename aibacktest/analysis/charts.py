"""
Chart rendering for the decision oracle.

Charts are rendered locally with matplotlib as PNG images: a simple
candlestick plot with optional indicator overlays.  Supported
indicator codes are ``EMA<n>`` (exponential moving average of the
close) and ``BB<n>`` (Bollinger bands, n periods, two standard
deviations).  Rendering is best effort; failures surface as
`ChartError` and the caller decides whether to carry on without the
image.
"""

from __future__ import annotations

import io
import re
from typing import Dict, List, Sequence
import pandas as pd
import matplotlib

# Use non‑interactive backend for environments without display
matplotlib.use("Agg")
import matplotlib.pyplot as plt

from ..config.schema import ChartsConfig
from ..errors import ChartError
from ..execution.models import Candle


_INDICATOR_RE = re.compile(r"^(EMA|BB)(\d+)$")


def candles_to_frame(candles: Sequence[Candle]) -> pd.DataFrame:
    return pd.DataFrame(
        {
            'open': [c.open for c in candles],
            'high': [c.high for c in candles],
            'low': [c.low for c in candles],
            'close': [c.close for c in candles],
        },
        index=pd.DatetimeIndex([c.timestamp for c in candles]),
    )


def parse_indicator(code: str) -> tuple:
    match = _INDICATOR_RE.match(code.strip().upper())
    if not match:
        raise ChartError(f"Unsupported indicator: {code}")
    return match.group(1), int(match.group(2))


def indicator_series(df: pd.DataFrame, code: str) -> Dict[str, pd.Series]:
    """Compute the overlay lines for one indicator code."""
    kind, period = parse_indicator(code)
    close = df['close']
    if kind == "EMA":
        return {f"EMA{period}": close.ewm(span=period, adjust=False).mean()}
    middle = close.rolling(period).mean()
    std = close.rolling(period).std(ddof=0)
    return {
        f"BB{period} upper": middle + 2 * std,
        f"BB{period} mid": middle,
        f"BB{period} lower": middle - 2 * std,
    }


class ChartRenderer:
    """Render candlestick charts to PNG bytes."""

    def __init__(self, config: ChartsConfig = None) -> None:
        self.config = config or ChartsConfig()

    def render(self, symbol: str, candles: Sequence[Candle], indicators: List[str] = None, title: str = None) -> bytes:
        if not candles:
            raise ChartError(f"No candles to chart for {symbol}")
        df = candles_to_frame(candles)
        overlays: Dict[str, pd.Series] = {}
        for code in indicators or []:
            overlays.update(indicator_series(df, code))

        fig, ax = plt.subplots(figsize=(self.config.width, self.config.height))
        try:
            x = range(len(df))
            up = df['close'] >= df['open']
            colors = ['tab:green' if flag else 'tab:red' for flag in up]
            ax.vlines(x, df['low'], df['high'], colors=colors, linewidth=0.8)
            bottoms = df[['open', 'close']].min(axis=1)
            heights = (df['close'] - df['open']).abs()
            ax.bar(x, heights, bottom=bottoms, color=colors, width=0.6)
            for name, series in overlays.items():
                ax.plot(x, series.values, linewidth=1.0, label=name)
            if overlays:
                ax.legend(loc='upper left', fontsize='small')

            step = max(1, len(df) // 8)
            ticks = list(x)[::step]
            ax.set_xticks(ticks)
            ax.set_xticklabels([df.index[i].strftime('%m-%d %H:%M') for i in ticks], rotation=30, fontsize='small')
            ax.set_title(title or symbol)
            ax.set_ylabel('Price')
            fig.tight_layout()

            buf = io.BytesIO()
            fig.savefig(buf, format='png', dpi=self.config.dpi)
            return buf.getvalue()
        finally:
            plt.close(fig)
