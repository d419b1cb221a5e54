"""
Report generation utilities.

This module turns a backtest session into human‑readable artefacts:
CSV files of trades and equity curve, a JSON summary of session
metadata and performance metrics and a PNG chart of the balance curve.
"""

from __future__ import annotations

import os
import json
from typing import Dict
import pandas as pd
import matplotlib

# Use non‑interactive backend for environments without display
matplotlib.use("Agg")
import matplotlib.pyplot as plt

from ..session.models import BacktestSession
from .metrics import compute_trade_metrics, trades_to_frame


def generate_backtest_report(session: BacktestSession, out_dir: str = "results") -> Dict[str, str]:
    """Generate report files for a backtest session.

    Creates the output directory if it does not exist and writes the
    following files:

    - `trades.csv` – detailed list of trades
    - `equity_curve.csv` – balance and drawdown after each trade
    - `summary.json` – session metadata, performance summary and trade
      metrics including commission and swap totals
    - `equity_curve.png` – line chart of the balance curve

    Returns
    -------
    dict
        Mapping of artefact name to the path written.
    """
    os.makedirs(out_dir, exist_ok=True)
    paths = {
        'trades': os.path.join(out_dir, 'trades.csv'),
        'equity_curve': os.path.join(out_dir, 'equity_curve.csv'),
        'summary': os.path.join(out_dir, 'summary.json'),
        'chart': os.path.join(out_dir, 'equity_curve.png'),
    }

    # Trades CSV
    trades_to_frame(session.trades).to_csv(paths['trades'], index=False)

    # Equity curve CSV
    df_eq = pd.DataFrame(
        [p.to_dict() for p in session.equity_curve],
        columns=['timestamp', 'balance', 'equity', 'drawdown', 'drawdown_percent'],
    )
    df_eq.to_csv(paths['equity_curve'], index=False)

    # Summary JSON
    summary = {
        'metadata': session.metadata.to_dict(),
        'performance_summary': session.performance_summary.to_dict(),
        'trade_metrics': compute_trade_metrics(session.trades).to_dict(),
        'error_logs': list(session.error_logs),
    }
    with open(paths['summary'], 'w', encoding='utf-8') as fh:
        json.dump(summary, fh, indent=2, ensure_ascii=False)

    # Balance curve plot
    fig, ax = plt.subplots(figsize=(10, 4))
    try:
        if not df_eq.empty:
            ax.step(pd.to_datetime(df_eq['timestamp']), df_eq['balance'], where='post', linewidth=1.5)
            ax.set_title(f"{session.metadata.symbol} balance ({session.session_id})")
            ax.set_xlabel('Time')
            ax.set_ylabel('Balance')
            fig.autofmt_xdate()
        fig.tight_layout()
        fig.savefig(paths['chart'])
    finally:
        plt.close(fig)
    return paths
