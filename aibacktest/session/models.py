"""
Backtest session records.

A `BacktestSession` is the unit of persistence: run metadata, the
performance summary, the trade list, the equity curve and two
append-only logs (analysis ids and error messages).  `to_dict()` and
`from_dict()` give a lossless JSON-compatible snapshot.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any, Dict, List, Optional
import pandas as pd

from ..config.schema import PromptsConfig
from ..execution.models import Trade
from ..utils.timeutils import iso, parse_iso


class SessionStatus(str, Enum):
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self is not SessionStatus.RUNNING


@dataclass
class BacktestMetadata:
    session_id: str
    symbol: str
    start_date: pd.Timestamp
    end_date: pd.Timestamp
    initial_balance: float
    skip_candles: int
    analysis_window_hours: int
    prompts: PromptsConfig
    created_at: pd.Timestamp
    status: SessionStatus = SessionStatus.RUNNING
    completed_at: Optional[pd.Timestamp] = None
    user_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'session_id': self.session_id,
            'symbol': self.symbol,
            'start_date': iso(self.start_date),
            'end_date': iso(self.end_date),
            'initial_balance': self.initial_balance,
            'skip_candles': self.skip_candles,
            'analysis_window_hours': self.analysis_window_hours,
            'prompts': asdict(self.prompts),
            'created_at': iso(self.created_at),
            'status': self.status.value,
            'completed_at': iso(self.completed_at),
            'user_id': self.user_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BacktestMetadata":
        return cls(
            session_id=data['session_id'],
            symbol=data['symbol'],
            start_date=parse_iso(data['start_date']),
            end_date=parse_iso(data['end_date']),
            initial_balance=float(data['initial_balance']),
            skip_candles=int(data['skip_candles']),
            analysis_window_hours=int(data['analysis_window_hours']),
            prompts=PromptsConfig(**data.get('prompts', {})),
            created_at=parse_iso(data['created_at']),
            status=SessionStatus(data['status']),
            completed_at=parse_iso(data.get('completed_at')),
            user_id=data.get('user_id'),
        )


@dataclass
class PerformanceSummary:
    """Derived statistics; rebuilt from the trades and equity curve on every trade."""
    net_profit_loss: float = 0.0
    net_profit_loss_percent: float = 0.0
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate_percent: float = 0.0
    profit_factor: float = 0.0
    max_drawdown_percent: float = 0.0
    ai_analysis_failures: int = 0
    average_trade_duration_minutes: float = 0.0
    largest_winning_trade: float = 0.0
    largest_losing_trade: float = 0.0
    average_winning_trade: float = 0.0
    average_losing_trade: float = 0.0
    max_consecutive_wins: int = 0
    max_consecutive_losses: int = 0
    total_commission: float = 0.0
    total_swap: float = 0.0
    sharpe_ratio: Optional[float] = None
    sortino_ratio: Optional[float] = None
    calmar_ratio: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PerformanceSummary":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass(frozen=True)
class EquityPoint:
    """Represents the account balance and drawdown at a given timestamp."""
    timestamp: pd.Timestamp
    balance: float
    equity: float
    drawdown: float
    drawdown_percent: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            'timestamp': iso(self.timestamp),
            'balance': self.balance,
            'equity': self.equity,
            'drawdown': self.drawdown,
            'drawdown_percent': self.drawdown_percent,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EquityPoint":
        return cls(
            timestamp=parse_iso(data['timestamp']),
            balance=float(data['balance']),
            equity=float(data['equity']),
            drawdown=float(data['drawdown']),
            drawdown_percent=float(data['drawdown_percent']),
        )


@dataclass
class BacktestSession:
    metadata: BacktestMetadata
    performance_summary: PerformanceSummary = field(default_factory=PerformanceSummary)
    trades: List[Trade] = field(default_factory=list)
    equity_curve: List[EquityPoint] = field(default_factory=list)
    analysis_logs: List[str] = field(default_factory=list)
    error_logs: List[str] = field(default_factory=list)

    @property
    def session_id(self) -> str:
        return self.metadata.session_id

    @property
    def status(self) -> SessionStatus:
        return self.metadata.status

    @property
    def current_balance(self) -> float:
        if self.equity_curve:
            return self.equity_curve[-1].balance
        return self.metadata.initial_balance

    def to_dict(self) -> Dict[str, Any]:
        return {
            'metadata': self.metadata.to_dict(),
            'performance_summary': self.performance_summary.to_dict(),
            'trades': [t.to_dict() for t in self.trades],
            'equity_curve': [p.to_dict() for p in self.equity_curve],
            'analysis_logs': list(self.analysis_logs),
            'error_logs': list(self.error_logs),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BacktestSession":
        return cls(
            metadata=BacktestMetadata.from_dict(data['metadata']),
            performance_summary=PerformanceSummary.from_dict(data.get('performance_summary', {})),
            trades=[Trade.from_dict(t) for t in data.get('trades', [])],
            equity_curve=[EquityPoint.from_dict(p) for p in data.get('equity_curve', [])],
            analysis_logs=list(data.get('analysis_logs', [])),
            error_logs=list(data.get('error_logs', [])),
        )
