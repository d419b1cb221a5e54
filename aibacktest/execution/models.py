"""
Candle, order, position and trade models.

These dataclasses represent the objects passed between the data
providers, the order engine and the session ledger.  Keeping them in a
separate module improves readability and makes unit testing easier.

Orders and positions carry a status that only ever moves forward; any
attempt to leave a terminal status raises `InvalidStateError`.  Trades
are frozen once created.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional
import pandas as pd

from ..errors import InvalidStateError
from ..utils.timeutils import iso, parse_iso, to_utc


class Side(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class OrderKind(str, Enum):
    BUY_STOP = "BUY_STOP"
    SELL_STOP = "SELL_STOP"
    BUY_LIMIT = "BUY_LIMIT"
    SELL_LIMIT = "SELL_LIMIT"

    @property
    def side(self) -> Side:
        return Side.BUY if self in (OrderKind.BUY_STOP, OrderKind.BUY_LIMIT) else Side.SELL

    @classmethod
    def stop_for(cls, side: Side) -> "OrderKind":
        """Stop order in the direction of `side` (breakout entry)."""
        return cls.BUY_STOP if Side(side) is Side.BUY else cls.SELL_STOP


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    EXECUTED = "EXECUTED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


class PositionStatus(str, Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"


class TradeOutcome(str, Enum):
    WIN = "WIN"
    LOSS = "LOSS"
    BREAKEVEN = "BREAKEVEN"


class ExitReason(str, Enum):
    TAKE_PROFIT = "TAKE_PROFIT"
    STOP_LOSS = "STOP_LOSS"
    MANUAL = "MANUAL"
    EXPIRED = "EXPIRED"


@dataclass(frozen=True)
class Candle:
    """One OHLCV bar."""
    timestamp: pd.Timestamp
    open: float
    high: float
    low: float
    close: float
    tick_volume: float = 0.0
    real_volume: float = 0.0
    spread: float = 0.0

    def is_valid(self) -> bool:
        """Return ``True`` if ``low <= open, close <= high``."""
        return (
            self.low <= self.high
            and self.low <= self.open <= self.high
            and self.low <= self.close <= self.high
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'time': iso(self.timestamp),
            'open': self.open,
            'high': self.high,
            'low': self.low,
            'close': self.close,
            'tick_volume': self.tick_volume,
            'real_volume': self.real_volume,
            'spread': self.spread,
        }


@dataclass
class PendingOrder:
    """A conditional entry order awaiting its trigger price."""
    order_id: str
    kind: OrderKind
    price: float
    stop_loss: float
    take_profit: float
    lot_size: float
    created_at: pd.Timestamp
    expires_at: pd.Timestamp
    analysis_id: str
    status: OrderStatus = OrderStatus.PENDING

    @property
    def side(self) -> Side:
        return self.kind.side

    @property
    def is_pending(self) -> bool:
        return self.status is OrderStatus.PENDING

    def is_expired_at(self, ts: pd.Timestamp) -> bool:
        return ts >= self.expires_at

    def is_triggered_by(self, candle: Candle) -> bool:
        """Check whether the candle's range reaches the trigger price."""
        if self.kind is OrderKind.BUY_STOP:
            return candle.high >= self.price
        if self.kind is OrderKind.SELL_STOP:
            return candle.low <= self.price
        if self.kind is OrderKind.BUY_LIMIT:
            return candle.low <= self.price
        return candle.high >= self.price

    def transition(self, status: OrderStatus) -> None:
        if self.status is not OrderStatus.PENDING:
            raise InvalidStateError(
                f"Order {self.order_id} is {self.status.value}, cannot become {status.value}"
            )
        self.status = status

    def to_dict(self) -> Dict[str, Any]:
        return {
            'order_id': self.order_id,
            'kind': self.kind.value,
            'price': self.price,
            'stop_loss': self.stop_loss,
            'take_profit': self.take_profit,
            'lot_size': self.lot_size,
            'created_at': iso(self.created_at),
            'expires_at': iso(self.expires_at),
            'status': self.status.value,
            'analysis_id': self.analysis_id,
        }


@dataclass
class ActivePosition:
    """The single open position of a simulation."""
    position_id: str
    side: Side
    entry_price: float
    stop_loss: float
    take_profit: float
    lot_size: float
    opened_at: pd.Timestamp
    analysis_id: str
    status: PositionStatus = PositionStatus.OPEN
    closed_at: Optional[pd.Timestamp] = None
    exit_price: Optional[float] = None
    pnl: Optional[float] = None

    def exit_level(self, candle: Candle) -> Optional[tuple]:
        """Return ``(price, reason)`` if the candle hits stop-loss or take-profit.

        Stop-loss is checked first: when a single candle spans both
        levels, the position is assumed to have been stopped out.
        """
        if self.side is Side.BUY:
            if candle.low <= self.stop_loss:
                return self.stop_loss, ExitReason.STOP_LOSS
            if candle.high >= self.take_profit:
                return self.take_profit, ExitReason.TAKE_PROFIT
        else:
            if candle.high >= self.stop_loss:
                return self.stop_loss, ExitReason.STOP_LOSS
            if candle.low <= self.take_profit:
                return self.take_profit, ExitReason.TAKE_PROFIT
        return None

    def close(self, exit_price: float, closed_at: pd.Timestamp, pnl: float) -> None:
        if self.status is not PositionStatus.OPEN:
            raise InvalidStateError(f"Position {self.position_id} is already closed")
        self.status = PositionStatus.CLOSED
        self.exit_price = exit_price
        self.closed_at = closed_at
        self.pnl = pnl


@dataclass(frozen=True)
class Trade:
    """Represents a completed trade."""
    trade_id: str
    session_id: str
    side: Side
    entry_price: float
    exit_price: float
    stop_loss: float
    take_profit: float
    lot_size: float
    opened_at: pd.Timestamp
    closed_at: pd.Timestamp
    duration_minutes: int
    pnl: float
    pnl_percent: float
    outcome: TradeOutcome
    exit_reason: ExitReason
    commission: float
    swap: float
    net_pnl: float
    analysis_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'trade_id': self.trade_id,
            'session_id': self.session_id,
            'side': self.side.value,
            'entry_price': self.entry_price,
            'exit_price': self.exit_price,
            'stop_loss': self.stop_loss,
            'take_profit': self.take_profit,
            'lot_size': self.lot_size,
            'opened_at': iso(self.opened_at),
            'closed_at': iso(self.closed_at),
            'duration_minutes': self.duration_minutes,
            'pnl': self.pnl,
            'pnl_percent': self.pnl_percent,
            'outcome': self.outcome.value,
            'exit_reason': self.exit_reason.value,
            'commission': self.commission,
            'swap': self.swap,
            'net_pnl': self.net_pnl,
            'analysis_id': self.analysis_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Trade":
        return cls(
            trade_id=data['trade_id'],
            session_id=data['session_id'],
            side=Side(data['side']),
            entry_price=float(data['entry_price']),
            exit_price=float(data['exit_price']),
            stop_loss=float(data['stop_loss']),
            take_profit=float(data['take_profit']),
            lot_size=float(data['lot_size']),
            opened_at=parse_iso(data['opened_at']),
            closed_at=parse_iso(data['closed_at']),
            duration_minutes=int(data['duration_minutes']),
            pnl=float(data['pnl']),
            pnl_percent=float(data['pnl_percent']),
            outcome=TradeOutcome(data['outcome']),
            exit_reason=ExitReason(data['exit_reason']),
            commission=float(data['commission']),
            swap=float(data['swap']),
            net_pnl=float(data['net_pnl']),
            analysis_id=data['analysis_id'],
        )


def candle_from_row(ts: Any, row: Any) -> Candle:
    """Build a `Candle` from a DataFrame index value and row."""
    get = row.get
    return Candle(
        timestamp=to_utc(ts),
        open=float(row['open']),
        high=float(row['high']),
        low=float(row['low']),
        close=float(row['close']),
        tick_volume=float(get('tick_volume', 0.0) or 0.0),
        real_volume=float(get('real_volume', 0.0) or 0.0),
        spread=float(get('spread', 0.0) or 0.0),
    )
