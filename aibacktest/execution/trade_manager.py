"""
Pending-order and position state machine.

A `TradeManager` owns the mutable account state of one backtest run:
balance, equity, margin, the list of pending orders and a single
position slot.  It is advanced one candle at a time by
`update_with_candle()`, which applies the following steps in order:

1. expire pending orders whose expiry time has been reached;
2. if no position is open, trigger the first pending order whose price
   lies within the candle's range and open a position at that price;
3. close the open position on stop-loss or take-profit (stop-loss
   wins when both levels are inside the candle);
4. mark equity to the candle's close and recompute free margin.

Business outcomes (an order that never fills, an order submitted while
a position is open) never raise.  Only an inconsistent internal state
raises `InvalidStateError`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import logging
from typing import List, Optional
import pandas as pd

from ..config.instruments import pip_size_for
from ..config.schema import AccountConfig, CostsConfig, InstrumentConfig
from ..errors import InvalidStateError
from ..utils.ids import UuidIdGenerator
from ..utils.timeutils import add_minutes
from .accounting import (
    calculate_commission,
    calculate_duration,
    calculate_pnl,
    calculate_pnl_percent,
    calculate_swap,
    determine_outcome,
)
from .models import (
    ActivePosition,
    Candle,
    ExitReason,
    OrderKind,
    OrderStatus,
    PendingOrder,
    Trade,
)


logger = logging.getLogger(__name__)


@dataclass
class AccountState:
    """Snapshot of the simulated account."""
    balance: float
    equity: float
    margin: float
    free_margin: float


@dataclass
class OrderExecution:
    """Emitted when a pending order fills and opens a position."""
    order_id: str
    position_id: str
    kind: OrderKind
    price: float
    lot_size: float
    executed_at: pd.Timestamp


@dataclass
class CandleUpdate:
    """Events produced by processing one candle."""
    expired_orders: List[str] = field(default_factory=list)
    execution: Optional[OrderExecution] = None
    closed_trade: Optional[Trade] = None

    @property
    def position_closed(self) -> bool:
        return self.closed_trade is not None


@dataclass
class TradeStatistics:
    total_orders: int
    pending_orders: int
    executed_orders: int
    expired_orders: int
    cancelled_orders: int
    current_balance: float
    current_equity: float
    margin_used: float
    free_margin: float


class SlotState(str, Enum):
    FLAT = "FLAT"
    OPEN = "OPEN"


class PositionSlot:
    """Holds at most one open position."""

    def __init__(self) -> None:
        self.state = SlotState.FLAT
        self._position: Optional[ActivePosition] = None

    @property
    def is_open(self) -> bool:
        return self.state is SlotState.OPEN

    @property
    def position(self) -> Optional[ActivePosition]:
        return self._position if self.is_open else None

    def occupy(self, position: ActivePosition) -> None:
        if self.is_open:
            raise InvalidStateError(
                f"Cannot open {position.position_id}: position {self._position.position_id} is still open"
            )
        self._position = position
        self.state = SlotState.OPEN

    def release(self) -> ActivePosition:
        if not self.is_open:
            raise InvalidStateError("No open position to release")
        position = self._position
        self._position = None
        self.state = SlotState.FLAT
        return position


class TradeManager:
    """Simulated broker account for a single symbol."""

    def __init__(
        self,
        session_id: str,
        symbol: str,
        initial_balance: float,
        costs: Optional[CostsConfig] = None,
        account: Optional[AccountConfig] = None,
        instruments: Optional[InstrumentConfig] = None,
        order_expiry_minutes: int = 180,
        id_generator=None,
    ) -> None:
        self.session_id = session_id
        self.symbol = symbol
        self.costs = costs or CostsConfig()
        self.account = account or AccountConfig()
        self.instruments = instruments or InstrumentConfig()
        self.order_expiry_minutes = order_expiry_minutes
        self.pip_size = pip_size_for(symbol, self.instruments)
        self.pip_value = self.instruments.pip_value
        self._ids = id_generator or UuidIdGenerator()

        self._orders: List[PendingOrder] = []
        self._slot = PositionSlot()
        self._state = AccountState(
            balance=initial_balance,
            equity=initial_balance,
            margin=0.0,
            free_margin=initial_balance,
        )

        logger.info(
            "Trade manager initialised: session=%s symbol=%s balance=%.2f",
            session_id, symbol, initial_balance,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    @property
    def active_position(self) -> Optional[ActivePosition]:
        return self._slot.position

    @property
    def has_open_position(self) -> bool:
        return self._slot.is_open

    @property
    def orders(self) -> List[PendingOrder]:
        return list(self._orders)

    def get_state(self) -> AccountState:
        s = self._state
        return AccountState(s.balance, s.equity, s.margin, s.free_margin)

    def can_place_order(self) -> bool:
        """A new order may be placed when flat and free margin is positive."""
        return not self._slot.is_open and self._state.free_margin > 0

    def pending_orders_count(self) -> int:
        return sum(1 for o in self._orders if o.is_pending)

    def get_trade_statistics(self) -> TradeStatistics:
        def count(status: OrderStatus) -> int:
            return sum(1 for o in self._orders if o.status is status)

        return TradeStatistics(
            total_orders=len(self._orders),
            pending_orders=count(OrderStatus.PENDING),
            executed_orders=count(OrderStatus.EXECUTED),
            expired_orders=count(OrderStatus.EXPIRED),
            cancelled_orders=count(OrderStatus.CANCELLED),
            current_balance=self._state.balance,
            current_equity=self._state.equity,
            margin_used=self._state.margin,
            free_margin=self._state.free_margin,
        )

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------
    def add_pending_order(
        self,
        kind: OrderKind,
        price: float,
        stop_loss: float,
        take_profit: float,
        lot_size: float,
        analysis_id: str,
        current_time: pd.Timestamp,
    ) -> str:
        """Queue a pending order and return its id.

        Submission is never refused; execution is gated on the position
        slot being free.
        """
        order = PendingOrder(
            order_id=self._ids.new("order"),
            kind=OrderKind(kind),
            price=price,
            stop_loss=stop_loss,
            take_profit=take_profit,
            lot_size=lot_size,
            created_at=current_time,
            expires_at=add_minutes(current_time, self.order_expiry_minutes),
            analysis_id=analysis_id,
        )
        self._orders.append(order)
        logger.info(
            "Pending order added: session=%s order=%s kind=%s price=%s analysis=%s",
            self.session_id, order.order_id, order.kind.value, price, analysis_id,
        )
        return order.order_id

    def cancel_order(self, order_id: str) -> bool:
        """Cancel a pending order.  Returns ``False`` if it is not pending."""
        for order in self._orders:
            if order.order_id == order_id and order.is_pending:
                order.transition(OrderStatus.CANCELLED)
                logger.info("Order cancelled: session=%s order=%s", self.session_id, order_id)
                return True
        return False

    def update_with_candle(self, candle: Candle) -> CandleUpdate:
        """Advance the state machine by one candle."""
        now = candle.timestamp
        update = CandleUpdate()

        update.expired_orders = self._expire_orders(now)

        if not self._slot.is_open:
            update.execution = self._trigger_orders(candle)

        if self._slot.is_open:
            update.closed_trade = self._update_position(candle)

        self._mark_to_market(candle)
        return update

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _expire_orders(self, now: pd.Timestamp) -> List[str]:
        expired: List[str] = []
        for order in self._orders:
            if order.is_pending and order.is_expired_at(now):
                order.transition(OrderStatus.EXPIRED)
                expired.append(order.order_id)
                logger.info("Order expired: session=%s order=%s", self.session_id, order.order_id)
        return expired

    def _trigger_orders(self, candle: Candle) -> Optional[OrderExecution]:
        for order in self._orders:
            if order.is_pending and order.is_triggered_by(candle):
                return self._execute_order(order, candle.timestamp)
        return None

    def _execute_order(self, order: PendingOrder, now: pd.Timestamp) -> OrderExecution:
        position = ActivePosition(
            position_id=self._ids.new("pos"),
            side=order.side,
            entry_price=order.price,
            stop_loss=order.stop_loss,
            take_profit=order.take_profit,
            lot_size=order.lot_size,
            opened_at=now,
            analysis_id=order.analysis_id,
        )
        self._slot.occupy(position)
        order.transition(OrderStatus.EXECUTED)
        self._update_margin()

        logger.info(
            "Order executed: session=%s order=%s position=%s side=%s price=%s lots=%s",
            self.session_id, order.order_id, position.position_id,
            position.side.value, order.price, order.lot_size,
        )
        return OrderExecution(
            order_id=order.order_id,
            position_id=position.position_id,
            kind=order.kind,
            price=order.price,
            lot_size=order.lot_size,
            executed_at=now,
        )

    def _update_position(self, candle: Candle) -> Optional[Trade]:
        position = self._slot.position
        hit = position.exit_level(candle)
        if hit is None:
            return None
        exit_price, reason = hit
        return self._close_position(exit_price, candle.timestamp, reason)

    def _close_position(self, exit_price: float, now: pd.Timestamp, reason: ExitReason) -> Trade:
        position = self._slot.position
        pnl = calculate_pnl(
            position.side, position.entry_price, exit_price, position.lot_size,
            pip_value=self.pip_value, pip_size=self.pip_size,
        )
        commission = calculate_commission(position.lot_size, self.costs.commission_per_lot)
        swap = calculate_swap(
            position.side, position.lot_size, position.opened_at, now,
            self.costs.swap_buy_per_lot_day, self.costs.swap_sell_per_lot_day,
        )
        net_pnl = pnl - commission - swap
        balance_before = self._state.balance
        self._state.balance += net_pnl

        trade = Trade(
            trade_id=self._ids.new("trade"),
            session_id=self.session_id,
            side=position.side,
            entry_price=position.entry_price,
            exit_price=exit_price,
            stop_loss=position.stop_loss,
            take_profit=position.take_profit,
            lot_size=position.lot_size,
            opened_at=position.opened_at,
            closed_at=now,
            duration_minutes=calculate_duration(position.opened_at, now),
            pnl=pnl,
            pnl_percent=calculate_pnl_percent(net_pnl, balance_before),
            outcome=determine_outcome(pnl),
            exit_reason=reason,
            commission=commission,
            swap=swap,
            net_pnl=net_pnl,
            analysis_id=position.analysis_id,
        )

        position.close(exit_price, now, net_pnl)
        self._slot.release()
        self._update_margin()

        logger.info(
            "Position closed: session=%s position=%s trade=%s reason=%s net_pnl=%.2f balance=%.2f",
            self.session_id, position.position_id, trade.trade_id,
            reason.value, net_pnl, self._state.balance,
        )
        return trade

    def _update_margin(self) -> None:
        position = self._slot.position
        if position is None:
            self._state.margin = 0.0
        else:
            notional = position.lot_size * self.account.contract_size * position.entry_price
            self._state.margin = notional / self.account.leverage
        self._state.free_margin = self._state.equity - self._state.margin

    def _mark_to_market(self, candle: Candle) -> None:
        unrealized = 0.0
        position = self._slot.position
        if position is not None:
            unrealized = calculate_pnl(
                position.side, position.entry_price, candle.close, position.lot_size,
                pip_value=self.pip_value, pip_size=self.pip_size,
            )
        self._state.equity = self._state.balance + unrealized
        self._state.free_margin = self._state.equity - self._state.margin
