"""
Order lifecycle mirror.

PENDING -> RESTING -> {PARTIALLY_FILLED -> RESTING|FILLED, FILLED, CANCELLED,
EXPIRED, REJECTED}

PENDING is a local-only state that exists before the first acknowledgement.
Once the exchange has acknowledged an order, every transition comes from a
platform-reported status; the tracker only records the last one observed.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Set

from .models import Order

logger = logging.getLogger("kalshi_gateway.order_state")


class OrderState(Enum):
    """Client-side view of an order's lifecycle."""
    PENDING = "pending"
    RESTING = "resting"
    PARTIALLY_FILLED = "partially_filled"
    FILLED = "filled"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({
    OrderState.FILLED,
    OrderState.CANCELLED,
    OrderState.EXPIRED,
    OrderState.REJECTED,
})

VALID_TRANSITIONS: Dict[OrderState, Set[OrderState]] = {
    OrderState.PENDING: {
        OrderState.RESTING, OrderState.PARTIALLY_FILLED, OrderState.FILLED,
        OrderState.CANCELLED, OrderState.EXPIRED, OrderState.REJECTED,
    },
    OrderState.RESTING: {
        OrderState.PARTIALLY_FILLED, OrderState.FILLED, OrderState.CANCELLED,
        OrderState.EXPIRED, OrderState.REJECTED,
    },
    OrderState.PARTIALLY_FILLED: {
        OrderState.RESTING, OrderState.PARTIALLY_FILLED, OrderState.FILLED,
        OrderState.CANCELLED, OrderState.EXPIRED,
    },
    OrderState.FILLED: set(),
    OrderState.CANCELLED: set(),
    OrderState.EXPIRED: set(),
    OrderState.REJECTED: set(),
}

# Exchange status strings -> OrderState
_STATUS_MAP = {
    "pending": OrderState.PENDING,
    "resting": OrderState.RESTING,
    "executed": OrderState.FILLED,
    "filled": OrderState.FILLED,
    "canceled": OrderState.CANCELLED,
    "cancelled": OrderState.CANCELLED,
    "expired": OrderState.EXPIRED,
    "rejected": OrderState.REJECTED,
}


def state_from_order(order: Order) -> Optional[OrderState]:
    """Translate an exchange order record into an OrderState."""
    state = _STATUS_MAP.get((order.status or "").lower())
    if state is OrderState.RESTING and order.fill_count > 0:
        return OrderState.PARTIALLY_FILLED
    return state


@dataclass
class TrackedOrder:
    """Last-known state of one order, keyed by client_order_id."""
    client_order_id: str
    ticker: str
    state: OrderState = OrderState.PENDING
    order_id: Optional[str] = None
    filled_count: int = 0
    remaining_count: int = 0
    updated_at: float = field(default_factory=time.time)
    history: List[OrderState] = field(default_factory=list)
    # True when the current state came from an exchange-reported status
    confirmed: bool = False


class OrderTracker:
    """Mirror of per-order state.

    Mutated only from the event loop thread, so no locking is needed.
    Invalid transitions are logged and ignored rather than raised: the
    exchange is authoritative and a late or reordered status read must not
    crash a caller.
    """

    def __init__(self):
        self._orders: Dict[str, TrackedOrder] = {}
        self._by_order_id: Dict[str, str] = {}

    def track_pending(self, client_order_id: str, ticker: str) -> TrackedOrder:
        """Register an order about to be submitted.

        Resubmitting a known client_order_id keeps the existing record. A
        rejection that was only inferred locally is cleared, since the
        exchange may accept the retry.
        """
        tracked = self._orders.get(client_order_id)
        if tracked is None:
            tracked = TrackedOrder(client_order_id=client_order_id, ticker=ticker)
            tracked.history.append(OrderState.PENDING)
            self._orders[client_order_id] = tracked
        elif tracked.state is OrderState.REJECTED and not tracked.confirmed:
            self._reset_pending(tracked)
        return tracked

    def _reset_pending(self, tracked: TrackedOrder) -> None:
        logger.debug(f"Order {tracked.client_order_id}: clearing local rejection")
        tracked.state = OrderState.PENDING
        tracked.updated_at = time.time()
        tracked.history.append(OrderState.PENDING)

    def apply(self, order: Order, client_order_id: Optional[str] = None) -> Optional[TrackedOrder]:
        """Record an exchange-reported order status."""
        cid = client_order_id or order.client_order_id or self._by_order_id.get(order.order_id, "")
        if not cid:
            logger.debug(f"Ignoring status for untracked order {order.order_id}")
            return None

        tracked = self._orders.get(cid)
        if tracked is None:
            tracked = TrackedOrder(client_order_id=cid, ticker=order.ticker)
            self._orders[cid] = tracked

        if order.order_id:
            tracked.order_id = order.order_id
            self._by_order_id[order.order_id] = cid
        tracked.filled_count = order.fill_count
        tracked.remaining_count = order.remaining_count

        new_state = state_from_order(order)
        if new_state is None:
            return tracked

        # The exchange overrides a rejection we only inferred
        if tracked.state is OrderState.REJECTED and not tracked.confirmed and new_state is not tracked.state:
            self._reset_pending(tracked)
        if self._transition(tracked, new_state):
            tracked.confirmed = True
        return tracked

    def mark(self, client_order_id: str, new_state: OrderState) -> Optional[TrackedOrder]:
        """Move a tracked order to ``new_state`` from local evidence only."""
        tracked = self._orders.get(client_order_id)
        if tracked is not None and self._transition(tracked, new_state):
            tracked.confirmed = False
        return tracked

    def _transition(self, tracked: TrackedOrder, new_state: OrderState) -> bool:
        """Apply a transition; returns False when it was ignored."""
        if new_state is tracked.state and new_state is not OrderState.PARTIALLY_FILLED:
            return True
        if new_state not in VALID_TRANSITIONS[tracked.state]:
            logger.warning(
                f"Ignoring invalid transition {tracked.state.value} -> {new_state.value} "
                f"for order {tracked.client_order_id}"
            )
            return False
        logger.debug(f"Order {tracked.client_order_id}: {tracked.state.value} -> {new_state.value}")
        tracked.state = new_state
        tracked.updated_at = time.time()
        tracked.history.append(new_state)
        return True

    def forget(self, client_order_id: str) -> Optional[TrackedOrder]:
        """Drop one order from the mirror."""
        tracked = self._orders.pop(client_order_id, None)
        if tracked is not None and tracked.order_id:
            self._by_order_id.pop(tracked.order_id, None)
        return tracked

    def prune(self, older_than: float = 0.0) -> int:
        """Drop terminal orders last updated more than ``older_than`` seconds ago.

        Returns the number of records removed.
        """
        cutoff = time.time() - older_than
        stale = [
            cid for cid, t in self._orders.items()
            if t.state.is_terminal and t.updated_at <= cutoff
        ]
        for cid in stale:
            self.forget(cid)
        if stale:
            logger.debug(f"Pruned {len(stale)} terminal orders")
        return len(stale)

    def get(self, client_order_id: str) -> Optional[TrackedOrder]:
        return self._orders.get(client_order_id)

    def get_by_order_id(self, order_id: str) -> Optional[TrackedOrder]:
        cid = self._by_order_id.get(order_id)
        return self._orders.get(cid) if cid else None

    def open_orders(self) -> List[TrackedOrder]:
        return [t for t in self._orders.values() if not t.state.is_terminal]

    def __len__(self) -> int:
        return len(self._orders)
