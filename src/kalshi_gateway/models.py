"""Pydantic v2 models for the Kalshi API.

Request models validate locally before anything is sent; response models
are lenient (``extra = "allow"``) so new exchange fields never break
parsing. All fields use snake_case matching Kalshi's API convention.
Prices are integer cents.
"""

from __future__ import annotations

import uuid
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

MIN_PRICE_CENTS = 1
MAX_PRICE_CENTS = 99


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Side(str, Enum):
    YES = "yes"
    NO = "no"


class Action(str, Enum):
    BUY = "buy"
    SELL = "sell"


class OrderType(str, Enum):
    LIMIT = "limit"
    MARKET = "market"


class TimeInForce(str, Enum):
    """How long an order stays live. GTC is the exchange default and is
    omitted from the wire payload."""
    GOOD_TILL_CANCELED = "good_till_canceled"
    FILL_OR_KILL = "fill_or_kill"
    IMMEDIATE_OR_CANCEL = "immediate_or_cancel"


# ---------------------------------------------------------------------------
# Order requests
# ---------------------------------------------------------------------------

class OrderRequest(BaseModel):
    """An order owned by the caller until the exchange acknowledges it.

    ``client_order_id`` is the idempotency key: the exchange deduplicates on
    it, so a resubmitted request can never create a second resting order.
    """

    ticker: str = Field(min_length=1)
    side: Side
    action: Action
    count: int
    type: OrderType = OrderType.LIMIT
    price: Optional[int] = None
    client_order_id: uuid.UUID = Field(default_factory=uuid.uuid4)
    time_in_force: TimeInForce = TimeInForce.GOOD_TILL_CANCELED
    expiration_ts: Optional[int] = None
    post_only: bool = False
    buy_max_cost: Optional[int] = None
    order_group_id: Optional[str] = None

    model_config = {"frozen": True}

    @field_validator("count")
    @classmethod
    def _count_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError(f"count must be a positive integer, got {v}")
        return v

    @field_validator("price")
    @classmethod
    def _price_in_range(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and not MIN_PRICE_CENTS <= v <= MAX_PRICE_CENTS:
            raise ValueError(
                f"price must be between {MIN_PRICE_CENTS} and {MAX_PRICE_CENTS} cents, got {v}"
            )
        return v

    @model_validator(mode="after")
    def _check_type_fields(self) -> "OrderRequest":
        if self.type is OrderType.LIMIT and self.price is None:
            raise ValueError("limit orders require a price")
        if self.post_only and self.type is OrderType.MARKET:
            raise ValueError("post_only is only valid for limit orders")
        return self

    def to_payload(self) -> Dict[str, Any]:
        """Wire body for POST /portfolio/orders."""
        body: Dict[str, Any] = {
            "ticker": self.ticker,
            "client_order_id": str(self.client_order_id),
            "side": self.side.value,
            "action": self.action.value,
            "count": self.count,
            "type": self.type.value,
        }

        # Kalshi uses side-specific price fields
        if self.price is not None:
            if self.side is Side.YES:
                body["yes_price"] = self.price
            else:
                body["no_price"] = self.price

        if self.time_in_force is not TimeInForce.GOOD_TILL_CANCELED:
            body["time_in_force"] = self.time_in_force.value
        if self.expiration_ts is not None:
            body["expiration_ts"] = self.expiration_ts
        if self.post_only:
            body["post_only"] = True
        if self.buy_max_cost is not None:
            body["buy_max_cost"] = self.buy_max_cost
        if self.order_group_id:
            body["order_group_id"] = self.order_group_id
        return body


# ---------------------------------------------------------------------------
# Order responses
# ---------------------------------------------------------------------------

class Order(BaseModel):
    """Order from GET /portfolio/orders or POST /portfolio/orders."""
    order_id: str = ""
    client_order_id: str = ""
    ticker: str = ""
    action: str = ""  # buy / sell
    side: str = ""    # yes / no
    type: str = "limit"
    status: str = ""
    yes_price: int = 0
    no_price: int = 0
    initial_count: int = 0
    remaining_count: int = 0
    fill_count: int = 0
    created_time: Optional[str] = None
    expiration_time: Optional[str] = None
    order_group_id: Optional[str] = None

    model_config = {"extra": "allow"}


class OrderAck(BaseModel):
    """Exchange acknowledgement of a single submitted order."""
    order: Order = Field(default_factory=Order)
    client_order_id: str = ""

    @property
    def order_id(self) -> str:
        return self.order.order_id


class BatchOutcome(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class BatchEntry(BaseModel):
    """Result for one element of a batch, in input order.

    ``ref`` is the identifier the caller supplied for that element: the
    client_order_id for submissions, the order_id for cancellations.
    """
    ref: str
    outcome: BatchOutcome
    order: Optional[Order] = None
    reason: str = ""
    error_code: str = ""
    error_kind: Optional[str] = None

    @property
    def accepted(self) -> bool:
        return self.outcome is BatchOutcome.ACCEPTED

    @property
    def order_id(self) -> Optional[str]:
        return self.order.order_id if self.order else None


class BatchResult(BaseModel):
    """Per-element outcomes of a batch call.

    Batches are not atomic: accepted and rejected entries coexist and must
    be reconciled individually.
    """
    entries: List[BatchEntry] = Field(default_factory=list)

    @property
    def accepted(self) -> List[BatchEntry]:
        return [e for e in self.entries if e.outcome is BatchOutcome.ACCEPTED]

    @property
    def rejected(self) -> List[BatchEntry]:
        return [e for e in self.entries if e.outcome is BatchOutcome.REJECTED]


# ---------------------------------------------------------------------------
# Portfolio
# ---------------------------------------------------------------------------

class Balance(BaseModel):
    """GET /portfolio/balance."""
    balance: int  # cents
    portfolio_value: int = 0  # cents

    model_config = {"extra": "allow"}


class Position(BaseModel):
    """Single position from GET /portfolio/positions."""
    ticker: str = ""
    position: int = 0  # positive = YES, negative = NO
    total_traded: int = 0
    realized_pnl: int = 0
    fees_paid: int = 0
    market_exposure: int = 0
    resting_orders_count: int = 0

    model_config = {"extra": "allow"}


class Fill(BaseModel):
    """Single fill from GET /portfolio/fills."""
    trade_id: str = ""
    order_id: str = ""
    ticker: str = ""
    side: str = ""
    action: str = ""
    count: int = 0
    yes_price: int = 0
    no_price: int = 0
    is_taker: bool = False
    created_time: Optional[str] = None

    model_config = {"extra": "allow"}


class Settlement(BaseModel):
    """Single settlement from GET /portfolio/settlements."""
    ticker: str = ""
    market_result: str = ""
    revenue: int = 0
    settled_time: Optional[str] = None

    model_config = {"extra": "allow"}


# ---------------------------------------------------------------------------
# Exchange & markets
# ---------------------------------------------------------------------------

class ExchangeStatus(BaseModel):
    """GET /exchange/status."""
    exchange_active: bool = False
    trading_active: bool = False
    exchange_estimated_resume_time: Optional[str] = None


class DaySchedule(BaseModel):
    open_time: str
    close_time: str


class StandardHours(BaseModel):
    start_time: str = ""
    end_time: str = ""
    monday: List[DaySchedule] = Field(default_factory=list)
    tuesday: List[DaySchedule] = Field(default_factory=list)
    wednesday: List[DaySchedule] = Field(default_factory=list)
    thursday: List[DaySchedule] = Field(default_factory=list)
    friday: List[DaySchedule] = Field(default_factory=list)
    saturday: List[DaySchedule] = Field(default_factory=list)
    sunday: List[DaySchedule] = Field(default_factory=list)


class MaintenanceWindow(BaseModel):
    start_datetime: str
    end_datetime: str


class ExchangeSchedule(BaseModel):
    """GET /exchange/schedule (the ``schedule`` object)."""
    standard_hours: List[StandardHours] = Field(default_factory=list)
    maintenance_windows: List[MaintenanceWindow] = Field(default_factory=list)


class Market(BaseModel):
    """Market within an event."""
    ticker: str
    event_ticker: str = ""
    market_type: str = ""
    title: str = ""
    subtitle: str = ""
    yes_sub_title: str = ""
    no_sub_title: str = ""
    status: str = ""
    result: str = ""
    yes_bid: int = 0
    yes_ask: int = 0
    no_bid: int = 0
    no_ask: int = 0
    last_price: int = 0
    volume: int = 0
    volume_24h: int = 0
    open_interest: int = 0
    tick_size: int = 1
    open_time: Optional[str] = None
    close_time: Optional[str] = None
    expiration_time: Optional[str] = None

    model_config = {"extra": "allow"}


class Event(BaseModel):
    """GET /events/{event_ticker}."""
    event_ticker: str
    series_ticker: str = ""
    title: str = ""
    sub_title: str = ""
    category: str = ""
    mutually_exclusive: bool = False
    strike_date: Optional[str] = None
    markets: List[Market] = Field(default_factory=list)

    model_config = {"extra": "allow"}

    @field_validator("markets", mode="before")
    @classmethod
    def _null_markets(cls, v):
        return v or []


class Orderbook(BaseModel):
    """GET /markets/{ticker}/orderbook. Levels are [price_cents, quantity]."""
    yes: List[List[int]] = Field(default_factory=list)
    no: List[List[int]] = Field(default_factory=list)

    @field_validator("yes", "no", mode="before")
    @classmethod
    def _null_levels(cls, v):
        return v or []


class Trade(BaseModel):
    """Public trade from GET /markets/trades."""
    trade_id: str = ""
    ticker: str = ""
    taker_side: str = ""
    count: int = 0
    yes_price: int = 0
    no_price: int = 0
    created_time: Optional[str] = None

    model_config = {"extra": "allow"}


class SettlementSource(BaseModel):
    url: Optional[str] = None
    name: Optional[str] = None


class Series(BaseModel):
    """GET /series/{series_ticker}."""
    ticker: Optional[str] = None
    frequency: Optional[str] = None
    title: Optional[str] = None
    category: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    settlement_sources: List[SettlementSource] = Field(default_factory=list)
    contract_url: Optional[str] = None

    model_config = {"extra": "allow"}

    @field_validator("tags", "settlement_sources", mode="before")
    @classmethod
    def _null_lists(cls, v):
        return v or []


class Candlestick(BaseModel):
    """Single candle from the market candlesticks endpoint."""
    end_period_ts: int = 0
    volume: int = 0
    open_interest: int = 0

    model_config = {"extra": "allow"}


# ---------------------------------------------------------------------------
# WebSocket
# ---------------------------------------------------------------------------

class StreamMessage(BaseModel):
    """Decoded inbound WebSocket frame.

    ``type`` is the channel tag (or "subscribed" / "error" for control
    replies); ``seq`` is the per-subscription sequence number when present.
    A change in ``epoch`` means a reconnect happened in between.
    """
    type: str = ""
    sid: Optional[int] = None
    seq: Optional[int] = None
    id: Optional[int] = None
    msg: Dict[str, Any] = Field(default_factory=dict)
    epoch: int = 0  # connection epoch the frame arrived on (set locally)

    model_config = {"extra": "allow"}
