from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class Side(str, Enum):
    YES = "yes"
    NO = "no"


class OrderAction(str, Enum):
    BUY = "buy"
    SELL = "sell"


class PricingMode(str, Enum):
    MAKER = "maker"
    TAKER = "taker"


class SettlementStatus(str, Enum):
    OPEN = "open"
    SETTLED = "settled"


class LifecycleState(str, Enum):
    IDLE = "idle"
    SUBMITTING = "submitting"
    RESTING = "resting"
    CANCELLING = "cancelling"
    FILLED = "filled"
    REJECTED = "rejected"


class OrderState(str, Enum):
    """Exchange-side order state as reported by an execution client."""

    OPEN = "open"
    FILLED = "filled"
    PARTIALLY_FILLED = "partially_filled"
    CANCELLED = "cancelled"
    REJECTED = "rejected"
    EXPIRED = "expired"
    UNKNOWN = "unknown"


class FillStatus(str, Enum):
    FILLED = "filled"
    MISSED = "missed"
    REJECTED = "rejected"
    PENDING = "pending"


@dataclass(frozen=True)
class MarketSnapshot:
    """One poll cycle's view of a single binary market, prices in cents."""

    ticker: str
    sport: str
    fair_value: float
    best_bid: int
    best_ask: int
    commence_time: datetime
    volume: float = 0.0
    volatility: float = 0.0
    side: Side = Side.YES
    observed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def spread(self) -> int:
        return self.best_ask - self.best_bid

    @property
    def edge(self) -> float:
        return self.fair_value - self.best_bid

    def hours_until_start(self, now: datetime | None = None) -> float:
        ts = now or datetime.now(timezone.utc)
        return (self.commence_time - ts).total_seconds() / 3600.0

    def age_seconds(self, now: datetime | None = None) -> float:
        ts = now or datetime.now(timezone.utc)
        return max(0.0, (ts - self.observed_at).total_seconds())


@dataclass(frozen=True)
class PricingResult:
    max_willing_to_pay: int
    smart_bid: int
    mode: PricingMode
    effective_margin: float
    penalty: float

    @property
    def has_bid(self) -> bool:
        return 0 < self.smart_bid <= self.max_willing_to_pay


@dataclass(frozen=True)
class ExitTarget:
    ticker: str
    target_price: int
    break_even_price: int
    fair_value: float


@dataclass
class Position:
    """A filled holding. Only :class:`~sports_arb.portfolio.Portfolio` mutates it."""

    id: str
    ticker: str
    quantity: int
    entry_price: int
    filled_at: datetime
    sport: str = ""
    side: Side = Side.YES
    entry_fee_cents: int = 0
    sell_price: Optional[int] = None
    settlement_status: SettlementStatus = SettlementStatus.OPEN
    # Exact sum of price * quantity over the entry fills; entry_price is only the rounded average.
    entry_notional_cents: int = 0

    def __post_init__(self) -> None:
        if not self.entry_notional_cents:
            self.entry_notional_cents = self.entry_price * self.quantity

    @property
    def entry_cost_cents(self) -> int:
        return self.entry_notional_cents + self.entry_fee_cents

    def held_seconds(self, now: datetime | None = None) -> float:
        ts = now or datetime.now(timezone.utc)
        return max(0.0, (ts - self.filled_at).total_seconds())


@dataclass(frozen=True)
class OrderStatus:
    order_id: str
    state: OrderState
    filled_contracts: int = 0
    remaining_contracts: int = 0
    average_price: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class OrderHandle:
    """Exchange acknowledgement of a placed order.

    ``status`` is the state reported in the placement response, when the
    exchange returns one (an immediately crossing order may already be filled).
    """

    order_id: str
    ticker: str
    client_order_id: str = ""
    status: Optional[OrderStatus] = None


@dataclass(frozen=True)
class InFlightOrder:
    ticker: str
    action: OrderAction
    side: Side
    price: int
    quantity: int
    request_id: int
    state: LifecycleState
    submitted_at: datetime
    order_id: Optional[str] = None
    filled_quantity: int = 0

    @property
    def remaining_quantity(self) -> int:
        return max(0, self.quantity - self.filled_quantity)

    def matches(self, action: OrderAction, side: Side, price: int, quantity: int) -> bool:
        return (
            self.action is action
            and self.side is side
            and self.price == price
            and self.quantity == quantity
        )


@dataclass(frozen=True)
class OrderFill:
    """A (possibly partial) execution reported for a lifecycle-managed order."""

    ticker: str
    action: OrderAction
    side: Side
    price: int
    quantity: int
    order_id: Optional[str]
    request_id: int
    is_taker: bool
    filled_at: datetime


@dataclass(frozen=True)
class FillOutcome:
    status: FillStatus
    price: Optional[int] = None

    @classmethod
    def filled(cls, price: int) -> "FillOutcome":
        return cls(FillStatus.FILLED, price)

    @property
    def is_filled(self) -> bool:
        return self.status is FillStatus.FILLED


MISSED = FillOutcome(FillStatus.MISSED)
REJECTED = FillOutcome(FillStatus.REJECTED)
PENDING = FillOutcome(FillStatus.PENDING)
