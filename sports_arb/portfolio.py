from __future__ import annotations

import itertools
import logging
import math
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol

from sports_arb.models import Position, SettlementStatus, Side

LOGGER = logging.getLogger(__name__)


class PortfolioView(Protocol):
    def open_count(self) -> int:
        ...

    def count_for_sport(self, sport: str) -> int:
        ...

    def has_open(self, ticker: str) -> bool:
        ...


@dataclass(frozen=True)
class ClosedPosition:
    position: Position
    exit_price: int
    exit_fee_cents: int
    closed_at: datetime
    reason: str

    @property
    def pnl_cents(self) -> int:
        proceeds = self.exit_price * self.position.quantity - self.exit_fee_cents
        return proceeds - self.position.entry_cost_cents


class Portfolio:
    """Owns every open :class:`Position`, keyed by (ticker, settlement status).

    A second entry fill on a ticker that is already held is folded into the
    existing position so the one-position-per-ticker invariant holds even
    when an order fills in pieces.
    """

    def __init__(self) -> None:
        self._positions: Dict[tuple[str, SettlementStatus], Position] = {}
        self._closed: List[ClosedPosition] = []
        self._ids = itertools.count(1)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, ticker: str) -> Optional[Position]:
        return self._positions.get((ticker, SettlementStatus.OPEN))

    def has_open(self, ticker: str) -> bool:
        return (ticker, SettlementStatus.OPEN) in self._positions

    def open_positions(self) -> List[Position]:
        return [
            position
            for (_, status), position in self._positions.items()
            if status is SettlementStatus.OPEN
        ]

    def open_count(self) -> int:
        return len(self.open_positions())

    def count_for_sport(self, sport: str) -> int:
        key = sport.strip().lower()
        return sum(1 for position in self.open_positions() if position.sport.strip().lower() == key)

    @property
    def closed(self) -> List[ClosedPosition]:
        return list(self._closed)

    @property
    def realized_pnl_cents(self) -> int:
        return sum(item.pnl_cents for item in self._closed)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def record_entry_fill(
        self,
        ticker: str,
        quantity: int,
        price: int,
        fee_cents: int = 0,
        sport: str = "",
        side: Side = Side.YES,
        filled_at: datetime | None = None,
    ) -> Position:
        if quantity <= 0:
            raise ValueError(f"entry fill quantity must be positive (ticker={ticker} quantity={quantity})")

        ts = filled_at or datetime.now(timezone.utc)
        key = (ticker, SettlementStatus.OPEN)
        existing = self._positions.get(key)
        if existing is None:
            position = Position(
                id=f"{ticker}-{next(self._ids)}",
                ticker=ticker,
                quantity=quantity,
                entry_price=price,
                filled_at=ts,
                sport=sport,
                side=side,
                entry_fee_cents=fee_cents,
            )
            self._positions[key] = position
            LOGGER.info(
                "position opened ticker=%s qty=%d price=%dc fee=%dc",
                ticker,
                quantity,
                price,
                fee_cents,
            )
            return position

        total_quantity = existing.quantity + quantity
        notional = existing.entry_notional_cents + price * quantity
        # Cost and P&L come from the exact notional; the average price is rounded up.
        blended = math.ceil(notional / total_quantity)
        existing.quantity = total_quantity
        existing.entry_notional_cents = notional
        existing.entry_price = blended
        existing.entry_fee_cents += fee_cents
        LOGGER.info(
            "position increased ticker=%s qty=%d avg_price=%dc",
            ticker,
            total_quantity,
            blended,
        )
        return existing

    def set_exit_price(self, ticker: str, sell_price: int | None) -> None:
        position = self.get(ticker)
        if position is None:
            raise KeyError(ticker)
        position.sell_price = sell_price

    def record_exit_fill(
        self,
        ticker: str,
        price: int,
        fee_cents: int = 0,
        quantity: int | None = None,
        closed_at: datetime | None = None,
        reason: str = "exit",
    ) -> ClosedPosition:
        """Close (or reduce) the open position on ``ticker``."""
        key = (ticker, SettlementStatus.OPEN)
        position = self._positions.get(key)
        if position is None:
            raise KeyError(ticker)

        ts = closed_at or datetime.now(timezone.utc)
        sold = position.quantity if quantity is None else min(quantity, position.quantity)
        if sold <= 0:
            raise ValueError(f"exit fill quantity must be positive (ticker={ticker} quantity={quantity})")

        if sold < position.quantity:
            # Split off the sold slice; entry fee and notional are apportioned pro rata.
            fee_share = position.entry_fee_cents * sold // position.quantity
            notional_share = position.entry_notional_cents * sold // position.quantity
            sold_slice = replace(
                position,
                quantity=sold,
                entry_fee_cents=fee_share,
                entry_notional_cents=notional_share,
            )
            position.quantity -= sold
            position.entry_fee_cents -= fee_share
            position.entry_notional_cents -= notional_share
        else:
            sold_slice = position
            del self._positions[key]

        closed = ClosedPosition(
            position=sold_slice,
            exit_price=price,
            exit_fee_cents=fee_cents,
            closed_at=ts,
            reason=reason,
        )
        self._closed.append(closed)
        LOGGER.info(
            "position closed ticker=%s qty=%d exit=%dc pnl=%dc reason=%s",
            ticker,
            sold,
            price,
            closed.pnl_cents,
            reason,
        )
        return closed

    def settle(self, ticker: str, yes_won: bool, settled_at: datetime | None = None) -> ClosedPosition:
        """Resolve the open position at 100c or 0c depending on the outcome."""
        position = self.get(ticker)
        if position is None:
            raise KeyError(ticker)
        won = yes_won if position.side is Side.YES else not yes_won
        closed = self.record_exit_fill(
            ticker,
            price=100 if won else 0,
            closed_at=settled_at,
            reason="settled",
        )
        closed.position.settlement_status = SettlementStatus.SETTLED
        return closed
