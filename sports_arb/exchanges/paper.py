from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass
from typing import Dict, Iterable

from sports_arb.errors import OrderRejected
from sports_arb.models import MarketSnapshot, OrderAction, OrderHandle, OrderState, OrderStatus, Side

from .base import OrderExecutionClient

LOGGER = logging.getLogger(__name__)


@dataclass
class _PaperOrder:
    handle: OrderHandle
    action: OrderAction
    side: Side
    price: int
    quantity: int
    state: OrderState = OrderState.OPEN
    filled: int = 0
    fill_price: int | None = None

    def status(self) -> OrderStatus:
        return OrderStatus(
            order_id=self.handle.order_id,
            state=self.state,
            filled_contracts=self.filled,
            remaining_contracts=self.quantity - self.filled if self.state is OrderState.OPEN else 0,
            average_price=self.fill_price,
        )


class PaperOrderClient(OrderExecutionClient):
    """In-memory venue that fills against the last quotes it was shown.

    A buy at or through the current ask fills immediately at the ask; a sell at
    or through the bid fills at the bid. Anything else rests until
    :meth:`observe_markets` shows a quote that crosses it, and then fills at the
    resting price.
    """

    venue = "paper"

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self._orders: Dict[str, _PaperOrder] = {}
        self._books: Dict[str, tuple[int, int]] = {}
        self._lock = asyncio.Lock()

    def observe_markets(self, snapshots: Iterable[MarketSnapshot]) -> list[OrderStatus]:
        """Record the latest book for each snapshot and fill any resting orders it crosses."""
        filled: list[OrderStatus] = []
        for snapshot in snapshots:
            self._books[snapshot.ticker] = (snapshot.best_bid, snapshot.best_ask)
        for order in self._orders.values():
            if order.state is not OrderState.OPEN:
                continue
            book = self._books.get(order.handle.ticker)
            if book is None:
                continue
            if self._crosses(order.action, order.price, book):
                self._fill(order, order.price)
                filled.append(order.status())
        return filled

    def open_orders(self) -> list[OrderHandle]:
        return [order.handle for order in self._orders.values() if order.state is OrderState.OPEN]

    async def place_order(
        self,
        ticker: str,
        action: OrderAction,
        side: Side,
        price: int,
        quantity: int,
        client_order_id: str,
    ) -> OrderHandle:
        if quantity <= 0 or not (1 <= price <= 99):
            raise OrderRejected(ticker, "invalid order", price=price, quantity=quantity)

        async with self._lock:
            order_id = f"paper-{next(self._ids)}"
            handle = OrderHandle(order_id=order_id, ticker=ticker, client_order_id=client_order_id)
            order = _PaperOrder(handle=handle, action=action, side=side, price=price, quantity=quantity)
            self._orders[order_id] = order

            book = self._books.get(ticker)
            if book is not None and self._crosses(action, price, book):
                bid, ask = book
                self._fill(order, ask if action is OrderAction.BUY else bid)

            LOGGER.debug(
                "paper order %s %s %s %s x%d @ %dc -> %s",
                order_id,
                ticker,
                action.value,
                side.value,
                quantity,
                price,
                order.state.value,
            )
            return OrderHandle(
                order_id=order_id,
                ticker=ticker,
                client_order_id=client_order_id,
                status=order.status(),
            )

    async def cancel_order(self, handle: OrderHandle) -> OrderStatus:
        async with self._lock:
            order = self._orders.get(handle.order_id)
            if order is None:
                return OrderStatus(order_id=handle.order_id, state=OrderState.UNKNOWN)
            if order.state is OrderState.OPEN:
                order.state = OrderState.CANCELLED
            return order.status()

    async def get_order_status(self, handle: OrderHandle) -> OrderStatus:
        order = self._orders.get(handle.order_id)
        if order is None:
            return OrderStatus(order_id=handle.order_id, state=OrderState.UNKNOWN)
        return order.status()

    @staticmethod
    def _crosses(action: OrderAction, price: int, book: tuple[int, int]) -> bool:
        bid, ask = book
        if action is OrderAction.BUY:
            return 0 < ask <= price
        return bid > 0 and bid >= price

    @staticmethod
    def _fill(order: _PaperOrder, price: int) -> None:
        order.filled = order.quantity
        order.fill_price = price
        order.state = OrderState.FILLED
