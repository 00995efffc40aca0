"""Per-ticker order state machine on top of an :class:`OrderExecutionClient`.

State per ticker::

    IDLE -> SUBMITTING -> RESTING -> FILLED
                              \\-> CANCELLING -> IDLE
            SUBMITTING -> REJECTED -> IDLE

IDLE, FILLED and REJECTED are not stored: a ticker with no in-flight record is
idle, and terminal transitions drop the record once fills have been reported.

Every transition for a ticker happens under that ticker's ``asyncio.Lock``,
so two evaluations racing on one ticker cannot both leave IDLE. Different
tickers never contend.

Each placement attempt gets its own client order id. When an attempt times
out it is superseded, not cancelled locally (the venue may still accept it);
if it later succeeds, the stray order is cancelled in the background and any
contracts it filled are still reported to the fill listeners.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Set, TypeVar

import httpx

from sports_arb.config import LifecycleSettings
from sports_arb.errors import OrderActionFailed, OrderRejected
from sports_arb.exchanges.base import OrderExecutionClient
from sports_arb.models import (
    InFlightOrder,
    LifecycleState,
    OrderAction,
    OrderFill,
    OrderHandle,
    OrderState,
    OrderStatus,
    Side,
)

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

FillCallback = Callable[[OrderFill], None]

# Transport-level failures worth another attempt. Exchange refusals raise OrderRejected instead.
RETRYABLE_ERRORS = (httpx.HTTPError, asyncio.TimeoutError, ConnectionError)

_CLOSED_STATES = frozenset({OrderState.CANCELLED, OrderState.EXPIRED, OrderState.REJECTED})


class LifecycleOutcome(str, Enum):
    PLACED = "placed"
    FILLED = "filled"
    DUPLICATE = "duplicate"
    REPLACED = "replaced"
    UNCHANGED = "unchanged"
    CANCELLED = "cancelled"
    REJECTED = "rejected"
    NOT_FOUND = "not_found"


@dataclass
class _Ticket:
    order: InFlightOrder
    handle: Optional[OrderHandle] = None


class OrderLifecycleManager:
    def __init__(
        self,
        client: OrderExecutionClient,
        settings: LifecycleSettings | None = None,
        on_fill: FillCallback | Iterable[FillCallback] | None = None,
    ) -> None:
        self._client = client
        self._settings = settings or LifecycleSettings()
        self._tickets: Dict[str, _Ticket] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._request_ids = itertools.count(1)
        self._background: Set[asyncio.Future] = set()
        self._listeners: List[FillCallback] = []
        if callable(on_fill):
            self._listeners.append(on_fill)
        elif on_fill is not None:
            self._listeners.extend(on_fill)

    def add_fill_listener(self, callback: FillCallback) -> None:
        self._listeners.append(callback)

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    def state(self, ticker: str) -> LifecycleState:
        ticket = self._tickets.get(ticker)
        return LifecycleState.IDLE if ticket is None else ticket.order.state

    def get(self, ticker: str) -> InFlightOrder | None:
        ticket = self._tickets.get(ticker)
        return None if ticket is None else ticket.order

    def snapshot(self) -> Mapping[str, InFlightOrder]:
        """Immutable copy of the in-flight map, safe to hand to the risk gate."""
        return MappingProxyType({ticker: ticket.order for ticker, ticket in self._tickets.items()})

    def stale_orders(self, threshold_seconds: float, now: datetime | None = None) -> list[InFlightOrder]:
        ts = now or datetime.now(timezone.utc)
        return [
            ticket.order
            for ticket in self._tickets.values()
            if (ts - ticket.order.submitted_at).total_seconds() > threshold_seconds
        ]

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def submit(
        self,
        ticker: str,
        action: OrderAction,
        side: Side,
        price: int,
        quantity: int,
    ) -> LifecycleOutcome:
        """Place an order, or suppress/replace the one already in flight.

        Raises
        ------
        OrderActionFailed
            If placement (or the cancel half of a replace) keeps failing.
        """
        async with self._lock_for(ticker):
            ticket = self._tickets.get(ticker)
            if ticket is None:
                return await self._place_locked(ticker, action, side, price, quantity)

            if ticket.order.matches(action, side, price, quantity):
                LOGGER.debug(
                    "duplicate submit suppressed ticker=%s price=%dc qty=%d request_id=%d",
                    ticker,
                    price,
                    quantity,
                    ticket.order.request_id,
                )
                return LifecycleOutcome.DUPLICATE

            if await self._cancel_locked(ticket) is LifecycleOutcome.FILLED:
                return LifecycleOutcome.FILLED
            outcome = await self._place_locked(ticker, action, side, price, quantity)
            return LifecycleOutcome.REPLACED if outcome is LifecycleOutcome.PLACED else outcome

    async def reprice(self, ticker: str, new_price: int) -> LifecycleOutcome:
        """Cancel and resubmit a resting order at ``new_price`` if it moved enough."""
        async with self._lock_for(ticker):
            ticket = self._tickets.get(ticker)
            if ticket is None or ticket.order.state is not LifecycleState.RESTING:
                return LifecycleOutcome.NOT_FOUND

            current = ticket.order
            if abs(new_price - current.price) < max(1, self._settings.min_reprice_ticks):
                return LifecycleOutcome.UNCHANGED

            if await self._cancel_locked(ticket) is LifecycleOutcome.FILLED:
                return LifecycleOutcome.FILLED
            remaining = ticket.order.remaining_quantity
            if remaining <= 0:
                return LifecycleOutcome.FILLED

            LOGGER.info(
                "repricing ticker=%s %s %dc -> %dc qty=%d",
                ticker,
                current.action.value,
                current.price,
                new_price,
                remaining,
            )
            outcome = await self._place_locked(ticker, current.action, current.side, new_price, remaining)
            return LifecycleOutcome.REPLACED if outcome is LifecycleOutcome.PLACED else outcome

    async def cancel(self, ticker: str) -> LifecycleOutcome:
        async with self._lock_for(ticker):
            ticket = self._tickets.get(ticker)
            if ticket is None:
                return LifecycleOutcome.NOT_FOUND
            return await self._cancel_locked(ticket)

    async def cancel_all(self, action: OrderAction | None = None) -> Dict[str, LifecycleOutcome]:
        """Cancel every in-flight order (optionally only ``action`` orders), tickers in parallel."""
        tickers = [
            ticker
            for ticker, ticket in self._tickets.items()
            if action is None or ticket.order.action is action
        ]
        outcomes = await asyncio.gather(*(self.cancel(ticker) for ticker in tickers))
        return dict(zip(tickers, outcomes))

    async def refresh(self, ticker: str) -> OrderStatus | None:
        """Poll the venue for the order's status and apply any fills it reports."""
        async with self._lock_for(ticker):
            ticket = self._tickets.get(ticker)
            if ticket is None or ticket.handle is None:
                return None
            try:
                status = await asyncio.wait_for(
                    self._client.get_order_status(ticket.handle),
                    timeout=self._timeout(),
                )
            except RETRYABLE_ERRORS as exc:
                LOGGER.warning("order status poll failed ticker=%s order_id=%s: %s", ticker, ticket.handle.order_id, exc)
                return None
            self._apply_status_locked(ticket, status, is_taker=False)
            return status

    async def mark_filled(self, ticker: str, price: int, quantity: int | None = None) -> bool:
        """Record a fill observed outside :meth:`refresh` (e.g. a fills stream)."""
        async with self._lock_for(ticker):
            ticket = self._tickets.get(ticker)
            if ticket is None:
                LOGGER.warning("fill for unknown in-flight order ticker=%s price=%dc", ticker, price)
                return False
            order = ticket.order
            filled = order.filled_quantity + (order.remaining_quantity if quantity is None else quantity)
            filled = min(filled, order.quantity)
            status = OrderStatus(
                order_id=order.order_id or "",
                state=OrderState.FILLED if filled >= order.quantity else OrderState.PARTIALLY_FILLED,
                filled_contracts=filled,
                remaining_contracts=order.quantity - filled,
                average_price=price,
            )
            self._apply_status_locked(ticket, status, is_taker=False)
            return True

    async def mark_terminal(self, ticker: str, state: OrderState = OrderState.CANCELLED) -> bool:
        """Drop the ticker's record after the venue closed the order on its own."""
        async with self._lock_for(ticker):
            ticket = self._tickets.pop(ticker, None)
            if ticket is None:
                return False
            LOGGER.info(
                "order closed by venue ticker=%s order_id=%s state=%s",
                ticker,
                ticket.order.order_id,
                state.value,
            )
            return True

    async def drain(self) -> None:
        """Wait for background work (superseded attempts, stray cancels) to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ------------------------------------------------------------------
    # Internals (caller holds the ticker lock)
    # ------------------------------------------------------------------

    def _lock_for(self, ticker: str) -> asyncio.Lock:
        lock = self._locks.get(ticker)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[ticker] = lock
        return lock

    async def _place_locked(
        self,
        ticker: str,
        action: OrderAction,
        side: Side,
        price: int,
        quantity: int,
    ) -> LifecycleOutcome:
        request_id = next(self._request_ids)
        order = InFlightOrder(
            ticker=ticker,
            action=action,
            side=side,
            price=price,
            quantity=quantity,
            request_id=request_id,
            state=LifecycleState.SUBMITTING,
            submitted_at=datetime.now(timezone.utc),
        )
        ticket = _Ticket(order=order)
        self._tickets[ticker] = ticket

        def place(attempt: int) -> Awaitable[OrderHandle]:
            return self._client.place_order(
                ticker,
                action,
                side,
                price,
                quantity,
                client_order_id=f"sa-{request_id}-{attempt}",
            )

        async def on_superseded(handle: OrderHandle) -> None:
            await self._cancel_stray(order, handle)

        try:
            handle = await self._with_retry(ticker, "place", place, on_superseded)
        except OrderRejected as exc:
            self._tickets.pop(ticker, None)
            LOGGER.warning("order rejected %s", exc)
            return LifecycleOutcome.REJECTED
        except OrderActionFailed as exc:
            self._tickets.pop(ticker, None)
            LOGGER.error("order placement failed %s", exc)
            raise
        except Exception:
            self._tickets.pop(ticker, None)
            raise

        ticket.handle = handle
        ticket.order = replace(order, state=LifecycleState.RESTING, order_id=handle.order_id)
        LOGGER.info(
            "order placed ticker=%s %s %s x%d @ %dc order_id=%s request_id=%d",
            ticker,
            action.value,
            side.value,
            quantity,
            price,
            handle.order_id,
            request_id,
        )

        if handle.status is not None:
            # Anything filled in the placement response crossed the book.
            if self._apply_status_locked(ticket, handle.status, is_taker=True) is LifecycleState.FILLED:
                return LifecycleOutcome.FILLED
            if ticker not in self._tickets:
                return LifecycleOutcome.REJECTED
        return LifecycleOutcome.PLACED

    async def _cancel_locked(self, ticket: _Ticket) -> LifecycleOutcome:
        ticker = ticket.order.ticker
        if ticket.handle is None:
            self._tickets.pop(ticker, None)
            return LifecycleOutcome.CANCELLED

        handle = ticket.handle
        ticket.order = replace(ticket.order, state=LifecycleState.CANCELLING)
        try:
            status = await self._with_retry(ticker, "cancel", lambda _attempt: self._client.cancel_order(handle))
        except OrderActionFailed as exc:
            self._tickets.pop(ticker, None)
            LOGGER.error("order cancel failed %s", exc)
            raise
        except Exception:
            self._tickets.pop(ticker, None)
            raise

        if self._apply_status_locked(ticket, status, is_taker=False) is LifecycleState.FILLED:
            LOGGER.info("cancel lost race to fill ticker=%s order_id=%s", ticker, handle.order_id)
            return LifecycleOutcome.FILLED

        self._tickets.pop(ticker, None)
        LOGGER.info("order cancelled ticker=%s order_id=%s", ticker, handle.order_id)
        return LifecycleOutcome.CANCELLED

    def _apply_status_locked(self, ticket: _Ticket, status: OrderStatus, is_taker: bool) -> LifecycleState:
        """Report newly filled contracts and settle the ticket's state.

        Returns FILLED or IDLE when the record was dropped, RESTING otherwise.
        """
        order = ticket.order
        new_contracts = min(status.filled_contracts, order.quantity) - order.filled_quantity
        if new_contracts > 0:
            price = status.average_price if status.average_price is not None else order.price
            order = replace(order, filled_quantity=order.filled_quantity + new_contracts)
            ticket.order = order
            self._emit(
                OrderFill(
                    ticker=order.ticker,
                    action=order.action,
                    side=order.side,
                    price=price,
                    quantity=new_contracts,
                    order_id=order.order_id,
                    request_id=order.request_id,
                    is_taker=is_taker,
                    filled_at=datetime.now(timezone.utc),
                )
            )

        if status.state is OrderState.FILLED or order.remaining_quantity <= 0:
            ticket.order = replace(order, state=LifecycleState.FILLED)
            self._tickets.pop(order.ticker, None)
            return LifecycleState.FILLED
        if status.state in _CLOSED_STATES:
            if status.state is OrderState.REJECTED:
                ticket.order = replace(order, state=LifecycleState.REJECTED)
            self._tickets.pop(order.ticker, None)
            return LifecycleState.IDLE
        return order.state

    async def _with_retry(
        self,
        ticker: str,
        action_name: str,
        make_call: Callable[[int], Awaitable[T]],
        on_superseded: Callable[[T], Awaitable[None]] | None = None,
    ) -> T:
        attempts = max(1, self._settings.max_attempts)
        last_error = ""
        for attempt in range(1, attempts + 1):
            task = asyncio.ensure_future(make_call(attempt))
            done, _ = await asyncio.wait({task}, timeout=self._timeout())
            if task in done:
                try:
                    return task.result()
                except RETRYABLE_ERRORS as exc:
                    last_error = f"{type(exc).__name__}: {exc}"
            else:
                last_error = f"timed out after {self._settings.request_timeout_seconds:.1f}s"
                self._track_superseded(ticker, action_name, task, on_superseded)

            LOGGER.warning(
                "%s attempt %d/%d failed ticker=%s: %s",
                action_name,
                attempt,
                attempts,
                ticker,
                last_error,
            )
            if attempt < attempts:
                await asyncio.sleep(self._backoff_seconds(attempt))

        raise OrderActionFailed(ticker, action_name, attempts, last_error)

    def _track_superseded(
        self,
        ticker: str,
        action_name: str,
        task: asyncio.Future,
        on_superseded: Callable[[T], Awaitable[None]] | None,
    ) -> None:
        self._background.add(task)

        def _done(finished: asyncio.Future) -> None:
            self._background.discard(finished)
            if finished.cancelled():
                return
            exc = finished.exception()
            if exc is not None:
                LOGGER.debug("superseded %s on %s failed late: %s", action_name, ticker, exc)
                return
            if on_superseded is not None:
                self._spawn(on_superseded(finished.result()))

        task.add_done_callback(_done)

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _cancel_stray(self, order: InFlightOrder, handle: OrderHandle) -> None:
        LOGGER.warning(
            "late ack for superseded placement ticker=%s request_id=%d order_id=%s, cancelling",
            order.ticker,
            order.request_id,
            handle.order_id,
        )
        try:
            status = await asyncio.wait_for(self._client.cancel_order(handle), timeout=self._timeout())
        except RETRYABLE_ERRORS as exc:
            LOGGER.error("failed to cancel stray order ticker=%s order_id=%s: %s", order.ticker, handle.order_id, exc)
            return
        if status.filled_contracts > 0:
            async with self._lock_for(order.ticker):
                self._emit(
                    OrderFill(
                        ticker=order.ticker,
                        action=order.action,
                        side=order.side,
                        price=status.average_price if status.average_price is not None else order.price,
                        quantity=min(status.filled_contracts, order.quantity),
                        order_id=handle.order_id,
                        request_id=order.request_id,
                        is_taker=True,
                        filled_at=datetime.now(timezone.utc),
                    )
                )

    def _emit(self, fill: OrderFill) -> None:
        LOGGER.info(
            "fill ticker=%s %s %s x%d @ %dc taker=%s",
            fill.ticker,
            fill.action.value,
            fill.side.value,
            fill.quantity,
            fill.price,
            fill.is_taker,
        )
        for listener in self._listeners:
            listener(fill)

    def _timeout(self) -> float | None:
        timeout = self._settings.request_timeout_seconds
        return timeout if timeout > 0 else None

    def _backoff_seconds(self, attempt: int) -> float:
        delay = self._settings.backoff_base_seconds * (2 ** (attempt - 1))
        return min(delay, self._settings.backoff_max_seconds)
