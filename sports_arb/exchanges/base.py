from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Iterable

from sports_arb.models import MarketSnapshot, OrderAction, OrderHandle, OrderStatus, Side


class OrderExecutionClient(ABC):
    """Places and cancels limit orders on one venue.

    Implementations raise :class:`~sports_arb.errors.OrderRejected` when the
    venue refuses an order and let transport errors (``httpx.HTTPError``,
    timeouts) propagate so the caller can retry them.
    """

    venue: str

    @abstractmethod
    async def place_order(
        self,
        ticker: str,
        action: OrderAction,
        side: Side,
        price: int,
        quantity: int,
        client_order_id: str,
    ) -> OrderHandle:
        raise NotImplementedError

    @abstractmethod
    async def cancel_order(self, handle: OrderHandle) -> OrderStatus:
        """Cancel ``handle``; the returned status may show a fill that won the race."""
        raise NotImplementedError

    @abstractmethod
    async def get_order_status(self, handle: OrderHandle) -> OrderStatus:
        raise NotImplementedError

    def observe_markets(self, snapshots: Iterable[MarketSnapshot]) -> list[OrderStatus]:
        """Hook for simulated venues to see each cycle's quotes. Real venues ignore it."""
        return []

    async def aclose(self) -> None:
        return None


class OddsFeed(ABC):
    """Source of per-cycle market snapshots with fair values already attached."""

    @abstractmethod
    async def fetch_snapshots(self) -> list[MarketSnapshot]:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None
