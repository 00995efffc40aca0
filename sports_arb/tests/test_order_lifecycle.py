"""Tests for the per-ticker order state machine."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import List

import httpx
import pytest

from sports_arb.config import LifecycleSettings
from sports_arb.errors import OrderActionFailed, OrderRejected
from sports_arb.exchanges.base import OrderExecutionClient
from sports_arb.models import (
    LifecycleState,
    OrderAction,
    OrderFill,
    OrderHandle,
    OrderState,
    OrderStatus,
    Side,
)
from sports_arb.order_lifecycle import LifecycleOutcome, OrderLifecycleManager

FAST = LifecycleSettings(max_attempts=3, backoff_base_seconds=0.0, backoff_max_seconds=0.0, request_timeout_seconds=1.0)


class ScriptedClient(OrderExecutionClient):
    """Execution client whose responses are queued by the test."""

    venue = "scripted"

    def __init__(self) -> None:
        self.placed: List[dict] = []
        self.cancelled: List[str] = []
        self.place_delays: List[float] = []
        self.place_errors: List[Exception] = []
        self.place_statuses: List[OrderStatus | None] = []
        self.cancel_statuses: List[OrderStatus] = []
        self.poll_statuses: List[OrderStatus] = []

    async def place_order(self, ticker, action, side, price, quantity, client_order_id=""):
        self.placed.append(
            {
                "ticker": ticker,
                "action": action,
                "price": price,
                "quantity": quantity,
                "client_order_id": client_order_id,
            }
        )
        order_id = f"ord-{len(self.placed)}"
        if self.place_delays:
            await asyncio.sleep(self.place_delays.pop(0))
        else:
            await asyncio.sleep(0)
        if self.place_errors:
            raise self.place_errors.pop(0)
        status = self.place_statuses.pop(0) if self.place_statuses else None
        return OrderHandle(order_id=order_id, ticker=ticker, client_order_id=client_order_id, status=status)

    async def cancel_order(self, handle):
        self.cancelled.append(handle.order_id)
        if self.cancel_statuses:
            return self.cancel_statuses.pop(0)
        return OrderStatus(order_id=handle.order_id, state=OrderState.CANCELLED)

    async def get_order_status(self, handle):
        if self.poll_statuses:
            return self.poll_statuses.pop(0)
        return OrderStatus(order_id=handle.order_id, state=OrderState.OPEN, remaining_contracts=10)


def _manager(client: ScriptedClient, settings: LifecycleSettings = FAST) -> tuple[OrderLifecycleManager, List[OrderFill]]:
    fills: List[OrderFill] = []
    return OrderLifecycleManager(client, settings, on_fill=fills.append), fills


# ---------------------------------------------------------------------------
# submit()
# ---------------------------------------------------------------------------


class TestSubmit:
    def test_place_moves_ticker_to_resting(self) -> None:
        client = ScriptedClient()
        manager, _ = _manager(client)

        outcome = asyncio.run(manager.submit("T1", OrderAction.BUY, Side.YES, 41, 10))

        assert outcome is LifecycleOutcome.PLACED
        assert manager.state("T1") is LifecycleState.RESTING
        order = manager.get("T1")
        assert order is not None
        assert order.order_id == "ord-1"
        assert client.placed[0]["client_order_id"] == f"sa-{order.request_id}-1"

    def test_concurrent_identical_submits_place_once(self) -> None:
        client = ScriptedClient()
        manager, _ = _manager(client)

        async def scenario():
            return await asyncio.gather(
                manager.submit("T1", OrderAction.BUY, Side.YES, 41, 10),
                manager.submit("T1", OrderAction.BUY, Side.YES, 41, 10),
            )

        outcomes = asyncio.run(scenario())

        assert sorted(o.value for o in outcomes) == ["duplicate", "placed"]
        assert len(client.placed) == 1

    def test_different_tickers_do_not_block_each_other(self) -> None:
        client = ScriptedClient()
        client.place_delays = [0.05, 0.0]
        manager, _ = _manager(client)

        async def scenario():
            return await asyncio.gather(
                manager.submit("T1", OrderAction.BUY, Side.YES, 41, 10),
                manager.submit("T2", OrderAction.BUY, Side.YES, 30, 10),
            )

        assert asyncio.run(scenario()) == [LifecycleOutcome.PLACED, LifecycleOutcome.PLACED]
        assert set(manager.snapshot()) == {"T1", "T2"}

    def test_changed_submit_cancels_then_replaces(self) -> None:
        client = ScriptedClient()
        manager, _ = _manager(client)

        async def scenario():
            await manager.submit("T1", OrderAction.BUY, Side.YES, 41, 10)
            return await manager.submit("T1", OrderAction.BUY, Side.YES, 43, 10)

        assert asyncio.run(scenario()) is LifecycleOutcome.REPLACED
        assert client.cancelled == ["ord-1"]
        assert manager.get("T1").price == 43
        assert manager.get("T1").order_id == "ord-2"

    def test_immediate_fill_reported_as_taker(self) -> None:
        client = ScriptedClient()
        client.place_statuses = [
            OrderStatus(order_id="ord-1", state=OrderState.FILLED, filled_contracts=10, average_price=44)
        ]
        manager, fills = _manager(client)

        outcome = asyncio.run(manager.submit("T1", OrderAction.BUY, Side.YES, 44, 10))

        assert outcome is LifecycleOutcome.FILLED
        assert manager.state("T1") is LifecycleState.IDLE
        assert [(f.price, f.quantity, f.is_taker) for f in fills] == [(44, 10, True)]

    def test_exchange_rejection_returns_to_idle(self) -> None:
        client = ScriptedClient()
        client.place_errors = [OrderRejected("T1", "insufficient balance")]
        manager, _ = _manager(client)

        outcome = asyncio.run(manager.submit("T1", OrderAction.BUY, Side.YES, 41, 10))

        assert outcome is LifecycleOutcome.REJECTED
        assert manager.state("T1") is LifecycleState.IDLE
        assert len(client.placed) == 1


# ---------------------------------------------------------------------------
# Retries and timeouts
# ---------------------------------------------------------------------------


class TestRetry:
    def test_transient_error_is_retried(self) -> None:
        client = ScriptedClient()
        client.place_errors = [httpx.ConnectError("reset")]
        manager, _ = _manager(client)

        outcome = asyncio.run(manager.submit("T1", OrderAction.BUY, Side.YES, 41, 10))

        assert outcome is LifecycleOutcome.PLACED
        assert [p["client_order_id"][-2:] for p in client.placed] == ["-1", "-2"]

    def test_exhausted_retries_raise_and_reset(self) -> None:
        client = ScriptedClient()
        client.place_errors = [httpx.ConnectError("down") for _ in range(3)]
        manager, _ = _manager(client)

        with pytest.raises(OrderActionFailed) as info:
            asyncio.run(manager.submit("T1", OrderAction.BUY, Side.YES, 41, 10))

        assert info.value.attempts == 3
        assert info.value.action == "place"
        assert manager.state("T1") is LifecycleState.IDLE
        assert len(client.placed) == 3

    def test_superseded_attempt_is_cancelled_when_it_lands(self) -> None:
        client = ScriptedClient()
        client.place_delays = [0.2, 0.0]
        settings = LifecycleSettings(
            max_attempts=2,
            backoff_base_seconds=0.0,
            backoff_max_seconds=0.0,
            request_timeout_seconds=0.05,
        )
        manager, _ = _manager(client, settings)

        async def scenario():
            outcome = await manager.submit("T1", OrderAction.BUY, Side.YES, 41, 10)
            await manager.drain()
            return outcome

        assert asyncio.run(scenario()) is LifecycleOutcome.PLACED
        assert manager.get("T1").order_id == "ord-2"
        assert client.cancelled == ["ord-1"]

    def test_fill_on_superseded_attempt_is_still_reported(self) -> None:
        client = ScriptedClient()
        client.place_delays = [0.2, 0.0]
        client.cancel_statuses = [
            OrderStatus(order_id="ord-1", state=OrderState.CANCELLED, filled_contracts=3, average_price=41)
        ]
        settings = LifecycleSettings(max_attempts=2, backoff_base_seconds=0.0, request_timeout_seconds=0.05)
        manager, fills = _manager(client, settings)

        async def scenario():
            await manager.submit("T1", OrderAction.BUY, Side.YES, 41, 10)
            await manager.drain()

        asyncio.run(scenario())

        assert [(f.order_id, f.quantity, f.price) for f in fills] == [("ord-1", 3, 41)]


# ---------------------------------------------------------------------------
# reprice() / cancel()
# ---------------------------------------------------------------------------


class TestReprice:
    def test_small_move_is_ignored(self) -> None:
        client = ScriptedClient()
        manager, _ = _manager(client, LifecycleSettings(min_reprice_ticks=2, backoff_base_seconds=0.0))

        async def scenario():
            await manager.submit("T1", OrderAction.BUY, Side.YES, 41, 10)
            return await manager.reprice("T1", 42)

        assert asyncio.run(scenario()) is LifecycleOutcome.UNCHANGED
        assert client.cancelled == []

    def test_same_price_is_unchanged(self) -> None:
        client = ScriptedClient()
        manager, _ = _manager(client)

        async def scenario():
            await manager.submit("T1", OrderAction.BUY, Side.YES, 41, 10)
            return await manager.reprice("T1", 41)

        assert asyncio.run(scenario()) is LifecycleOutcome.UNCHANGED

    def test_reprice_resubmits_remaining_quantity(self) -> None:
        client = ScriptedClient()
        client.poll_statuses = [
            OrderStatus(
                order_id="ord-1",
                state=OrderState.PARTIALLY_FILLED,
                filled_contracts=4,
                remaining_contracts=6,
                average_price=41,
            )
        ]
        manager, fills = _manager(client)

        async def scenario():
            await manager.submit("T1", OrderAction.BUY, Side.YES, 41, 10)
            await manager.refresh("T1")
            return await manager.reprice("T1", 44)

        assert asyncio.run(scenario()) is LifecycleOutcome.REPLACED
        assert [(f.quantity, f.is_taker) for f in fills] == [(4, False)]
        assert client.placed[-1]["quantity"] == 6
        assert client.placed[-1]["price"] == 44

    def test_reprice_unknown_ticker(self) -> None:
        manager, _ = _manager(ScriptedClient())
        assert asyncio.run(manager.reprice("missing", 50)) is LifecycleOutcome.NOT_FOUND


class TestCancel:
    def test_cancel_returns_ticker_to_idle(self) -> None:
        client = ScriptedClient()
        manager, fills = _manager(client)

        async def scenario():
            await manager.submit("T1", OrderAction.BUY, Side.YES, 41, 10)
            return await manager.cancel("T1")

        assert asyncio.run(scenario()) is LifecycleOutcome.CANCELLED
        assert manager.state("T1") is LifecycleState.IDLE
        assert fills == []

    def test_cancel_racing_fill_records_the_fill(self) -> None:
        client = ScriptedClient()
        client.cancel_statuses = [
            OrderStatus(order_id="ord-1", state=OrderState.FILLED, filled_contracts=10, average_price=41)
        ]
        manager, fills = _manager(client)

        async def scenario():
            await manager.submit("T1", OrderAction.BUY, Side.YES, 41, 10)
            return await manager.cancel("T1")

        assert asyncio.run(scenario()) is LifecycleOutcome.FILLED
        assert manager.state("T1") is LifecycleState.IDLE
        assert [(f.ticker, f.quantity, f.price, f.is_taker) for f in fills] == [("T1", 10, 41, False)]

    def test_cancel_all_filters_by_action(self) -> None:
        client = ScriptedClient()
        manager, _ = _manager(client)

        async def scenario():
            await manager.submit("T1", OrderAction.BUY, Side.YES, 41, 10)
            await manager.submit("T2", OrderAction.SELL, Side.YES, 60, 10)
            return await manager.cancel_all(OrderAction.BUY)

        assert asyncio.run(scenario()) == {"T1": LifecycleOutcome.CANCELLED}
        assert set(manager.snapshot()) == {"T2"}

    def test_cancel_unknown_ticker(self) -> None:
        manager, _ = _manager(ScriptedClient())
        assert asyncio.run(manager.cancel("missing")) is LifecycleOutcome.NOT_FOUND


# ---------------------------------------------------------------------------
# Status updates
# ---------------------------------------------------------------------------


class TestStatusUpdates:
    def test_refresh_fill_completes_order(self) -> None:
        client = ScriptedClient()
        client.poll_statuses = [
            OrderStatus(order_id="ord-1", state=OrderState.FILLED, filled_contracts=10, average_price=40)
        ]
        manager, fills = _manager(client)

        async def scenario():
            await manager.submit("T1", OrderAction.BUY, Side.YES, 41, 10)
            return await manager.refresh("T1")

        status = asyncio.run(scenario())

        assert status.state is OrderState.FILLED
        assert manager.state("T1") is LifecycleState.IDLE
        assert [(f.price, f.quantity) for f in fills] == [(40, 10)]

    def test_refresh_transport_error_keeps_order(self) -> None:
        client = ScriptedClient()
        manager, _ = _manager(client)

        async def failing_status(handle):
            raise httpx.ReadTimeout("slow")

        async def scenario():
            await manager.submit("T1", OrderAction.BUY, Side.YES, 41, 10)
            client.get_order_status = failing_status
            return await manager.refresh("T1")

        assert asyncio.run(scenario()) is None
        assert manager.state("T1") is LifecycleState.RESTING

    def test_venue_cancel_drops_record(self) -> None:
        client = ScriptedClient()
        client.poll_statuses = [OrderStatus(order_id="ord-1", state=OrderState.EXPIRED)]
        manager, fills = _manager(client)

        async def scenario():
            await manager.submit("T1", OrderAction.BUY, Side.YES, 41, 10)
            await manager.refresh("T1")

        asyncio.run(scenario())

        assert manager.state("T1") is LifecycleState.IDLE
        assert fills == []

    def test_mark_filled_partial_then_rest(self) -> None:
        client = ScriptedClient()
        manager, fills = _manager(client)

        async def scenario():
            await manager.submit("T1", OrderAction.SELL, Side.YES, 60, 10)
            await manager.mark_filled("T1", 60, quantity=4)
            first = manager.get("T1")
            await manager.mark_filled("T1", 61)
            return first

        first = asyncio.run(scenario())

        assert first.filled_quantity == 4
        assert first.remaining_quantity == 6
        assert [(f.quantity, f.price) for f in fills] == [(4, 60), (6, 61)]
        assert manager.state("T1") is LifecycleState.IDLE

    def test_mark_terminal(self) -> None:
        manager, _ = _manager(ScriptedClient())

        async def scenario():
            await manager.submit("T1", OrderAction.BUY, Side.YES, 41, 10)
            return await manager.mark_terminal("T1"), await manager.mark_terminal("T1")

        assert asyncio.run(scenario()) == (True, False)

    def test_stale_orders(self) -> None:
        manager, _ = _manager(ScriptedClient())
        asyncio.run(manager.submit("T1", OrderAction.BUY, Side.YES, 41, 10))

        later = datetime.now(timezone.utc) + timedelta(seconds=120)
        assert [order.ticker for order in manager.stale_orders(60.0, now=later)] == ["T1"]
        assert manager.stale_orders(600.0, now=later) == []

    def test_snapshot_is_read_only(self) -> None:
        manager, _ = _manager(ScriptedClient())
        asyncio.run(manager.submit("T1", OrderAction.BUY, Side.YES, 41, 10))

        view = manager.snapshot()
        with pytest.raises(TypeError):
            view["T2"] = view["T1"]
