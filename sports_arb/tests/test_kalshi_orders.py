from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock

import httpx
import pytest

from sports_arb.config import KalshiSettings
from sports_arb.errors import OrderRejected
from sports_arb.exchanges.kalshi import KalshiOrderClient
from sports_arb.models import OrderAction, OrderHandle, OrderState, Side

BASE_URL = "https://api.elections.kalshi.com/trade-api/v2"


def _client(handler, key_id: str | None = "key-1", signed: list | None = None, **settings_kw) -> KalshiOrderClient:
    def signer(method: str, path: str) -> dict:
        if signed is not None:
            signed.append((method, path))
        return {"KALSHI-ACCESS-SIGNATURE": "sig", "KALSHI-ACCESS-TIMESTAMP": "1"}

    settings = KalshiSettings(api_base_url=BASE_URL, key_id=key_id, **settings_kw)
    http = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(handler))
    return KalshiOrderClient(settings, signer=signer, client=http)


def test_place_order_builds_signed_limit_payload() -> None:
    seen = {}
    signed: list = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["headers"] = dict(request.headers)
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            201,
            json={
                "order": {
                    "order_id": "ord-9",
                    "status": "resting",
                    "side": "yes",
                    "yes_price": 41,
                    "fill_count": 0,
                    "remaining_count": 10,
                }
            },
        )

    client = _client(handler, signed=signed)
    handle = asyncio.run(client.place_order("T1", OrderAction.BUY, Side.YES, 41, 10, client_order_id="sa-1-1"))

    assert handle.order_id == "ord-9"
    assert handle.status.state is OrderState.OPEN
    assert seen["path"] == "/trade-api/v2/portfolio/orders"
    assert seen["body"] == {
        "ticker": "T1",
        "action": "buy",
        "side": "yes",
        "count": 10,
        "type": "limit",
        "client_order_id": "sa-1-1",
        "yes_price": 41,
    }
    assert seen["headers"]["kalshi-access-key"] == "key-1"
    assert signed == [("POST", "/trade-api/v2/portfolio/orders")]


def test_place_order_no_side_uses_no_price_and_expiration() -> None:
    bodies = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(
            201,
            json={"order": {"order_id": "ord-2", "status": "executed", "side": "no", "no_price": 30, "fill_count": 5}},
        )

    client = _client(handler, order_expiration_seconds=60)
    handle = asyncio.run(client.place_order("T1", OrderAction.BUY, Side.NO, 30, 5, client_order_id="c"))

    assert bodies[0]["no_price"] == 30
    assert "yes_price" not in bodies[0]
    assert bodies[0]["expiration_ts"] > 0
    assert handle.status.state is OrderState.FILLED
    assert handle.status.filled_contracts == 5
    assert handle.status.average_price == 30


def test_place_order_client_error_is_a_rejection() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": {"code": "insufficient_balance"}})

    with pytest.raises(OrderRejected) as info:
        asyncio.run(_client(handler).place_order("T1", OrderAction.BUY, Side.YES, 41, 10, client_order_id="c"))

    assert info.value.context["status_code"] == 400


@pytest.mark.parametrize("code", [429, 502])
def test_place_order_transient_errors_propagate(code: int) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(code, text="try later")

    with pytest.raises(httpx.HTTPStatusError):
        asyncio.run(_client(handler).place_order("T1", OrderAction.BUY, Side.YES, 41, 10, client_order_id="c"))


def test_place_order_without_credentials_never_hits_network() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={})

    with pytest.raises(OrderRejected):
        asyncio.run(_client(handler, key_id=None).place_order("T1", OrderAction.BUY, Side.YES, 41, 10, client_order_id="c"))
    assert calls == []


def test_cancel_order_reports_fills_that_won_the_race() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "DELETE"
        return httpx.Response(
            200,
            json={"order": {"order_id": "ord-1", "status": "canceled", "fill_count": 3, "yes_price": 41}},
        )

    status = asyncio.run(_client(handler).cancel_order(OrderHandle(order_id="ord-1", ticker="T1")))

    assert status.state is OrderState.CANCELLED
    assert status.filled_contracts == 3
    assert status.average_price == 41


def test_cancel_order_missing_order_falls_back_to_status() -> None:
    methods = []

    def handler(request: httpx.Request) -> httpx.Response:
        methods.append(request.method)
        if request.method == "DELETE":
            return httpx.Response(404, json={"error": "not found"})
        return httpx.Response(
            200,
            json={"order": {"order_id": "ord-1", "status": "executed", "fill_count": 10, "average_price": 0.42}},
        )

    status = asyncio.run(_client(handler).cancel_order(OrderHandle(order_id="ord-1", ticker="T1")))

    assert methods == ["DELETE", "GET"]
    assert status.state is OrderState.FILLED
    assert status.average_price == 42


def test_order_status_partial_fill() -> None:
    status = KalshiOrderClient._to_order_status(
        "ord-1",
        {"order": {"status": "resting", "fill_count": 4, "remaining_count": 6, "yes_price": 41}},
    )
    assert status.state is OrderState.PARTIALLY_FILLED
    assert status.filled_contracts == 4
    assert status.remaining_contracts == 6


def test_order_status_unknown_state() -> None:
    status = KalshiOrderClient._to_order_status("ord-1", {"status": "mystery"})
    assert status.state is OrderState.UNKNOWN
    assert status.average_price is None


def test_normalize_price() -> None:
    assert KalshiOrderClient._normalize_price(41) == 41
    assert KalshiOrderClient._normalize_price(0.41) == 41
    assert KalshiOrderClient._normalize_price(55.0) == 55
    assert KalshiOrderClient._normalize_price(None) is None
    assert KalshiOrderClient._normalize_price("abc") is None
    assert KalshiOrderClient._normalize_price(-3) is None


class TestKalshiOrderStatus:
    def _make_client(self) -> KalshiOrderClient:
        settings = KalshiSettings(api_base_url=BASE_URL, key_id="test-key")
        return KalshiOrderClient(settings, signer=lambda method, path: {})

    def test_get_order_status_resting(self) -> None:
        client = self._make_client()
        client._private_request = AsyncMock(return_value={
            "order": {
                "order_id": "ORD-1",
                "status": "resting",
                "fill_count": 0,
                "remaining_count": 10,
            }
        })

        status = asyncio.run(client.get_order_status(OrderHandle(order_id="ORD-1", ticker="T1")))

        assert status.state is OrderState.OPEN
        assert status.remaining_contracts == 10
        client._private_request.assert_awaited_once_with("GET", "/portfolio/orders/ORD-1")

    def test_get_order_status_executed_legacy_count_field(self) -> None:
        client = self._make_client()
        client._private_request = AsyncMock(return_value={
            "order": {
                "order_id": "ORD-2",
                "status": "executed",
                "filled_count": 10,
                "remaining_count": 0,
                "average_price": 45,
            }
        })

        status = asyncio.run(client.get_order_status(OrderHandle(order_id="ORD-2", ticker="T1")))

        assert status.state is OrderState.FILLED
        assert status.filled_contracts == 10
        assert status.average_price == 45

    def test_get_order_status_unknown_with_fills_is_partial(self) -> None:
        client = self._make_client()
        client._private_request = AsyncMock(return_value={
            "order": {"order_id": "ORD-4", "status": "some_new_status", "fill_count": 3, "remaining_count": 7}
        })

        status = asyncio.run(client.get_order_status(OrderHandle(order_id="ORD-4", ticker="T1")))

        assert status.state is OrderState.PARTIALLY_FILLED

    def test_get_order_status_transport_error_propagates(self) -> None:
        client = self._make_client()
        client._private_request = AsyncMock(side_effect=httpx.ConnectError("timeout"))

        with pytest.raises(httpx.ConnectError):
            asyncio.run(client.get_order_status(OrderHandle(order_id="ORD-X", ticker="T1")))

    def test_cancel_still_open_is_reported_cancelled(self) -> None:
        client = self._make_client()
        client._private_request = AsyncMock(return_value={
            "order": {"order_id": "ORD-5", "status": "resting", "fill_count": 2, "remaining_count": 8}
        })

        status = asyncio.run(client.cancel_order(OrderHandle(order_id="ORD-5", ticker="T1")))

        assert status.state is OrderState.CANCELLED
        assert status.filled_contracts == 2
        assert status.remaining_contracts == 0
        client._private_request.assert_awaited_once_with("DELETE", "/portfolio/orders/ORD-5")
