from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict

import httpx

from sports_arb.config import KalshiSettings
from sports_arb.errors import OrderRejected
from sports_arb.models import OrderAction, OrderHandle, OrderState, OrderStatus, Side

from .base import OrderExecutionClient

LOGGER = logging.getLogger(__name__)

# (method, canonical path) -> auth headers. Key storage and signing live outside this package.
RequestSigner = Callable[[str, str], Dict[str, str]]

_STATE_MAP = {
    "resting": OrderState.OPEN,
    "pending": OrderState.OPEN,
    "executed": OrderState.FILLED,
    "canceled": OrderState.CANCELLED,
    "cancelled": OrderState.CANCELLED,
    "expired": OrderState.EXPIRED,
    "rejected": OrderState.REJECTED,
}


class KalshiOrderClient(OrderExecutionClient):
    venue = "kalshi"

    def __init__(
        self,
        settings: KalshiSettings,
        signer: RequestSigner | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings
        self._signer = signer
        self._client = client or httpx.AsyncClient(
            base_url=settings.api_base_url,
            timeout=settings.timeout_seconds,
        )

    @property
    def has_credentials(self) -> bool:
        return self._signer is not None and bool(self._settings.key_id)

    async def place_order(
        self,
        ticker: str,
        action: OrderAction,
        side: Side,
        price: int,
        quantity: int,
        client_order_id: str,
    ) -> OrderHandle:
        if not self.has_credentials:
            raise OrderRejected(ticker, "missing kalshi credentials")

        payload = self._build_order_payload(ticker, action, side, price, quantity, client_order_id)
        try:
            result = await self._private_request("POST", "/portfolio/orders", json=payload)
        except httpx.HTTPStatusError as exc:
            code = exc.response.status_code
            # 429 and 5xx are transient; anything else is the exchange saying no.
            if code == 429 or code >= 500:
                raise
            raise OrderRejected(
                ticker,
                "order refused by exchange",
                status_code=code,
                body=exc.response.text[:200],
            ) from exc

        order = self._order_body(result)
        order_id = str(order.get("order_id") or order.get("id") or "")
        if not order_id:
            raise OrderRejected(ticker, "placement response missing order_id")
        return OrderHandle(
            order_id=order_id,
            ticker=ticker,
            client_order_id=client_order_id,
            status=self._to_order_status(order_id, result),
        )

    async def cancel_order(self, handle: OrderHandle) -> OrderStatus:
        try:
            payload = await self._private_request("DELETE", f"/portfolio/orders/{handle.order_id}")
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code != 404:
                raise
            # Already gone: filled or cancelled elsewhere. Ask for the final state.
            LOGGER.info("kalshi cancel_order: %s not open, fetching status", handle.order_id)
            return await self.get_order_status(handle)
        status = self._to_order_status(handle.order_id, payload)
        if status.state is OrderState.OPEN:
            status = OrderStatus(
                order_id=status.order_id,
                state=OrderState.CANCELLED,
                filled_contracts=status.filled_contracts,
                remaining_contracts=0,
                average_price=status.average_price,
                raw=status.raw,
            )
        return status

    async def get_order_status(self, handle: OrderHandle) -> OrderStatus:
        payload = await self._private_request("GET", f"/portfolio/orders/{handle.order_id}")
        return self._to_order_status(handle.order_id, payload)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _private_request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        headers = self._auth_headers(method, path)
        response = await self._client.request(method, path, headers=headers, **kwargs)
        response.raise_for_status()
        payload = response.json()
        return payload if isinstance(payload, dict) else {"data": payload}

    def _build_order_payload(
        self,
        ticker: str,
        action: OrderAction,
        side: Side,
        price: int,
        quantity: int,
        client_order_id: str,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "ticker": ticker,
            "action": action.value,
            "side": side.value,
            "count": quantity,
            "type": "limit",
            "client_order_id": client_order_id,
        }
        if self._settings.order_expiration_seconds > 0:
            payload["expiration_ts"] = int(time.time()) + self._settings.order_expiration_seconds
        if side is Side.YES:
            payload["yes_price"] = price
        else:
            payload["no_price"] = price
        return payload

    def _auth_headers(self, method: str, path: str) -> dict[str, str]:
        if self._signer is None or not self._settings.key_id:
            return {}
        headers = dict(self._signer(method.upper(), self._canonical_signing_path(path)))
        headers.setdefault("KALSHI-ACCESS-KEY", self._settings.key_id)
        return headers

    @staticmethod
    def _canonical_signing_path(path: str) -> str:
        if path.startswith("/trade-api/"):
            return path
        return f"/trade-api/v2{path if path.startswith('/') else '/' + path}"

    @staticmethod
    def _order_body(payload: dict[str, Any]) -> dict[str, Any]:
        order = payload.get("order")
        return order if isinstance(order, dict) else payload

    @classmethod
    def _to_order_status(cls, order_id: str, payload: dict[str, Any]) -> OrderStatus:
        order = cls._order_body(payload)
        status_str = str(order.get("status", "")).lower()
        filled = int(order.get("fill_count", order.get("filled_count", 0)) or 0)
        remaining = int(order.get("remaining_count", 0) or 0)

        state = _STATE_MAP.get(status_str, OrderState.UNKNOWN)
        if filled > 0 and remaining > 0 and state in (OrderState.OPEN, OrderState.UNKNOWN):
            state = OrderState.PARTIALLY_FILLED

        limit_key = "no_price" if str(order.get("side", "")).lower() == "no" else "yes_price"
        return OrderStatus(
            order_id=order_id,
            state=state,
            filled_contracts=filled,
            remaining_contracts=remaining,
            average_price=cls._normalize_price(order.get("average_price") or order.get(limit_key)),
            raw=payload,
        )

    @staticmethod
    def _normalize_price(value: Any) -> int | None:
        """Cents as int; dollar-denominated values (<= 1.0 floats) are scaled."""
        if value is None or isinstance(value, bool):
            return None
        try:
            numeric = float(value)
        except (TypeError, ValueError):
            return None
        if numeric < 0:
            return None
        if isinstance(value, float) and numeric <= 1.0:
            numeric *= 100.0
        return int(round(numeric))
