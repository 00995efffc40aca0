"""Kalshi fee schedule and break-even search.

Fees are computed with integer math in cents so rounding always matches the
exchange's ``ceil`` behaviour:

    taker fee = ceil(7   * Q * P * (100 - P) / 10_000)
    maker fee = ceil(175 * Q * P * (100 - P) / 1_000_000)

Usage::

    schedule = KalshiFeeSchedule()
    schedule.fee(50, 10, is_taker=True)                       # 18
    schedule.break_even_sell_price(520, 10, is_taker=True)    # 54
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


class FeeSchedule(Protocol):
    def fee(self, price: int, quantity: int, is_taker: bool) -> int:
        ...

    def break_even_sell_price(
        self,
        total_entry_cost_cents: int,
        quantity: int,
        is_taker: bool,
    ) -> int | None:
        ...


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FeeRate:
    """A fee rate expressed as ``numerator / denominator`` of ``Q*P*(100-P)``.

    Parameters
    ----------
    numerator:
        Rate numerator (7 for the 7% taker rate).
    denominator:
        Denominator including the cents-squared scale (10_000 for taker).
    """

    numerator: int
    denominator: int


TAKER_RATE = FeeRate(numerator=7, denominator=10_000)
MAKER_RATE = FeeRate(numerator=175, denominator=1_000_000)


# ---------------------------------------------------------------------------
# Fee schedule
# ---------------------------------------------------------------------------


class KalshiFeeSchedule:
    """Quadratic-in-price fee schedule used by Kalshi event contracts."""

    def __init__(
        self,
        taker_rate: FeeRate = TAKER_RATE,
        maker_rate: FeeRate = MAKER_RATE,
    ) -> None:
        self._taker_rate = taker_rate
        self._maker_rate = maker_rate

    def fee(self, price: int, quantity: int, is_taker: bool) -> int:
        """Fee in cents for ``quantity`` contracts at ``price`` cents.

        Zero for empty orders and for prices at or outside the 0/100 bounds.
        """
        if quantity <= 0 or price <= 0 or price >= 100:
            return 0
        rate = self._taker_rate if is_taker else self._maker_rate
        numerator = rate.numerator * quantity * price * (100 - price)
        return (numerator + rate.denominator - 1) // rate.denominator

    def break_even_sell_price(
        self,
        total_entry_cost_cents: int,
        quantity: int,
        is_taker: bool = True,
    ) -> int | None:
        """Cheapest price in 1..99 whose net proceeds cover the entry cost.

        Returns ``None`` when no such price exists.
        """
        if quantity <= 0:
            return None
        for price in range(1, 100):
            net = price * quantity - self.fee(price, quantity, is_taker)
            if net >= total_entry_cost_cents:
                return price
        return None
