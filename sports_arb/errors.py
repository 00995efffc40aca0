"""Error taxonomy for the pricing / risk / execution loop.

Only :class:`InvalidSnapshot`, :class:`OrderActionFailed` and the client-side
:class:`OrderRejected` are raised.
Risk rejections and deferred exits are ordinary outcomes of a cycle and are
returned as values so callers can log them without unwinding the stack.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict


class SportsArbError(Exception):
    def __init__(self, ticker: str, message: str, **context: Any) -> None:
        self.ticker = ticker
        self.context: Dict[str, Any] = dict(context)
        detail = " ".join(f"{key}={value}" for key, value in sorted(self.context.items()))
        super().__init__(f"{ticker}: {message}" + (f" ({detail})" if detail else ""))


class InvalidSnapshot(SportsArbError):
    """Quote or fair value out of range, or a crossed book. Do not price it."""


class OrderActionFailed(SportsArbError):
    """Exchange/network failure after the retry budget was exhausted."""

    def __init__(self, ticker: str, action: str, attempts: int, last_error: str = "", **context: Any) -> None:
        self.action = action
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            ticker,
            f"{action} failed after {attempts} attempt(s): {last_error or 'unknown error'}",
            **context,
        )


class OrderRejected(SportsArbError):
    """The exchange refused the order outright. Raised by execution clients; not retried."""


class RiskReason(str, Enum):
    """Reason codes reported by :class:`~sports_arb.risk.RiskManager`."""

    DUPLICATE = "duplicate_in_flight"
    STALE = "stale_snapshot"
    POSITION_CAP = "position_cap"
    SPORT_CAP = "sport_diversification"
    LOW_VOLUME = "low_liquidity"
    WIDE_SPREAD = "wide_spread"
    ALREADY_HELD = "already_held"


@dataclass(frozen=True)
class RiskRejected:
    ticker: str
    reason: RiskReason
    context: Dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        detail = " ".join(f"{key}={value}" for key, value in sorted(self.context.items()))
        return f"{self.ticker}: {self.reason.value}" + (f" ({detail})" if detail else "")


@dataclass(frozen=True)
class NoViableExit:
    """Break-even is unattainable within 1..99c; the exit waits for next cycle."""

    ticker: str
    entry_cost_cents: int
    quantity: int
    context: Dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        return (
            f"{self.ticker}: no viable exit "
            f"(entry_cost={self.entry_cost_cents}c quantity={self.quantity})"
        )
