"""Entry and exit pricing for binary event contracts.

Everything here is a pure function of its arguments: no I/O and no shared
state, so it can be called from any number of concurrent evaluations.

Entry pricing turns a fair value into a ceiling (``max_willing_to_pay``)
using a margin that widens linearly over the final hour before the event
starts, then either joins the book one cent above the best bid (maker) or
lifts the offer when it sits far enough below the ceiling to pay the taker
fee (taker).

Exit pricing never targets a sale below the fee-aware break-even price.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime

from sports_arb.config import StrategyConfig
from sports_arb.errors import InvalidSnapshot, NoViableExit
from sports_arb.fee_model import FeeSchedule
from sports_arb.models import ExitTarget, MarketSnapshot, Position, PricingMode, PricingResult

LOGGER = logging.getLogger(__name__)

MAX_TIME_DECAY_PENALTY = 5.0
MIN_CONTRACT_PRICE = 1
MAX_CONTRACT_PRICE = 99

# Float products such as 50 * 0.9 can land a hair under the integer.
_FLOOR_EPSILON = 1e-9


def _floor_cents(value: float) -> int:
    return math.floor(value + _FLOOR_EPSILON)


def validate_snapshot(market: MarketSnapshot) -> None:
    """Raise :class:`InvalidSnapshot` if ``market`` must not be priced."""
    if not market.ticker:
        raise InvalidSnapshot("<unknown>", "missing ticker")
    for name in ("fair_value", "best_bid", "best_ask"):
        value = getattr(market, name)
        if value is None or not (0 <= value <= 100):
            raise InvalidSnapshot(market.ticker, f"{name} out of range", **{name: value})
    if market.best_bid > market.best_ask:
        raise InvalidSnapshot(
            market.ticker,
            "crossed book",
            best_bid=market.best_bid,
            best_ask=market.best_ask,
        )


def time_decay_penalty(hours_until_start: float) -> float:
    """Extra margin in percentage points as the event approaches.

    Zero an hour or more out, ramps linearly to 5 at the start, and stays at
    5 once the event is live.
    """
    if hours_until_start >= 1.0:
        return 0.0
    if hours_until_start < 0.0:
        return MAX_TIME_DECAY_PENALTY
    return MAX_TIME_DECAY_PENALTY * (1.0 - hours_until_start)


def effective_margin(margin_percent: float, hours_until_start: float) -> float:
    # Volatility is deliberately absent: in this market it flags mispricing, not risk.
    return margin_percent + time_decay_penalty(hours_until_start)


def max_willing_to_pay(fair_value: float, margin_percent: float) -> int:
    raw = _floor_cents(fair_value * (1.0 - margin_percent / 100.0))
    return max(0, min(100, raw))


def price(
    market: MarketSnapshot,
    config: StrategyConfig,
    now: datetime | None = None,
) -> PricingResult:
    """Target entry price and execution mode for ``market``.

    Raises
    ------
    InvalidSnapshot
        If the snapshot fails :func:`validate_snapshot`.
    """
    validate_snapshot(market)

    hours = market.hours_until_start(now)
    penalty = time_decay_penalty(hours)
    margin = config.margin_percent + penalty
    ceiling = max_willing_to_pay(market.fair_value, margin)

    if ceiling <= 0:
        return PricingResult(
            max_willing_to_pay=0,
            smart_bid=0,
            mode=PricingMode.MAKER,
            effective_margin=margin,
            penalty=penalty,
        )

    # An empty offer side (ask of 0) is never something to cross into.
    if 0 < market.best_ask <= ceiling - config.taker_fee_buffer_cents:
        return PricingResult(
            max_willing_to_pay=ceiling,
            smart_bid=min(market.best_ask, MAX_CONTRACT_PRICE),
            mode=PricingMode.TAKER,
            effective_margin=margin,
            penalty=penalty,
        )

    return PricingResult(
        max_willing_to_pay=ceiling,
        smart_bid=min(market.best_bid + 1, ceiling, MAX_CONTRACT_PRICE),
        mode=PricingMode.MAKER,
        effective_margin=margin,
        penalty=penalty,
    )


def exit_price(
    position: Position,
    fair_value: float,
    break_even_price: int,
    auto_close_margin_percent: float,
) -> int:
    """Resting sell price for ``position``; never below ``break_even_price``."""
    base = max(fair_value, break_even_price)
    target = _floor_cents(base * (1.0 + auto_close_margin_percent / 100.0))
    target = max(MIN_CONTRACT_PRICE, min(MAX_CONTRACT_PRICE, target))
    if target < break_even_price:
        LOGGER.debug(
            "exit target lifted to break-even ticker=%s target=%d break_even=%d",
            position.ticker,
            target,
            break_even_price,
        )
        target = break_even_price
    return target


def plan_exit(
    position: Position,
    fair_value: float,
    fee_schedule: FeeSchedule,
    config: StrategyConfig,
) -> ExitTarget | NoViableExit:
    """Fee-aware exit target, or :class:`NoViableExit` if break-even is out of reach.

    The exit fee is priced as a taker fee, the more expensive case.
    """
    break_even = fee_schedule.break_even_sell_price(
        position.entry_cost_cents,
        position.quantity,
        True,
    )
    if break_even is None:
        return NoViableExit(
            ticker=position.ticker,
            entry_cost_cents=position.entry_cost_cents,
            quantity=position.quantity,
            context={"fair_value": fair_value, "entry_price": position.entry_price},
        )

    target = exit_price(position, fair_value, break_even, config.auto_close_margin_percent)
    return ExitTarget(
        ticker=position.ticker,
        target_price=target,
        break_even_price=break_even,
        fair_value=fair_value,
    )


def should_bail_out(
    position: Position,
    market: MarketSnapshot,
    config: StrategyConfig,
    now: datetime | None = None,
) -> bool:
    """True when a losing position near the start should be dumped into the bid."""
    if not config.enable_bail_out or position.entry_price <= 0:
        return False
    if market.hours_until_start(now) > config.bail_out_hours_before_start:
        return False
    loss_percent = (market.best_bid - position.entry_price) / position.entry_price * 100.0
    return loss_percent < -config.bail_out_trigger_percent
