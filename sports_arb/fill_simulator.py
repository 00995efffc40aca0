"""Probabilistic fill simulation for backtests.

Models the two ways a real order disappoints:
- Taker entries pay slippage and can miss when the offer lifts during the
  submission latency.
- Maker orders get their price but sit in a queue and often never fill.

Exits rest as maker sells until ``max_hold_seconds`` elapses, after which the
caller forces a taker exit into the bid with adverse slippage.

Randomness comes from an explicit ``random.Random`` so a seeded run is
reproducible; :meth:`FillSimulator.for_ticker` gives each ticker its own
stream when a backtest is split across tickers.
"""

from __future__ import annotations

import hashlib
import logging
import math
import random

from sports_arb.config import FillSimulatorSettings
from sports_arb.models import MISSED, PENDING, REJECTED, FillOutcome

LOGGER = logging.getLogger(__name__)

# Taker fills never land more than this far through the quoted ask.
MAX_TAKER_SLIPPAGE_CENTS = 3


class FillSimulator:
    def __init__(
        self,
        settings: FillSimulatorSettings | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._settings = settings or FillSimulatorSettings()
        self._rng = rng if rng is not None else random.Random(self._settings.seed)

    @property
    def enabled(self) -> bool:
        return self._settings.enabled

    @property
    def settings(self) -> FillSimulatorSettings:
        return self._settings

    def for_ticker(self, ticker: str) -> "FillSimulator":
        """Independent simulator for ``ticker`` seeded from this one's seed."""
        base = self._settings.seed
        if base is None:
            base = self._rng.getrandbits(64)
        digest = hashlib.sha256(f"{base}:{ticker}".encode()).digest()
        return FillSimulator(self._settings, random.Random(int.from_bytes(digest[:8], "big")))

    def max_hold_seconds(self) -> int:
        return self._settings.max_hold_seconds

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------

    def try_taker_entry(self, signal_price: int, current_ask: int) -> FillOutcome:
        """Cross the spread at ``current_ask`` (the ask after submission latency)."""
        if not self._settings.enabled:
            return FillOutcome.filled(signal_price)

        if self._settings.apply_latency and current_ask > signal_price:
            return MISSED

        if self._rng.random() > self._settings.taker_fill_rate:
            return REJECTED

        slippage = self._sample_slippage()
        fill_price = min(max(current_ask + slippage, current_ask), current_ask + MAX_TAKER_SLIPPAGE_CENTS)
        fill_price = max(1, min(99, fill_price))
        return FillOutcome.filled(fill_price)

    def try_maker_entry(self, signal_price: int) -> FillOutcome:
        """Rest a bid at ``signal_price``; makers pay no slippage, only queue risk."""
        if not self._settings.enabled:
            return FillOutcome.filled(signal_price)

        if self._rng.random() > self._settings.maker_fill_rate:
            return REJECTED
        return FillOutcome.filled(signal_price)

    # ------------------------------------------------------------------
    # Exits
    # ------------------------------------------------------------------

    def try_maker_exit(self, sell_price: int, current_bid: int) -> FillOutcome:
        """Resting sell at ``sell_price``. Never ``REJECTED``: exits retry next tick."""
        if not self._settings.enabled:
            if current_bid >= sell_price:
                return FillOutcome.filled(sell_price)
            return PENDING

        if self._settings.maker_require_price_through:
            if current_bid <= sell_price:
                return PENDING
        elif current_bid < sell_price:
            return PENDING

        if self._rng.random() > self._settings.maker_fill_rate:
            return PENDING
        return FillOutcome.filled(sell_price)

    def force_taker_exit(self, current_bid: int) -> FillOutcome:
        """Hold-timeout exit: sells into the bid less the timeout slippage."""
        return FillOutcome.filled(max(1, current_bid - self._settings.timeout_exit_slippage_cents))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _sample_slippage(self) -> int:
        mean = float(self._settings.taker_slippage_mean_cents)
        std = float(self._settings.taker_slippage_std_cents)
        if std == 0.0:
            return int(max(0.0, mean))

        # Box-Muller; 1 - random() keeps u1 in (0, 1] so log() is defined.
        u1 = 1.0 - self._rng.random()
        u2 = self._rng.random()
        z = math.sqrt(-2.0 * math.log(u1)) * math.cos(2.0 * math.pi * u2)
        sample = mean + std * z
        return int(max(0.0, min(mean + 3.0 * std, sample)))
