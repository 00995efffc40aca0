from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Mapping

from sports_arb.config import RiskSettings, StrategyConfig
from sports_arb.errors import RiskReason, RiskRejected
from sports_arb.models import InFlightOrder, MarketSnapshot, OrderAction
from sports_arb.portfolio import PortfolioView

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class RiskDecision:
    accepted: bool
    rejection: RiskRejected | None = None

    @property
    def reason(self) -> str:
        if self.rejection is None:
            return "ok"
        return self.rejection.reason.value


_ACCEPT = RiskDecision(accepted=True)


class RiskManager:
    """Pre-submission gates for new entries.

    Every gate is a side-effect-free method returning a :class:`RiskRejected`
    or ``None``; :meth:`check` runs them in order and reports the first
    failure only.
    """

    def __init__(self, settings: RiskSettings | None = None) -> None:
        self._settings = settings or RiskSettings()

    @property
    def settings(self) -> RiskSettings:
        return self._settings

    def check(
        self,
        market: MarketSnapshot,
        config: StrategyConfig,
        portfolio: PortfolioView,
        in_flight: Mapping[str, InFlightOrder] | None = None,
        request_id: int | None = None,
        now: datetime | None = None,
    ) -> RiskDecision:
        orders = in_flight or {}
        ts = now or datetime.now(timezone.utc)

        rejection = (
            self.check_position_cap(market, config, portfolio, orders)
            or self.check_already_held(market, portfolio)
            or self.check_sport_diversification(market, config, portfolio)
            or self.check_liquidity(market, config)
            or self.check_duplicate(market, orders, request_id)
            or self.check_staleness(market, config, ts)
        )
        if rejection is None:
            return _ACCEPT
        LOGGER.debug("risk rejected %s", rejection)
        return RiskDecision(accepted=False, rejection=rejection)

    # ------------------------------------------------------------------
    # Gates
    # ------------------------------------------------------------------

    def check_position_cap(
        self,
        market: MarketSnapshot,
        config: StrategyConfig,
        portfolio: PortfolioView,
        in_flight: Mapping[str, InFlightOrder] | None = None,
    ) -> RiskRejected | None:
        if not self._settings.enable_position_cap:
            return None
        held = portfolio.open_count()
        # Resting entries on other tickers will become positions if they fill.
        pending = sum(
            1
            for ticker, order in (in_flight or {}).items()
            if ticker != market.ticker and order.action is OrderAction.BUY and not portfolio.has_open(ticker)
        )
        if held + pending >= config.max_positions:
            return RiskRejected(
                market.ticker,
                RiskReason.POSITION_CAP,
                {"open_positions": held, "pending_entries": pending, "max_positions": config.max_positions},
            )
        return None

    def check_already_held(self, market: MarketSnapshot, portfolio: PortfolioView) -> RiskRejected | None:
        if not self._settings.enable_already_held_checks:
            return None
        if portfolio.has_open(market.ticker):
            return RiskRejected(market.ticker, RiskReason.ALREADY_HELD)
        return None

    def check_sport_diversification(
        self,
        market: MarketSnapshot,
        config: StrategyConfig,
        portfolio: PortfolioView,
    ) -> RiskRejected | None:
        if not config.enable_sport_diversification or not market.sport:
            return None
        count = portfolio.count_for_sport(market.sport)
        if count >= config.max_positions_per_sport:
            return RiskRejected(
                market.ticker,
                RiskReason.SPORT_CAP,
                {"sport": market.sport, "count": count, "max_per_sport": config.max_positions_per_sport},
            )
        return None

    def check_liquidity(self, market: MarketSnapshot, config: StrategyConfig) -> RiskRejected | None:
        if not config.enable_liquidity_checks:
            return None
        if market.volume < config.min_liquidity:
            return RiskRejected(
                market.ticker,
                RiskReason.LOW_VOLUME,
                {"volume": market.volume, "min_liquidity": config.min_liquidity},
            )
        if market.spread > config.max_bid_ask_spread_cents:
            return RiskRejected(
                market.ticker,
                RiskReason.WIDE_SPREAD,
                {"spread": market.spread, "max_spread": config.max_bid_ask_spread_cents},
            )
        return None

    def check_duplicate(
        self,
        market: MarketSnapshot,
        in_flight: Mapping[str, InFlightOrder],
        request_id: int | None = None,
    ) -> RiskRejected | None:
        """Reject if the ticker already has an order at least as fresh as ``request_id``.

        ``request_id=None`` means the caller has no request yet, so any
        in-flight order on the ticker blocks it.
        """
        if not self._settings.enable_duplicate_checks:
            return None
        existing = in_flight.get(market.ticker)
        if existing is None:
            return None
        if request_id is None or existing.request_id >= request_id:
            return RiskRejected(
                market.ticker,
                RiskReason.DUPLICATE,
                {"in_flight_request_id": existing.request_id, "request_id": request_id},
            )
        return None

    def check_staleness(
        self,
        market: MarketSnapshot,
        config: StrategyConfig,
        now: datetime | None = None,
    ) -> RiskRejected | None:
        if not self._settings.enable_staleness_checks:
            return None
        age = market.age_seconds(now)
        if age > config.max_snapshot_age_seconds:
            return RiskRejected(
                market.ticker,
                RiskReason.STALE,
                {"age_seconds": round(age, 3), "max_age_seconds": config.max_snapshot_age_seconds},
            )
        return None
