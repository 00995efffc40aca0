"""Offline replay of recorded market snapshots.

Snapshots are processed in ``observed_at`` order. For each one the backtester:

1. resolves a taker entry signalled on the previous snapshot of the same
   ticker, using this snapshot's ask as the post-latency ask;
2. manages the open position, if any: hold-timeout force exit, bail-out, or a
   resting maker sell at the fee-aware exit target;
3. otherwise prices the market and, if the risk gate accepts, enters as maker
   (filled or not on the spot) or taker (resolved on the next snapshot).

Positions still open at the end are settled at 100c/0c when the last snapshot
for the ticker carries a ``result``; otherwise they are reported as open.

Each ticker draws from its own seeded :class:`FillSimulator` stream, so a
ticker's fills do not depend on how it interleaves with other tickers.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional

import numpy as np

from sports_arb.config import FillSimulatorSettings, RiskSettings, StrategyConfig
from sports_arb.errors import InvalidSnapshot, NoViableExit
from sports_arb.fee_model import FeeSchedule, KalshiFeeSchedule
from sports_arb.fill_simulator import FillSimulator
from sports_arb.models import (
    FillStatus,
    InFlightOrder,
    LifecycleState,
    MarketSnapshot,
    OrderAction,
    Position,
    PricingMode,
    Side,
)
from sports_arb.portfolio import ClosedPosition, Portfolio
from sports_arb.pricing import plan_exit, price, should_bail_out, validate_snapshot
from sports_arb.risk import RiskManager

LOGGER = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BacktestTrade:
    """A single closed (or settled) position."""

    ticker: str
    sport: str
    side: Side
    quantity: int
    entry_price: int
    exit_price: int
    entry_fee_cents: int
    exit_fee_cents: int
    opened_at: datetime
    closed_at: datetime
    exit_reason: str
    pnl_cents: int


@dataclass
class BacktestResult:
    trades: List[BacktestTrade]
    snapshots_seen: int = 0
    invalid_snapshots: int = 0
    entries_attempted: int = 0
    entry_fills: int = 0
    entry_missed: int = 0
    entry_rejected: int = 0
    open_positions: int = 0
    rejections_by_reason: Dict[str, int] = field(default_factory=dict)
    total_pnl_cents: int = 0
    num_wins: int = 0
    num_losses: int = 0
    win_rate: float = 0.0
    avg_pnl_cents: float = 0.0
    sharpe_approx: float = 0.0
    max_drawdown_cents: int = 0

    def summary(self) -> str:
        lines = [
            f"snapshots        {self.snapshots_seen} ({self.invalid_snapshots} invalid)",
            f"entries          {self.entries_attempted} attempted, {self.entry_fills} filled, "
            f"{self.entry_missed} missed, {self.entry_rejected} not filled",
            f"trades           {len(self.trades)} closed, {self.open_positions} still open",
            f"win rate         {self.win_rate * 100:.1f}% ({self.num_wins}W/{self.num_losses}L)",
            f"total pnl        {self.total_pnl_cents / 100:+.2f} USD",
            f"avg pnl/trade    {self.avg_pnl_cents:+.1f}c",
            f"sharpe (approx)  {self.sharpe_approx:.3f}",
            f"max drawdown     {self.max_drawdown_cents / 100:.2f} USD",
        ]
        if self.rejections_by_reason:
            gated = ", ".join(f"{reason}={count}" for reason, count in sorted(self.rejections_by_reason.items()))
            lines.append(f"risk gated       {gated}")
        return "\n".join(lines)


@dataclass(frozen=True)
class BacktestConfig:
    strategy: StrategyConfig = field(default_factory=StrategyConfig)
    risk: RiskSettings = field(default_factory=RiskSettings)
    fill_simulator: FillSimulatorSettings = field(default_factory=FillSimulatorSettings)
    settle_at_end: bool = True


@dataclass(frozen=True)
class _PendingTaker:
    order: InFlightOrder
    sport: str


# ---------------------------------------------------------------------------
# Backtester
# ---------------------------------------------------------------------------


class Backtester:
    def __init__(
        self,
        config: BacktestConfig | None = None,
        fee_schedule: FeeSchedule | None = None,
        simulator: FillSimulator | None = None,
    ) -> None:
        self._config = config or BacktestConfig()
        self._fees = fee_schedule or KalshiFeeSchedule()
        self._base_simulator = simulator or FillSimulator(self._config.fill_simulator)
        self._risk = RiskManager(self._config.risk)

    def run(self, snapshots: Iterable[MarketSnapshot]) -> BacktestResult:
        ordered = sorted(snapshots, key=lambda snapshot: snapshot.observed_at)
        portfolio = Portfolio()
        simulators: Dict[str, FillSimulator] = {}
        pending: Dict[str, _PendingTaker] = {}
        last_seen: Dict[str, MarketSnapshot] = {}
        rejections: Counter = Counter()
        result = BacktestResult(trades=[])
        request_ids = iter(range(1, len(ordered) + 1))

        for snapshot in ordered:
            result.snapshots_seen += 1
            try:
                validate_snapshot(snapshot)
            except InvalidSnapshot as exc:
                LOGGER.debug("backtest skipping %s", exc)
                result.invalid_snapshots += 1
                continue

            now = snapshot.observed_at
            last_seen[snapshot.ticker] = snapshot
            simulator = simulators.get(snapshot.ticker)
            if simulator is None:
                simulator = self._base_simulator.for_ticker(snapshot.ticker)
                simulators[snapshot.ticker] = simulator
            config = self._config.strategy.for_sport(snapshot.sport)

            taker = pending.pop(snapshot.ticker, None)
            if taker is not None:
                outcome = simulator.try_taker_entry(taker.order.price, snapshot.best_ask)
                self._record_entry(result, portfolio, taker.order, taker.sport, outcome.status, outcome.price, True, now)

            position = portfolio.get(snapshot.ticker)
            if position is not None:
                self._manage_exit(portfolio, simulator, position, snapshot, config, now)
                continue
            if snapshot.ticker in pending or snapshot.fair_value < config.min_fair_value:
                continue

            pricing = price(snapshot, config, now)
            if not pricing.has_bid:
                continue
            in_flight = {ticker: item.order for ticker, item in pending.items()}
            decision = self._risk.check(snapshot, config, portfolio, in_flight, now=now)
            if not decision.accepted:
                rejections[decision.reason] += 1
                continue

            result.entries_attempted += 1
            order = InFlightOrder(
                ticker=snapshot.ticker,
                action=OrderAction.BUY,
                side=snapshot.side,
                price=pricing.smart_bid,
                quantity=config.trade_size,
                request_id=next(request_ids),
                state=LifecycleState.SUBMITTING,
                submitted_at=now,
            )
            if pricing.mode is PricingMode.TAKER:
                pending[snapshot.ticker] = _PendingTaker(order=order, sport=snapshot.sport)
                continue
            outcome = simulator.try_maker_entry(pricing.smart_bid)
            self._record_entry(result, portfolio, order, snapshot.sport, outcome.status, outcome.price, False, now)

        # Taker signals on a ticker's final snapshot never see a later ask.
        for ticker, taker in pending.items():
            outcome = simulators[ticker].try_taker_entry(taker.order.price, last_seen[ticker].best_ask)
            self._record_entry(
                result,
                portfolio,
                taker.order,
                taker.sport,
                outcome.status,
                outcome.price,
                True,
                last_seen[ticker].observed_at,
            )

        if self._config.settle_at_end:
            self._settle(portfolio, last_seen)

        result.open_positions = portfolio.open_count()
        result.rejections_by_reason = dict(rejections)
        result.trades = [self._to_trade(item) for item in portfolio.closed]
        _aggregate(result)
        return result

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _record_entry(
        self,
        result: BacktestResult,
        portfolio: Portfolio,
        order: InFlightOrder,
        sport: str,
        status: FillStatus,
        fill_price: Optional[int],
        is_taker: bool,
        now: datetime,
    ) -> None:
        if status is FillStatus.MISSED:
            result.entry_missed += 1
            return
        if status is not FillStatus.FILLED or fill_price is None:
            result.entry_rejected += 1
            return
        result.entry_fills += 1
        portfolio.record_entry_fill(
            order.ticker,
            order.quantity,
            fill_price,
            fee_cents=self._fees.fee(fill_price, order.quantity, is_taker),
            sport=sport,
            side=order.side,
            filled_at=now,
        )

    def _manage_exit(
        self,
        portfolio: Portfolio,
        simulator: FillSimulator,
        position: Position,
        snapshot: MarketSnapshot,
        config: StrategyConfig,
        now: datetime,
    ) -> None:
        if position.held_seconds(now) >= simulator.max_hold_seconds():
            outcome = simulator.force_taker_exit(snapshot.best_bid)
            self._close(portfolio, position, outcome.price, True, now, "timeout")
            return

        if should_bail_out(position, snapshot, config, now) and snapshot.best_bid > 0:
            self._close(portfolio, position, snapshot.best_bid, True, now, "bail_out")
            return

        target = plan_exit(position, snapshot.fair_value, self._fees, config)
        if isinstance(target, NoViableExit):
            LOGGER.debug("backtest exit deferred %s", target)
            return
        portfolio.set_exit_price(position.ticker, target.target_price)
        outcome = simulator.try_maker_exit(target.target_price, snapshot.best_bid)
        if outcome.is_filled:
            self._close(portfolio, position, outcome.price, False, now, "auto_close")

    def _close(
        self,
        portfolio: Portfolio,
        position: Position,
        exit_price: Optional[int],
        is_taker: bool,
        now: datetime,
        reason: str,
    ) -> None:
        if exit_price is None:
            return
        portfolio.record_exit_fill(
            position.ticker,
            exit_price,
            fee_cents=self._fees.fee(exit_price, position.quantity, is_taker),
            closed_at=now,
            reason=reason,
        )

    @staticmethod
    def _settle(portfolio: Portfolio, last_seen: Dict[str, MarketSnapshot]) -> None:
        for position in portfolio.open_positions():
            snapshot = last_seen.get(position.ticker)
            outcome = snapshot.metadata.get("result") if snapshot is not None else None
            if outcome not in ("yes", "no"):
                continue
            portfolio.settle(position.ticker, yes_won=outcome == "yes", settled_at=snapshot.observed_at)

    @staticmethod
    def _to_trade(closed: ClosedPosition) -> BacktestTrade:
        position = closed.position
        return BacktestTrade(
            ticker=position.ticker,
            sport=position.sport,
            side=position.side,
            quantity=position.quantity,
            entry_price=position.entry_price,
            exit_price=closed.exit_price,
            entry_fee_cents=position.entry_fee_cents,
            exit_fee_cents=closed.exit_fee_cents,
            opened_at=position.filled_at,
            closed_at=closed.closed_at,
            exit_reason=closed.reason,
            pnl_cents=closed.pnl_cents,
        )


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------


def max_drawdown(pnls: np.ndarray) -> float:
    """Largest peak-to-trough drop of the cumulative P&L curve (starting at 0)."""
    if pnls.size == 0:
        return 0.0
    equity = np.concatenate(([0.0], np.cumsum(pnls, dtype=float)))
    peaks = np.maximum.accumulate(equity)
    return float(np.max(peaks - equity))


def _aggregate(result: BacktestResult) -> None:
    pnls = np.array([trade.pnl_cents for trade in result.trades], dtype=float)
    num_trades = int(pnls.size)
    result.total_pnl_cents = int(pnls.sum()) if num_trades else 0
    result.num_wins = int(np.count_nonzero(pnls > 0))
    result.num_losses = num_trades - result.num_wins
    result.win_rate = result.num_wins / num_trades if num_trades else 0.0
    result.avg_pnl_cents = float(pnls.mean()) if num_trades else 0.0
    result.max_drawdown_cents = int(round(max_drawdown(pnls)))

    # Sharpe approximation: mean / std of per-trade P&L.
    result.sharpe_approx = 0.0
    if num_trades > 1:
        std = float(pnls.std(ddof=1))
        if std > 0:
            result.sharpe_approx = float(pnls.mean()) / std
