from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List

from sports_arb.config import AppSettings, ConfigStore, StrategyConfig
from sports_arb.errors import InvalidSnapshot, NoViableExit, OrderActionFailed
from sports_arb.exchanges.base import OddsFeed, OrderExecutionClient
from sports_arb.fee_model import FeeSchedule, KalshiFeeSchedule
from sports_arb.models import LifecycleState, MarketSnapshot, OrderAction, OrderFill, Position
from sports_arb.order_lifecycle import LifecycleOutcome, OrderLifecycleManager
from sports_arb.portfolio import Portfolio
from sports_arb.pricing import plan_exit, price, should_bail_out, validate_snapshot
from sports_arb.risk import RiskManager

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class CycleDecision:
    timestamp: datetime
    ticker: str
    action: str
    reason: str
    price: int | None = None
    metrics: dict[str, float | int | bool | str | None] = field(default_factory=dict)


@dataclass(frozen=True)
class CycleReport:
    started_at: datetime
    ended_at: datetime
    snapshots_count: int
    decisions: tuple[CycleDecision, ...]
    config_version: int = 1

    def count(self, action: str) -> int:
        return sum(1 for decision in self.decisions if decision.action == action)


class TradingEngine:
    """One poll cycle: refresh orders, manage exits, then price and gate new entries.

    Settings are read from the :class:`ConfigStore` once at the start of each
    cycle, so a reload takes effect on the next cycle without mixing values.
    Lifecycle retry settings are fixed when the engine is built.
    """

    def __init__(
        self,
        store: ConfigStore,
        feed: OddsFeed,
        client: OrderExecutionClient,
        portfolio: Portfolio | None = None,
        fee_schedule: FeeSchedule | None = None,
    ) -> None:
        self._store = store
        self._feed = feed
        self._client = client
        self._portfolio = portfolio or Portfolio()
        self._fees = fee_schedule or KalshiFeeSchedule()
        self._lifecycle = OrderLifecycleManager(client, store.current().lifecycle, on_fill=self._on_fill)
        self._sports: Dict[str, str] = {}
        self._exit_reasons: Dict[str, str] = {}

    @property
    def portfolio(self) -> Portfolio:
        return self._portfolio

    @property
    def lifecycle(self) -> OrderLifecycleManager:
        return self._lifecycle

    async def run_forever(self, run_once: bool | None = None) -> None:
        single = self._store.current().run_once if run_once is None else run_once
        try:
            while True:
                loop_start = time.perf_counter()
                await self.run_once()

                if single:
                    return

                elapsed = time.perf_counter() - loop_start
                sleep_seconds = max(0.0, self._store.current().poll_interval_seconds - elapsed)
                if sleep_seconds > 0:
                    await asyncio.sleep(sleep_seconds)
        finally:
            await self.aclose()

    async def run_once(self, now: datetime | None = None) -> CycleReport:
        started_at = now or datetime.now(timezone.utc)
        settings = self._store.current()
        decisions: List[CycleDecision] = []

        raw = await self._feed.fetch_snapshots()
        snapshots = self._validated(raw, started_at, decisions)
        by_ticker = {snapshot.ticker: snapshot for snapshot in snapshots}

        self._client.observe_markets(snapshots)
        await self._refresh_in_flight()

        await self._enforce_position_cap(settings.strategy, started_at, decisions)
        await self._cancel_stale_entries(settings.strategy, by_ticker, started_at, decisions)
        await self._manage_exits(settings.strategy, by_ticker, started_at, decisions)
        await self._evaluate_entries(settings, snapshots, started_at, decisions)
        self._forget_idle_tickers()

        ended_at = datetime.now(timezone.utc) if now is None else now
        report = CycleReport(
            started_at=started_at,
            ended_at=ended_at,
            snapshots_count=len(raw),
            decisions=tuple(decisions),
            config_version=self._store.version,
        )
        LOGGER.info(
            "cycle snapshots=%d valid=%d open_positions=%d in_flight=%d entries=%d exits=%d realized_pnl=%dc",
            len(raw),
            len(snapshots),
            self._portfolio.open_count(),
            len(self._lifecycle.snapshot()),
            report.count("entry"),
            report.count("exit") + report.count("bail_out"),
            self._portfolio.realized_pnl_cents,
        )
        return report

    async def aclose(self) -> None:
        await self._lifecycle.drain()
        await self._client.aclose()
        await self._feed.aclose()

    # ------------------------------------------------------------------
    # Cycle stages
    # ------------------------------------------------------------------

    def _validated(
        self,
        snapshots: List[MarketSnapshot],
        now: datetime,
        decisions: List[CycleDecision],
    ) -> List[MarketSnapshot]:
        valid: List[MarketSnapshot] = []
        for snapshot in snapshots:
            try:
                validate_snapshot(snapshot)
            except InvalidSnapshot as exc:
                LOGGER.warning("discarding snapshot %s", exc)
                decisions.append(CycleDecision(now, snapshot.ticker or "<unknown>", "invalid", str(exc)))
                continue
            valid.append(snapshot)
        return valid

    async def _refresh_in_flight(self) -> None:
        tickers = list(self._lifecycle.snapshot())
        if tickers:
            await asyncio.gather(*(self._lifecycle.refresh(ticker) for ticker in tickers))

    async def _enforce_position_cap(
        self,
        strategy: StrategyConfig,
        now: datetime,
        decisions: List[CycleDecision],
    ) -> None:
        if self._portfolio.open_count() < strategy.max_positions:
            return
        resting_buys = [
            order for order in self._lifecycle.snapshot().values() if order.action is OrderAction.BUY
        ]
        if not resting_buys:
            return
        LOGGER.info(
            "position cap reached (%d/%d); cancelling %d resting entry order(s)",
            self._portfolio.open_count(),
            strategy.max_positions,
            len(resting_buys),
        )
        try:
            outcomes = await self._lifecycle.cancel_all(OrderAction.BUY)
        except OrderActionFailed as exc:
            decisions.append(CycleDecision(now, exc.ticker, "error", str(exc)))
            return
        for ticker, outcome in outcomes.items():
            decisions.append(CycleDecision(now, ticker, "cancel", f"position_cap:{outcome.value}"))

    async def _cancel_stale_entries(
        self,
        strategy: StrategyConfig,
        by_ticker: Dict[str, MarketSnapshot],
        now: datetime,
        decisions: List[CycleDecision],
    ) -> None:
        """Cancel resting entries whose market vanished from the feed or went stale."""
        for order in self._lifecycle.snapshot().values():
            if order.action is not OrderAction.BUY:
                continue
            snapshot = by_ticker.get(order.ticker)
            if snapshot is not None and snapshot.age_seconds(now) <= strategy.max_snapshot_age_seconds:
                continue
            reason = "missing_snapshot" if snapshot is None else "stale_snapshot"
            await self._cancel(order.ticker, reason, now, decisions)

    async def _manage_exits(
        self,
        strategy: StrategyConfig,
        by_ticker: Dict[str, MarketSnapshot],
        now: datetime,
        decisions: List[CycleDecision],
    ) -> None:
        for position in self._portfolio.open_positions():
            snapshot = by_ticker.get(position.ticker)
            if snapshot is None:
                continue
            in_flight = self._lifecycle.get(position.ticker)
            if in_flight is not None and in_flight.action is OrderAction.BUY:
                # Entry still working; exit once it resolves.
                continue
            config = strategy.for_sport(snapshot.sport)
            if should_bail_out(position, snapshot, config, now):
                await self._bail_out(position, snapshot, now, decisions)
                continue
            await self._auto_close(position, snapshot, config, now, decisions)

    async def _evaluate_entries(
        self,
        settings: AppSettings,
        snapshots: List[MarketSnapshot],
        now: datetime,
        decisions: List[CycleDecision],
    ) -> None:
        risk = RiskManager(settings.risk)
        for snapshot in sorted(snapshots, key=lambda item: item.edge, reverse=True):
            config = settings.strategy.for_sport(snapshot.sport)
            result = price(snapshot, config, now)

            # A partly filled entry is still working even though a position exists.
            in_flight = self._lifecycle.get(snapshot.ticker)
            if in_flight is not None and in_flight.action is OrderAction.BUY:
                if not result.has_bid or snapshot.fair_value < config.min_fair_value:
                    await self._cancel(snapshot.ticker, "no_longer_supported", now, decisions)
                elif in_flight.state is LifecycleState.RESTING and in_flight.price != result.smart_bid:
                    await self._reprice(snapshot.ticker, result.smart_bid, now, decisions)
                continue

            if self._portfolio.has_open(snapshot.ticker):
                continue
            if snapshot.fair_value < config.min_fair_value:
                continue

            if not result.has_bid:
                decisions.append(
                    CycleDecision(
                        now,
                        snapshot.ticker,
                        "skip",
                        "no_bid",
                        metrics={"max_willing_to_pay": result.max_willing_to_pay, "best_bid": snapshot.best_bid},
                    )
                )
                continue

            decision = risk.check(snapshot, config, self._portfolio, self._lifecycle.snapshot(), now=now)
            if not decision.accepted:
                LOGGER.debug("entry gated %s", decision.rejection)
                decisions.append(
                    CycleDecision(
                        now,
                        snapshot.ticker,
                        "skip",
                        decision.reason,
                        metrics=dict(decision.rejection.context) if decision.rejection else {},
                    )
                )
                continue

            self._sports[snapshot.ticker] = snapshot.sport
            try:
                outcome = await self._lifecycle.submit(
                    snapshot.ticker,
                    OrderAction.BUY,
                    snapshot.side,
                    result.smart_bid,
                    config.trade_size,
                )
            except OrderActionFailed as exc:
                decisions.append(CycleDecision(now, snapshot.ticker, "error", str(exc)))
                continue
            decisions.append(
                CycleDecision(
                    now,
                    snapshot.ticker,
                    "entry",
                    f"{result.mode.value}:{outcome.value}",
                    price=result.smart_bid,
                    metrics={
                        "fair_value": snapshot.fair_value,
                        "max_willing_to_pay": result.max_willing_to_pay,
                        "effective_margin": round(result.effective_margin, 4),
                        "quantity": config.trade_size,
                    },
                )
            )

    # ------------------------------------------------------------------
    # Exits
    # ------------------------------------------------------------------

    async def _bail_out(
        self,
        position: Position,
        snapshot: MarketSnapshot,
        now: datetime,
        decisions: List[CycleDecision],
    ) -> None:
        if snapshot.best_bid <= 0:
            return
        LOGGER.warning(
            "bailing out ticker=%s entry=%dc bid=%dc hours_to_start=%.2f",
            position.ticker,
            position.entry_price,
            snapshot.best_bid,
            snapshot.hours_until_start(now),
        )
        self._exit_reasons[position.ticker] = "bail_out"
        try:
            # Replaces any resting auto-close sell.
            outcome = await self._lifecycle.submit(
                position.ticker,
                OrderAction.SELL,
                position.side,
                snapshot.best_bid,
                position.quantity,
            )
        except OrderActionFailed as exc:
            decisions.append(CycleDecision(now, position.ticker, "error", str(exc)))
            return
        decisions.append(
            CycleDecision(now, position.ticker, "bail_out", outcome.value, price=snapshot.best_bid)
        )

    async def _auto_close(
        self,
        position: Position,
        snapshot: MarketSnapshot,
        config: StrategyConfig,
        now: datetime,
        decisions: List[CycleDecision],
    ) -> None:
        target = plan_exit(position, snapshot.fair_value, self._fees, config)
        if isinstance(target, NoViableExit):
            LOGGER.info("exit deferred %s", target)
            decisions.append(CycleDecision(now, position.ticker, "skip", "no_viable_exit"))
            return

        self._portfolio.set_exit_price(position.ticker, target.target_price)
        self._exit_reasons[position.ticker] = "auto_close"
        in_flight = self._lifecycle.get(position.ticker)
        if in_flight is not None:
            if in_flight.price != target.target_price:
                await self._reprice(position.ticker, target.target_price, now, decisions)
            return

        try:
            outcome = await self._lifecycle.submit(
                position.ticker,
                OrderAction.SELL,
                position.side,
                target.target_price,
                position.quantity,
            )
        except OrderActionFailed as exc:
            decisions.append(CycleDecision(now, position.ticker, "error", str(exc)))
            return
        decisions.append(
            CycleDecision(
                now,
                position.ticker,
                "exit",
                outcome.value,
                price=target.target_price,
                metrics={"break_even": target.break_even_price, "fair_value": target.fair_value},
            )
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _cancel(self, ticker: str, reason: str, now: datetime, decisions: List[CycleDecision]) -> None:
        try:
            outcome = await self._lifecycle.cancel(ticker)
        except OrderActionFailed as exc:
            decisions.append(CycleDecision(now, ticker, "error", str(exc)))
            return
        if outcome is not LifecycleOutcome.NOT_FOUND:
            decisions.append(CycleDecision(now, ticker, "cancel", f"{reason}:{outcome.value}"))

    async def _reprice(self, ticker: str, new_price: int, now: datetime, decisions: List[CycleDecision]) -> None:
        try:
            outcome = await self._lifecycle.reprice(ticker, new_price)
        except OrderActionFailed as exc:
            decisions.append(CycleDecision(now, ticker, "error", str(exc)))
            return
        if outcome in (LifecycleOutcome.REPLACED, LifecycleOutcome.FILLED):
            decisions.append(CycleDecision(now, ticker, "reprice", outcome.value, price=new_price))

    def _forget_idle_tickers(self) -> None:
        """Drop per-ticker bookkeeping once a ticker has no position and no order."""
        active = set(self._lifecycle.snapshot())
        active.update(position.ticker for position in self._portfolio.open_positions())
        for mapping in (self._sports, self._exit_reasons):
            for ticker in [ticker for ticker in mapping if ticker not in active]:
                del mapping[ticker]

    def _on_fill(self, fill: OrderFill) -> None:
        fee = self._fees.fee(fill.price, fill.quantity, fill.is_taker)
        if fill.action is OrderAction.BUY:
            self._portfolio.record_entry_fill(
                fill.ticker,
                fill.quantity,
                fill.price,
                fee_cents=fee,
                sport=self._sports.get(fill.ticker, ""),
                side=fill.side,
                filled_at=fill.filled_at,
            )
            return

        if not self._portfolio.has_open(fill.ticker):
            LOGGER.warning("sell fill with no open position ticker=%s qty=%d", fill.ticker, fill.quantity)
            return
        self._portfolio.record_exit_fill(
            fill.ticker,
            fill.price,
            fee_cents=fee,
            quantity=fill.quantity,
            closed_at=fill.filled_at,
            reason=self._exit_reasons.get(fill.ticker, "auto_close"),
        )
