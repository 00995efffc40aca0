from __future__ import annotations

import argparse
import asyncio
import importlib
import logging
import signal
import sys
from contextlib import suppress
from dataclasses import replace
from typing import Callable, Sequence

from sports_arb.backtest import Backtester, BacktestConfig
from sports_arb.config import AppSettings, ConfigStore, load_settings
from sports_arb.engine import TradingEngine
from sports_arb.exchanges import KalshiOrderClient, OrderExecutionClient, PaperOrderClient
from sports_arb.exchanges.kalshi import RequestSigner
from sports_arb.feeds import JsonLinesFeed, load_snapshots
from sports_arb.logging_setup import configure_logging

LOGGER = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sports-arb",
        description="Fair-value pricing, risk gating and order management for sports event contracts",
    )
    parser.add_argument("--log-level", default=None, help="Override SPORTS_ARB_LOG_LEVEL")
    parser.add_argument("--log-file", default=None, help="Also write logs to this file")
    subparsers = parser.add_subparsers(dest="command", required=True)

    backtest = subparsers.add_parser("backtest", help="Replay recorded snapshots through the fill simulator")
    backtest.add_argument("--snapshots", required=True, help="JSON-lines snapshot file")
    backtest.add_argument("--seed", type=int, default=None, help="Fill simulator seed (overrides SPORTS_ARB_SIM_SEED)")
    backtest.add_argument(
        "--no-settle",
        action="store_true",
        help="Leave positions open at the end instead of settling them on recorded results",
    )

    run = subparsers.add_parser("run", help="Poll a snapshot feed and manage orders")
    run.add_argument("--feed", default=None, help="JSON-lines snapshot feed (overrides SPORTS_ARB_FEED_PATH)")
    run.add_argument("--once", action="store_true", help="Run a single polling cycle")
    run.add_argument(
        "--live",
        action="store_true",
        help="Send orders to Kalshi instead of the in-memory paper venue",
    )
    run.add_argument(
        "--signer",
        default=None,
        help="module:callable returning a Kalshi request signer (required with --live)",
    )
    return parser


def _apply_cli_overrides(settings: AppSettings, args: argparse.Namespace) -> AppSettings:
    if args.log_level:
        settings = replace(settings, log_level=args.log_level)
    if args.command == "backtest" and args.seed is not None:
        settings = replace(settings, fill_simulator=replace(settings.fill_simulator, seed=args.seed))
    if args.command == "run":
        if args.once:
            settings = replace(settings, run_once=True)
        if args.live:
            settings = replace(settings, live_mode=True)
        if args.feed:
            settings = replace(settings, feed_path=args.feed)
    return settings


def _load_signer(target: str) -> RequestSigner:
    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        raise ValueError(f"signer must look like 'package.module:factory', got {target!r}")
    factory = getattr(importlib.import_module(module_name), attr)
    return factory()


def _build_client(settings: AppSettings, args: argparse.Namespace) -> OrderExecutionClient:
    if not settings.live_mode:
        return PaperOrderClient()
    if not args.signer:
        raise SystemExit("--live needs --signer module:factory (request signing lives outside sports_arb)")
    return KalshiOrderClient(settings.kalshi, signer=_load_signer(args.signer))


def run_backtest(settings: AppSettings, args: argparse.Namespace) -> int:
    snapshots = load_snapshots(args.snapshots)
    config = BacktestConfig(
        strategy=settings.strategy,
        risk=settings.risk,
        fill_simulator=settings.fill_simulator,
        settle_at_end=not args.no_settle,
    )
    LOGGER.info(
        "backtest snapshots=%d seed=%s simulator=%s",
        len(snapshots),
        settings.fill_simulator.seed,
        "on" if settings.fill_simulator.enabled else "off",
    )
    result = Backtester(config).run(snapshots)
    print(result.summary())
    return 0


async def run_engine(store: ConfigStore, args: argparse.Namespace) -> int:
    settings = store.current()
    if not settings.feed_path:
        raise SystemExit("run needs --feed or SPORTS_ARB_FEED_PATH")

    engine = TradingEngine(store, JsonLinesFeed(settings.feed_path), _build_client(settings, args))

    loop = asyncio.get_running_loop()
    with suppress(NotImplementedError, AttributeError):
        loop.add_signal_handler(signal.SIGHUP, _reload_config, store)

    LOGGER.info(
        "engine mode=%s poll_interval=%ss feed=%s",
        "live" if settings.live_mode else "paper",
        settings.poll_interval_seconds,
        settings.feed_path,
    )
    await engine.run_forever()
    return 0


def _reload_config(store: ConfigStore) -> None:
    try:
        store.reload()
    except ValueError as exc:
        LOGGER.error("config reload failed, keeping version %d: %s", store.version, exc)
        return
    LOGGER.info("config reloaded (version %d)", store.version)


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    loader: Callable[[], AppSettings] = lambda: _apply_cli_overrides(load_settings(), args)
    store = ConfigStore(loader=loader)
    settings = store.current()
    configure_logging(settings.log_level, args.log_file)

    if args.command == "backtest":
        return run_backtest(settings, args)
    return asyncio.run(run_engine(store, args))


if __name__ == "__main__":
    sys.exit(main())
