from __future__ import annotations

import os
import threading
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Callable, Dict, List

from dotenv import dotenv_values, find_dotenv

# Variables this module copied from .env, with the value it wrote.
_DOTENV_APPLIED: Dict[str, str] = {}


def _as_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _as_float(value: str | None, default: float) -> float:
    if value is None or not value.strip():
        return default
    return float(value)


def _as_optional_int(value: str | None) -> int | None:
    if value is None or not value.strip():
        return None
    return int(value)


def _as_int(value: str | None, default: int) -> int:
    if value is None or not value.strip():
        return default
    return int(value)


def _as_csv(value: str | None) -> List[str]:
    if value is None or not value.strip():
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


@dataclass(frozen=True)
class StrategyOverride:
    """Per-sport overrides. ``None`` means fall back to the base value."""

    margin_percent: float | None = None
    auto_close_margin_percent: float | None = None
    taker_fee_buffer_cents: int | None = None
    min_liquidity: float | None = None
    max_bid_ask_spread_cents: int | None = None
    trade_size: int | None = None


@dataclass(frozen=True)
class StrategyConfig:
    margin_percent: float = 10.0
    auto_close_margin_percent: float = 0.0
    # Raised from 0 to 2 to 3 as taker fees kept eroding crossed fills.
    taker_fee_buffer_cents: int = 3
    max_positions: int = 10
    max_positions_per_sport: int = 3
    min_liquidity: float = 50.0
    max_bid_ask_spread_cents: int = 5
    enable_sport_diversification: bool = True
    enable_liquidity_checks: bool = True
    max_snapshot_age_seconds: float = 30.0
    min_fair_value: float = 0.0
    trade_size: int = 10
    enable_bail_out: bool = False
    bail_out_hours_before_start: float = 1.0
    bail_out_trigger_percent: float = 20.0
    sport_overrides: Dict[str, StrategyOverride] = field(default_factory=dict)

    def for_sport(self, sport: str) -> "StrategyConfig":
        return merge_overrides(self, self.sport_overrides.get(sport.strip().lower()))


def merge_overrides(base: StrategyConfig, override: StrategyOverride | None) -> StrategyConfig:
    """Return ``base`` with every non-``None`` field of ``override`` applied."""
    if override is None:
        return base
    changes = {
        item.name: getattr(override, item.name)
        for item in fields(override)
        if getattr(override, item.name) is not None
    }
    if not changes:
        return base
    return replace(base, **changes)


@dataclass(frozen=True)
class RiskSettings:
    enable_position_cap: bool = True
    enable_already_held_checks: bool = True
    enable_duplicate_checks: bool = True
    enable_staleness_checks: bool = True


@dataclass(frozen=True)
class FillSimulatorSettings:
    enabled: bool = True
    taker_fill_rate: float = 0.85
    taker_slippage_mean_cents: int = 1
    taker_slippage_std_cents: int = 1
    maker_fill_rate: float = 0.45
    maker_require_price_through: bool = True
    apply_latency: bool = True
    max_hold_seconds: int = 300
    timeout_exit_slippage_cents: int = 2
    seed: int | None = None


@dataclass(frozen=True)
class LifecycleSettings:
    max_attempts: int = 3
    backoff_base_seconds: float = 0.25
    backoff_max_seconds: float = 2.0
    request_timeout_seconds: float = 10.0
    min_reprice_ticks: int = 1


@dataclass(frozen=True)
class KalshiSettings:
    api_base_url: str = "https://api.elections.kalshi.com/trade-api/v2"
    key_id: str | None = None
    timeout_seconds: float = 10.0
    order_expiration_seconds: int = 0  # 0 = good until cancelled


@dataclass(frozen=True)
class AppSettings:
    live_mode: bool = False
    run_once: bool = False
    poll_interval_seconds: float = 5.0
    log_level: str = "INFO"
    feed_path: str | None = None
    strategy: StrategyConfig = field(default_factory=StrategyConfig)
    risk: RiskSettings = field(default_factory=RiskSettings)
    fill_simulator: FillSimulatorSettings = field(default_factory=FillSimulatorSettings)
    lifecycle: LifecycleSettings = field(default_factory=LifecycleSettings)
    kalshi: KalshiSettings = field(default_factory=KalshiSettings)


_OVERRIDE_PARSERS: Dict[str, Callable[[str], Any]] = {
    "margin_percent": float,
    "auto_close_margin_percent": float,
    "taker_fee_buffer_cents": int,
    "min_liquidity": float,
    "max_bid_ask_spread_cents": int,
    "trade_size": int,
}


def _as_sport_overrides(value: str | None) -> Dict[str, StrategyOverride]:
    """Parses ``nba:margin_percent=12,trade_size=5;nfl:margin_percent=8``."""
    overrides: Dict[str, StrategyOverride] = {}
    if value is None or not value.strip():
        return overrides
    for block in value.split(";"):
        if ":" not in block:
            continue
        sport, assignments = block.split(":", 1)
        sport = sport.strip().lower()
        if not sport:
            continue
        kwargs: Dict[str, Any] = {}
        for chunk in _as_csv(assignments):
            if "=" not in chunk:
                continue
            key, raw = chunk.split("=", 1)
            key = key.strip()
            parser = _OVERRIDE_PARSERS.get(key)
            if parser is None:
                raise ValueError(f"unknown sport override field: {key}")
            kwargs[key] = parser(raw.strip())
        overrides[sport] = StrategyOverride(**kwargs)
    return overrides


def _load_dotenv() -> None:
    """Copy .env values into the environment without overriding real variables.

    Values written by an earlier call are refreshed (or removed when the key
    left .env), so edits to .env reach a running process on reload.
    """
    path = find_dotenv(usecwd=True)
    values = {key: value for key, value in dotenv_values(path).items() if value is not None} if path else {}

    for key, written in list(_DOTENV_APPLIED.items()):
        if os.environ.get(key) != written:
            # Overwritten or removed by someone else; it is no longer ours.
            del _DOTENV_APPLIED[key]
        elif key not in values:
            del os.environ[key]
            del _DOTENV_APPLIED[key]

    for key, value in values.items():
        if key in os.environ and key not in _DOTENV_APPLIED:
            continue
        os.environ[key] = value
        _DOTENV_APPLIED[key] = value


def load_settings() -> AppSettings:
    _load_dotenv()

    feed_path = os.getenv("SPORTS_ARB_FEED_PATH")
    if feed_path:
        feed_path = str(Path(feed_path).expanduser())

    return AppSettings(
        live_mode=_as_bool(os.getenv("SPORTS_ARB_LIVE_MODE"), default=False),
        run_once=_as_bool(os.getenv("SPORTS_ARB_RUN_ONCE"), default=False),
        poll_interval_seconds=_as_float(os.getenv("SPORTS_ARB_POLL_INTERVAL_SECONDS"), 5.0),
        log_level=os.getenv("SPORTS_ARB_LOG_LEVEL", "INFO"),
        feed_path=feed_path,
        strategy=StrategyConfig(
            margin_percent=_as_float(os.getenv("SPORTS_ARB_MARGIN_PERCENT"), 10.0),
            auto_close_margin_percent=_as_float(os.getenv("SPORTS_ARB_AUTO_CLOSE_MARGIN_PERCENT"), 0.0),
            taker_fee_buffer_cents=_as_int(os.getenv("SPORTS_ARB_TAKER_FEE_BUFFER_CENTS"), 3),
            max_positions=_as_int(os.getenv("SPORTS_ARB_MAX_POSITIONS"), 10),
            max_positions_per_sport=_as_int(os.getenv("SPORTS_ARB_MAX_POSITIONS_PER_SPORT"), 3),
            min_liquidity=_as_float(os.getenv("SPORTS_ARB_MIN_LIQUIDITY"), 50.0),
            max_bid_ask_spread_cents=_as_int(os.getenv("SPORTS_ARB_MAX_BID_ASK_SPREAD_CENTS"), 5),
            enable_sport_diversification=_as_bool(
                os.getenv("SPORTS_ARB_ENABLE_SPORT_DIVERSIFICATION"),
                True,
            ),
            enable_liquidity_checks=_as_bool(os.getenv("SPORTS_ARB_ENABLE_LIQUIDITY_CHECKS"), True),
            max_snapshot_age_seconds=_as_float(os.getenv("SPORTS_ARB_MAX_SNAPSHOT_AGE_SECONDS"), 30.0),
            min_fair_value=_as_float(os.getenv("SPORTS_ARB_MIN_FAIR_VALUE"), 0.0),
            trade_size=_as_int(os.getenv("SPORTS_ARB_TRADE_SIZE"), 10),
            enable_bail_out=_as_bool(os.getenv("SPORTS_ARB_ENABLE_BAIL_OUT"), False),
            bail_out_hours_before_start=_as_float(os.getenv("SPORTS_ARB_BAIL_OUT_HOURS_BEFORE_START"), 1.0),
            bail_out_trigger_percent=_as_float(os.getenv("SPORTS_ARB_BAIL_OUT_TRIGGER_PERCENT"), 20.0),
            sport_overrides=_as_sport_overrides(os.getenv("SPORTS_ARB_SPORT_OVERRIDES")),
        ),
        risk=RiskSettings(
            enable_position_cap=_as_bool(os.getenv("SPORTS_ARB_ENABLE_POSITION_CAP"), True),
            enable_already_held_checks=_as_bool(os.getenv("SPORTS_ARB_ENABLE_ALREADY_HELD_CHECKS"), True),
            enable_duplicate_checks=_as_bool(os.getenv("SPORTS_ARB_ENABLE_DUPLICATE_CHECKS"), True),
            enable_staleness_checks=_as_bool(os.getenv("SPORTS_ARB_ENABLE_STALENESS_CHECKS"), True),
        ),
        fill_simulator=FillSimulatorSettings(
            enabled=_as_bool(os.getenv("SPORTS_ARB_SIM_ENABLED"), True),
            taker_fill_rate=_as_float(os.getenv("SPORTS_ARB_SIM_TAKER_FILL_RATE"), 0.85),
            taker_slippage_mean_cents=_as_int(os.getenv("SPORTS_ARB_SIM_TAKER_SLIPPAGE_MEAN_CENTS"), 1),
            taker_slippage_std_cents=_as_int(os.getenv("SPORTS_ARB_SIM_TAKER_SLIPPAGE_STD_CENTS"), 1),
            maker_fill_rate=_as_float(os.getenv("SPORTS_ARB_SIM_MAKER_FILL_RATE"), 0.45),
            maker_require_price_through=_as_bool(
                os.getenv("SPORTS_ARB_SIM_MAKER_REQUIRE_PRICE_THROUGH"),
                True,
            ),
            apply_latency=_as_bool(os.getenv("SPORTS_ARB_SIM_APPLY_LATENCY"), True),
            max_hold_seconds=_as_int(os.getenv("SPORTS_ARB_SIM_MAX_HOLD_SECONDS"), 300),
            timeout_exit_slippage_cents=_as_int(os.getenv("SPORTS_ARB_SIM_TIMEOUT_EXIT_SLIPPAGE_CENTS"), 2),
            seed=_as_optional_int(os.getenv("SPORTS_ARB_SIM_SEED")),
        ),
        lifecycle=LifecycleSettings(
            max_attempts=_as_int(os.getenv("SPORTS_ARB_ORDER_MAX_ATTEMPTS"), 3),
            backoff_base_seconds=_as_float(os.getenv("SPORTS_ARB_ORDER_BACKOFF_BASE_SECONDS"), 0.25),
            backoff_max_seconds=_as_float(os.getenv("SPORTS_ARB_ORDER_BACKOFF_MAX_SECONDS"), 2.0),
            request_timeout_seconds=_as_float(os.getenv("SPORTS_ARB_ORDER_REQUEST_TIMEOUT_SECONDS"), 10.0),
            min_reprice_ticks=_as_int(os.getenv("SPORTS_ARB_MIN_REPRICE_TICKS"), 1),
        ),
        kalshi=KalshiSettings(
            api_base_url=os.getenv("KALSHI_API_BASE_URL", "https://api.elections.kalshi.com/trade-api/v2"),
            key_id=os.getenv("KALSHI_KEY_ID"),
            timeout_seconds=_as_float(os.getenv("KALSHI_TIMEOUT_SECONDS"), 10.0),
            order_expiration_seconds=_as_int(os.getenv("KALSHI_ORDER_EXPIRATION_SECONDS"), 0),
        ),
    )


class ConfigStore:
    """Holds the active settings snapshot; ``reload`` swaps it in one step.

    Readers call :meth:`current` once per cycle and keep the returned object,
    so a reload mid-cycle never mixes old and new values.
    """

    def __init__(
        self,
        settings: AppSettings | None = None,
        loader: Callable[[], AppSettings] = load_settings,
    ) -> None:
        self._loader = loader
        self._lock = threading.Lock()
        self._settings = settings if settings is not None else loader()
        self._version = 1

    @property
    def version(self) -> int:
        return self._version

    def current(self) -> AppSettings:
        with self._lock:
            return self._settings

    def reload(self) -> AppSettings:
        fresh = self._loader()
        with self._lock:
            self._settings = fresh
            self._version += 1
        return fresh
