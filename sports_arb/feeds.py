"""JSON-lines market snapshots.

One object per line::

    {"ticker": "KXNBAGAME-25OCT21-LAL", "sport": "nba", "fair_value": 62.5,
     "best_bid": 54, "best_ask": 57, "commence_time": "2025-10-21T23:30:00Z",
     "volume": 1200, "observed_at": "2025-10-21T20:00:05Z", "result": "yes"}

``volume``, ``volatility``, ``side``, ``observed_at`` and ``result`` are
optional. ``result`` (``"yes"``/``"no"``) is only used by the backtester to
settle positions still open at the end of a replay; it lands in
``MarketSnapshot.metadata``.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List

from sports_arb.exchanges.base import OddsFeed
from sports_arb.models import MarketSnapshot, Side

LOGGER = logging.getLogger(__name__)


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def snapshot_from_record(record: Dict[str, Any], default_observed_at: datetime | None = None) -> MarketSnapshot:
    """Build a snapshot from one decoded JSON object; raises ``KeyError``/``ValueError`` on bad input."""
    observed_raw = record.get("observed_at")
    if observed_raw is not None:
        observed_at = _parse_timestamp(observed_raw)
    else:
        observed_at = default_observed_at or datetime.now(timezone.utc)

    metadata: Dict[str, Any] = {}
    if record.get("result") is not None:
        metadata["result"] = str(record["result"]).strip().lower()

    return MarketSnapshot(
        ticker=str(record["ticker"]),
        sport=str(record.get("sport", "")).strip().lower(),
        fair_value=float(record["fair_value"]),
        best_bid=int(record["best_bid"]),
        best_ask=int(record["best_ask"]),
        commence_time=_parse_timestamp(record["commence_time"]),
        volume=float(record.get("volume", 0.0) or 0.0),
        volatility=float(record.get("volatility", 0.0) or 0.0),
        side=Side(str(record.get("side", "yes")).lower()),
        observed_at=observed_at,
        metadata=metadata,
    )


def iter_snapshots(path: str | Path) -> Iterator[MarketSnapshot]:
    """Yield snapshots in file order, skipping blank lines and logging malformed ones."""
    source = Path(path)
    with source.open("r", encoding="utf-8") as handle:
        for line_number, line in enumerate(handle, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                snapshot = snapshot_from_record(json.loads(line))
            except (json.JSONDecodeError, AttributeError, KeyError, TypeError, ValueError) as exc:
                LOGGER.warning("skipping malformed snapshot %s:%d: %s", source, line_number, exc)
                continue
            yield snapshot


def load_snapshots(path: str | Path) -> List[MarketSnapshot]:
    """All snapshots from ``path`` ordered by ``observed_at`` (stable for ties)."""
    return sorted(iter_snapshots(path), key=lambda snapshot: snapshot.observed_at)


class JsonLinesFeed(OddsFeed):
    """Re-reads a JSON-lines file every poll and returns the newest snapshot per ticker.

    Meant to sit behind whatever process devigs the sportsbook odds and
    appends snapshots to the file.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    async def fetch_snapshots(self) -> list[MarketSnapshot]:
        if not self._path.exists():
            LOGGER.warning("snapshot feed %s does not exist", self._path)
            return []
        latest: Dict[str, MarketSnapshot] = {}
        for snapshot in iter_snapshots(self._path):
            current = latest.get(snapshot.ticker)
            if current is None or snapshot.observed_at >= current.observed_at:
                latest[snapshot.ticker] = snapshot
        return list(latest.values())
