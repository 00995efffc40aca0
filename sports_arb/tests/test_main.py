from __future__ import annotations

import json

import pytest

from sports_arb.main import _apply_cli_overrides, _load_signer, build_parser, main
from sports_arb.config import AppSettings

SNAPSHOTS = [
    {
        "ticker": "KXNBAGAME-25OCT21-LAL",
        "sport": "nba",
        "fair_value": 60,
        "best_bid": 50,
        "best_ask": 55,
        "commence_time": "2025-10-21T23:30:00Z",
        "volume": 500,
        "observed_at": "2025-10-21T20:00:00Z",
    },
    {
        "ticker": "KXNBAGAME-25OCT21-LAL",
        "sport": "nba",
        "fair_value": 60,
        "best_bid": 61,
        "best_ask": 63,
        "commence_time": "2025-10-21T23:30:00Z",
        "volume": 500,
        "observed_at": "2025-10-21T20:01:00Z",
        "result": "yes",
    },
]


def _write_snapshots(path) -> None:
    path.write_text("\n".join(json.dumps(item) for item in SNAPSHOTS) + "\n", encoding="utf-8")


def test_cli_overrides_apply_per_command() -> None:
    parser = build_parser()

    backtest = parser.parse_args(["--log-level", "DEBUG", "backtest", "--snapshots", "s.jsonl", "--seed", "9"])
    settings = _apply_cli_overrides(AppSettings(), backtest)
    assert settings.log_level == "DEBUG"
    assert settings.fill_simulator.seed == 9

    run = parser.parse_args(["run", "--feed", "f.jsonl", "--once", "--live"])
    settings = _apply_cli_overrides(AppSettings(), run)
    assert settings.feed_path == "f.jsonl"
    assert settings.run_once is True
    assert settings.live_mode is True


def test_backtest_command_prints_summary(monkeypatch, tmp_path, capsys) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SPORTS_ARB_SIM_ENABLED", "false")
    path = tmp_path / "snapshots.jsonl"
    _write_snapshots(path)

    assert main(["backtest", "--snapshots", str(path)]) == 0

    out = capsys.readouterr().out
    assert "1 closed, 0 still open" in out
    assert "total pnl        +0.80 USD" in out


def test_run_without_feed_exits(monkeypatch, tmp_path) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("SPORTS_ARB_FEED_PATH", raising=False)

    with pytest.raises(SystemExit):
        main(["run", "--once"])


def test_live_run_requires_signer(monkeypatch, tmp_path) -> None:
    monkeypatch.chdir(tmp_path)
    path = tmp_path / "feed.jsonl"
    _write_snapshots(path)

    with pytest.raises(SystemExit):
        main(["run", "--once", "--live", "--feed", str(path)])


def test_paper_run_once(monkeypatch, tmp_path) -> None:
    monkeypatch.chdir(tmp_path)
    path = tmp_path / "feed.jsonl"
    _write_snapshots(path)

    assert main(["run", "--once", "--feed", str(path)]) == 0


def test_load_signer_validates_target() -> None:
    with pytest.raises(ValueError):
        _load_signer("no_colon_here")
    signer = _load_signer("collections:OrderedDict")
    assert signer == {}
