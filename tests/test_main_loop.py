"""
Tests for runner wiring: config loading, single activity runs, audit trail
and error containment.
"""

import json
import shutil
from pathlib import Path
from unittest.mock import Mock

import pytest
import yaml

from core.outcomes import CycleReport, Outcome
from core.score_feed import RETRY_FAILED
from runner.context import EngineContext
from runner.main_loop import TradingLoop

REPO_CONFIG = Path(__file__).resolve().parents[1] / "config"


@pytest.fixture
def config_dir(tmp_path):
    target = tmp_path / "config"
    shutil.copytree(REPO_CONFIG, target)
    app = yaml.safe_load((target / "app.yaml").read_text())
    app["logging"]["file"] = str(tmp_path / "logs" / "trader.log")
    app["logging"]["audit_file"] = str(tmp_path / "logs" / "audit.jsonl")
    for key in ("signals", "cursor", "extremes", "alt_hours_prices"):
        app["files"][key] = str(tmp_path / "data" / Path(app["files"][key]).name)
    app["files"]["lock_dir"] = str(tmp_path / "data")
    (target / "app.yaml").write_text(yaml.safe_dump(app))
    return target


@pytest.fixture
def loop(config_dir):
    trading_loop = TradingLoop(config_dir=str(config_dir), acquire_lock=False)
    yield trading_loop
    trading_loop.shutdown()


def _audit_entries(loop):
    path = loop.ctx.audit.audit_file
    if not path.exists():
        return []
    return [json.loads(line) for line in path.read_text().splitlines()]


def test_context_built_from_config(loop):
    assert isinstance(loop.ctx, EngineContext)
    assert loop.mode == "DRY_RUN"
    assert loop.ctx.gateway.dry_run
    assert loop.ctx.broker.base_url == "https://paper-api.alpaca.markets"
    assert loop.schedule["risk_seconds"] == 10.0


def test_mode_override(config_dir):
    trading_loop = TradingLoop(config_dir=str(config_dir), mode="paper", acquire_lock=False)
    try:
        assert trading_loop.mode == "PAPER"
        assert not trading_loop.ctx.gateway.dry_run
    finally:
        trading_loop.shutdown()


def test_invalid_config_refuses_to_start(config_dir):
    (config_dir / "policy.yaml").write_text("ingestion:\n  policy: sometimes\n")
    with pytest.raises(ValueError):
        TradingLoop(config_dir=str(config_dir), acquire_lock=False)


def test_run_once_audits_report(loop):
    report = CycleReport(activity="stale")
    report.add(Outcome.submitted("AAPL", "cancel", 10, order_id="o1"))
    loop.ctx.housekeeping = Mock()
    loop.ctx.housekeeping.cancel_stale_orders.return_value = report

    result = loop.run_once("stale")

    assert result is report
    (entry,) = _audit_entries(loop)
    assert entry["activity"] == "stale"
    assert entry["status"] == "EXECUTED"
    assert entry["mode"] == "DRY_RUN"
    assert entry["outcomes"][0]["order_id"] == "o1"


def test_activity_exception_becomes_error_report(loop):
    loop.ctx.risk_manager = Mock()
    loop.ctx.risk_manager.run_cycle.side_effect = RuntimeError("account endpoint down")

    report = loop.run_once("risk")

    assert report.error == "account endpoint down"
    (entry,) = _audit_entries(loop)
    assert entry["status"] == "ERROR"


def test_quiet_iterations_not_audited(loop):
    loop.ctx.housekeeping = Mock()
    loop.ctx.housekeeping.threshold_sweep.return_value = CycleReport(activity="sweep")

    loop.run_once("sweep")

    assert _audit_entries(loop) == []


def test_unknown_activity_rejected(loop):
    with pytest.raises(ValueError):
        loop.run_once("rebalance")


def test_ingest_once_reads_signal_file(loop):
    Path(loop.ctx.signals_path).parent.mkdir(parents=True, exist_ok=True)
    Path(loop.ctx.signals_path).write_text("1, aapl, 90\n2, MSFT, abc\n")

    report = loop.run_once("ingest")

    # invalid ticker and non-numeric score are both rejected before any network call
    assert len(report.skipped) == 2
    assert report.notes["cursor_end"] == 2


def test_retry_policy_wired_from_config(config_dir):
    policy_path = config_dir / "policy.yaml"
    policy = yaml.safe_load(policy_path.read_text())
    policy["ingestion"]["policy"] = RETRY_FAILED
    policy_path.write_text(yaml.safe_dump(policy))

    trading_loop = TradingLoop(config_dir=str(config_dir), acquire_lock=False)
    try:
        assert trading_loop.ctx.ingestor.policy == RETRY_FAILED
    finally:
        trading_loop.shutdown()
