"""Tests for run control, metrics and the failure ledger."""
import asyncio
import time

import orjson

from auction_harvest.jobs.metrics import Metrics, format_duration
from auction_harvest.jobs.metrics_exporter import MetricsExporter
from auction_harvest.jobs.run_control import RunControl
from auction_harvest.models import FailureRecord
from auction_harvest.store.failures import FailureLedger


def test_cancel_keeps_first_reason():
    control = RunControl()
    assert control.should_stop() == (False, None)
    control.cancel("SIGINT received")
    control.cancel("SIGTERM received")
    assert control.cancelled
    assert control.should_stop() == (True, "SIGINT received")


def test_max_errors_stops_run():
    control = RunControl(max_errors=2)
    control.record_error()
    assert not control.should_stop()[0]
    control.record_error()
    stop, reason = control.should_stop()
    assert stop
    assert "max_errors=2" in reason


def test_time_budget_stops_run():
    control = RunControl(stop_after_minutes=1)
    control.start_time = time.time() - 61
    assert control.should_stop()[0]


def test_record_success_resets_consecutive_errors():
    control = RunControl()
    control.record_error()
    control.record_success()
    summary = control.get_summary()
    assert summary["error_count"] == 1
    assert summary["consecutive_errors"] == 0


def test_consecutive_errors_stop_run_only_when_uninterrupted():
    control = RunControl(max_consecutive_errors=2)
    control.record_error()
    control.record_success()
    control.record_error()
    assert not control.should_stop()[0]
    control.record_error()
    stop, reason = control.should_stop()
    assert stop
    assert "max_consecutive_errors=2" in reason


def test_metrics_summary_and_eta():
    metrics = Metrics(total=10, label="lots")
    metrics.start_time -= 10
    for _ in range(5):
        metrics.increment("processed")
    metrics.increment("ok", 4)
    metrics.increment("failed")
    summary = metrics.get_summary()
    assert summary["processed"] == 5
    assert summary["ok"] == 4
    assert summary["failed"] == 1
    assert 9 <= metrics.get_eta() <= 11


def test_format_duration():
    assert format_duration(3725) == "1h 2m 5s"


def test_metrics_exporter_appends_jsonl(tmp_path):
    exporter = MetricsExporter("run-1", tmp_path / "metrics.jsonl")
    metrics = Metrics(total=2, label="windows")
    metrics.increment("processed")
    asyncio.run(exporter.export_metrics("auctions", metrics.get_summary()))
    asyncio.run(exporter.export_metrics("auctions", metrics.get_summary(), stopped=True))
    lines = (tmp_path / "metrics.jsonl").read_bytes().splitlines()
    assert len(lines) == 2
    last = orjson.loads(lines[-1])
    assert last["run_id"] == "run-1"
    assert last["phase"] == "auctions"
    assert last["processed"] == 1
    assert last["stopped"] is True


def test_failure_ledger(tmp_path):
    ledger = FailureLedger(tmp_path / "failures.db")

    async def run():
        await ledger.record("images", FailureRecord(key="1/2", error="HTTP 500", parent_id="2", listing_id="1"))
        await ledger.record("images", FailureRecord(key="1/3", error="HTTP 502"))
        await ledger.record("migration", FailureRecord(key="lotimages/a.jpg", error="404"))
        counts = await ledger.counts()
        recent = await ledger.recent("images", limit=1)
        cleared = await ledger.clear("images", "1/2")
        return counts, recent, cleared, await ledger.counts()

    counts, recent, cleared, after = asyncio.run(run())
    assert counts == {"images": 2, "migration": 1}
    assert [row["key"] for row in recent] == ["1/3"]
    assert cleared == 1
    assert after == {"images": 1, "migration": 1}


def test_empty_ledger(tmp_path):
    ledger = FailureLedger(tmp_path / "none.db")
    assert asyncio.run(ledger.recent()) == []
    assert asyncio.run(ledger.counts()) == {}
