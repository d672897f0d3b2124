import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path

import pytest

from gateway.errors import ValidationError
from gateway.usage import StatsService, UsageRecorder


def test_record_updates_listing_aggregates(tmp_path: Path):
    recorder = UsageRecorder(tmp_path / "usage.jsonl")

    recorder.record("listing-1", "0xcaller", True, None, "0.01", owner_wallet="0xowner")
    event = recorder.record("listing-1", "0xcaller", False, "boom", 0, owner_wallet="0xowner")

    assert event.success is False
    assert event.error == "boom"
    assert event.timestamp.endswith("Z")
    stats = recorder.listing_stats("listing-1")
    assert stats.total_calls == 2
    assert stats.total_revenue == Decimal("0.01")
    assert stats.to_json() == {"total_calls": 2, "total_revenue": "0.01"}
    assert recorder.listing_stats("unknown").total_calls == 0


def test_events_are_appended_as_json_lines(tmp_path: Path):
    path = tmp_path / "usage.jsonl"
    recorder = UsageRecorder(path)
    recorder.record("listing-1", "0xcaller", True, None, 100, slug="weather", upstream_status=200)

    lines = path.read_text().splitlines()
    assert len(lines) == 1
    stored = json.loads(lines[0])
    assert stored["cost"] == "100"
    assert stored["slug"] == "weather"
    assert stored["upstream_status"] == 200


def test_reload_rebuilds_aggregates(tmp_path: Path):
    path = tmp_path / "usage.jsonl"
    recorder = UsageRecorder(path)
    for _ in range(3):
        recorder.record("listing-1", "0xcaller", True, None, "2.5")
    with path.open("a", encoding="utf-8") as handle:
        handle.write("not json\n")

    reloaded = UsageRecorder(path)

    stats = reloaded.listing_stats("listing-1")
    assert stats.total_calls == 3
    assert stats.total_revenue == Decimal("7.5")
    assert len(reloaded.events()) == 3


@pytest.mark.parametrize(
    "kwargs, field",
    [
        ({"listing_id": "", "caller_wallet": "0xc", "success": True, "cost": 1}, "listing_id"),
        ({"listing_id": "l", "caller_wallet": None, "success": True, "cost": 1}, "caller_wallet"),
        ({"listing_id": "l", "caller_wallet": "0xc", "success": None, "cost": 1}, "success"),
        ({"listing_id": "l", "caller_wallet": "0xc", "success": "yes", "cost": 1}, "success"),
        ({"listing_id": "l", "caller_wallet": "0xc", "success": True, "cost": -1}, "cost"),
        ({"listing_id": "l", "caller_wallet": "0xc", "success": True, "cost": "lots"}, "cost"),
    ],
)
def test_record_validates_input(kwargs, field):
    recorder = UsageRecorder()
    with pytest.raises(ValidationError) as excinfo:
        recorder.record(error=None, **kwargs)
    assert excinfo.value.fields == [field]
    assert recorder.events() == []


def test_summary_partitions_successes_and_failures():
    recorder = UsageRecorder()
    for index in range(5):
        recorder.record("listing-1", "0xcaller", index % 2 == 0, None, 10, owner_wallet="0xowner")
    recorder.record("listing-2", "0xcaller", True, None, 7, owner_wallet="0xother")

    stats = StatsService(recorder)
    summary = stats.summarize(owner="0xowner")

    assert summary == {
        "totalRequests": 5,
        "successfulRequests": 3,
        "failedRequests": 2,
        "totalRevenue": 50,
    }
    overall = stats.summarize()
    assert overall["totalRequests"] == overall["successfulRequests"] + overall["failedRequests"] == 6
    assert overall["totalRevenue"] == 57


def test_summary_time_range_filters_old_events():
    recorder = UsageRecorder()
    recorder.record("listing-1", "0xcaller", True, None, 1)
    stats = StatsService(recorder)

    future = datetime.now(timezone.utc) + timedelta(hours=2)
    assert stats.summarize(time_range="1h", now=future)["totalRequests"] == 0
    assert stats.summarize(time_range="24h", now=future)["totalRequests"] == 1


def test_summary_rejects_unknown_time_range():
    with pytest.raises(ValidationError) as excinfo:
        StatsService(UsageRecorder()).summarize(time_range="1y")
    assert excinfo.value.fields == ["timeRange"]


def test_usage_queries_are_newest_first():
    recorder = UsageRecorder()
    first = recorder.record("listing-1", "0xa", True, None, 1, owner_wallet="0xowner")
    second = recorder.record("listing-2", "0xb", True, None, 1, owner_wallet="0xother")
    third = recorder.record("listing-1", "0xc", False, "bad", 0, owner_wallet="0xowner")
    stats = StatsService(recorder)

    assert [event.id for event in stats.usage_by_listing("listing-1", 10)] == [third.id, first.id]
    assert [event.id for event in stats.usage_by_owner("0xother", 10)] == [second.id]
    assert [event.id for event in stats.recent_usage(2)] == [third.id, second.id]
    assert [event.id for event in stats.recent_usage(10, owner="0xowner")] == [third.id, first.id]
