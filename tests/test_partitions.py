"""Tests for throttled partition refresh."""

import asyncio
import threading

import pytest

from src.codecs import encode_archive_key
from src.config import Config
from src.failures import FailureChannel
from src.models import Category
from src.partitions import PartitionSync
from tests.helpers import BASE_TS, DAY, make_entry

HOUR = 60 * 60 * 1000


class RecordingEngine:
    def __init__(self, fail=False, delay=0.0):
        self.calls = []
        self.fail = fail
        self.delay = delay

    async def refresh_partitions(self, database, table, location):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise ConnectionError("athena unavailable")
        self.calls.append((database, table, location))


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


def _sync(engine, clock, **overrides):
    defaults = dict(archive_dir="/srv/archive", lookback_days=1, partition_refresh_hours=12)
    defaults.update(overrides)
    return PartitionSync(engine, Config(**defaults), time_func=clock)


@pytest.mark.asyncio
async def test_first_refresh_sweeps_lookback_for_every_category():
    engine = RecordingEngine()
    sync = _sync(engine, Clock(BASE_TS))
    assert await sync.ensure_partitions() is True
    # Jan 14 and Jan 15, six categories each.
    assert len(engine.calls) == 2 * len(Category)
    database, table, location = engine.calls[0]
    assert (database, table) == ("circle_logs", "entries")
    assert location.startswith("/srv/archive/category=")
    assert "/srv/archive/category=ERROR/year=2025/month=01/day=15/" in [c[2] for c in engine.calls]
    assert sync.last_refreshed == BASE_TS


@pytest.mark.asyncio
async def test_throttled_until_interval_passes():
    engine = RecordingEngine()
    clock = Clock(BASE_TS)
    sync = _sync(engine, clock)
    await sync.ensure_partitions()
    first = len(engine.calls)

    clock.now = BASE_TS + 11 * HOUR
    assert await sync.ensure_partitions() is True
    assert len(engine.calls) == first

    clock.now = BASE_TS + 12 * HOUR
    assert await sync.ensure_partitions() is True
    assert len(engine.calls) > first
    assert sync.last_refreshed == BASE_TS + 12 * HOUR


@pytest.mark.asyncio
async def test_written_buckets_are_refreshed():
    engine = RecordingEngine()
    sync = _sync(engine, Clock(BASE_TS))
    old = make_entry(Category.AUTH, timestamp=BASE_TS - 30 * DAY)
    sync.mark_written(encode_archive_key(old))
    sync.mark_written("not/a/partition/key")
    assert sync.pending == {("AUTH", "2024", "12", "16")}

    await sync.ensure_partitions()
    assert "/srv/archive/category=AUTH/year=2024/month=12/day=16/" in [c[2] for c in engine.calls]
    assert sync.pending == set()


@pytest.mark.asyncio
async def test_s3_location():
    engine = RecordingEngine()
    sync = _sync(engine, Clock(BASE_TS), archive_backend="s3", archive_bucket="b",
                 archive_prefix="logs/", lookback_days=0)
    await sync.ensure_partitions()
    assert ("circle_logs", "entries",
            "s3://b/logs/category=DB/year=2025/month=01/day=15/") in engine.calls


@pytest.mark.asyncio
async def test_failure_reported_and_retried():
    engine = RecordingEngine(fail=True)
    failures = FailureChannel()
    sync = PartitionSync(engine, Config(archive_dir="/a", lookback_days=0), failures,
                         time_func=Clock(BASE_TS))
    assert await sync.ensure_partitions() is False
    assert failures.count == 1
    assert sync.last_refreshed is None

    engine.fail = False
    assert await sync.ensure_partitions() is True
    assert sync.last_refreshed == BASE_TS


@pytest.mark.asyncio
async def test_concurrent_caller_skips():
    engine = RecordingEngine(delay=0.05)
    sync = _sync(engine, Clock(BASE_TS), lookback_days=0)
    first = asyncio.create_task(sync.ensure_partitions())
    await asyncio.sleep(0.01)
    assert await sync.ensure_partitions() is True
    assert await first is True
    assert len(engine.calls) == len(Category)


def test_refresh_running_on_another_loop_is_skipped():
    started, release = threading.Event(), threading.Event()

    class BlockingEngine(RecordingEngine):
        async def refresh_partitions(self, database, table, location):
            started.set()
            while not release.is_set():
                await asyncio.sleep(0.001)
            await super().refresh_partitions(database, table, location)

    engine = BlockingEngine()
    clock = Clock(BASE_TS)
    sync = _sync(engine, clock, lookback_days=0)
    results = []
    worker = threading.Thread(target=lambda: results.append(asyncio.run(sync.ensure_partitions())))
    worker.start()
    assert started.wait(5)

    assert asyncio.run(sync.ensure_partitions()) is True
    assert engine.calls == []
    release.set()
    worker.join(5)
    assert results == [True]
    assert len(engine.calls) == len(Category)

    clock.now = BASE_TS + 12 * HOUR
    assert asyncio.run(sync.ensure_partitions()) is True
    assert len(engine.calls) == 2 * len(Category)
