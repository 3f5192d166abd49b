"""Throttled refresh of the query engine's partition metadata."""

import asyncio
import logging
import threading
from datetime import datetime, timedelta, timezone

from src.codecs import KEY_RE
from src.models import Category, now_ms

logger = logging.getLogger(__name__)

DAY_MS = 24 * 60 * 60 * 1000


class PartitionSync:
    """Registers category/year/month/day buckets with the query engine.

    Buckets come from two places: keys this process uploaded (``mark_written``)
    and a sweep of every category's days since the last refresh, since other
    hosts write to the same archive.
    """

    def __init__(self, engine, config, failures=None, time_func=None):
        self._engine = engine
        self._config = config
        self._failures = failures
        self._time_func = time_func or now_ms
        self._lock = threading.Lock()
        self._pending: set[tuple] = set()
        self.last_refreshed: int | None = None

    def mark_written(self, key: str) -> None:
        match = KEY_RE.search(key or "")
        if match is None:
            logger.debug("Ignoring non-partition key %s", key)
            return
        self._pending.add(
            (match.group("category"), match.group("year"), match.group("month"), match.group("day"))
        )

    @property
    def pending(self) -> set:
        return set(self._pending)

    def is_due(self, now: int) -> bool:
        if self.last_refreshed is None:
            return True
        interval = self._config.partition_refresh_hours * 60 * 60 * 1000
        return now - self.last_refreshed >= interval

    def buckets_since(self, since: int, now: int) -> set:
        first = datetime.fromtimestamp(since / 1000, tz=timezone.utc).date()
        last = datetime.fromtimestamp(now / 1000, tz=timezone.utc).date()
        buckets = set()
        day = first
        while day <= last:
            for category in Category:
                buckets.add((category.value, f"{day:%Y}", f"{day:%m}", f"{day:%d}"))
            day += timedelta(days=1)
        return buckets

    def location(self, bucket) -> str:
        category, year, month, day = bucket
        base = self._config.archive_location.rstrip("/")
        return f"{base}/category={category}/year={year}/month={month}/day={day}/"

    async def ensure_partitions(self) -> bool:
        """True when metadata is fresh or another caller is refreshing it."""
        # Non-blocking thread lock: Flask and the CLI call in from separate loops.
        if not self._lock.acquire(blocking=False):
            logger.debug("Partition refresh already running, skipping")
            return True
        try:
            return await self._refresh_if_due()
        finally:
            self._lock.release()

    async def _refresh_if_due(self) -> bool:
        now = self._time_func()
        if not self.is_due(now):
            return True
        since = self.last_refreshed
        if since is None:
            since = now - self._config.lookback_days * DAY_MS
        buckets = self.buckets_since(since, now) | self._pending

        try:
            for bucket in sorted(buckets):
                await self._engine.refresh_partitions(
                    self._config.athena_database,
                    self._config.athena_table,
                    self.location(bucket),
                )
        except Exception as exc:
            if self._failures is not None:
                await asyncio.to_thread(self._failures.report, None, "partition refresh", exc)
            else:
                logger.error("Partition refresh failed: %s", exc)
            return False

        self._pending -= buckets
        self.last_refreshed = now
        logger.info("Refreshed %d partitions", len(buckets))
        return True
