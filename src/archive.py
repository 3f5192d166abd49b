"""Archive uploader: durable, partitioned persistence of log entries."""

import asyncio
import logging
import weakref

from src.codecs import category_prefix, encode_archive_key, from_json, key_timestamp, to_json
from src.models import Category, LogEntry

logger = logging.getLogger(__name__)


class ArchiveUploader:
    def __init__(self, store, failures=None, partitions=None,
                 max_parallel: int = 8, max_retries: int = 3,
                 backoff_seconds: float = 0.2):
        self._store = store
        self._failures = failures
        self._partitions = partitions
        self._max_parallel = max(1, max_parallel)
        self._semaphores = weakref.WeakKeyDictionary()
        self._max_retries = max(1, max_retries)
        self._backoff = backoff_seconds

    def _semaphore(self) -> asyncio.Semaphore:
        """Connection bound for the running loop; each asyncio.run gets its own."""
        loop = asyncio.get_running_loop()
        semaphore = self._semaphores.get(loop)
        if semaphore is None:
            semaphore = self._semaphores[loop] = asyncio.Semaphore(self._max_parallel)
        return semaphore

    async def _report(self, category, operation, exc) -> None:
        if self._failures is not None:
            await asyncio.to_thread(self._failures.report, category, operation, exc)
        else:
            logger.error("%s failed: %s", operation, exc)

    async def upload(self, entry: LogEntry) -> bool:
        """Persist *entry* under its archive key, assigning one if absent.

        Retries reuse the same key, so a retried upload overwrites rather
        than duplicates.
        """
        problems = entry.validate()
        if problems:
            logger.warning("Refusing to archive invalid entry: %s", "; ".join(problems))
            return False

        key = entry.archive_key or encode_archive_key(entry)
        staged = LogEntry(
            category=entry.category,
            timestamp=entry.timestamp,
            messages=entry.messages,
            stack_trace=entry.stack_trace,
            archive_key=key,
        )
        payload = to_json(staged)

        last_error = None
        for attempt in range(self._max_retries):
            try:
                async with self._semaphore():
                    await self._store.put(key, payload)
            except Exception as exc:
                last_error = exc
                logger.warning("Archive put %s failed (attempt %d/%d): %s",
                               key, attempt + 1, self._max_retries, exc)
                if attempt + 1 < self._max_retries:
                    await asyncio.sleep(self._backoff * (2 ** attempt))
                continue
            entry.assign_archive_key(key)
            if self._partitions is not None:
                self._partitions.mark_written(key)
            return True

        await self._report(entry.category, "archive upload", last_error)
        return False

    async def fetch_by_key(self, key: str) -> LogEntry:
        """Fetch and decode one entry; an invalid sentinel on any failure."""
        try:
            async with self._semaphore():
                payload = await self._store.get(key)
        except Exception as exc:
            await self._report(None, "archive fetch", exc)
            return LogEntry.invalid(f"fetch failed: {exc}", archive_key=key)
        if payload is None:
            return LogEntry.invalid(f"not found: {key}", archive_key=key)

        entry = from_json(payload)
        if not entry.validate_check():
            logger.info("Archived entry %s did not decode: %s", key, entry.decode_error)
            return LogEntry.invalid(entry.decode_error or "decode failed", archive_key=key)
        if entry.archive_key is None:
            entry.assign_archive_key(key)
        return entry

    async def fetch_by_date_range(self, category: Category, start: int, end: int,
                                  max_entries: int) -> list[LogEntry]:
        """Valid entries of *category* within [start, end], most recent first."""
        if max_entries <= 0:
            return []
        try:
            keys = await self._store.list_by_prefix_and_time_range(
                category_prefix(category), start, end
            )
        except Exception as exc:
            await self._report(category, "archive list", exc)
            return []
        keys.sort(key=lambda k: key_timestamp(k) or 0, reverse=True)

        results, invalid = [], 0
        for i in range(0, len(keys), max_entries):
            batch = keys[i:i + max_entries]
            fetched = await asyncio.gather(*(self.fetch_by_key(k) for k in batch))
            for entry in fetched:
                if entry.validate_check() and start <= entry.timestamp <= end:
                    results.append(entry)
                else:
                    invalid += 1
            if len(results) >= max_entries:
                break
        if invalid:
            logger.info("Dropped %d unreadable archive rows for %s", invalid, category.value)

        results.sort(key=lambda e: e.timestamp, reverse=True)
        return results[:max_entries]
