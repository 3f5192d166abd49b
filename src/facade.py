"""Log facade: one coroutine per category, wired from a Config.

Every logging method returns True only when each enabled sink accepted the
entry, and never raises.
"""

import asyncio
import logging
import os
import traceback

from src.archive import ArchiveUploader
from src.config import Config
from src.dedup import merge_duplicates
from src.failures import FailureChannel
from src.local_store import LocalStore
from src.models import TRACED_CATEGORIES, Category, LogEntry
from src.object_store import FileObjectStore, S3ObjectStore
from src.partitions import PartitionSync
from src.query_builder import Weights
from src.query_engine import AthenaQueryEngine, LocalQueryEngine
from src.search import SearchEngine, rank_entries, resolve_window

logger = logging.getLogger(__name__)

_THIS_FILE = os.path.abspath(__file__)


def format_frame(frame) -> str:
    return f"{frame.name} ({os.path.basename(frame.filename)}:{frame.lineno})"


def call_site_trace(depth: int) -> list[str]:
    """Frames of the caller's stack, innermost first, excluding this module."""
    frames = [f for f in traceback.extract_stack() if os.path.abspath(f.filename) != _THIS_FILE]
    frames.reverse()
    return [format_frame(f) for f in frames[:depth]]


def exception_trace(exc: BaseException, depth: int) -> list[str]:
    """Frames of *exc*'s traceback, innermost first."""
    frames = list(traceback.extract_tb(exc.__traceback__))
    frames.reverse()
    return [format_frame(f) for f in frames[:depth]]


def _known_category(value, operation: str) -> Category | None:
    try:
        return Category.parse(value)
    except ValueError as exc:
        logger.warning("%s rejected: %s", operation, exc)
        return None


class LogFacade:
    def __init__(self, config: Config, local_store=None, uploader=None,
                 search_engine=None, failures=None):
        self.config = config
        self.local_store = local_store
        self.uploader = uploader
        self.search_engine = search_engine
        self.failures = failures or FailureChannel(local_store)

    # ── logging ──────────────────────────────────────────────────────

    async def error(self, *messages, exc: BaseException | None = None) -> bool:
        return await self.log(Category.ERROR, *messages, exc=exc)

    async def warn(self, *messages) -> bool:
        return await self.log(Category.WARN, *messages)

    async def event(self, *messages) -> bool:
        return await self.log(Category.EVENT, *messages)

    async def auth(self, *messages) -> bool:
        return await self.log(Category.AUTH, *messages)

    async def db(self, *messages) -> bool:
        return await self.log(Category.DB, *messages)

    async def alert(self, *messages, exc: BaseException | None = None) -> bool:
        return await self.log(Category.ALERT, *messages, exc=exc)

    async def log(self, category, *messages, exc: BaseException | None = None) -> bool:
        try:
            category = Category.parse(category)
            if not self.config.is_enabled(category):
                return True
            entry = self._build(category, messages, exc)
            return await self.dispatch(entry)
        except Exception as err:
            origin = category if isinstance(category, Category) else None
            await asyncio.to_thread(self.failures.report, origin, "log dispatch", err)
            return False

    def _build(self, category: Category, messages, exc) -> LogEntry:
        messages = list(messages)
        trace = None
        if category in TRACED_CATEGORIES:
            depth = self.config.trace_depth
            if exc is not None:
                messages.append(f"{type(exc).__name__}: {exc}")
                trace = exception_trace(exc, depth)
            else:
                trace = call_site_trace(depth)
        return LogEntry.create(category, messages, stack_trace=trace)

    async def dispatch(self, entry: LogEntry) -> bool:
        """Send a built entry to every enabled sink."""
        problems = entry.validate(self.config.clock_skew_ms)
        if problems:
            logger.warning("Dropping invalid %s entry: %s",
                           entry.category.value if entry.category else "?", "; ".join(problems))
            return False
        ok = True
        if self.local_store is not None:
            ok = await asyncio.to_thread(self.local_store.append, entry) and ok
        if self.uploader is not None:
            ok = await self.uploader.upload(entry) and ok
        return ok

    # ── reads ────────────────────────────────────────────────────────

    async def search(self, category, term: str, start=None, end=None, max_entries=None,
                     merge_duplicates: bool = False) -> list[LogEntry]:
        """Search the archive, or the local buffer when no archive is configured."""
        if self.search_engine is not None:
            return await self.search_engine.search(
                category, term, start, end, max_entries, merge_duplicates
            )
        category = _known_category(category, "search")
        if category is None:
            return []
        start, end, limit = resolve_window(self.config, start, end, max_entries)
        entries = [e for e in await self.read_local(category, self.config.max_query_entries)
                   if start <= e.timestamp <= end]
        ranked = rank_entries(entries, term, Weights.from_config(self.config), limit)
        if merge_duplicates:
            return self.merge(ranked)
        return ranked

    async def fetch_range(self, category, start=None, end=None,
                          max_entries=None) -> list[LogEntry]:
        """Entries in a window, most recent first, from the archive or the local buffer."""
        category = _known_category(category, "fetch range")
        if category is None:
            return []
        start, end, limit = resolve_window(self.config, start, end, max_entries)
        if self.uploader is not None:
            return await self.uploader.fetch_by_date_range(category, start, end, limit)
        entries = await self.read_local(category, self.config.max_query_entries)
        entries = [e for e in entries if start <= e.timestamp <= end]
        entries.sort(key=lambda e: e.timestamp, reverse=True)
        return entries[:limit]

    async def fetch_by_key(self, key: str) -> LogEntry:
        if self.uploader is None:
            return LogEntry.invalid("archive is disabled", archive_key=key)
        return await self.uploader.fetch_by_key(key)

    async def read_local(self, category, max_entries=None, cutoff=None) -> list[LogEntry]:
        if self.local_store is None:
            return []
        category = _known_category(category, "local read")
        if category is None:
            return []
        if max_entries is None:
            max_entries = self.config.default_query_entries
        return await asyncio.to_thread(self.local_store.read, category, max_entries, cutoff)

    async def reset_local(self, category, retain_latest: int) -> list[LogEntry]:
        if self.local_store is None:
            return []
        category = _known_category(category, "local reset")
        if category is None:
            return []
        return await asyncio.to_thread(self.local_store.reset, category, retain_latest)

    def merge(self, entries) -> list[LogEntry]:
        return merge_duplicates(entries, self.config.duplicate_window_ms,
                                self.config.duplicate_confidence)


def build_object_store(config: Config):
    if config.archive_backend == "s3":
        if not config.archive_bucket:
            raise ValueError("ARCHIVE_BUCKET is required for the s3 archive backend")
        return S3ObjectStore(config.archive_bucket, config.archive_prefix)
    if config.archive_backend == "file":
        return FileObjectStore(config.archive_dir)
    raise ValueError(f"unknown archive backend: {config.archive_backend!r}")


def build_query_engine(config: Config, store):
    if config.query_backend == "athena":
        return AthenaQueryEngine(config.athena_database, config.athena_output_location)
    if config.query_backend == "local":
        return LocalQueryEngine(store)
    raise ValueError(f"unknown query backend: {config.query_backend!r}")


def build_facade(config: Config) -> LogFacade:
    """Wire the local store, archive, partition sync and search from *config*."""
    failures = FailureChannel()
    local_store = None
    if config.local_store_enabled:
        local_store = LocalStore(config.log_dir, config.max_bytes, config.rollover_bytes,
                                 failures=failures)
        failures.attach(local_store)

    uploader = search_engine = None
    if config.archive_enabled:
        store = build_object_store(config)
        engine = build_query_engine(config, store)
        partitions = PartitionSync(engine, config, failures)
        uploader = ArchiveUploader(
            store, failures, partitions,
            max_parallel=config.max_parallel_connections,
            max_retries=config.archive_max_retries,
        )
        search_engine = SearchEngine(engine, config, partitions, failures)

    logger.info("Log facade ready (local=%s, archive=%s)",
                local_store is not None, uploader is not None)
    return LogFacade(config, local_store, uploader, search_engine, failures)
