"""Relevance search over the archive through a query engine."""

import asyncio
import logging

from src.codecs import decode_row
from src.dedup import merge_duplicates as merge_entries
from src.models import Category, LogEntry, now_ms
from src.partitions import DAY_MS
from src.query_builder import Weights, build_search_query, normalize_term, score_text

logger = logging.getLogger(__name__)

REFRESH_FAILED_MESSAGE = "partition refresh failed; search results may be incomplete"


def resolve_window(config, start=None, end=None, max_entries=None, time_func=now_ms):
    """Apply the default window and entry limits: (start, end, limit)."""
    end = time_func() if end is None else int(end)
    start = end - config.lookback_days * DAY_MS if start is None else int(start)
    limit = config.default_query_entries if max_entries is None else int(max_entries)
    limit = max(0, min(limit, config.max_query_entries))
    return start, end, limit


def rank_entries(entries, term: str, weights: Weights, limit: int) -> list[LogEntry]:
    """Score already-decoded entries the way the SQL does (used for local buffers)."""
    scored = []
    for entry in entries:
        score = score_text(entry.search_text, term, weights)
        if score > 0:
            scored.append((score, entry.timestamp, entry))
    scored.sort(key=lambda item: (item[0], item[1]), reverse=True)
    return [entry for _, _, entry in scored[:limit]]


def keep_rank_order(merged, ranked) -> list[LogEntry]:
    """Re-order merged representatives by the rank of the entry they came from."""
    rank = {}
    for i, entry in enumerate(ranked):
        rank.setdefault((entry.timestamp, entry.archive_key, entry.search_text), i)
    return sorted(merged, key=lambda e: rank.get((e.timestamp, e.archive_key, e.search_text), len(rank)))


class SearchEngine:
    def __init__(self, engine, config, partitions=None, failures=None, time_func=None):
        self._engine = engine
        self._config = config
        self._partitions = partitions
        self._failures = failures
        self._time_func = time_func or now_ms
        self._weights = Weights.from_config(config)

    async def search(self, category, term: str, start=None, end=None, max_entries=None,
                     merge_duplicates: bool = False) -> list[LogEntry]:
        """Ranked entries of *category* matching *term* inside [start, end].

        Never raises: engine failures and timeouts come back as an empty list.
        """
        try:
            category = Category.parse(category)
        except ValueError as exc:
            logger.warning("Search rejected: %s", exc)
            return []
        start, end, limit = resolve_window(self._config, start, end, max_entries, self._time_func)
        if limit == 0 or end < start or not normalize_term(term):
            return []

        notice = None
        if self._partitions is not None and not await self._partitions.ensure_partitions():
            notice = LogEntry.create(Category.WARN, [REFRESH_FAILED_MESSAGE])

        query = build_search_query(
            category, term, start, end, limit, self._weights,
            database=self._config.athena_database, table=self._config.athena_table,
        )
        timeout = self._config.search_timeout_seconds
        try:
            rows = await asyncio.wait_for(
                self._engine.execute_scored_query(query, query.column_spec, int(timeout * 1000)),
                timeout=timeout,
            )
        except (asyncio.TimeoutError, TimeoutError):
            logger.warning("Search for %r in %s timed out after %ss", query.term, category.value, timeout)
            return []
        except Exception as exc:
            if self._failures is not None:
                await asyncio.to_thread(self._failures.report, category, "search", exc)
            else:
                logger.error("Search failed for %s: %s", category.value, exc)
            return []

        entries = self._decode(rows, query.column_spec)
        if merge_duplicates:
            merged = merge_entries(
                entries, self._config.duplicate_window_ms, self._config.duplicate_confidence
            )
            entries = keep_rank_order(merged, entries)
        if notice is not None:
            entries.insert(0, notice)
        return entries

    def _decode(self, rows, column_spec) -> list[LogEntry]:
        entries, discarded = [], 0
        for row in rows:
            entry = decode_row(row, column_spec)
            if entry.validate_check():
                entries.append(entry)
            else:
                discarded += 1
                logger.debug("Discarded undecodable row: %s", entry.decode_error)
        if discarded and discarded / len(rows) >= self._config.decode_warn_ratio:
            logger.warning("Discarded %d of %d search rows that failed to decode",
                           discarded, len(rows))
        return entries
