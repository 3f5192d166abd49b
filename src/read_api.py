"""Read endpoints as plain coroutines; ``src.web`` mounts them on Flask."""

import base64
import binascii
import json
import logging

from src.codecs import encode_structured, encode_text
from src.models import Category

logger = logging.getLogger(__name__)


class RequestError(Exception):
    """A client error carrying the HTTP status to answer with."""

    def __init__(self, status: int, message: str, action: str = ""):
        super().__init__(message)
        self.status = status
        self.message = message
        self.action = action


def encode_cursor(offset: int) -> str:
    raw = json.dumps({"offset": offset}, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii")


def decode_cursor(cursor: str | None) -> int:
    if not cursor:
        return 0
    try:
        data = json.loads(base64.urlsafe_b64decode(cursor.encode("ascii")))
        offset = data["offset"]
    except (binascii.Error, UnicodeError, ValueError, KeyError, TypeError):
        raise RequestError(400, "invalid pagination cursor", "restart the search") from None
    if isinstance(offset, bool) or not isinstance(offset, int) or offset < 0:
        raise RequestError(400, "invalid pagination cursor", "restart the search")
    return offset


def parse_category(value) -> Category:
    try:
        return Category.parse(value)
    except ValueError as exc:
        raise RequestError(400, str(exc), "use one of " + ", ".join(c.value for c in Category)) from None


def entry_view(entry) -> dict:
    return encode_structured(entry, include_duplicates=True)


class LogReader:
    def __init__(self, facade):
        self._facade = facade
        self._config = facade.config

    async def fetch_by_key(self, key: str) -> dict:
        if not key:
            raise RequestError(400, "missing archive key", "pass ?key=")
        entry = await self._facade.fetch_by_key(key)
        if not entry.validate_check():
            raise RequestError(404, entry.decode_error or f"not found: {key}")
        return entry_view(entry)

    async def default_view(self, end=None) -> dict:
        """Merged WARN and ERROR entries over the lookback window."""
        limit = self._config.max_query_entries
        warn = await self._facade.fetch_range(Category.WARN, end=end, max_entries=limit)
        error = await self._facade.fetch_range(Category.ERROR, end=end, max_entries=limit)
        merged = self._facade.merge(warn + error)[:limit]
        return {"entries": [entry_view(e) for e in merged], "count": len(merged)}

    async def search_page(self, category, term: str = "", start=None, end=None,
                          cursor: str | None = None, limit=None, merge: bool = False) -> dict:
        """One page of results plus the cursor for the next page, if any."""
        category = parse_category(category)
        offset = decode_cursor(cursor)
        page_size = self._config.default_query_entries if limit is None else int(limit)
        if page_size <= 0:
            raise RequestError(400, "limit must be positive")
        ceiling = self._config.max_query_entries
        wanted = min(offset + page_size, ceiling)
        if offset >= wanted:
            return {"entries": [], "count": 0, "cursor": None}

        if term and term.strip():
            results = await self._facade.search(category, term, start, end, wanted, merge)
        else:
            results = await self._facade.fetch_range(category, start, end, wanted)
            if merge:
                results = self._facade.merge(results)

        page = results[offset:wanted]
        has_more = len(results) >= wanted and wanted < ceiling
        return {
            "entries": [entry_view(e) for e in page],
            "count": len(page),
            "cursor": encode_cursor(wanted) if has_more else None,
        }

    async def reset(self, category, retain) -> dict:
        category = parse_category(category)
        try:
            retain = int(retain)
        except (TypeError, ValueError):
            raise RequestError(400, "retain must be an integer") from None
        if retain < 0:
            raise RequestError(400, "retain must not be negative")
        kept = await self._facade.reset_local(category, retain)
        logger.info("Reset %s local buffer to %d entries", category.value, len(kept))
        return {"category": category.value, "retained": len(kept)}

    def stream(self, category):
        """Iterator over the retained text records of a local buffer, oldest first."""
        category = parse_category(category)
        store = self._facade.local_store
        if store is None:
            return iter(())
        return iter(store.read_raw(category))

    def download_name(self, category) -> str:
        return f"{parse_category(category).value.lower()}.log"


def render_entries(entries) -> str:
    """Text-format a list of entries for terminals and downloads."""
    return "".join(encode_text(e) for e in entries)
