"""Failure channel for sink errors.

A failure in one category is never reported into that same category: it goes
to the stdlib logger and, when a local store is attached, into the ALERT
buffer (or ERROR when ALERT itself failed).
"""

import logging
import threading

from src.models import Category, LogEntry

logger = logging.getLogger(__name__)


def fallback_category(origin: Category | None) -> Category:
    return Category.ERROR if origin is Category.ALERT else Category.ALERT


class FailureChannel:
    def __init__(self, store=None):
        self._store = store
        self._local = threading.local()
        self._lock = threading.Lock()
        self._count = 0

    def attach(self, store) -> None:
        self._store = store

    @property
    def count(self) -> int:
        with self._lock:
            return self._count

    def report(self, origin: Category | None, operation: str, error) -> None:
        with self._lock:
            self._count += 1
        origin_name = origin.value if origin else "?"
        logger.error("%s failed for %s: %s", operation, origin_name, error)

        if self._store is None or getattr(self._local, "active", False):
            return
        target = fallback_category(origin)
        entry = LogEntry.create(
            target,
            [f"{operation} failed for {origin_name}", f"{type(error).__name__}: {error}"],
        )
        self._local.active = True
        try:
            self._store.append(entry)
        except Exception as exc:
            logger.error("Could not record failure in %s buffer: %s", target.value, exc)
        finally:
            self._local.active = False
