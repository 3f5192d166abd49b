"""Shared constants and builders for the test suite."""

from src.models import Category, LogEntry

# 2025-01-15T10:30:00.123Z
BASE_TS = 1736937000123
MINUTE = 60 * 1000
DAY = 24 * 60 * MINUTE


def make_entry(category=Category.ERROR, messages=("something failed",), timestamp=BASE_TS,
               stack_trace=None, archive_key=None) -> LogEntry:
    entry = LogEntry.create(category, list(messages), stack_trace=stack_trace, timestamp=timestamp)
    if archive_key:
        entry.assign_archive_key(archive_key)
    return entry
