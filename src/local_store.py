"""Per-category append-only buffer with size-based rotation.

Each category writes to ``<log_dir>/<category>.log``. When the active file
passes ``rollover_bytes`` it is renamed to ``<category>.log.<timestamp>``;
retention then deletes the oldest segments until the category's total size is
at most ``max_bytes``.
"""

import logging
import os
import tempfile
import threading
from datetime import datetime, timezone

from src.codecs import decode_text, encode_text, split_records
from src.models import Category, LogEntry

logger = logging.getLogger(__name__)


class LocalStore:
    def __init__(self, log_dir: str, max_bytes: int, rollover_bytes: int,
                 failures=None, time_func=None):
        self._log_dir = log_dir
        self._max_bytes = max_bytes
        self._rollover_bytes = rollover_bytes
        self._failures = failures
        self._time_func = time_func or (lambda: datetime.now(timezone.utc))
        self._locks = {c: threading.Lock() for c in Category}
        os.makedirs(log_dir, exist_ok=True)

    def _active_name(self, category: Category) -> str:
        return f"{category.value.lower()}.log"

    def _active_path(self, category: Category) -> str:
        return os.path.join(self._log_dir, self._active_name(category))

    def _segments(self, category: Category) -> list[str]:
        """Rotated segment paths, oldest first."""
        prefix = self._active_name(category) + "."
        names = sorted(n for n in os.listdir(self._log_dir) if n.startswith(prefix))
        return [os.path.join(self._log_dir, n) for n in names]

    def _files(self, category: Category) -> list[str]:
        files = self._segments(category)
        active = self._active_path(category)
        if os.path.exists(active):
            files.append(active)
        return files

    def _report(self, category, operation, exc) -> None:
        if self._failures is not None:
            self._failures.report(category, operation, exc)
        else:
            logger.error("%s failed for %s: %s", operation, category.value, exc)

    # ── writes ───────────────────────────────────────────────────────

    def append(self, entry: LogEntry) -> bool:
        """Append one entry. Returns False if it was rejected, evicted or not written."""
        problems = entry.validate()
        if problems:
            logger.warning("Refusing to store invalid entry: %s", "; ".join(problems))
            return False
        category = entry.category
        record = encode_text(entry)
        with self._locks[category]:
            try:
                active = self._active_path(category)
                with open(active, "a", encoding="utf-8", errors="replace") as f:
                    f.write(record)
                return self._rotate_if_needed(category)
            except OSError as exc:
                self._report(category, "local append", exc)
                return False

    def _rotate_if_needed(self, category: Category) -> bool:
        active = self._active_path(category)
        active_size = os.path.getsize(active)
        segments = self._segments(category)
        total = active_size + sum(os.path.getsize(p) for p in segments)

        if active_size <= self._rollover_bytes and total <= self._max_bytes:
            return True

        newest = self._rotate(category)
        segments.append(newest)
        while total > self._max_bytes and segments:
            oldest = segments.pop(0)
            total -= os.path.getsize(oldest)
            os.remove(oldest)
            if oldest == newest:
                logger.warning(
                    "Entry larger than max buffer size for %s was evicted", category.value
                )
                return False
        return True

    def _rotate(self, category: Category) -> str:
        """Rename-and-create rotation. Returns the path of the rotated file."""
        now = self._time_func()
        stamp = now.strftime("%Y%m%d_%H%M%S_") + f"{now.microsecond:06d}"
        base = os.path.join(self._log_dir, f"{self._active_name(category)}.{stamp}")
        segments = self._segments(category)
        rotated, n = base, 0
        if segments and base <= segments[-1]:
            # Same or earlier stamp than the newest segment; name it after that one.
            base = segments[-1]
            rotated, n = f"{base}_001", 1
        while os.path.exists(rotated):
            n += 1
            rotated = f"{base}_{n:03d}"
        os.replace(self._active_path(category), rotated)
        return rotated

    # ── reads ────────────────────────────────────────────────────────

    def _load_records(self, category: Category) -> list[str]:
        records = []
        for path in self._files(category):
            with open(path, "r", encoding="utf-8", errors="replace") as f:
                records.extend(split_records(f.read()))
        return records

    def _decode_all(self, records) -> list[LogEntry]:
        entries, skipped = [], 0
        for record in records:
            entry = decode_text(record)
            if entry.validate_check():
                entries.append(entry)
            else:
                skipped += 1
        if skipped:
            logger.debug("Skipped %d undecodable local records", skipped)
        return entries

    def read(self, category: Category, max_entries: int, cutoff: int | None = None,
             newest_first: bool = False) -> list[LogEntry]:
        """Up to *max_entries* most recent entries, optionally none after *cutoff*."""
        with self._locks[category]:
            try:
                records = self._load_records(category)
            except OSError as exc:
                self._report(category, "local read", exc)
                return []
        entries = self._decode_all(records)
        if cutoff is not None:
            entries = [e for e in entries if e.timestamp <= cutoff]
        entries = entries[-max_entries:] if max_entries > 0 else []
        if newest_first:
            entries.reverse()
        return entries

    def read_raw(self, category: Category) -> list[str]:
        """Retained text records, oldest first."""
        with self._locks[category]:
            try:
                return self._load_records(category)
            except OSError as exc:
                self._report(category, "local read", exc)
                return []

    def size(self, category: Category) -> int:
        with self._locks[category]:
            return sum(os.path.getsize(p) for p in self._files(category))

    def reset(self, category: Category, retain_latest: int) -> list[LogEntry]:
        """Truncate the buffer to the *retain_latest* newest entries and return them."""
        with self._locks[category]:
            try:
                entries = self._decode_all(self._load_records(category))
                kept = entries[-retain_latest:] if retain_latest > 0 else []
                self._write_active(category, "".join(encode_text(e) for e in kept))
                for path in self._segments(category):
                    os.remove(path)
            except OSError as exc:
                self._report(category, "local reset", exc)
                return []
        logger.info("Reset %s buffer, kept %d entries", category.value, len(kept))
        return kept

    def _write_active(self, category: Category, content: str) -> None:
        fd, tmp = tempfile.mkstemp(dir=self._log_dir)
        try:
            with os.fdopen(fd, "w", encoding="utf-8", errors="replace") as f:
                f.write(content)
            os.replace(tmp, self._active_path(category))
        except Exception:
            os.unlink(tmp)
            raise
