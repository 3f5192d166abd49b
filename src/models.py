"""LogEntry model: categories, validation and equivalence predicates."""

import json
import time
from dataclasses import dataclass, field, replace
from enum import Enum


class Category(Enum):
    ERROR = "ERROR"
    WARN = "WARN"
    EVENT = "EVENT"
    AUTH = "AUTH"
    DB = "DB"
    ALERT = "ALERT"

    @classmethod
    def parse(cls, value) -> "Category":
        """Resolve a category from its canonical string (case-insensitive)."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            raise ValueError(f"category must be a string, got {type(value).__name__}")
        try:
            return cls(value.strip().upper())
        except ValueError:
            raise ValueError(f"unknown category: {value!r}") from None


# Categories that carry a call-site trace.
TRACED_CATEGORIES = frozenset({Category.ERROR, Category.ALERT})


class Source(Enum):
    CREATED = "created"
    STORED = "stored"


class DecodeError(ValueError):
    """Raised inside a codec when a payload cannot be parsed."""


def now_ms() -> int:
    return int(time.time() * 1000)


def coerce_message(value) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, default=str, sort_keys=True)
    return str(value)


def normalize_search_text(messages) -> str:
    return " ".join(" ".join(str(m) for m in messages).lower().split())


@dataclass(frozen=True)
class DuplicateRef:
    archive_key: str | None
    timestamp: int

    def to_string(self) -> str:
        return self.archive_key or f"@{self.timestamp}"


@dataclass(eq=False)
class LogEntry:
    category: Category | None
    timestamp: int
    messages: tuple
    stack_trace: tuple | None = None
    archive_key: str | None = None
    source: Source = Source.CREATED
    duplicates: list = field(default_factory=list)
    decode_error: str | None = None

    @classmethod
    def create(cls, category, messages, stack_trace=None, timestamp=None,
               source: Source = Source.CREATED) -> "LogEntry":
        """Build an entry, stamping the current time when *timestamp* is omitted."""
        if isinstance(messages, str):
            messages = [messages]
        return cls(
            category=Category.parse(category),
            timestamp=now_ms() if timestamp is None else timestamp,
            messages=tuple(coerce_message(m) for m in messages),
            stack_trace=tuple(stack_trace) if stack_trace else None,
            source=source,
        )

    @classmethod
    def invalid(cls, reason: str, archive_key: str | None = None) -> "LogEntry":
        """Sentinel returned by decoders and fetches that could not produce an entry."""
        return cls(
            category=None,
            timestamp=-1,
            messages=(),
            archive_key=archive_key,
            source=Source.STORED,
            decode_error=reason,
        )

    @property
    def search_text(self) -> str:
        return normalize_search_text(self.messages)

    def assign_archive_key(self, key: str) -> bool:
        """Record the archive key. Returns False when a key is already set."""
        if self.archive_key is not None:
            return False
        self.archive_key = key
        return True

    def validate(self, clock_skew_ms: int = 300_000) -> list[str]:
        """Return the violated invariants; empty when the entry is valid."""
        problems = []
        if self.decode_error:
            problems.append(self.decode_error)
        if not isinstance(self.category, Category):
            problems.append("category is not a known category")
        if isinstance(self.timestamp, bool) or not isinstance(self.timestamp, int):
            problems.append("timestamp is not an integer")
        elif self.timestamp < 0:
            problems.append("timestamp is negative")
        if not self.messages:
            problems.append("messages is empty")
        elif not all(isinstance(m, str) for m in self.messages):
            problems.append("messages contains a non-string value")

        if self.source is Source.CREATED:
            if self.stack_trace and self.category not in TRACED_CATEGORIES:
                problems.append("stack trace on a category that does not carry traces")
            if isinstance(self.timestamp, int) and self.timestamp > now_ms() + clock_skew_ms:
                problems.append("timestamp is in the future")
        return problems

    def validate_check(self, clock_skew_ms: int = 300_000) -> bool:
        return not self.validate(clock_skew_ms)

    def equals(self, other) -> bool:
        if not isinstance(other, LogEntry):
            return False
        return (
            self.category == other.category
            and self.timestamp == other.timestamp
            and tuple(self.messages) == tuple(other.messages)
            and tuple(self.stack_trace or ()) == tuple(other.stack_trace or ())
        )

    def similar(self, other, window_ms: int = 60_000) -> bool:
        """Category matches and timestamps are within *window_ms* of each other."""
        if not isinstance(other, LogEntry):
            return False
        if self.category is None or self.category != other.category:
            return False
        return abs(self.timestamp - other.timestamp) <= window_ms

    def with_duplicates(self, refs) -> "LogEntry":
        """Copy of this entry carrying *refs*; the original is left untouched."""
        return replace(self, duplicates=list(refs))

    def to_ref(self) -> DuplicateRef:
        return DuplicateRef(archive_key=self.archive_key, timestamp=self.timestamp)

    def __repr__(self) -> str:
        cat = self.category.value if self.category else None
        return f"LogEntry({cat}, {self.timestamp}, {list(self.messages)!r})"
