"""Text, structured and archive-key codecs for LogEntry.

Decoders never raise: parsing problems are raised as DecodeError internally
and turned into an invalid sentinel (``validate_check() is False``) at the
public boundary, with the reason kept on ``entry.decode_error``.
"""

import json
import re
import uuid
from datetime import datetime, timezone

import jsonschema

from src.models import Category, DecodeError, LogEntry, Source

MESSAGE_PREFIX = "  > "
TRACE_LINE_RE = re.compile(r"^  #(\d+) (.*)$")
HEADER_RE = re.compile(r"^\[(?P<iso>[^\]]*)\] (?P<category>[A-Z]+) @(?P<timestamp>-?\d+)$")
ESCAPE_RE = re.compile(r"\\(.)")
# Split after each "\n" only; other Unicode line breaks stay inside a record.
LINE_SPLIT_RE = re.compile(r"(?<=\n)")
_UNESCAPES = {"\\": "\\", "n": "\n", "r": "\r"}

KEY_RE = re.compile(
    r"(?:^|/)category=(?P<category>[A-Z]+)"
    r"/year=(?P<year>\d{4})/month=(?P<month>\d{2})/day=(?P<day>\d{2})/hour=(?P<hour>\d{2})"
    r"/(?P<timestamp>\d+)-(?P<suffix>[0-9a-f]+)$"
)

STRUCTURED_SCHEMA = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "required": ["timestamp", "category", "messages"],
    "properties": {
        "timestamp": {"type": "integer", "minimum": 0},
        "category": {"enum": [c.value for c in Category]},
        "messages": {"type": "array", "items": {"type": "string"}, "minItems": 1},
        "searchText": {"type": "string"},
        "stackTrace": {"type": ["array", "null"], "items": {"type": "string"}},
        "archiveKey": {"type": ["string", "null"]},
        "duplicates": {"type": "array", "items": {"type": "string"}},
    },
}

_structured_validator = jsonschema.Draft202012Validator(STRUCTURED_SCHEMA)


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace("\r", "\\r")


def _unescape(value: str) -> str:
    def _sub(match):
        char = match.group(1)
        if char not in _UNESCAPES:
            raise DecodeError(f"bad escape sequence \\{char}")
        return _UNESCAPES[char]

    return ESCAPE_RE.sub(_sub, value)


def partition_values(timestamp_ms: int) -> tuple[str, str, str, str]:
    """UTC (year, month, day, hour) strings for an epoch-ms timestamp."""
    dt = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
    return dt.strftime("%Y"), dt.strftime("%m"), dt.strftime("%d"), dt.strftime("%H")


def format_iso(timestamp_ms: int) -> str:
    try:
        dt = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return "?"
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{timestamp_ms % 1000:03d}Z"


# ── text ─────────────────────────────────────────────────────────────

def encode_text(entry: LogEntry) -> str:
    category = entry.category.value if entry.category else "?"
    lines = [f"[{format_iso(entry.timestamp)}] {category} @{entry.timestamp}"]
    for message in entry.messages:
        lines.append(MESSAGE_PREFIX + _escape(message))
    for depth, frame in enumerate(entry.stack_trace or ()):
        lines.append(f"  #{depth} {_escape(frame)}")
    return "\n".join(lines) + "\n"


def _parse_text(text: str) -> LogEntry:
    lines = text.rstrip("\n").split("\n")
    header = HEADER_RE.match(lines[0]) if lines else None
    if header is None:
        raise DecodeError("missing or malformed header line")
    try:
        category = Category.parse(header.group("category"))
    except ValueError as exc:
        raise DecodeError(str(exc)) from None

    messages, trace = [], []
    for line in lines[1:]:
        if line.startswith(MESSAGE_PREFIX):
            if trace:
                raise DecodeError("message line after trace lines")
            messages.append(_unescape(line[len(MESSAGE_PREFIX):]))
            continue
        frame = TRACE_LINE_RE.match(line)
        if frame is None:
            raise DecodeError(f"unrecognized line: {line[:40]!r}")
        if int(frame.group(1)) != len(trace):
            raise DecodeError("trace depth markers out of order")
        trace.append(_unescape(frame.group(2)))

    return LogEntry(
        category=category,
        timestamp=int(header.group("timestamp")),
        messages=tuple(messages),
        stack_trace=tuple(trace) or None,
        source=Source.STORED,
    )


def decode_text(text: str) -> LogEntry:
    try:
        return _parse_text(text)
    except DecodeError as exc:
        return LogEntry.invalid(f"decode failed: {exc}")


def split_records(text: str) -> list[str]:
    """Split a buffer of concatenated text records into individual records."""
    records, current = [], []
    for line in LINE_SPLIT_RE.split(text):
        if not line:
            continue
        if line.startswith("[") and current:
            records.append("".join(current))
            current = []
        current.append(line)
    if current:
        records.append("".join(current))
    return records


# ── structured ───────────────────────────────────────────────────────

def encode_structured(entry: LogEntry, include_duplicates: bool = False) -> dict:
    record = {
        "timestamp": entry.timestamp,
        "category": entry.category.value if entry.category else None,
        "messages": list(entry.messages),
        "searchText": entry.search_text,
    }
    if entry.stack_trace:
        record["stackTrace"] = list(entry.stack_trace)
    if entry.archive_key:
        record["archiveKey"] = entry.archive_key
    if include_duplicates and entry.duplicates:
        record["duplicates"] = [ref.to_string() for ref in entry.duplicates]
    return record


def _parse_structured(record) -> LogEntry:
    if not isinstance(record, dict):
        raise DecodeError(f"expected an object, got {type(record).__name__}")
    errors = sorted(_structured_validator.iter_errors(record), key=lambda e: list(e.path))
    if errors:
        raise DecodeError("; ".join(e.message for e in errors))
    # searchText is derived and duplicates are a view-only overlay: both ignored.
    return LogEntry(
        category=Category(record["category"]),
        timestamp=int(record["timestamp"]),
        messages=tuple(record["messages"]),
        stack_trace=tuple(record.get("stackTrace") or ()) or None,
        archive_key=record.get("archiveKey"),
        source=Source.STORED,
    )


def decode_structured(record) -> LogEntry:
    try:
        return _parse_structured(record)
    except DecodeError as exc:
        return LogEntry.invalid(f"decode failed: {exc}")


def to_json(entry: LogEntry) -> str:
    return json.dumps(encode_structured(entry), separators=(",", ":"))


def from_json(payload) -> LogEntry:
    if isinstance(payload, bytes):
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError:
            return LogEntry.invalid("decode failed: payload is not UTF-8")
    try:
        record = json.loads(payload)
    except json.JSONDecodeError as exc:
        return LogEntry.invalid(f"decode failed: {exc}")
    return decode_structured(record)


# ── archive key ──────────────────────────────────────────────────────

def category_prefix(category: Category, root: str = "") -> str:
    return f"{root}category={category.value}/"


def encode_archive_key(entry: LogEntry, root: str = "", suffix: str | None = None) -> str:
    year, month, day, hour = partition_values(entry.timestamp)
    suffix = suffix or uuid.uuid4().hex[:8]
    return (
        f"{category_prefix(entry.category, root)}year={year}/month={month}/day={day}/hour={hour}/"
        f"{entry.timestamp}-{suffix}"
    )


def _parse_archive_key(key: str) -> LogEntry:
    match = KEY_RE.search(key or "")
    if match is None:
        raise DecodeError("key does not follow the partition layout")
    try:
        category = Category.parse(match.group("category"))
    except ValueError as exc:
        raise DecodeError(str(exc)) from None
    timestamp = int(match.group("timestamp"))
    expected = (match.group("year"), match.group("month"), match.group("day"), match.group("hour"))
    try:
        actual = partition_values(timestamp)
    except (OverflowError, OSError, ValueError):
        raise DecodeError("timestamp out of range") from None
    if actual != expected:
        raise DecodeError("partition fields do not match the timestamp")
    return LogEntry(
        category=category,
        timestamp=timestamp,
        messages=("<archived>",),
        archive_key=key,
        source=Source.STORED,
    )


def decode_archive_key(key: str) -> LogEntry:
    try:
        return _parse_archive_key(key)
    except DecodeError as exc:
        return LogEntry.invalid(f"decode failed: {exc}", archive_key=key)


def key_timestamp(key: str) -> int | None:
    """Timestamp embedded in an archive key, or None when the key is foreign."""
    match = KEY_RE.search(key or "")
    return int(match.group("timestamp")) if match else None


# ── query-engine rows ────────────────────────────────────────────────

_ROW_FIELDS = {
    "timestamp": "timestamp",
    "category": "category",
    "messages": "messages",
    "stacktrace": "stackTrace",
    "archivekey": "archiveKey",
}


def _convert(value, kind: str):
    if value is None or value == "":
        return None
    if kind in ("bigint", "integer"):
        return int(value)
    if kind == "json":
        return json.loads(value)
    return value


def decode_row(row: dict, column_spec) -> LogEntry:
    """Decode a query-engine row (string cells keyed by column name)."""
    record = {}
    try:
        for name, kind in column_spec:
            target = _ROW_FIELDS.get(name)
            if target is None:
                continue
            value = _convert(row.get(name), kind)
            if value is not None:
                record[target] = value
    except (ValueError, TypeError) as exc:
        return LogEntry.invalid(f"decode failed: {exc}")
    return decode_structured(record)
