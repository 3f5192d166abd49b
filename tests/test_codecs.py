"""Tests for the text, structured, archive-key and row codecs."""

import json

import pytest

from src.codecs import (
    KEY_RE,
    category_prefix,
    decode_archive_key,
    decode_row,
    decode_structured,
    decode_text,
    encode_archive_key,
    encode_structured,
    encode_text,
    format_iso,
    from_json,
    key_timestamp,
    partition_values,
    split_records,
    to_json,
)
from src.models import Category, LogEntry, Source
from src.query_builder import COLUMN_SPEC
from tests.helpers import BASE_TS, make_entry


class TestTextCodec:
    def test_layout(self):
        entry = make_entry(Category.ERROR, ["first", "second"], stack_trace=["handler (app.py:42)"])
        assert encode_text(entry) == (
            "[2025-01-15T10:30:00.123Z] ERROR @1736937000123\n"
            "  > first\n"
            "  > second\n"
            "  #0 handler (app.py:42)\n"
        )

    @pytest.mark.parametrize("messages", [
        ["plain"],
        ["multi\nline", "carriage\rreturn"],
        ["back\\slash", "\\n literal"],
        ["  > looks like a prefix", "[bracketed] ERROR @1"],
        ["unicode\u2028separator", "emoji \U0001F600"],
    ])
    def test_round_trip(self, messages):
        entry = make_entry(Category.ALERT, messages, stack_trace=["a (x.py:1)", "b\n(y.py:2)"])
        decoded = decode_text(encode_text(entry))
        assert decoded.validate_check()
        assert decoded.equals(entry)
        assert decoded.source is Source.STORED

    def test_no_trace_decodes_to_none(self):
        decoded = decode_text(encode_text(make_entry(Category.EVENT)))
        assert decoded.stack_trace is None

    def test_missing_header_is_sentinel(self):
        decoded = decode_text("  > orphan message\n")
        assert not decoded.validate_check()
        assert decoded.decode_error.startswith("decode failed")

    def test_unknown_category_is_sentinel(self):
        decoded = decode_text("[x] INFO @1\n  > m\n")
        assert not decoded.validate_check()

    def test_bad_escape_is_sentinel(self):
        decoded = decode_text("[x] ERROR @1\n  > bad \\q escape\n")
        assert "bad escape" in decoded.decode_error

    def test_garbage_line_is_sentinel(self):
        decoded = decode_text("[x] ERROR @1\n  > m\nnot a record line\n")
        assert not decoded.validate_check()

    def test_no_messages_fails_validation(self):
        decoded = decode_text("[x] ERROR @1\n")
        assert "messages is empty" in decoded.validate()

    def test_split_records(self):
        a = encode_text(make_entry(messages=["one"]))
        b = encode_text(make_entry(messages=["[two]", "x [y"], timestamp=BASE_TS + 1))
        records = split_records(a + b)
        assert records == [a, b]
        assert [decode_text(r).messages for r in records] == [("one",), ("[two]", "x [y")]


class TestStructuredCodec:
    def test_encode_fields(self):
        entry = make_entry(Category.ERROR, ["Boom"], stack_trace=["f (a.py:1)"], archive_key="k")
        record = encode_structured(entry)
        assert record == {
            "timestamp": BASE_TS,
            "category": "ERROR",
            "messages": ["Boom"],
            "searchText": "boom",
            "stackTrace": ["f (a.py:1)"],
            "archiveKey": "k",
        }

    def test_round_trip(self):
        entry = make_entry(Category.DB, ["slow query", "12s"])
        decoded = decode_structured(encode_structured(entry))
        assert decoded.equals(entry)
        assert decoded.stack_trace is None
        assert decoded.archive_key is None

    def test_search_text_and_duplicates_ignored(self):
        record = {
            "timestamp": BASE_TS, "category": "WARN", "messages": ["Disk Full"],
            "searchText": "something else", "duplicates": ["a", "b"],
        }
        decoded = decode_structured(record)
        assert decoded.search_text == "disk full"
        assert decoded.duplicates == []

    def test_duplicates_only_when_requested(self):
        entry = make_entry().with_duplicates([make_entry(timestamp=BASE_TS + 1).to_ref()])
        assert "duplicates" not in encode_structured(entry)
        assert encode_structured(entry, include_duplicates=True)["duplicates"] == [f"@{BASE_TS + 1}"]

    @pytest.mark.parametrize("record", [
        {"category": "WARN", "messages": ["x"]},
        {"timestamp": "soon", "category": "WARN", "messages": ["x"]},
        {"timestamp": BASE_TS, "category": "INFO", "messages": ["x"]},
        {"timestamp": BASE_TS, "category": "WARN", "messages": []},
        {"timestamp": BASE_TS, "category": "WARN", "messages": [1]},
        ["not", "an", "object"],
    ])
    def test_schema_violations_are_sentinels(self, record):
        decoded = decode_structured(record)
        assert not decoded.validate_check()
        assert decoded.decode_error.startswith("decode failed")

    def test_json_helpers(self):
        entry = make_entry(archive_key="category=ERROR/k")
        decoded = from_json(to_json(entry).encode("utf-8"))
        assert decoded.equals(entry)
        assert decoded.archive_key == "category=ERROR/k"

    def test_from_json_bad_payloads(self):
        assert not from_json("{not json").validate_check()
        assert not from_json(b"\xff\xfe").validate_check()


class TestArchiveKey:
    def test_layout(self):
        key = encode_archive_key(make_entry(Category.AUTH), suffix="deadbeef")
        assert key == "category=AUTH/year=2025/month=01/day=15/hour=10/1736937000123-deadbeef"

    def test_random_suffix(self):
        key = encode_archive_key(make_entry())
        assert len(KEY_RE.search(key).group("suffix")) == 8

    def test_root_prefix(self):
        key = encode_archive_key(make_entry(), root="logs/")
        assert key.startswith("logs/category=ERROR/")
        assert decode_archive_key(key).validate_check()

    def test_weak_round_trip(self):
        entry = make_entry(Category.DB)
        key = encode_archive_key(entry)
        decoded = decode_archive_key(key)
        assert decoded.category is Category.DB
        assert decoded.similar(entry)
        assert decoded.timestamp == entry.timestamp
        assert decoded.archive_key == key

    def test_mismatched_partition_is_sentinel(self):
        key = "category=ERROR/year=2024/month=01/day=15/hour=10/1736937000123-deadbeef"
        assert not decode_archive_key(key).validate_check()

    def test_foreign_key_is_sentinel(self):
        assert not decode_archive_key("some/other/object.json").validate_check()
        assert key_timestamp("some/other/object.json") is None

    def test_key_timestamp(self):
        assert key_timestamp(encode_archive_key(make_entry())) == BASE_TS

    def test_category_prefix(self):
        assert category_prefix(Category.WARN) == "category=WARN/"


class TestHelpers:
    def test_partition_values_utc(self):
        assert partition_values(BASE_TS) == ("2025", "01", "15", "10")

    def test_format_iso(self):
        assert format_iso(BASE_TS) == "2025-01-15T10:30:00.123Z"


class TestDecodeRow:
    def _row(self, **overrides):
        row = {
            "timestamp": str(BASE_TS),
            "category": "ERROR",
            "messages": json.dumps(["db timeout"]),
            "stacktrace": json.dumps(["f (a.py:1)"]),
            "archivekey": "category=ERROR/k",
            "score": "113",
        }
        row.update(overrides)
        return row

    def test_decodes_full_row(self):
        entry = decode_row(self._row(), COLUMN_SPEC)
        assert entry.validate_check()
        assert entry.messages == ("db timeout",)
        assert entry.stack_trace == ("f (a.py:1)",)
        assert entry.archive_key == "category=ERROR/k"

    def test_null_stacktrace(self):
        entry = decode_row(self._row(stacktrace=None), COLUMN_SPEC)
        assert entry.stack_trace is None

    def test_bad_timestamp(self):
        entry = decode_row(self._row(timestamp="yesterday"), COLUMN_SPEC)
        assert not entry.validate_check()

    def test_bad_messages_json(self):
        entry = decode_row(self._row(messages="[not json"), COLUMN_SPEC)
        assert not entry.validate_check()

    def test_missing_messages(self):
        entry = decode_row(self._row(messages=None), COLUMN_SPEC)
        assert isinstance(entry, LogEntry)
        assert not entry.validate_check()
