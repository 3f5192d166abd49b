"""Tests for the log facade and its wiring."""

import pytest

from src.archive import ArchiveUploader
from src.facade import LogFacade, build_facade, call_site_trace, exception_trace
from src.models import Category
from src.object_store import FileObjectStore, S3ObjectStore
from src.query_engine import AthenaQueryEngine, LocalQueryEngine
from tests.helpers import BASE_TS, MINUTE, make_entry


class FailingUploader:
    def __init__(self):
        self.entries = []

    async def upload(self, entry):
        self.entries.append(entry)
        return False


class ExplodingStore:
    def append(self, entry):
        raise RuntimeError("unexpected")


def _raise_and_catch():
    try:
        raise ValueError("bad input")
    except ValueError as exc:
        return exc


class TestLogging:
    @pytest.mark.asyncio
    async def test_each_category_method(self, facade):
        assert await facade.error("e")
        assert await facade.warn("w")
        assert await facade.event("ev")
        assert await facade.auth("au")
        assert await facade.db("d")
        assert await facade.alert("al")
        for category in Category:
            assert len(await facade.read_local(category)) == 1

    @pytest.mark.asyncio
    async def test_error_carries_call_site_trace(self, facade):
        await facade.error("something broke", {"user": 7})
        (entry,) = await facade.read_local(Category.ERROR)
        assert entry.messages == ("something broke", '{"user": 7}')
        assert entry.stack_trace
        assert "test_error_carries_call_site_trace" in entry.stack_trace[0]
        assert all("facade.py" not in frame for frame in entry.stack_trace)

    @pytest.mark.asyncio
    async def test_trace_trimmed_to_depth(self, make_config):
        facade = build_facade(make_config(trace_depth=2))
        await facade.alert("paging")
        (entry,) = await facade.read_local(Category.ALERT)
        assert len(entry.stack_trace) <= 2

    @pytest.mark.asyncio
    async def test_exception_trace(self, facade):
        exc = _raise_and_catch()
        await facade.error("handler failed", exc=exc)
        (entry,) = await facade.read_local(Category.ERROR)
        assert entry.messages == ("handler failed", "ValueError: bad input")
        assert entry.stack_trace[0].startswith("_raise_and_catch (test_facade.py:")

    @pytest.mark.asyncio
    async def test_untraced_categories_have_no_trace(self, facade):
        await facade.warn("careful")
        (entry,) = await facade.read_local(Category.WARN)
        assert entry.stack_trace is None

    @pytest.mark.asyncio
    async def test_disabled_category_is_a_no_op(self, make_config):
        cfg = make_config(category_enabled={**{c.value: True for c in Category}, "EVENT": False})
        facade = build_facade(cfg)
        assert await facade.event("ignored") is True
        assert await facade.read_local(Category.EVENT) == []

    @pytest.mark.asyncio
    async def test_archive_failure_returns_false_but_local_written(self, make_config):
        cfg = make_config()
        base = build_facade(cfg)
        uploader = FailingUploader()
        facade = LogFacade(cfg, base.local_store, uploader)
        assert await facade.db("slow") is False
        assert len(uploader.entries) == 1
        assert len(await facade.read_local(Category.DB)) == 1

    @pytest.mark.asyncio
    async def test_never_raises(self, make_config):
        facade = LogFacade(make_config(), ExplodingStore())
        assert await facade.event("boom") is False
        assert facade.failures.count == 1

    @pytest.mark.asyncio
    async def test_unknown_category_returns_false(self, facade):
        assert await facade.log("VERBOSE", "x") is False

    @pytest.mark.asyncio
    async def test_empty_message_rejected(self, facade):
        assert await facade.event() is False

    @pytest.mark.asyncio
    async def test_uploads_to_archive(self, facade):
        assert await facade.auth("login", "user=1")
        (local,) = await facade.read_local(Category.AUTH)
        keys = await facade.uploader._store.list_by_prefix_and_time_range(
            "category=AUTH/", local.timestamp - 1, local.timestamp + 1
        )
        assert len(keys) == 1
        fetched = await facade.fetch_by_key(keys[0])
        assert fetched.messages == ("login", "user=1")


class TestReads:
    @pytest.mark.asyncio
    async def test_local_search_fallback(self, make_config):
        facade = build_facade(make_config(archive_enabled=False))
        await facade.error("database timeout on primary")
        await facade.error("request timeout")
        await facade.error("cache warmed")
        result = await facade.search(Category.ERROR, "database timeout")
        assert [e.messages[0] for e in result] == ["database timeout on primary", "request timeout"]

    @pytest.mark.asyncio
    async def test_archive_search(self, facade):
        await facade.warn("disk full on db1")
        await facade.warn("cpu hot")
        result = await facade.search(Category.WARN, "disk full")
        assert [e.messages[0] for e in result] == ["disk full on db1"]
        assert result[0].archive_key

    @pytest.mark.asyncio
    async def test_fetch_by_key_without_archive(self, make_config):
        facade = build_facade(make_config(archive_enabled=False))
        entry = await facade.fetch_by_key("category=ERROR/x")
        assert not entry.validate_check()
        assert entry.decode_error == "archive is disabled"

    @pytest.mark.asyncio
    async def test_fetch_range_local(self, make_config):
        facade = build_facade(make_config(archive_enabled=False))
        for i in range(4):
            await facade.dispatch(make_entry(Category.WARN, [f"w{i}"], timestamp=BASE_TS + i * MINUTE))
        result = await facade.fetch_range(Category.WARN, BASE_TS + MINUTE, BASE_TS + 2 * MINUTE)
        assert [e.messages[0] for e in result] == ["w2", "w1"]

    @pytest.mark.asyncio
    async def test_reset_local(self, facade):
        for i in range(5):
            await facade.event(f"e{i}")
        kept = await facade.reset_local("event", 2)
        assert [e.messages[0] for e in kept] == ["e3", "e4"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("archive_enabled", [True, False])
    async def test_unknown_category_reads_return_empty(self, make_config, archive_enabled):
        facade = build_facade(make_config(archive_enabled=archive_enabled))
        assert await facade.search("NOPE", "x") == []
        assert await facade.fetch_range("NOPE") == []
        assert await facade.read_local("NOPE") == []
        assert await facade.reset_local("NOPE", 1) == []

    @pytest.mark.asyncio
    async def test_local_store_disabled(self, make_config):
        facade = build_facade(make_config(local_store_enabled=False, archive_enabled=False))
        assert await facade.event("nowhere") is True
        assert await facade.read_local(Category.EVENT) == []
        assert await facade.reset_local(Category.EVENT, 1) == []


class TestWiring:
    def test_file_and_local_backends(self, facade):
        assert isinstance(facade.uploader, ArchiveUploader)
        assert isinstance(facade.uploader._store, FileObjectStore)
        assert isinstance(facade.search_engine._engine, LocalQueryEngine)

    def test_s3_and_athena_backends(self, make_config, monkeypatch):
        monkeypatch.setattr("src.object_store.boto3.client", lambda name: object())
        monkeypatch.setattr("src.query_engine.boto3.client", lambda name: object())
        facade = build_facade(make_config(archive_backend="s3", archive_bucket="b",
                                          query_backend="athena"))
        assert isinstance(facade.uploader._store, S3ObjectStore)
        assert isinstance(facade.search_engine._engine, AthenaQueryEngine)

    def test_s3_requires_bucket(self, make_config):
        with pytest.raises(ValueError, match="ARCHIVE_BUCKET"):
            build_facade(make_config(archive_backend="s3"))

    def test_unknown_backend(self, make_config):
        with pytest.raises(ValueError):
            build_facade(make_config(query_backend="bigquery"))

    def test_archive_disabled(self, make_config):
        facade = build_facade(make_config(archive_enabled=False))
        assert facade.uploader is None
        assert facade.search_engine is None


def test_trace_helpers():
    frames = call_site_trace(3)
    assert 0 < len(frames) <= 3
    assert frames[0].startswith("test_trace_helpers (test_facade.py:")
    assert exception_trace(_raise_and_catch(), 5)[0].startswith("_raise_and_catch")
