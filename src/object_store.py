"""Object-store contract and backends for the durable archive.

Keys are logical archive keys (``category=.../year=.../...``); any bucket or
directory root is owned by the backend. ``get`` returns None for a missing
key and raises for I/O failures.
"""

import asyncio
import logging
import os
import tempfile
from datetime import datetime, timedelta, timezone
from typing import Protocol, runtime_checkable

import aiofiles
import boto3
from botocore.exceptions import ClientError

from src.codecs import key_timestamp

logger = logging.getLogger(__name__)

# Wider spans are listed from the bare prefix instead of day by day.
MAX_DAY_PREFIXES = 366


@runtime_checkable
class ObjectStore(Protocol):
    async def put(self, key: str, payload: str) -> None: ...

    async def get(self, key: str) -> str | None: ...

    async def list_by_prefix_and_time_range(self, prefix: str, start: int, end: int) -> list[str]: ...


def day_prefixes(prefix: str, start: int, end: int) -> list[str] | None:
    """Per-day partition prefixes covering [start, end], or None if the span is too wide."""
    if end < start:
        return []
    first = datetime.fromtimestamp(start / 1000, tz=timezone.utc).date()
    last = datetime.fromtimestamp(end / 1000, tz=timezone.utc).date()
    if (last - first).days >= MAX_DAY_PREFIXES:
        return None
    prefixes = []
    day = first
    while day <= last:
        prefixes.append(f"{prefix}year={day:%Y}/month={day:%m}/day={day:%d}/")
        day += timedelta(days=1)
    return prefixes


def _in_range(key: str, start: int, end: int) -> bool:
    ts = key_timestamp(key)
    return ts is not None and start <= ts <= end


class FileObjectStore:
    """One file per key under a root directory; writes are atomic replaces."""

    def __init__(self, root: str):
        self._root = os.path.abspath(root)
        os.makedirs(self._root, exist_ok=True)

    @property
    def root(self) -> str:
        return self._root

    def _path(self, key: str) -> str:
        parts = [p for p in key.split("/") if p]
        if not parts or any(p in (".", "..") for p in parts):
            raise ValueError(f"invalid object key: {key!r}")
        return os.path.join(self._root, *parts)

    async def put(self, key: str, payload: str) -> None:
        path = self._path(key)
        directory = os.path.dirname(path)
        os.makedirs(directory, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=directory, prefix=".tmp-")
        os.close(fd)
        try:
            async with aiofiles.open(tmp, "w", encoding="utf-8") as f:
                await f.write(payload)
            os.replace(tmp, path)
        except Exception:
            os.unlink(tmp)
            raise

    async def get(self, key: str) -> str | None:
        path = self._path(key)
        if not os.path.isfile(path):
            return None
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            return await f.read()

    async def list_by_prefix_and_time_range(self, prefix: str, start: int, end: int) -> list[str]:
        return await asyncio.to_thread(self._list, prefix, start, end)

    def _list(self, prefix: str, start: int, end: int) -> list[str]:
        prefixes = day_prefixes(prefix, start, end)
        if prefixes is None:
            prefixes = [prefix]
        keys = []
        for p in prefixes:
            base = os.path.join(self._root, *[s for s in p.split("/") if s])
            if not os.path.isdir(base):
                continue
            for dirpath, _dirnames, filenames in os.walk(base):
                rel = os.path.relpath(dirpath, self._root).replace(os.sep, "/")
                for name in filenames:
                    if name.startswith(".tmp-"):
                        continue
                    key = f"{rel}/{name}"
                    if _in_range(key, start, end):
                        keys.append(key)
        return sorted(keys)


class S3ObjectStore:
    """Archive objects in an S3 bucket under a key root (e.g. ``logs/``)."""

    def __init__(self, bucket: str, root: str = "", client=None):
        self._bucket = bucket
        self._root = root
        self._client = client or boto3.client("s3")

    async def put(self, key: str, payload: str) -> None:
        await asyncio.to_thread(
            self._client.put_object,
            Bucket=self._bucket,
            Key=self._root + key,
            Body=payload.encode("utf-8"),
            ContentType="application/json",
        )

    async def get(self, key: str) -> str | None:
        return await asyncio.to_thread(self._get, key)

    def _get(self, key: str) -> str | None:
        try:
            obj = self._client.get_object(Bucket=self._bucket, Key=self._root + key)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in ("NoSuchKey", "404"):
                return None
            raise
        return obj["Body"].read().decode("utf-8")

    async def list_by_prefix_and_time_range(self, prefix: str, start: int, end: int) -> list[str]:
        return await asyncio.to_thread(self._list, prefix, start, end)

    def _list(self, prefix: str, start: int, end: int) -> list[str]:
        prefixes = day_prefixes(prefix, start, end)
        if prefixes is None:
            prefixes = [prefix]
        paginator = self._client.get_paginator("list_objects_v2")
        keys = []
        for p in prefixes:
            for page in paginator.paginate(Bucket=self._bucket, Prefix=self._root + p):
                for obj in page.get("Contents", []):
                    key = obj["Key"][len(self._root):]
                    if _in_range(key, start, end):
                        keys.append(key)
        logger.debug("Listed %d keys under %s across %d prefixes", len(keys), prefix, len(prefixes))
        return sorted(keys)
