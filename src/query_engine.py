"""Query-engine contract and backends.

Both backends return rows as dicts of string cells keyed by column name, in
the shape of ``COLUMN_SPEC``; ``src.codecs.decode_row`` turns them back into
entries.
"""

import asyncio
import json
import logging
import time
from typing import Protocol, runtime_checkable

import boto3

from src.codecs import category_prefix, partition_values
from src.query_builder import ScoredQuery, score_text

logger = logging.getLogger(__name__)


@runtime_checkable
class QueryEngine(Protocol):
    async def refresh_partitions(self, database: str, table: str, location: str) -> None: ...

    async def execute_scored_query(self, query: ScoredQuery, column_spec,
                                   timeout_ms: int) -> list[dict]: ...


def sql_literal(value) -> str:
    """Render a parameter as an Athena execution-parameter literal."""
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, (int, float)):
        return str(value)
    return "'" + str(value).replace("'", "''") + "'"


def partition_spec(location: str) -> list[tuple[str, str]]:
    """``k=v`` path segments of a partition location, in order."""
    spec = []
    for segment in location.rstrip("/").split("/"):
        if "=" in segment:
            name, _, value = segment.partition("=")
            spec.append((name, value))
    return spec


class LocalQueryEngine:
    """Evaluates scored queries over a FileObjectStore, for development and tests."""

    def __init__(self, store):
        self._store = store
        self.refreshed: list[str] = []

    async def refresh_partitions(self, database: str, table: str, location: str) -> None:
        # Partitions are plain directories here; nothing to register.
        self.refreshed.append(location)

    async def execute_scored_query(self, query: ScoredQuery, column_spec,
                                   timeout_ms: int) -> list[dict]:
        return await asyncio.wait_for(self._scan(query), timeout_ms / 1000)

    def _matches_partitions(self, timestamp: int, bounds) -> bool:
        year, month, day, _ = partition_values(timestamp)
        values = {"year": year, "month": month, "day": day}
        return all(low <= values[col] <= high for col, low, high in bounds)

    async def _scan(self, query: ScoredQuery) -> list[dict]:
        keys = await self._store.list_by_prefix_and_time_range(
            category_prefix(query.category), query.start, query.end
        )
        scored = []
        for key in keys:
            payload = await self._store.get(key)
            if payload is None:
                continue
            try:
                record = json.loads(payload)
            except json.JSONDecodeError:
                logger.debug("Skipping malformed JSON object %s", key)
                continue
            if not isinstance(record, dict):
                continue
            ts = record.get("timestamp")
            if not isinstance(ts, int) or not query.start <= ts <= query.end:
                continue
            if not self._matches_partitions(ts, query.partition_filter):
                continue
            score = score_text(str(record.get("searchText", "")), query.term, query.weights)
            if score <= 0:
                continue
            scored.append((score, ts, key, record))

        scored.sort(key=lambda item: (item[0], item[1]), reverse=True)
        rows = []
        for score, ts, key, record in scored[:query.limit]:
            trace = record.get("stackTrace")
            rows.append({
                "timestamp": str(ts),
                "category": record.get("category"),
                "messages": json.dumps(record.get("messages")),
                "stacktrace": json.dumps(trace) if trace is not None else None,
                "archivekey": record.get("archiveKey") or key,
                "score": str(score),
            })
        return rows


class AthenaQueryEngine:
    """Runs queries on Amazon Athena through boto3."""

    def __init__(self, database: str, output_location: str, client=None,
                 poll_interval: float = 0.5, refresh_timeout_ms: int = 60_000):
        self._database = database
        self._output = output_location
        self._client = client or boto3.client("athena")
        self._poll_interval = poll_interval
        self._refresh_timeout_ms = refresh_timeout_ms

    async def refresh_partitions(self, database: str, table: str, location: str) -> None:
        spec = partition_spec(location)
        if not spec:
            raise ValueError(f"location has no partition segments: {location}")
        values = ", ".join(f"{name}={sql_literal(value)}" for name, value in spec)
        sql = (
            f'ALTER TABLE "{database}"."{table}" ADD IF NOT EXISTS '
            f"PARTITION ({values}) LOCATION {sql_literal(location)}"
        )
        await self._run(sql, [], self._refresh_timeout_ms, database)

    async def execute_scored_query(self, query: ScoredQuery, column_spec,
                                   timeout_ms: int) -> list[dict]:
        params = [sql_literal(p) for p in query.params]
        execution_id = await self._run(query.sql, params, timeout_ms, self._database)
        return await asyncio.to_thread(self._fetch_rows, execution_id)

    async def _run(self, sql: str, params: list, timeout_ms: int, database: str) -> str:
        request = {
            "QueryString": sql,
            "QueryExecutionContext": {"Database": database},
            "ResultConfiguration": {"OutputLocation": self._output},
        }
        if params:
            request["ExecutionParameters"] = params
        response = await asyncio.to_thread(self._client.start_query_execution, **request)
        execution_id = response["QueryExecutionId"]

        deadline = time.monotonic() + timeout_ms / 1000
        while True:
            status = await asyncio.to_thread(
                self._client.get_query_execution, QueryExecutionId=execution_id
            )
            state = status["QueryExecution"]["Status"]["State"]
            if state == "SUCCEEDED":
                return execution_id
            if state in ("FAILED", "CANCELLED"):
                reason = status["QueryExecution"]["Status"].get("StateChangeReason", state)
                raise RuntimeError(f"Athena query {execution_id} {state.lower()}: {reason}")
            if time.monotonic() >= deadline:
                await asyncio.to_thread(
                    self._client.stop_query_execution, QueryExecutionId=execution_id
                )
                raise TimeoutError(f"Athena query {execution_id} timed out")
            await asyncio.sleep(self._poll_interval)

    def _fetch_rows(self, execution_id: str) -> list[dict]:
        paginator = self._client.get_paginator("get_query_results")
        header, rows = None, []
        for page in paginator.paginate(QueryExecutionId=execution_id):
            for row in page["ResultSet"]["Rows"]:
                cells = [c.get("VarCharValue") for c in row["Data"]]
                if header is None:
                    header = cells
                    continue
                rows.append(dict(zip(header, cells)))
        return rows
