"""Tool-call tracing: in-memory and SQLite-backed call logs."""

from __future__ import annotations

import json
import time
from collections import deque
from datetime import datetime, timezone
from typing import Protocol

import structlog

from ops_agent.errors import StoreError
from ops_agent.store.database import Database, parse_timestamp
from ops_agent.types import ToolCallRecord

logger = structlog.get_logger(__name__)

_PREVIEW_CHARS = 2000


class ToolCallLogger(Protocol):
    """Receives one record per tool invocation."""

    async def record(self, record: ToolCallRecord) -> None: ...


class ToolCallLog:
    """In-memory ring buffer of tool-call records for API-level observability."""

    def __init__(self, max_records: int = 1000) -> None:
        self._records: deque[ToolCallRecord] = deque(maxlen=max_records)

    async def record(self, record: ToolCallRecord) -> None:
        if record.timestamp is None:
            record.timestamp = datetime.now(timezone.utc)
        self._records.append(record)

    async def list_recent(self, limit: int = 20) -> list[ToolCallRecord]:
        return list(self._records)[-limit:]

    def __len__(self) -> int:
        return len(self._records)

    async def summary(self) -> dict[str, float | int]:
        return summarize(list(self._records))


class SQLiteToolCallLog:
    """Persists tool-call records to the `mcp_logs` table.

    Write failures are logged and dropped so that tracing never fails a chat.
    """

    def __init__(self, database: Database) -> None:
        self.db = database

    async def record(self, record: ToolCallRecord) -> None:
        timestamp = record.timestamp or datetime.now(timezone.utc)
        try:
            await self.db.insert(
                "INSERT INTO mcp_logs(timestamp, server_name, tool_name, status, latency_ms, "
                "username, source, request, response, error_message) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    timestamp.isoformat(),
                    record.provider,
                    record.tool,
                    "success" if record.success else "error",
                    record.latency_ms,
                    record.username,
                    record.source,
                    json.dumps(record.request, ensure_ascii=False),
                    record.response[:_PREVIEW_CHARS],
                    record.error,
                ),
            )
        except StoreError as exc:
            logger.warning("tool_call_log_write_failed", tool=record.tool, error=str(exc))

    async def list_recent(self, limit: int = 20) -> list[ToolCallRecord]:
        rows = await self.db.fetch_all(
            "SELECT * FROM mcp_logs ORDER BY id DESC LIMIT ?", (limit,)
        )
        records: list[ToolCallRecord] = []
        for row in reversed(rows):
            try:
                request = json.loads(row["request"] or "{}")
            except json.JSONDecodeError:
                request = {"raw": row["request"]}
            records.append(
                ToolCallRecord(
                    provider=row["server_name"],
                    tool=row["tool_name"],
                    username=row["username"] or "",
                    source=row["source"] or "",
                    request=request,
                    response=row["response"] or "",
                    latency_ms=row["latency_ms"],
                    success=row["status"] == "success",
                    error=row["error_message"],
                    timestamp=parse_timestamp(row["timestamp"]),
                )
            )
        return records

    async def summary(self) -> dict[str, float | int]:
        rows = await self.db.fetch_all("SELECT status, latency_ms FROM mcp_logs")
        latencies = sorted(float(row["latency_ms"]) for row in rows)
        failures = sum(1 for row in rows if row["status"] != "success")
        return _summary_from(latencies, failures)


def summarize(records: list[ToolCallRecord]) -> dict[str, float | int]:
    """Aggregate call count, failure count and latency percentiles."""
    latencies = sorted(record.latency_ms for record in records)
    failures = sum(1 for record in records if not record.success)
    return _summary_from(latencies, failures)


def _summary_from(latencies: list[float], failures: int) -> dict[str, float | int]:
    total = len(latencies)
    if total == 0:
        return {
            "total_calls": 0,
            "failed_calls": 0,
            "success_rate": 0.0,
            "avg_latency_ms": 0.0,
            "p95_latency_ms": 0.0,
        }
    p95_index = max(0, int((total * 0.95) - 1))
    return {
        "total_calls": total,
        "failed_calls": failures,
        "success_rate": (total - failures) / total,
        "avg_latency_ms": sum(latencies) / total,
        "p95_latency_ms": latencies[p95_index],
    }


class Timer:
    """Context timer around tool calls."""

    def __init__(self) -> None:
        self._start = 0.0
        self.elapsed_ms = 0.0

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.elapsed_ms = (time.perf_counter() - self._start) * 1000.0
