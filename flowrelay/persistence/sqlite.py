"""SQLite implementation of the suspension store."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from ..contracts import ExecutionStatus, SuspensionRecord, utcnow
from ..errors import SuspensionConflictError
from .repository import SuspensionStore


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


class SQLiteSuspensionStore(SuspensionStore):
    """Persist suspension records using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS suspensions (
                execution_id TEXT PRIMARY KEY,
                chain_id TEXT NOT NULL,
                record TEXT NOT NULL,
                wake_at TEXT,
                consumed_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS executions (
                execution_id TEXT PRIMARY KEY,
                chain_id TEXT NOT NULL,
                status TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                data TEXT NOT NULL
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    def _consume(self, execution_id: str, consumed_at: str) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(
                "UPDATE suspensions SET consumed_at = ? WHERE execution_id = ? AND consumed_at IS NULL",
                (consumed_at, execution_id),
            )
            self._conn.commit()
            if cur.rowcount != 1:
                return None
            cur.execute(
                "SELECT record, consumed_at FROM suspensions WHERE execution_id = ?",
                (execution_id,),
            )
            return cur.fetchone()

    @staticmethod
    def _to_record(row: sqlite3.Row) -> SuspensionRecord:
        record = SuspensionRecord.from_json(row["record"])
        if row["consumed_at"]:
            record.consumed_at = datetime.fromisoformat(row["consumed_at"])
        return record

    # ------------------------------------------------------------------
    # Store API
    async def save(self, record: SuspensionRecord) -> None:
        # Replacing is only allowed once the previous record was consumed.
        written = await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO suspensions (execution_id, chain_id, record, wake_at, consumed_at)
            VALUES (?, ?, ?, ?, NULL)
            ON CONFLICT(execution_id) DO UPDATE SET
                chain_id = excluded.chain_id,
                record = excluded.record,
                wake_at = excluded.wake_at,
                consumed_at = NULL
            WHERE suspensions.consumed_at IS NOT NULL
            """,
            record.execution_id,
            record.chain_id,
            record.to_json(),
            _iso(record.wake_at),
        )
        if written != 1:
            raise SuspensionConflictError(
                f"Execution {record.execution_id} already has a live suspension"
            )

    async def load_and_consume(self, execution_id: str) -> SuspensionRecord | None:
        row = await asyncio.to_thread(self._consume, execution_id, _iso(utcnow()))
        return self._to_record(row) if row else None

    async def peek(self, execution_id: str) -> SuspensionRecord | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT record, consumed_at FROM suspensions WHERE execution_id = ?",
            execution_id,
        )
        return self._to_record(row) if row else None

    async def set_status(self, status: ExecutionStatus) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO executions (execution_id, chain_id, status, updated_at, data)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(execution_id) DO UPDATE SET
                status = excluded.status,
                updated_at = excluded.updated_at,
                data = excluded.data
            """,
            status.execution_id,
            status.chain_id,
            status.status,
            _iso(status.updated_at),
            status.model_dump_json(),
        )

    async def get_status(self, execution_id: str) -> ExecutionStatus | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT data FROM executions WHERE execution_id = ?",
            execution_id,
        )
        return ExecutionStatus.model_validate_json(row["data"]) if row else None

    async def list_executions(self) -> list[ExecutionStatus]:
        rows = await asyncio.to_thread(
            self._fetchall, "SELECT data FROM executions ORDER BY updated_at"
        )
        return [ExecutionStatus.model_validate_json(row["data"]) for row in rows]

    async def list_suspended(
        self, wake_before: Optional[datetime] = None
    ) -> list[SuspensionRecord]:
        if wake_before is None:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT record, consumed_at FROM suspensions WHERE consumed_at IS NULL",
            )
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                """
                SELECT record, consumed_at FROM suspensions
                WHERE consumed_at IS NULL AND wake_at IS NOT NULL AND wake_at <= ?
                ORDER BY wake_at
                """,
                _iso(wake_before),
            )
        return [self._to_record(row) for row in rows]

    def close(self) -> None:
        self._conn.close()
