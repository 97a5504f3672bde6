"""PostgreSQL implementation of the suspension store."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

import asyncpg

from ..contracts import ExecutionStatus, SuspensionRecord, utcnow
from ..errors import SuspensionConflictError
from .repository import SuspensionStore


class PostgresSuspensionStore(SuspensionStore):
    """Persist suspension records using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS flowrelay_suspensions (
                execution_id TEXT PRIMARY KEY,
                chain_id TEXT NOT NULL,
                record JSONB NOT NULL,
                wake_at TIMESTAMPTZ,
                consumed_at TIMESTAMPTZ
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS flowrelay_executions (
                execution_id TEXT PRIMARY KEY,
                chain_id TEXT NOT NULL,
                status TEXT NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL,
                data JSONB NOT NULL
            )
            """
        )

    @staticmethod
    def _to_record(row: asyncpg.Record) -> SuspensionRecord:
        record = SuspensionRecord.from_json(row["record"])
        record.consumed_at = row["consumed_at"]
        return record

    # ------------------------------------------------------------------
    async def save(self, record: SuspensionRecord) -> None:
        conn = await self._connect()
        try:
            status = await conn.execute(
                """
                INSERT INTO flowrelay_suspensions (execution_id, chain_id, record, wake_at, consumed_at)
                VALUES ($1, $2, $3, $4, NULL)
                ON CONFLICT (execution_id) DO UPDATE SET
                    chain_id = EXCLUDED.chain_id,
                    record = EXCLUDED.record,
                    wake_at = EXCLUDED.wake_at,
                    consumed_at = NULL
                WHERE flowrelay_suspensions.consumed_at IS NOT NULL
                """,
                record.execution_id,
                record.chain_id,
                record.to_json(),
                record.wake_at,
            )
        finally:
            await conn.close()
        # asyncpg returns the command tag, e.g. "INSERT 0 1"
        if not status.endswith(" 1"):
            raise SuspensionConflictError(
                f"Execution {record.execution_id} already has a live suspension"
            )

    async def load_and_consume(self, execution_id: str) -> SuspensionRecord | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                """
                UPDATE flowrelay_suspensions SET consumed_at = $2
                WHERE execution_id = $1 AND consumed_at IS NULL
                RETURNING record, consumed_at
                """,
                execution_id,
                utcnow(),
            )
        finally:
            await conn.close()
        return self._to_record(row) if row else None

    async def peek(self, execution_id: str) -> SuspensionRecord | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT record, consumed_at FROM flowrelay_suspensions WHERE execution_id = $1",
                execution_id,
            )
        finally:
            await conn.close()
        return self._to_record(row) if row else None

    # ------------------------------------------------------------------
    async def set_status(self, status: ExecutionStatus) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO flowrelay_executions (execution_id, chain_id, status, updated_at, data)
                VALUES ($1, $2, $3, $4, $5)
                ON CONFLICT (execution_id) DO UPDATE SET
                    status = EXCLUDED.status,
                    updated_at = EXCLUDED.updated_at,
                    data = EXCLUDED.data
                """,
                status.execution_id,
                status.chain_id,
                status.status,
                status.updated_at,
                status.model_dump_json(),
            )
        finally:
            await conn.close()

    async def get_status(self, execution_id: str) -> ExecutionStatus | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT data FROM flowrelay_executions WHERE execution_id = $1",
                execution_id,
            )
        finally:
            await conn.close()
        return ExecutionStatus.model_validate_json(row["data"]) if row else None

    async def list_executions(self) -> list[ExecutionStatus]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT data FROM flowrelay_executions ORDER BY updated_at"
            )
        finally:
            await conn.close()
        return [ExecutionStatus.model_validate_json(r["data"]) for r in rows]

    async def list_suspended(
        self, wake_before: Optional[datetime] = None
    ) -> list[SuspensionRecord]:
        conn = await self._connect()
        try:
            if wake_before is None:
                rows = await conn.fetch(
                    "SELECT record, consumed_at FROM flowrelay_suspensions WHERE consumed_at IS NULL"
                )
            else:
                rows = await conn.fetch(
                    """
                    SELECT record, consumed_at FROM flowrelay_suspensions
                    WHERE consumed_at IS NULL AND wake_at IS NOT NULL AND wake_at <= $1
                    ORDER BY wake_at
                    """,
                    wake_before,
                )
        finally:
            await conn.close()
        return [self._to_record(r) for r in rows]
