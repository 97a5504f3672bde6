"""Redis implementation of the suspension store."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

import redis.asyncio as redis

from ..contracts import ExecutionStatus, SuspensionRecord, utcnow
from ..errors import SuspensionConflictError
from .repository import SuspensionStore


class RedisSuspensionStore(SuspensionStore):
    """Persist suspension records in Redis.

    The live record sits under its own key written with ``SET NX`` and is
    consumed with ``GETDEL``, which gives single-key atomicity without Lua.
    Consumed copies are kept so repeated resumes report ``already_consumed``.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        prefix: str = "flowrelay",
        url: Optional[str] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.prefix = prefix
        self.url = url
        self._redis: Optional[Any] = None

    async def connect(self) -> None:
        """Connect to Redis."""
        if self.url:
            self._redis = redis.Redis.from_url(self.url, decode_responses=True)
        else:
            self._redis = redis.Redis(
                host=self.host,
                port=self.port,
                db=self.db,
                password=self.password,
                decode_responses=True,
            )
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def _client(self) -> Any:
        if not self._redis:
            await self.connect()
        return self._redis

    def _live_key(self, execution_id: str) -> str:
        return f"{self.prefix}:suspension:live:{execution_id}"

    def _consumed_key(self, execution_id: str) -> str:
        return f"{self.prefix}:suspension:consumed:{execution_id}"

    @property
    def _suspended_key(self) -> str:
        return f"{self.prefix}:suspended"

    @property
    def _status_key(self) -> str:
        return f"{self.prefix}:statuses"

    # ------------------------------------------------------------------
    async def save(self, record: SuspensionRecord) -> None:
        client = await self._client()
        written = await client.set(
            self._live_key(record.execution_id), record.to_json(), nx=True
        )
        if not written:
            raise SuspensionConflictError(
                f"Execution {record.execution_id} already has a live suspension"
            )
        await client.delete(self._consumed_key(record.execution_id))
        await client.sadd(self._suspended_key, record.execution_id)

    async def load_and_consume(self, execution_id: str) -> SuspensionRecord | None:
        client = await self._client()
        raw = await client.getdel(self._live_key(execution_id))
        if raw is None:
            return None
        record = SuspensionRecord.from_json(raw)
        record.consumed_at = utcnow()
        await client.set(self._consumed_key(execution_id), record.to_json())
        await client.srem(self._suspended_key, execution_id)
        return record

    async def peek(self, execution_id: str) -> SuspensionRecord | None:
        client = await self._client()
        raw = await client.get(self._live_key(execution_id))
        if raw is None:
            raw = await client.get(self._consumed_key(execution_id))
        return SuspensionRecord.from_json(raw) if raw is not None else None

    # ------------------------------------------------------------------
    async def set_status(self, status: ExecutionStatus) -> None:
        client = await self._client()
        await client.hset(self._status_key, status.execution_id, status.model_dump_json())

    async def get_status(self, execution_id: str) -> ExecutionStatus | None:
        client = await self._client()
        raw = await client.hget(self._status_key, execution_id)
        return ExecutionStatus.model_validate_json(raw) if raw is not None else None

    async def list_executions(self) -> list[ExecutionStatus]:
        client = await self._client()
        values = await client.hvals(self._status_key)
        statuses = [ExecutionStatus.model_validate_json(v) for v in values]
        return sorted(statuses, key=lambda s: s.updated_at)

    async def list_suspended(
        self, wake_before: Optional[datetime] = None
    ) -> list[SuspensionRecord]:
        client = await self._client()
        ids = sorted(await client.smembers(self._suspended_key))
        if not ids:
            return []
        raw_records = await client.mget([self._live_key(i) for i in ids])
        records = [SuspensionRecord.from_json(raw) for raw in raw_records if raw is not None]
        if wake_before is not None:
            records = [
                r for r in records if r.wake_at is not None and r.wake_at <= wake_before
            ]
        return records
