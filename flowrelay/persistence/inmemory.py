"""In-memory implementation of the suspension store."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Dict, Optional

from ..contracts import ExecutionStatus, SuspensionRecord, utcnow
from ..errors import SuspensionConflictError
from .repository import SuspensionStore


class InMemorySuspensionStore(SuspensionStore):
    """Keep suspension records in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._records: Dict[str, SuspensionRecord] = {}
        self._statuses: Dict[str, ExecutionStatus] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    async def save(self, record: SuspensionRecord) -> None:
        async with self._lock:
            existing = self._records.get(record.execution_id)
            if existing is not None and not existing.is_consumed:
                raise SuspensionConflictError(
                    f"Execution {record.execution_id} already has a live suspension"
                )
            self._records[record.execution_id] = record.model_copy(deep=True)

    async def load_and_consume(self, execution_id: str) -> SuspensionRecord | None:
        async with self._lock:
            record = self._records.get(execution_id)
            if record is None or record.is_consumed:
                return None
            record.consumed_at = utcnow()
            return record.model_copy(deep=True)

    async def peek(self, execution_id: str) -> SuspensionRecord | None:
        record = self._records.get(execution_id)
        return record.model_copy(deep=True) if record is not None else None

    # ------------------------------------------------------------------
    async def set_status(self, status: ExecutionStatus) -> None:
        self._statuses[status.execution_id] = status.model_copy(deep=True)

    async def get_status(self, execution_id: str) -> ExecutionStatus | None:
        return self._statuses.get(execution_id)

    async def list_executions(self) -> list[ExecutionStatus]:
        return list(self._statuses.values())

    async def list_suspended(
        self, wake_before: Optional[datetime] = None
    ) -> list[SuspensionRecord]:
        records = [r for r in self._records.values() if not r.is_consumed]
        if wake_before is not None:
            records = [
                r for r in records if r.wake_at is not None and r.wake_at <= wake_before
            ]
        return [r.model_copy(deep=True) for r in records]
