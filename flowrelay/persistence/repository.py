"""Store abstraction for suspension records and execution status."""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol

from ..contracts import ExecutionStatus, SuspensionRecord


class SuspensionStore(Protocol):
    """Protocol for suspension persistence backends.

    ``save`` and ``load_and_consume`` are atomic per execution id: at most one
    unconsumed record exists for an id and at most one caller consumes it.
    """

    async def save(self, record: SuspensionRecord) -> None:
        """Persist ``record``; raise ``SuspensionConflictError`` if a live one exists."""

    async def load_and_consume(self, execution_id: str) -> SuspensionRecord | None:
        """Atomically mark the live record consumed and return it."""

    async def peek(self, execution_id: str) -> SuspensionRecord | None:
        """Return the latest record, consumed or not, without changing it."""

    async def set_status(self, status: ExecutionStatus) -> None:
        """Upsert the status of an execution."""

    async def get_status(self, execution_id: str) -> ExecutionStatus | None:
        """Return the last stored status of ``execution_id``."""

    async def list_executions(self) -> list[ExecutionStatus]:
        """Return the status of every known execution."""

    async def list_suspended(
        self, wake_before: Optional[datetime] = None
    ) -> list[SuspensionRecord]:
        """Return live records, optionally only timers due before ``wake_before``."""
