"""Polling scheduler that wakes executions suspended by sleep steps."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import TYPE_CHECKING, List, Optional

from .contracts import StartResult, utcnow

if TYPE_CHECKING:
    from .runtime import WorkflowRuntime

logger = logging.getLogger(__name__)


class SleepScheduler:
    """Resume timer suspensions once their ``wake_at`` has passed.

    Timers are plain suspension records, so the scheduler only needs the
    runtime's store and registry; it can run in a different process from the
    one that started the execution.
    """

    def __init__(
        self, runtime: "WorkflowRuntime", poll_interval: Optional[float] = None
    ) -> None:
        self.runtime = runtime
        self.poll_interval = (
            poll_interval
            if poll_interval is not None
            else runtime.config.engine.scheduler_poll_interval
        )

    async def run_once(self, now: Optional[datetime] = None) -> List[StartResult]:
        """Resume every due timer once and return the resulting outcomes."""
        due = await self.runtime.store.list_suspended(wake_before=now or utcnow())
        results: List[StartResult] = []
        for record in due:
            result = await self.runtime.resume(record.execution_id)
            if (
                result.status == "failed"
                and result.error is not None
                and result.error.kind.startswith("resume_")
            ):
                logger.warning(
                    f"Skipping timer of {record.execution_id}: {result.error.message}"
                )
                continue
            logger.debug(f"Woke execution {record.execution_id}: {result.status}")
            results.append(result)
        return results

    async def run(self, lifespan: Optional[float] = None) -> None:
        """Poll for due timers until ``lifespan`` seconds have passed."""
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        logger.info(f"Sleep scheduler polling every {self.poll_interval}s")
        while True:
            await self.run_once()
            if lifespan is not None and loop.time() - start_time >= lifespan:
                break
            await asyncio.sleep(self.poll_interval)
        logger.info("Sleep scheduler stopped")
