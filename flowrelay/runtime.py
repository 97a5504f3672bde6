"""Invocation surface: start, resume, status and cancel executions."""

from __future__ import annotations

import copy
import logging
import uuid
from typing import Any, Dict, Optional

from .chain import Chain
from .config import FlowRelayConfig
from .context import CancelSignal, EventSink, ExecutionContext
from .contracts import (
    Continue,
    ErrorInfo,
    ExecutionStatus,
    Fail,
    ResumeFrame,
    StartResult,
    StepOutcome,
    Suspend,
    SuspensionRecord,
)
from .engine import ExecutionEngine
from .errors import FlowRelayError, ResumeError, StepExecutionError, ValidationError
from .hooks import run_hook
from .persistence.inmemory import InMemorySuspensionStore
from .persistence.repository import SuspensionStore
from .registry import ChainRegistry
from .resume import ResumeController

logger = logging.getLogger(__name__)


class WorkflowRuntime:
    """Runs chains against a suspension store.

    Everything is injected: the store, the engine and the chain registry. A
    runtime without a store keeps suspensions in memory.
    """

    def __init__(
        self,
        store: Optional[SuspensionStore] = None,
        engine: Optional[ExecutionEngine] = None,
        registry: Optional[ChainRegistry] = None,
        config: Optional[FlowRelayConfig] = None,
    ) -> None:
        self.config = config or FlowRelayConfig()
        self.store = store or InMemorySuspensionStore()
        self.engine = engine or ExecutionEngine(self.config.engine)
        self.registry = registry or ChainRegistry()
        self.controller = ResumeController(self.store, self.registry)
        self._running: Dict[str, CancelSignal] = {}

    def register(self, chain: Chain) -> None:
        self.registry.register(chain, replace=True)

    # ------------------------------------------------------------------
    async def start(
        self,
        chain: Chain,
        input: Any = None,
        *,
        execution_id: Optional[str] = None,
        on_event: Optional[EventSink] = None,
        cancel_signal: Optional[CancelSignal] = None,
    ) -> StartResult:
        """Run ``chain`` on ``input`` until it completes, suspends or fails."""
        self.register(chain)
        execution_id = execution_id or str(uuid.uuid4())

        if chain.input_schema is not None:
            try:
                input = chain.input_schema.validate(input)
            except ValidationError as exc:
                logger.warning(f"Rejected input for chain {chain.id}: {exc}")
                result = StartResult(
                    status="failed",
                    execution_id=execution_id,
                    error=ErrorInfo.from_exception(exc),
                )
                await self._store_status(chain.id, result, None)
                return result

        ctx = ExecutionContext(
            execution_id,
            chain.id,
            copy.deepcopy(input),
            input=input,
            cancel_signal=cancel_signal,
            on_event=on_event,
            hooks=chain.hooks,
        )
        logger.info(f"Starting execution {execution_id} of chain {chain.id}")
        await ctx.publish("workflow-start", {"chain_id": chain.id})
        await run_hook(chain.hooks, "on_start", ctx)
        return await self._execute(chain, ctx, None)

    async def resume(
        self,
        execution_id: str,
        payload: Any = None,
        *,
        on_event: Optional[EventSink] = None,
        cancel_signal: Optional[CancelSignal] = None,
    ) -> StartResult:
        """Continue a suspended execution with ``payload``."""
        try:
            ticket = await self.controller.claim(execution_id, payload)
        except ResumeError as exc:
            logger.warning(f"Cannot resume {execution_id}: {exc.reason}")
            return StartResult(
                status="failed",
                execution_id=execution_id,
                error=ErrorInfo.from_exception(exc),
            )

        try:
            ctx = self.controller.build_context(
                ticket, on_event=on_event, cancel_signal=cancel_signal
            )
        except ValidationError as exc:
            logger.error(f"Stored input of {execution_id} no longer validates: {exc}")
            result = StartResult(
                status="failed",
                execution_id=execution_id,
                error=ErrorInfo.from_exception(exc),
            )
            await self._store_status(ticket.chain.id, result, None)
            return result

        await ctx.publish("workflow-resume", {"step_id": ticket.step.step_id})
        return await self._execute(ticket.chain, ctx, ticket.record.frame)

    async def status(self, execution_id: str) -> Optional[ExecutionStatus]:
        return await self.store.get_status(execution_id)

    def cancel(self, execution_id: str, reason: Optional[str] = None) -> bool:
        """Signal a running in-process execution to stop; False if not running."""
        signal = self._running.get(execution_id)
        if signal is None:
            return False
        logger.info(f"Cancelling execution {execution_id}: {reason}")
        signal.cancel(reason or "Cancelled by request")
        return True

    # ------------------------------------------------------------------
    async def _execute(
        self, chain: Chain, ctx: ExecutionContext, frame: Optional[ResumeFrame]
    ) -> StartResult:
        self._running[ctx.execution_id] = ctx.cancel_signal
        await self.store.set_status(
            ExecutionStatus(
                execution_id=ctx.execution_id, chain_id=chain.id, status="running"
            )
        )
        try:
            outcome = await self.engine.run(chain, ctx, frame)
        except Exception as exc:
            logger.exception(f"Engine error in execution {ctx.execution_id}")
            outcome = Fail(
                StepExecutionError(
                    ctx.step_id or chain.id, str(exc), data_snapshot=ctx.data, cause=exc
                )
            )
        finally:
            self._running.pop(ctx.execution_id, None)

        result = await self._finish(chain, ctx, outcome)
        await self._store_status(chain.id, result, ctx.step_id)
        await ctx.publish(f"workflow-{result.status}", result.model_dump(exclude={"history"}))

        if result.status == "suspended":
            await run_hook(chain.hooks, "on_suspend", result)
        elif result.status == "failed":
            await run_hook(chain.hooks, "on_error", result)
        elif result.status == "completed":
            await run_hook(chain.hooks, "on_finish", result)
        await run_hook(chain.hooks, "on_end", result)
        return result

    async def _finish(
        self, chain: Chain, ctx: ExecutionContext, outcome: StepOutcome
    ) -> StartResult:
        execution_id = ctx.execution_id
        history = list(ctx.history)

        if isinstance(outcome, Continue):
            data = outcome.data
            if chain.result_schema is not None:
                try:
                    data = chain.result_schema.validate(data)
                except ValidationError as exc:
                    error = StepExecutionError(
                        ctx.step_id or chain.id,
                        "Chain result does not match the declared result schema",
                        data_snapshot=data,
                        cause=exc,
                    )
                    logger.error(f"Execution {execution_id} failed: {error}")
                    return StartResult(
                        status="failed",
                        execution_id=execution_id,
                        error=ErrorInfo.from_exception(error),
                        history=history,
                    )
            logger.info(f"Execution {execution_id} of chain {chain.id} completed")
            return StartResult(
                status="completed", execution_id=execution_id, result=data, history=history
            )

        if isinstance(outcome, Suspend):
            point = outcome.point
            record = SuspensionRecord(
                execution_id=execution_id,
                chain_id=chain.id,
                step_index=point.frame.step_index,
                step_id=point.frame.step_id,
                suspended_step_id=point.step_id,
                reason=point.reason,
                data_snapshot=point.frame.data,
                workflow_state_snapshot=dict(ctx.workflow_state),
                history_snapshot=history,
                input_snapshot=ctx.input,
                resume_schema_ref=point.step_id if point.has_resume_schema else None,
                suspend_data=point.suspend_data,
                wake_at=point.wake_at,
                frame=point.frame,
            )
            try:
                await self.store.save(record)
            except FlowRelayError as exc:
                logger.error(f"Could not persist suspension of {execution_id}: {exc}")
                return StartResult(
                    status="failed",
                    execution_id=execution_id,
                    error=ErrorInfo.from_exception(exc),
                    history=history,
                )
            logger.info(
                f"Execution {execution_id} suspended at step {point.step_id}: {point.reason}"
            )
            return StartResult(
                status="suspended",
                execution_id=execution_id,
                reason=point.reason,
                suspend_data=point.suspend_data,
                wake_at=point.wake_at,
                history=history,
            )

        if isinstance(outcome, Fail):
            logger.error(f"Execution {execution_id} failed: {outcome.error}")
            return StartResult(
                status="failed",
                execution_id=execution_id,
                error=ErrorInfo.from_exception(outcome.error),
                history=history,
            )

        logger.info(f"Execution {execution_id} cancelled: {outcome.reason}")
        return StartResult(
            status="cancelled",
            execution_id=execution_id,
            reason=outcome.reason,
            history=history,
        )

    async def _store_status(
        self, chain_id: str, result: StartResult, last_step_id: Optional[str]
    ) -> None:
        await self.store.set_status(
            ExecutionStatus(
                execution_id=result.execution_id,
                chain_id=chain_id,
                status=result.status,
                last_step_id=last_step_id,
                result=result.result,
                error=result.error,
            )
        )
