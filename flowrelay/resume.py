"""Resume controller: validates a resume request and rebuilds the context."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from .chain import Chain
from .context import CancelSignal, EventSink, ExecutionContext, WorkflowState
from .contracts import SuspensionRecord
from .errors import BuildError, ResumeError, ValidationError
from .persistence.repository import SuspensionStore
from .registry import ChainRegistry
from .steps import Step

logger = logging.getLogger(__name__)


@dataclass
class ResumeTicket:
    """A consumed suspension together with the chain and validated payload."""

    record: SuspensionRecord
    chain: Chain
    step: Step
    payload: Any


class ResumeController:
    """Turns ``resume(execution_id, payload)`` into a runnable context.

    The record is only consumed after the payload passed the suspended step's
    resume schema, so a rejected payload leaves the suspension resumable.
    """

    def __init__(self, store: SuspensionStore, registry: ChainRegistry) -> None:
        self.store = store
        self.registry = registry

    async def claim(self, execution_id: str, payload: Any = None) -> ResumeTicket:
        record = await self.store.peek(execution_id)
        if record is None:
            raise ResumeError(ResumeError.NOT_FOUND, execution_id)
        if record.is_consumed:
            raise ResumeError(ResumeError.ALREADY_CONSUMED, execution_id)

        chain = self.registry.get(record.chain_id)
        if chain is None:
            raise ResumeError(
                ResumeError.NOT_FOUND,
                execution_id,
                f"Chain '{record.chain_id}' for execution {execution_id} is not registered",
            )
        try:
            step = chain.resolve_leaf(record.frame)
        except BuildError as exc:
            raise ResumeError(
                ResumeError.NOT_FOUND,
                execution_id,
                f"Suspended step no longer exists in chain '{chain.id}': {exc}",
            ) from exc

        if step.resume_schema is not None:
            try:
                payload = step.resume_schema.validate(payload)
            except ValidationError as exc:
                logger.info(
                    f"Rejected resume payload for {execution_id} at step {step.step_id}"
                )
                raise ResumeError(
                    ResumeError.INVALID_PAYLOAD,
                    execution_id,
                    f"Resume payload for step '{step.step_id}' is invalid: {exc}",
                    violations=exc.violations,
                ) from exc

        consumed = await self.store.load_and_consume(execution_id)
        if consumed is None:
            # Another resumer consumed the record between peek and consume.
            raise ResumeError(ResumeError.ALREADY_CONSUMED, execution_id)

        logger.info(
            f"Resuming execution {execution_id} of chain {chain.id} at step {step.step_id}"
        )
        return ResumeTicket(record=consumed, chain=chain, step=step, payload=payload)

    def build_context(
        self,
        ticket: ResumeTicket,
        *,
        on_event: Optional[EventSink] = None,
        cancel_signal: Optional[CancelSignal] = None,
    ) -> ExecutionContext:
        """Rebuild the execution context from the record's snapshots."""
        record = ticket.record
        chain = ticket.chain
        input_value = record.input_snapshot
        if chain.input_schema is not None and input_value is not None:
            input_value = chain.input_schema.validate(input_value)

        ctx = ExecutionContext(
            record.execution_id,
            record.chain_id,
            record.data_snapshot,
            input=input_value,
            state=WorkflowState(record.workflow_state_snapshot),
            history=record.history_snapshot,
            cancel_signal=cancel_signal,
            on_event=on_event,
            hooks=chain.hooks,
        )
        ctx.offer_resume(ticket.payload)
        return ctx
