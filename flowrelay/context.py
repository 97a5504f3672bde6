"""Execution context threaded through every step of a chain."""

from __future__ import annotations

import asyncio
import copy
import inspect
import logging
import threading
from types import MappingProxyType
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Mapping,
    NoReturn,
    Optional,
    Union,
)

from .contracts import HistoryEntry, WorkflowEvent
from .errors import CancellationError, StepExecutionError, SuspendRequested
from .hooks import WorkflowHooks

logger = logging.getLogger(__name__)

StateUpdate = Callable[[Dict[str, Any]], Mapping[str, Any]]
EventSink = Callable[[WorkflowEvent], Union[None, Awaitable[None]]]

_NO_RESUME = object()


class CancelSignal:
    """Cooperative cancellation token.

    Child signals are cancelled together with their parent but can also be
    cancelled on their own, which is how race losers are stopped.
    """

    def __init__(self, parent: Optional["CancelSignal"] = None) -> None:
        self._event = asyncio.Event()
        self._children: List[CancelSignal] = []
        self.reason: Optional[str] = None
        if parent is not None:
            parent._children.append(self)
            if parent.cancelled:
                self.cancel(parent.reason)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: Optional[str] = None) -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        for child in self._children:
            child.cancel(reason)

    def child(self) -> "CancelSignal":
        return CancelSignal(self)

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise CancellationError(self.reason)


class WorkflowState:
    """Key/value bag shared by every branch of one execution.

    Updates are whole-bag functional transforms applied under a lock, so
    concurrent writers never partially overwrite each other.
    """

    def __init__(self, initial: Optional[Mapping[str, Any]] = None) -> None:
        self._values: Dict[str, Any] = dict(initial or {})
        self._lock = threading.Lock()

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return copy.deepcopy(self._values)

    def apply(self, update: StateUpdate) -> Dict[str, Any]:
        with self._lock:
            next_values = update(copy.deepcopy(self._values))
            if not isinstance(next_values, Mapping):
                raise TypeError(
                    "Workflow state updates must return a mapping, "
                    f"got {type(next_values).__name__}"
                )
            self._values = dict(next_values)
            return copy.deepcopy(self._values)


class ExecutionContext:
    """Mutable environment handed to each step."""

    def __init__(
        self,
        execution_id: str,
        chain_id: str,
        data: Any = None,
        *,
        input: Any = None,
        state: Optional[WorkflowState] = None,
        history: Optional[List[HistoryEntry]] = None,
        cancel_signal: Optional[CancelSignal] = None,
        on_event: Optional[EventSink] = None,
        hooks: Optional[WorkflowHooks] = None,
        parent: Optional["ExecutionContext"] = None,
    ) -> None:
        self.execution_id = execution_id
        self.chain_id = chain_id
        self.data = data
        self.input = input
        self.history: List[HistoryEntry] = list(history or [])
        self.cancel_signal = cancel_signal or CancelSignal()
        self.step_id: Optional[str] = None
        self.retry_count = 0
        self._state = state or WorkflowState()
        self._on_event = on_event
        self.hooks = hooks
        self._parent = parent
        self._detached = False
        self._pending_resume: Any = _NO_RESUME
        self._resume_data: Any = None
        self._resuming = False

    # ------------------------------------------------------------------
    # Workflow state
    @property
    def workflow_state(self) -> Mapping[str, Any]:
        """Read-only snapshot of the shared workflow state."""
        return MappingProxyType(self._state.snapshot())

    def set_workflow_state(self, update: StateUpdate) -> None:
        """Apply ``update(prev) -> next`` to the shared workflow state."""
        if self.detached:
            logger.debug(
                f"Dropping workflow state update from detached branch "
                f"step={self.step_id} execution_id={self.execution_id}"
            )
            return
        self._state.apply(update)

    @property
    def detached(self) -> bool:
        ctx: Optional[ExecutionContext] = self
        while ctx is not None:
            if ctx._detached:
                return True
            ctx = ctx._parent
        return False

    def detach(self) -> None:
        """Stop this context from publishing state updates or events."""
        self._detached = True

    # ------------------------------------------------------------------
    # Suspend / resume
    def suspend(self, reason: str = "Step requested suspension", suspend_data: Any = None) -> NoReturn:
        """Pause the execution at the current step; never returns normally."""
        raise SuspendRequested(reason, suspend_data)

    @property
    def resume_data(self) -> Any:
        """Validated resume payload, only set on the step being resumed."""
        return self._resume_data

    @property
    def is_resuming(self) -> bool:
        return self._resuming

    def offer_resume(self, payload: Any) -> None:
        self._pending_resume = payload

    def hand_over_resume(self, target: "ExecutionContext") -> None:
        """Move a pending resume payload to the branch context ``target``."""
        if self._pending_resume is not _NO_RESUME:
            target._pending_resume = self._pending_resume
            self._pending_resume = _NO_RESUME

    def enter_step(self, step_id: str, *, resume_target: bool = False) -> None:
        self.step_id = step_id
        self.retry_count = 0
        if resume_target and self._pending_resume is not _NO_RESUME:
            self._resume_data = self._pending_resume
            self._pending_resume = _NO_RESUME
            self._resuming = True
        else:
            self._resume_data = None
            self._resuming = False

    # ------------------------------------------------------------------
    # History
    def record(self, step_id: str, output: Any) -> None:
        self.history.append(HistoryEntry(step_id=step_id, output=output))

    def get_step_output(self, step_id: str) -> Any:
        """Return the latest recorded output of ``step_id``."""
        for entry in reversed(self.history):
            if entry.step_id == step_id:
                return entry.output
        raise KeyError(f"Step '{step_id}' has no recorded output")

    # ------------------------------------------------------------------
    # Cancellation
    @property
    def cancelled(self) -> bool:
        return self.cancel_signal.cancelled

    def raise_if_cancelled(self) -> None:
        self.cancel_signal.raise_if_cancelled()

    # ------------------------------------------------------------------
    # Progress channel
    async def emit(self, payload: Any) -> None:
        """Publish an intermediate progress message for the current step."""
        await self.publish("progress", payload)

    async def publish(self, event_type: str, payload: Any = None) -> None:
        if self._on_event is None or self.detached:
            return
        event = WorkflowEvent(
            type=event_type,
            execution_id=self.execution_id,
            step_id=self.step_id,
            payload=payload,
        )
        try:
            result = self._on_event(event)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            logger.warning(f"Event subscriber failed on {event_type}: {exc}")

    # ------------------------------------------------------------------
    def fork(
        self,
        data: Any,
        *,
        history: Optional[List[HistoryEntry]] = None,
        isolated_cancel: bool = False,
    ) -> "ExecutionContext":
        """Create a branch context with its own copy of ``data``.

        The branch shares the workflow state bag and inherits the cancel
        signal; ``isolated_cancel`` gives it a child signal that can be
        cancelled independently. Branch data must be deep-copyable.
        """
        try:
            branch_data = copy.deepcopy(data)
        except (TypeError, copy.Error) as exc:
            raise StepExecutionError(
                self.step_id or self.chain_id,
                f"Branch data must be deep-copyable, got {type(data).__name__}: {exc}",
                cause=exc,
            ) from exc
        return ExecutionContext(
            self.execution_id,
            self.chain_id,
            branch_data,
            input=self.input,
            state=self._state,
            history=list(self.history) + list(history or []),
            cancel_signal=self.cancel_signal.child() if isolated_cancel else self.cancel_signal,
            on_event=self._on_event,
            hooks=self.hooks,
            parent=self,
        )
