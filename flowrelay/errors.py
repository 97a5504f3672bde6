"""Error taxonomy for flowrelay workflows."""

from __future__ import annotations

from typing import Any, List, Optional

from pydantic import BaseModel, Field


class Violation(BaseModel):
    """A single schema violation."""

    path: List[str | int] = Field(default_factory=list)
    message: str
    type: Optional[str] = None

    def __str__(self) -> str:
        location = ".".join(str(p) for p in self.path) or "<root>"
        return f"{location}: {self.message}"


class FlowRelayError(Exception):
    """Base class for every error raised by flowrelay."""

    kind = "error"


class BuildError(FlowRelayError):
    """Chain construction violated a declared shape or naming rule."""

    kind = "build_error"


class ValidationError(FlowRelayError):
    """A value failed its declared shape."""

    kind = "validation_error"

    def __init__(
        self,
        message: str,
        violations: Optional[List[Violation]] = None,
        value: Any = None,
    ) -> None:
        self.violations = list(violations or [])
        self.value = value
        detail = "; ".join(str(v) for v in self.violations)
        super().__init__(f"{message}: {detail}" if detail else message)
        self.message = message


class StepExecutionError(FlowRelayError):
    """A step raised or refused to produce a value."""

    kind = "step_failed"

    def __init__(
        self,
        step_id: str,
        message: str,
        data_snapshot: Any = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(f"Step '{step_id}' failed: {message}")
        self.step_id = step_id
        self.message = message
        self.data_snapshot = data_snapshot
        self.cause = cause
        self.diagnostics: List[dict[str, Any]] = []

    @property
    def cause_kind(self) -> str:
        if isinstance(self.cause, FlowRelayError):
            return self.cause.kind
        return self.kind


class NoBranchMatchedError(FlowRelayError):
    """No case of an ``and_branch`` step matched and no default was given."""

    kind = "no_branch_matched"


class GuardrailBlockedError(FlowRelayError):
    """A guardrail rejected the current data."""

    kind = "guardrail_blocked"


class DelegateError(FlowRelayError):
    """The delegate behind an ``and_agent`` step failed."""

    kind = "delegate_failed"


class CancellationError(FlowRelayError):
    """Execution stopped cooperatively through the cancel signal."""

    kind = "cancelled"

    def __init__(self, reason: Optional[str] = None) -> None:
        super().__init__(reason or "Execution cancelled")
        self.reason = reason


class ResumeError(FlowRelayError):
    """No live suspension could be resumed with the given payload."""

    NOT_FOUND = "not_found"
    ALREADY_CONSUMED = "already_consumed"
    INVALID_PAYLOAD = "invalid_payload"

    def __init__(
        self,
        reason: str,
        execution_id: str,
        message: Optional[str] = None,
        violations: Optional[List[Violation]] = None,
    ) -> None:
        super().__init__(message or f"Cannot resume {execution_id}: {reason}")
        self.reason = reason
        self.execution_id = execution_id
        self.violations = list(violations or [])

    @property
    def kind(self) -> str:  # type: ignore[override]
        return f"resume_{self.reason}"


class SuspensionConflictError(FlowRelayError):
    """An unconsumed suspension record already exists for the execution."""

    kind = "suspension_conflict"


class SuspendRequested(Exception):
    """Raised by ``ExecutionContext.suspend``; never escapes the engine."""

    def __init__(
        self, reason: str, suspend_data: Any = None, wake_at: Any = None
    ) -> None:
        super().__init__(reason)
        self.reason = reason
        self.suspend_data = suspend_data
        self.wake_at = wake_at
