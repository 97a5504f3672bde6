"""Core contracts exchanged between the engine, the runtime and the stores."""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from importlib import import_module
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import (
    BaseModel,
    BeforeValidator,
    Field,
    SerializationInfo,
    SerializerFunctionWrapHandler,
    WrapSerializer,
)

from .errors import (
    FlowRelayError,
    ResumeError,
    StepExecutionError,
    ValidationError,
    Violation,
)

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ----------------------------------------------------------------------
# Snapshot values
#
# Durable stores write records as JSON. Pydantic model instances inside
# snapshot fields are tagged with their import path so they come back as the
# same model after a reload instead of as plain dicts.

_MODEL_TAG = "__flowrelay_model__"
_SNAPSHOT_CONTEXT = {"flowrelay_snapshot": True}


def _model_path(model_cls: type) -> str:
    return f"{model_cls.__module__}:{model_cls.__qualname__}"


def _resolve_model(path: str) -> Optional[type]:
    module_name, _, qualname = path.partition(":")
    try:
        target: Any = sys.modules.get(module_name) or import_module(module_name)
        for part in qualname.split("."):
            target = getattr(target, part)
    except (ImportError, AttributeError):
        logger.warning(f"Cannot import snapshot model {path}, restoring plain data")
        return None
    if isinstance(target, type) and issubclass(target, BaseModel):
        return target
    return None


def encode_snapshot(value: Any) -> Any:
    """Tag model instances found in ``value`` (dicts and lists are walked)."""
    if isinstance(value, BaseModel):
        return {
            _MODEL_TAG: _model_path(type(value)),
            "value": value.model_dump(mode="json", by_alias=True),
        }
    if isinstance(value, dict):
        return {key: encode_snapshot(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [encode_snapshot(item) for item in value]
    return value


def decode_snapshot(value: Any) -> Any:
    """Rebuild model instances tagged by :func:`encode_snapshot`."""
    if isinstance(value, dict):
        if set(value) == {_MODEL_TAG, "value"}:
            model = _resolve_model(value[_MODEL_TAG])
            if model is None:
                return value["value"]
            return model.model_validate(value["value"])
        decoded = {key: decode_snapshot(item) for key, item in value.items()}
        if all(decoded[key] is value[key] for key in value):
            return value
        return decoded
    if isinstance(value, list):
        items = [decode_snapshot(item) for item in value]
        if all(new is old for new, old in zip(items, value)):
            return value
        return items
    return value


def _serialize_snapshot(
    value: Any, handler: SerializerFunctionWrapHandler, info: SerializationInfo
) -> Any:
    if info.context and info.context.get("flowrelay_snapshot"):
        return handler(encode_snapshot(value))
    return handler(value)


Snapshot = Annotated[
    Any,
    BeforeValidator(decode_snapshot),
    WrapSerializer(_serialize_snapshot, when_used="json"),
]


class StepKind(str, Enum):
    """Tag identifying how the engine executes a step."""

    THEN = "then"
    AGENT = "agent"
    WHEN = "when"
    ALL = "all"
    RACE = "race"
    FOR_EACH = "for_each"
    LOOP = "loop"
    TAP = "tap"
    BRANCH = "branch"
    GUARDRAIL = "guardrail"
    SLEEP = "sleep"
    MAP = "map"


class HistoryEntry(BaseModel):
    """Output recorded for a completed step."""

    step_id: str
    output: Snapshot = None


class BranchFrame(BaseModel):
    """Settled state of one branch of a parallel step."""

    index: int
    status: Literal["completed", "suspended"]
    result: Snapshot = None
    frame: Optional["ResumeFrame"] = None
    history: List[HistoryEntry] = Field(default_factory=list)


class ResumeFrame(BaseModel):
    """Position of a suspended step within one chain level.

    Leaf frames point at the step that suspended. Combinator frames carry the
    bookkeeping needed to continue (loop iteration, for-each partial output,
    chosen case, per-branch state) and nest the frame of their sub-chain.
    """

    step_index: int
    step_id: str
    data: Snapshot = None
    iteration: int = 0
    partial: List[Snapshot] = Field(default_factory=list)
    case: Optional[int] = None
    branches: List[BranchFrame] = Field(default_factory=list)
    resume_branch: Optional[int] = None
    wake_at: Optional[datetime] = None
    child: Optional["ResumeFrame"] = None


class SuspensionRecord(BaseModel):
    """Durable snapshot of a suspended execution."""

    execution_id: str
    chain_id: str
    step_index: int
    step_id: str
    suspended_step_id: str
    reason: str
    data_snapshot: Snapshot = None
    workflow_state_snapshot: Dict[str, Snapshot] = Field(default_factory=dict)
    history_snapshot: List[HistoryEntry] = Field(default_factory=list)
    input_snapshot: Snapshot = None
    resume_schema_ref: Optional[str] = None
    suspend_data: Snapshot = None
    wake_at: Optional[datetime] = None
    frame: ResumeFrame
    suspended_at: datetime = Field(default_factory=utcnow)
    consumed_at: Optional[datetime] = None

    @property
    def is_consumed(self) -> bool:
        return self.consumed_at is not None

    def to_json(self) -> str:
        return self.model_dump_json(context=_SNAPSHOT_CONTEXT)

    @classmethod
    def from_json(cls, data: str | bytes) -> "SuspensionRecord":
        return cls.model_validate_json(data)


ExecutionState = Literal["running", "suspended", "completed", "failed", "cancelled"]


class ErrorInfo(BaseModel):
    """Transport-neutral description of a failure."""

    kind: str
    message: str
    step_id: Optional[str] = None
    data_snapshot: Any = None
    violations: List[Violation] = Field(default_factory=list)
    diagnostics: List[Dict[str, Any]] = Field(default_factory=list)
    cause: Optional[str] = None

    @classmethod
    def from_exception(cls, exc: BaseException) -> "ErrorInfo":
        if isinstance(exc, StepExecutionError):
            cause = exc.cause
            return cls(
                kind=exc.cause_kind,
                message=str(exc),
                step_id=exc.step_id,
                data_snapshot=exc.data_snapshot,
                violations=cause.violations if isinstance(cause, ValidationError) else [],
                diagnostics=exc.diagnostics,
                cause=repr(cause) if cause is not None else None,
            )
        if isinstance(exc, (ResumeError, ValidationError)):
            return cls(kind=exc.kind, message=str(exc), violations=exc.violations)
        if isinstance(exc, FlowRelayError):
            return cls(kind=exc.kind, message=str(exc))
        return cls(kind="error", message=str(exc), cause=repr(exc))


class ExecutionStatus(BaseModel):
    """Latest known status of one execution."""

    execution_id: str
    chain_id: str
    status: ExecutionState
    last_step_id: Optional[str] = None
    updated_at: datetime = Field(default_factory=utcnow)
    result: Any = None
    error: Optional[ErrorInfo] = None


class StartResult(BaseModel):
    """Outcome of ``start`` or ``resume`` as seen by the caller."""

    status: Literal["completed", "suspended", "failed", "cancelled"]
    execution_id: str
    result: Any = None
    reason: Optional[str] = None
    suspend_data: Any = None
    wake_at: Optional[datetime] = None
    error: Optional[ErrorInfo] = None
    history: List[HistoryEntry] = Field(default_factory=list)

    @property
    def step_ids(self) -> List[str]:
        return [entry.step_id for entry in self.history]


class WorkflowEvent(BaseModel):
    """Message delivered over the progress channel."""

    type: str
    execution_id: str
    step_id: Optional[str] = None
    payload: Any = None
    timestamp: datetime = Field(default_factory=utcnow)


BranchFrame.model_rebuild()
ResumeFrame.model_rebuild()


# ----------------------------------------------------------------------
# Step outcomes


@dataclass(frozen=True)
class SuspensionPoint:
    """Where and why a step suspended, before it is persisted."""

    reason: str
    step_id: str
    frame: ResumeFrame
    suspend_data: Any = None
    wake_at: Optional[datetime] = None
    has_resume_schema: bool = False


@dataclass(frozen=True)
class Continue:
    data: Any


@dataclass(frozen=True)
class Suspend:
    point: SuspensionPoint

    def nest(self, frame: ResumeFrame) -> "Suspend":
        """Wrap the current frame in the frame of an enclosing combinator."""
        return Suspend(replace(self.point, frame=frame))


@dataclass(frozen=True)
class Fail:
    error: StepExecutionError


@dataclass(frozen=True)
class Cancel:
    reason: Optional[str] = None


StepOutcome = Union[Continue, Suspend, Fail, Cancel]


@dataclass
class BranchOutcome:
    """Outcome of one parallel branch together with its new history."""

    index: int
    outcome: StepOutcome
    history: List[HistoryEntry] = field(default_factory=list)
