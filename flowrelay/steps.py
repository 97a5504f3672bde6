"""Step variants stored in a chain.

Every step is a frozen dataclass tagged with a :class:`StepKind`. Leaf steps
run user code; composite steps own one or more sub-chains and know how to
descend into them when a suspension frame points inside.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    ClassVar,
    Literal,
    Mapping,
    Optional,
    Tuple,
    Union,
)

from .contracts import ResumeFrame, StepKind
from .schema import Schema
from .utils.calls import call, read_path

if TYPE_CHECKING:
    from .agent.delegate import Delegate
    from .chain import Chain
    from .context import ExecutionContext
    from .guardrails import GuardrailCheck

StepFn = Callable[["ExecutionContext"], Any]
Predicate = Callable[[Any], Any]


@dataclass(frozen=True, kw_only=True)
class Step:
    step_id: str
    name: Optional[str] = None
    input_schema: Optional[Schema] = None
    output_schema: Optional[Schema] = None
    resume_schema: Optional[Schema] = None
    suspend_schema: Optional[Schema] = None

    kind: ClassVar[StepKind]
    composite: ClassVar[bool] = False
    passthrough: ClassVar[bool] = False

    def output_shape(self, previous: Optional[Schema]) -> Optional[Schema]:
        """Declared shape of the data this step hands to the next one."""
        if self.output_schema is not None:
            return self.output_schema
        return previous if self.passthrough else None

    def descend(self, frame: ResumeFrame) -> Optional[Tuple["Chain", ResumeFrame]]:
        """Return the sub-chain and nested frame a composite frame points into."""
        return None


# ----------------------------------------------------------------------
# Leaf steps


@dataclass(frozen=True, kw_only=True)
class ThenStep(Step):
    execute: StepFn
    retries: int = 0

    kind: ClassVar[StepKind] = StepKind.THEN


@dataclass(frozen=True, kw_only=True)
class TapStep(Step):
    execute: StepFn

    kind: ClassVar[StepKind] = StepKind.TAP
    passthrough: ClassVar[bool] = True


@dataclass(frozen=True, kw_only=True)
class AgentStep(Step):
    prompt: Union[str, Callable[[Any], Any]]
    delegate: "Delegate"
    agent_schema: Optional[Schema] = None
    mapper: Optional[Callable[[Any, "ExecutionContext"], Any]] = None

    kind: ClassVar[StepKind] = StepKind.AGENT

    def output_shape(self, previous: Optional[Schema]) -> Optional[Schema]:
        if self.mapper is None:
            return self.agent_schema
        return self.output_schema


@dataclass(frozen=True, kw_only=True)
class GuardrailStep(Step):
    checks: Tuple["GuardrailCheck", ...]

    kind: ClassVar[StepKind] = StepKind.GUARDRAIL
    passthrough: ClassVar[bool] = True


@dataclass(frozen=True, kw_only=True)
class SleepStep(Step):
    duration: Union[None, float, timedelta, Callable[[Any], Any]] = None
    until: Union[None, datetime, Callable[[Any], Any]] = None

    kind: ClassVar[StepKind] = StepKind.SLEEP
    passthrough: ClassVar[bool] = True


@dataclass(frozen=True)
class MapEntry:
    """One field of an ``and_map`` mapping.

    ``source`` is one of ``value``, ``data``, ``input``, ``step``, ``state`` or
    ``fn``; ``path`` is an optional dotted path into the selected value.
    """

    source: Literal["value", "data", "input", "step", "state", "fn"]
    value: Any = None
    path: Optional[str] = None
    step_id: Optional[str] = None
    key: Optional[str] = None
    fn: Optional[StepFn] = None

    async def resolve(self, ctx: "ExecutionContext") -> Any:
        if self.source == "value":
            return self.value
        if self.source == "data":
            return read_path(ctx.data, self.path)
        if self.source == "input":
            return read_path(ctx.input, self.path)
        if self.source == "step":
            return read_path(ctx.get_step_output(self.step_id), self.path)
        if self.source == "state":
            return read_path(ctx.workflow_state.get(self.key), self.path)
        if self.source == "fn":
            return await call(self.fn, ctx)
        raise ValueError(f"Unsupported map entry source: {self.source}")


def from_value(value: Any) -> MapEntry:
    return MapEntry("value", value=value)


def from_data(path: Optional[str] = None) -> MapEntry:
    return MapEntry("data", path=path)


def from_input(path: Optional[str] = None) -> MapEntry:
    return MapEntry("input", path=path)


def from_step(step_id: str, path: Optional[str] = None) -> MapEntry:
    return MapEntry("step", step_id=step_id, path=path)


def from_state(key: str, path: Optional[str] = None) -> MapEntry:
    return MapEntry("state", key=key, path=path)


def from_fn(fn: StepFn) -> MapEntry:
    return MapEntry("fn", fn=fn)


@dataclass(frozen=True, kw_only=True)
class MapStep(Step):
    fn: Optional[Callable[[Any], Any]] = None
    entries: Optional[Mapping[str, MapEntry]] = None

    kind: ClassVar[StepKind] = StepKind.MAP

    async def apply(self, ctx: "ExecutionContext") -> Any:
        if self.fn is not None:
            return await call(self.fn, ctx.data)
        result: dict[str, Any] = {}
        for key, entry in (self.entries or {}).items():
            result[key] = await entry.resolve(ctx)
        return result


# ----------------------------------------------------------------------
# Composite steps


@dataclass(frozen=True, kw_only=True)
class WhenStep(Step):
    predicate: Predicate
    chain: "Chain"

    kind: ClassVar[StepKind] = StepKind.WHEN
    composite: ClassVar[bool] = True

    def descend(self, frame: ResumeFrame) -> Optional[Tuple["Chain", ResumeFrame]]:
        return (self.chain, frame.child) if frame.child is not None else None


DEFAULT_CASE = -1


@dataclass(frozen=True, kw_only=True)
class BranchStep(Step):
    cases: Tuple[Tuple[Predicate, "Chain"], ...]
    default: Optional["Chain"] = None

    kind: ClassVar[StepKind] = StepKind.BRANCH
    composite: ClassVar[bool] = True

    def case_chain(self, case: int) -> Optional["Chain"]:
        if case == DEFAULT_CASE:
            return self.default
        return self.cases[case][1]

    def descend(self, frame: ResumeFrame) -> Optional[Tuple["Chain", ResumeFrame]]:
        if frame.child is None or frame.case is None:
            return None
        chain = self.case_chain(frame.case)
        return (chain, frame.child) if chain is not None else None


def _branch_descend(
    chains: Tuple["Chain", ...], frame: ResumeFrame
) -> Optional[Tuple["Chain", ResumeFrame]]:
    if frame.resume_branch is None:
        return None
    if frame.child is not None:
        return chains[frame.resume_branch], frame.child
    for branch in frame.branches:
        if branch.index == frame.resume_branch and branch.frame is not None:
            return chains[branch.index], branch.frame
    return None


@dataclass(frozen=True, kw_only=True)
class AllStep(Step):
    chains: Tuple["Chain", ...]

    kind: ClassVar[StepKind] = StepKind.ALL
    composite: ClassVar[bool] = True

    def descend(self, frame: ResumeFrame) -> Optional[Tuple["Chain", ResumeFrame]]:
        return _branch_descend(self.chains, frame)


@dataclass(frozen=True, kw_only=True)
class RaceStep(Step):
    chains: Tuple["Chain", ...]

    kind: ClassVar[StepKind] = StepKind.RACE
    composite: ClassVar[bool] = True

    def descend(self, frame: ResumeFrame) -> Optional[Tuple["Chain", ResumeFrame]]:
        return _branch_descend(self.chains, frame)


@dataclass(frozen=True, kw_only=True)
class ForEachStep(Step):
    chain: "Chain"
    items: Optional[Callable[[Any], Any]] = None
    map_item: Optional[Callable[[Any, int], Any]] = None
    concurrency: int = 1

    kind: ClassVar[StepKind] = StepKind.FOR_EACH
    composite: ClassVar[bool] = True

    def descend(self, frame: ResumeFrame) -> Optional[Tuple["Chain", ResumeFrame]]:
        if frame.child is not None:
            return self.chain, frame.child
        for branch in frame.branches:
            if branch.index == frame.resume_branch and branch.frame is not None:
                return self.chain, branch.frame
        return None


LoopMode = Literal["while", "do_while", "do_until"]


@dataclass(frozen=True, kw_only=True)
class LoopStep(Step):
    condition: Predicate
    body: "Chain"
    mode: LoopMode = "while"

    kind: ClassVar[StepKind] = StepKind.LOOP
    composite: ClassVar[bool] = True

    def descend(self, frame: ResumeFrame) -> Optional[Tuple["Chain", ResumeFrame]]:
        return (self.body, frame.child) if frame.child is not None else None
