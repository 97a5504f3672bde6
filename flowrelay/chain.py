"""Fluent, immutable chain builder.

Example::

    approval = (
        create_chain(id="expense-approval", input_schema=Expense, result_schema=Decision)
        .and_then(check_approval, id="check-approval", resume_schema=ManagerDecision)
        .and_then(finalize, id="finalize")
    )

Every ``and_*`` call returns a new :class:`Chain`; the receiver is left as is.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    Iterable,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    Union,
)

from .contracts import ResumeFrame, StepKind
from .errors import BuildError
from .hooks import WorkflowHooks
from .schema import Schema, as_schema, is_compatible
from .steps import (
    AgentStep,
    AllStep,
    BranchStep,
    ForEachStep,
    GuardrailStep,
    LoopMode,
    LoopStep,
    MapEntry,
    MapStep,
    Predicate,
    RaceStep,
    SleepStep,
    Step,
    StepFn,
    TapStep,
    ThenStep,
    WhenStep,
)

if TYPE_CHECKING:
    from .agent.delegate import Delegate
    from .guardrails import GuardrailCheck

logger = logging.getLogger(__name__)

SubChain = Union["Chain", StepFn]


@dataclass(frozen=True)
class Chain:
    """Immutable ordered sequence of steps forming a workflow definition."""

    id: str
    name: Optional[str] = None
    description: Optional[str] = None
    input_schema: Optional[Schema] = None
    result_schema: Optional[Schema] = None
    hooks: Optional[WorkflowHooks] = None
    steps: Tuple[Step, ...] = ()
    tail_schema: Optional[Schema] = field(default=None, compare=False, repr=False)

    def __len__(self) -> int:
        return len(self.steps)

    @property
    def step_ids(self) -> list[str]:
        return [step.step_id for step in self.steps]

    def step_at(self, index: int) -> Step:
        return self.steps[index]

    def resolve_leaf(self, frame: ResumeFrame) -> Step:
        """Follow ``frame`` through composite steps down to the suspended step."""
        chain: Chain = self
        current: Optional[ResumeFrame] = frame
        while True:
            if current.step_index >= len(chain.steps):
                raise BuildError(
                    f"Chain '{chain.id}' has no step at index {current.step_index}"
                )
            step = chain.steps[current.step_index]
            if step.step_id != current.step_id:
                raise BuildError(
                    f"Chain '{chain.id}' step {current.step_index} is '{step.step_id}', "
                    f"suspension expected '{current.step_id}'"
                )
            target = step.descend(current) if step.composite else None
            if target is None:
                return step
            chain, current = target

    # ------------------------------------------------------------------
    # Builder internals
    def _default_id(self, kind: StepKind, fn: Any = None) -> str:
        candidate = getattr(fn, "__name__", None)
        if not candidate or candidate == "<lambda>":
            candidate = f"{kind.value}-{len(self.steps)}"
        if candidate in self.step_ids:
            candidate = f"{candidate}-{len(self.steps)}"
        return candidate

    def _append(self, step: Step) -> "Chain":
        if step.step_id in self.step_ids:
            raise BuildError(
                f"Step id '{step.step_id}' is already used in chain '{self.id}'"
            )
        previous = self.tail_schema if self.steps else self.input_schema
        if not is_compatible(previous, step.input_schema):
            raise BuildError(
                f"Step '{step.step_id}' expects {step.input_schema!r} but the previous "
                f"step in chain '{self.id}' produces {previous!r}"
            )
        logger.debug(f"Chain {self.id}: appended {step.kind.value} step {step.step_id}")
        return replace(
            self,
            steps=self.steps + (step,),
            tail_schema=step.output_shape(previous),
        )

    # ------------------------------------------------------------------
    # Leaf steps
    def and_then(
        self,
        execute: StepFn,
        *,
        id: Optional[str] = None,
        name: Optional[str] = None,
        input_schema: Any = None,
        output_schema: Any = None,
        resume_schema: Any = None,
        suspend_schema: Any = None,
        retries: int = 0,
    ) -> "Chain":
        """Append a step whose return value becomes the new data."""
        if retries < 0:
            raise BuildError("retries must be zero or positive")
        return self._append(
            ThenStep(
                step_id=id or self._default_id(StepKind.THEN, execute),
                name=name,
                execute=execute,
                input_schema=as_schema(input_schema),
                output_schema=as_schema(output_schema),
                resume_schema=as_schema(resume_schema),
                suspend_schema=as_schema(suspend_schema),
                retries=retries,
            )
        )

    def and_tap(
        self,
        execute: StepFn,
        *,
        id: Optional[str] = None,
        name: Optional[str] = None,
        input_schema: Any = None,
        resume_schema: Any = None,
        suspend_schema: Any = None,
    ) -> "Chain":
        """Append a side effect; its return value is ignored."""
        return self._append(
            TapStep(
                step_id=id or self._default_id(StepKind.TAP, execute),
                name=name,
                execute=execute,
                input_schema=as_schema(input_schema),
                resume_schema=as_schema(resume_schema),
                suspend_schema=as_schema(suspend_schema),
            )
        )

    def and_agent(
        self,
        prompt: Union[str, Callable[[Any], Any]],
        delegate: "Delegate",
        output_schema: Any = None,
        mapper: Optional[Callable[[Any, Any], Any]] = None,
        *,
        id: Optional[str] = None,
        name: Optional[str] = None,
        result_schema: Any = None,
    ) -> "Chain":
        """Append a delegated computation.

        ``output_schema`` validates the delegate's output; ``result_schema``
        optionally declares the shape produced by ``mapper``.
        """
        return self._append(
            AgentStep(
                step_id=id or self._default_id(StepKind.AGENT, prompt),
                name=name,
                prompt=prompt,
                delegate=delegate,
                agent_schema=as_schema(output_schema),
                mapper=mapper,
                output_schema=as_schema(result_schema),
            )
        )

    def and_guardrail(
        self,
        *checks: "GuardrailCheck",
        id: Optional[str] = None,
        name: Optional[str] = None,
    ) -> "Chain":
        """Append guardrail checks that may allow, modify or block the data."""
        if not checks:
            raise BuildError("and_guardrail needs at least one check")
        return self._append(
            GuardrailStep(
                step_id=id or self._default_id(StepKind.GUARDRAIL, checks[0]),
                name=name,
                checks=tuple(checks),
            )
        )

    def and_sleep(
        self,
        duration: Union[float, timedelta, Callable[[Any], Any]],
        *,
        id: Optional[str] = None,
        name: Optional[str] = None,
    ) -> "Chain":
        """Suspend for ``duration`` (seconds or ``timedelta``)."""
        return self._append(
            SleepStep(
                step_id=id or self._default_id(StepKind.SLEEP),
                name=name,
                duration=duration,
            )
        )

    def and_sleep_until(
        self,
        until: Union[datetime, Callable[[Any], Any]],
        *,
        id: Optional[str] = None,
        name: Optional[str] = None,
    ) -> "Chain":
        """Suspend until the timestamp ``until`` is reached."""
        return self._append(
            SleepStep(
                step_id=id or self._default_id(StepKind.SLEEP),
                name=name,
                until=until,
            )
        )

    def and_map(
        self,
        mapping: Union[Callable[[Any], Any], Mapping[str, MapEntry]],
        *,
        id: Optional[str] = None,
        name: Optional[str] = None,
        output_schema: Any = None,
    ) -> "Chain":
        """Append a pure transform of the data, or compose a dict from map entries."""
        if callable(mapping):
            step = MapStep(
                step_id=id or self._default_id(StepKind.MAP, mapping),
                name=name,
                fn=mapping,
                output_schema=as_schema(output_schema),
            )
        else:
            entries = dict(mapping)
            bad = [key for key, entry in entries.items() if not isinstance(entry, MapEntry)]
            if bad:
                raise BuildError(f"and_map entries must be MapEntry values: {bad}")
            step = MapStep(
                step_id=id or self._default_id(StepKind.MAP),
                name=name,
                entries=entries,
                output_schema=as_schema(output_schema),
            )
        return self._append(step)

    # ------------------------------------------------------------------
    # Combinators
    def _sub_chain(self, sub: SubChain, label: str) -> "Chain":
        if isinstance(sub, Chain):
            return sub
        if callable(sub):
            return create_chain(id=f"{self.id}.{label}").and_then(sub)
        raise BuildError(f"Expected a Chain or a callable for {label}, got {type(sub).__name__}")

    def and_when(
        self,
        predicate: Predicate,
        then: SubChain,
        *,
        id: Optional[str] = None,
        name: Optional[str] = None,
    ) -> "Chain":
        """Run ``then`` in place when ``predicate(data)`` holds."""
        step_id = id or self._default_id(StepKind.WHEN)
        return self._append(
            WhenStep(
                step_id=step_id,
                name=name,
                predicate=predicate,
                chain=self._sub_chain(then, step_id),
            )
        )

    def and_branch(
        self,
        cases: Iterable[Tuple[Predicate, SubChain]],
        *,
        default: Optional[SubChain] = None,
        id: Optional[str] = None,
        name: Optional[str] = None,
    ) -> "Chain":
        """Run the chain of the first case whose predicate holds."""
        step_id = id or self._default_id(StepKind.BRANCH)
        normalized = tuple(
            (predicate, self._sub_chain(sub, f"{step_id}.case-{index}"))
            for index, (predicate, sub) in enumerate(cases)
        )
        if not normalized and default is None:
            raise BuildError("and_branch needs at least one case or a default")
        return self._append(
            BranchStep(
                step_id=step_id,
                name=name,
                cases=normalized,
                default=self._sub_chain(default, f"{step_id}.default") if default is not None else None,
            )
        )

    def _branches(self, chains: Sequence[SubChain], step_id: str) -> Tuple["Chain", ...]:
        if not chains:
            raise BuildError(f"Step '{step_id}' needs at least one branch")
        return tuple(
            self._sub_chain(sub, f"{step_id}.branch-{index}")
            for index, sub in enumerate(chains)
        )

    def and_all(
        self,
        chains: Sequence[SubChain],
        *,
        id: Optional[str] = None,
        name: Optional[str] = None,
    ) -> "Chain":
        """Run every branch concurrently and collect their results in order."""
        step_id = id or self._default_id(StepKind.ALL)
        return self._append(
            AllStep(step_id=step_id, name=name, chains=self._branches(chains, step_id))
        )

    def and_race(
        self,
        chains: Sequence[SubChain],
        *,
        id: Optional[str] = None,
        name: Optional[str] = None,
    ) -> "Chain":
        """Run branches concurrently and adopt the first one to settle."""
        step_id = id or self._default_id(StepKind.RACE)
        return self._append(
            RaceStep(step_id=step_id, name=name, chains=self._branches(chains, step_id))
        )

    def and_for_each(
        self,
        item_chain: SubChain,
        *,
        items: Optional[Callable[[Any], Any]] = None,
        map_item: Optional[Callable[[Any, int], Any]] = None,
        concurrency: int = 1,
        id: Optional[str] = None,
        name: Optional[str] = None,
    ) -> "Chain":
        """Run ``item_chain`` once per element, keeping input order."""
        if concurrency < 1:
            raise BuildError("concurrency must be at least 1")
        step_id = id or self._default_id(StepKind.FOR_EACH)
        return self._append(
            ForEachStep(
                step_id=step_id,
                name=name,
                chain=self._sub_chain(item_chain, f"{step_id}.item"),
                items=items,
                map_item=map_item,
                concurrency=concurrency,
            )
        )

    def _loop(
        self,
        mode: LoopMode,
        condition: Predicate,
        body: SubChain,
        id: Optional[str],
        name: Optional[str],
    ) -> "Chain":
        step_id = id or self._default_id(StepKind.LOOP)
        return self._append(
            LoopStep(
                step_id=step_id,
                name=name,
                condition=condition,
                body=self._sub_chain(body, f"{step_id}.body"),
                mode=mode,
            )
        )

    def and_loop(
        self,
        condition: Predicate,
        body: SubChain,
        *,
        id: Optional[str] = None,
        name: Optional[str] = None,
    ) -> "Chain":
        """Run ``body`` while ``condition(data)`` holds (checked before each pass)."""
        return self._loop("while", condition, body, id, name)

    def and_do_while(
        self,
        body: SubChain,
        condition: Predicate,
        *,
        id: Optional[str] = None,
        name: Optional[str] = None,
    ) -> "Chain":
        """Run ``body`` at least once, then again while ``condition(data)`` holds."""
        return self._loop("do_while", condition, body, id, name)

    def and_do_until(
        self,
        body: SubChain,
        condition: Predicate,
        *,
        id: Optional[str] = None,
        name: Optional[str] = None,
    ) -> "Chain":
        """Run ``body`` at least once, then again until ``condition(data)`` holds."""
        return self._loop("do_until", condition, body, id, name)


def create_chain(
    id: Optional[str] = None,
    *,
    name: Optional[str] = None,
    description: Optional[str] = None,
    input_schema: Any = None,
    result_schema: Any = None,
    hooks: Optional[WorkflowHooks] = None,
) -> Chain:
    """Start a new, empty chain."""
    return Chain(
        id=id or f"chain-{uuid.uuid4().hex[:8]}",
        name=name,
        description=description,
        input_schema=as_schema(input_schema),
        result_schema=as_schema(result_schema),
        hooks=hooks,
    )
