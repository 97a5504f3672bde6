"""Execution engine for flowrelay chains.

The engine walks a chain step by step against an :class:`ExecutionContext` and
returns a :class:`StepOutcome`. It never persists anything itself: a
``Suspend`` outcome carries the nested :class:`ResumeFrame` the runtime turns
into a durable record, and ``run`` accepts that frame back to continue from
the exact suspended step.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from .chain import Chain
from .config import EngineConfig
from .context import ExecutionContext
from .contracts import (
    BranchFrame,
    BranchOutcome,
    Cancel,
    Continue,
    Fail,
    ResumeFrame,
    StepKind,
    StepOutcome,
    Suspend,
    SuspensionPoint,
    utcnow,
)
from .errors import (
    CancellationError,
    DelegateError,
    NoBranchMatchedError,
    StepExecutionError,
    SuspendRequested,
    ValidationError,
)
from .guardrails import apply_guardrails
from .hooks import run_hook
from .schema import validate_with
from .steps import (
    DEFAULT_CASE,
    AgentStep,
    AllStep,
    BranchStep,
    ForEachStep,
    GuardrailStep,
    LoopStep,
    MapStep,
    RaceStep,
    SleepStep,
    Step,
    TapStep,
    ThenStep,
    WhenStep,
)
from .utils.calls import call
from .utils.retry import schedule_retry

logger = logging.getLogger(__name__)

Handler = Callable[[Any, int, ExecutionContext, Optional[ResumeFrame]], Awaitable[StepOutcome]]


def _snapshot(value: Any) -> Any:
    try:
        return copy.deepcopy(value)
    except (TypeError, copy.Error):
        return value


class ExecutionEngine:
    """Runs chains and applies each step kind's semantics."""

    def __init__(self, config: Optional[EngineConfig] = None) -> None:
        self.config = config or EngineConfig()
        self._orphans: set[asyncio.Task] = set()
        self._handlers: Dict[StepKind, Handler] = {
            StepKind.THEN: self._run_then,
            StepKind.TAP: self._run_tap,
            StepKind.MAP: self._run_map,
            StepKind.GUARDRAIL: self._run_guardrail,
            StepKind.AGENT: self._run_agent,
            StepKind.SLEEP: self._run_sleep,
            StepKind.WHEN: self._run_when,
            StepKind.BRANCH: self._run_branch,
            StepKind.ALL: self._run_all,
            StepKind.RACE: self._run_race,
            StepKind.FOR_EACH: self._run_for_each,
            StepKind.LOOP: self._run_loop,
        }

    # ------------------------------------------------------------------
    # Core loop
    async def run(
        self,
        chain: Chain,
        ctx: ExecutionContext,
        frame: Optional[ResumeFrame] = None,
    ) -> StepOutcome:
        """Execute ``chain`` from the start, or from ``frame`` when resuming."""
        index = frame.step_index if frame is not None else 0
        while index < len(chain.steps):
            step = chain.steps[index]
            step_frame = frame if frame is not None and frame.step_index == index else None
            frame = None

            if ctx.cancelled:
                logger.info(
                    f"Execution {ctx.execution_id} cancelled before step {step.step_id}"
                )
                return Cancel(ctx.cancel_signal.reason)

            outcome = await self.run_step(step, index, ctx, step_frame)
            if not isinstance(outcome, Continue):
                return outcome

            ctx.data = outcome.data
            ctx.record(step.step_id, outcome.data)
            index += 1
        return Continue(ctx.data)

    async def run_step(
        self,
        step: Step,
        index: int,
        ctx: ExecutionContext,
        frame: Optional[ResumeFrame] = None,
    ) -> StepOutcome:
        """Run one step and convert whatever it does into a ``StepOutcome``."""
        ctx.enter_step(step.step_id, resume_target=frame is not None and not step.composite)
        await ctx.publish("step-start", {"kind": step.kind.value, "index": index})
        await run_hook(ctx.hooks, "on_step_start", ctx, step.step_id)
        logger.debug(
            f"Running {step.kind.value} step {step.step_id} (index {index}) "
            f"execution_id={ctx.execution_id}"
        )

        # Declared shapes hand the step their validated value, whether it runs
        # for the first time or is re-entered from a frame.
        entry = frame.data if frame is not None else ctx.data
        try:
            ctx.data = validate_with(step.input_schema, entry)

            outcome = await self._handlers[step.kind](step, index, ctx, frame)

            if isinstance(outcome, Continue) and step.output_schema is not None:
                outcome = Continue(step.output_schema.validate(outcome.data))
        except SuspendRequested as request:
            outcome = self._suspend_leaf(step, index, entry, request)
        except CancellationError as exc:
            outcome = Cancel(exc.reason)
        except StepExecutionError as exc:
            outcome = Fail(exc)
        except Exception as exc:
            outcome = Fail(
                StepExecutionError(
                    step.step_id,
                    str(exc) or type(exc).__name__,
                    data_snapshot=_snapshot(entry),
                    cause=exc,
                )
            )

        await self._report(step, ctx, outcome)
        return outcome

    def _suspend_leaf(
        self, step: Step, index: int, entry: Any, request: SuspendRequested
    ) -> StepOutcome:
        suspend_data = request.suspend_data
        if step.suspend_schema is not None and suspend_data is not None:
            try:
                suspend_data = step.suspend_schema.validate(suspend_data)
            except ValidationError as exc:
                return Fail(
                    StepExecutionError(
                        step.step_id,
                        "Suspend data does not match the declared suspend schema",
                        data_snapshot=_snapshot(entry),
                        cause=exc,
                    )
                )
        frame = ResumeFrame(
            step_index=index,
            step_id=step.step_id,
            data=_snapshot(entry),
            wake_at=request.wake_at,
        )
        return Suspend(
            SuspensionPoint(
                reason=request.reason,
                step_id=step.step_id,
                frame=frame,
                suspend_data=suspend_data,
                wake_at=request.wake_at,
                has_resume_schema=step.resume_schema is not None,
            )
        )

    async def _report(self, step: Step, ctx: ExecutionContext, outcome: StepOutcome) -> None:
        if isinstance(outcome, Continue):
            await ctx.publish("step-complete", outcome.data)
            await run_hook(ctx.hooks, "on_step_end", ctx, step.step_id)
        elif isinstance(outcome, Suspend):
            logger.debug(f"Step {step.step_id} suspended: {outcome.point.reason}")
            await ctx.publish("step-suspended", {"reason": outcome.point.reason})
        elif isinstance(outcome, Fail):
            if outcome.error.step_id == step.step_id:
                logger.error(
                    f"Step {step.step_id} failed for execution_id={ctx.execution_id}: "
                    f"{outcome.error.message}"
                )
            await ctx.publish("step-failed", {"error": outcome.error.message})
        else:
            await ctx.publish("step-cancelled", {"reason": outcome.reason})

    @staticmethod
    def _nest(
        outcome: StepOutcome, step: Step, index: int, entry: Any, **extra: Any
    ) -> StepOutcome:
        if isinstance(outcome, Suspend):
            return outcome.nest(
                ResumeFrame(
                    step_index=index,
                    step_id=step.step_id,
                    data=_snapshot(entry),
                    child=outcome.point.frame,
                    **extra,
                )
            )
        return outcome

    # ------------------------------------------------------------------
    # Leaf steps
    async def _run_then(
        self, step: ThenStep, index: int, ctx: ExecutionContext, frame: Optional[ResumeFrame]
    ) -> StepOutcome:
        entry = ctx.data
        attempt = 0
        while True:
            try:
                return Continue(await call(step.execute, ctx))
            except (SuspendRequested, CancellationError):
                raise
            except Exception as exc:
                if attempt >= step.retries:
                    raise
                attempt += 1
                logger.warning(
                    f"Step {step.step_id} failed (attempt {attempt}/{step.retries}): "
                    f"{exc}; retrying"
                )
                await schedule_retry(
                    attempt,
                    base=self.config.retry_backoff_base,
                    jitter=self.config.retry_jitter,
                )
                ctx.raise_if_cancelled()
                ctx.data = entry
                ctx.retry_count = attempt

    async def _run_tap(
        self, step: TapStep, index: int, ctx: ExecutionContext, frame: Optional[ResumeFrame]
    ) -> StepOutcome:
        entry = ctx.data
        await call(step.execute, ctx)
        return Continue(entry)

    async def _run_map(
        self, step: MapStep, index: int, ctx: ExecutionContext, frame: Optional[ResumeFrame]
    ) -> StepOutcome:
        return Continue(await step.apply(ctx))

    async def _run_guardrail(
        self, step: GuardrailStep, index: int, ctx: ExecutionContext, frame: Optional[ResumeFrame]
    ) -> StepOutcome:
        return Continue(await apply_guardrails(step.checks, ctx))

    async def _run_agent(
        self, step: AgentStep, index: int, ctx: ExecutionContext, frame: Optional[ResumeFrame]
    ) -> StepOutcome:
        prompt = step.prompt if isinstance(step.prompt, str) else await call(step.prompt, ctx.data)
        ctx.raise_if_cancelled()
        try:
            output = await step.delegate.invoke(prompt, step.agent_schema)
        except CancellationError:
            raise
        except Exception as exc:
            raise DelegateError(f"Delegate call failed: {exc}") from exc
        ctx.raise_if_cancelled()

        output = validate_with(step.agent_schema, output)
        if step.mapper is not None:
            return Continue(await call(step.mapper, output, ctx))
        return Continue(output)

    async def _wake_time(self, step: SleepStep, data: Any) -> Optional[datetime]:
        if step.until is not None:
            target = await call(step.until, data) if callable(step.until) else step.until
            if not isinstance(target, datetime):
                raise TypeError(f"and_sleep_until expected a datetime, got {type(target).__name__}")
            if target.tzinfo is None:
                target = target.replace(tzinfo=timezone.utc)
            return target

        duration = await call(step.duration, data) if callable(step.duration) else step.duration
        if duration is None:
            return None
        if isinstance(duration, (int, float)):
            duration = timedelta(seconds=duration)
        if not isinstance(duration, timedelta):
            raise TypeError(f"and_sleep expected seconds or a timedelta, got {type(duration).__name__}")
        return utcnow() + duration

    async def _run_sleep(
        self, step: SleepStep, index: int, ctx: ExecutionContext, frame: Optional[ResumeFrame]
    ) -> StepOutcome:
        if frame is not None:
            if ctx.is_resuming:
                return Continue(ctx.data)
            wake_at = frame.wake_at
        else:
            wake_at = await self._wake_time(step, ctx.data)

        if wake_at is None or wake_at <= utcnow():
            return Continue(ctx.data)
        raise SuspendRequested(f"Sleeping until {wake_at.isoformat()}", wake_at=wake_at)

    # ------------------------------------------------------------------
    # Conditionals
    async def _run_when(
        self, step: WhenStep, index: int, ctx: ExecutionContext, frame: Optional[ResumeFrame]
    ) -> StepOutcome:
        entry = ctx.data
        if frame is None:
            if not await call(step.predicate, ctx.data):
                logger.debug(f"Step {step.step_id} skipped: condition not met")
                return Continue(ctx.data)
            child = None
        else:
            child = frame.child
        outcome = await self.run(step.chain, ctx, child)
        return self._nest(outcome, step, index, entry)

    async def _run_branch(
        self, step: BranchStep, index: int, ctx: ExecutionContext, frame: Optional[ResumeFrame]
    ) -> StepOutcome:
        entry = ctx.data
        if frame is None:
            case = None
            for position, (predicate, _) in enumerate(step.cases):
                if await call(predicate, ctx.data):
                    case = position
                    break
            if case is None:
                if step.default is None:
                    raise NoBranchMatchedError(
                        f"No case of branch '{step.step_id}' matched and no default is set"
                    )
                case = DEFAULT_CASE
            child = None
        else:
            case = frame.case if frame.case is not None else DEFAULT_CASE
            child = frame.child
        outcome = await self.run(step.case_chain(case), ctx, child)
        return self._nest(outcome, step, index, entry, case=case)

    # ------------------------------------------------------------------
    # Loops
    async def _run_loop(
        self, step: LoopStep, index: int, ctx: ExecutionContext, frame: Optional[ResumeFrame]
    ) -> StepOutcome:
        entry = ctx.data
        current = ctx.data
        iteration = frame.iteration if frame is not None else 0
        child = frame.child if frame is not None else None

        while True:
            if child is None:
                ctx.raise_if_cancelled()
                if step.mode == "while" and not await call(step.condition, current):
                    break
                ctx.data = current

            outcome = await self.run(step.body, ctx, child)
            child = None
            if isinstance(outcome, Suspend):
                return self._nest(outcome, step, index, entry, iteration=iteration)
            if not isinstance(outcome, Continue):
                return outcome

            current = outcome.data
            iteration += 1
            if step.mode != "while":
                ctx.raise_if_cancelled()
                holds = bool(await call(step.condition, current))
                if holds != (step.mode == "do_while"):
                    break

        logger.debug(f"Loop {step.step_id} finished after {iteration} iterations")
        return Continue(current)

    async def _run_for_each(
        self, step: ForEachStep, index: int, ctx: ExecutionContext, frame: Optional[ResumeFrame]
    ) -> StepOutcome:
        entry = ctx.data
        items = await call(step.items, entry) if step.items is not None else entry
        if not isinstance(items, (list, tuple)):
            raise TypeError(
                f"and_for_each expects a list or tuple, got {type(items).__name__}"
            )

        if step.concurrency > 1:
            inputs = [
                await call(step.map_item, item, position) if step.map_item else item
                for position, item in enumerate(items)
            ]
            return await self._run_parallel(
                step,
                index,
                ctx,
                entry,
                [step.chain] * len(items),
                inputs,
                frame,
                limit=step.concurrency,
            )

        results: List[Any] = list(frame.partial) if frame is not None else []
        start = frame.iteration if frame is not None else 0
        child = frame.child if frame is not None else None

        for position in range(start, len(items)):
            if child is None:
                ctx.raise_if_cancelled()
                item = items[position]
                ctx.data = await call(step.map_item, item, position) if step.map_item else item

            outcome = await self.run(step.chain, ctx, child)
            child = None
            if isinstance(outcome, Suspend):
                return self._nest(
                    outcome, step, index, entry, iteration=position, partial=list(results)
                )
            if not isinstance(outcome, Continue):
                return outcome
            results.append(outcome.data)

        return Continue(results)

    # ------------------------------------------------------------------
    # Parallel combinators
    async def _run_all(
        self, step: AllStep, index: int, ctx: ExecutionContext, frame: Optional[ResumeFrame]
    ) -> StepOutcome:
        entry = ctx.data
        return await self._run_parallel(
            step, index, ctx, entry, list(step.chains), [entry] * len(step.chains), frame
        )

    async def _run_parallel(
        self,
        step: Step,
        index: int,
        ctx: ExecutionContext,
        entry: Any,
        chains: Sequence[Chain],
        inputs: Sequence[Any],
        frame: Optional[ResumeFrame],
        limit: Optional[int] = None,
    ) -> StepOutcome:
        cached: Dict[int, BranchFrame] = (
            {branch.index: branch for branch in frame.branches} if frame is not None else {}
        )
        resume_branch = frame.resume_branch if frame is not None else None
        semaphore = asyncio.Semaphore(limit) if limit else None
        settle_order: List[int] = []

        async def run_branch(position: int, branch_ctx: ExecutionContext) -> BranchOutcome:
            previous = cached.get(position)
            prior_history = previous.history if previous is not None else []
            if position == resume_branch:
                ctx.hand_over_resume(branch_ctx)
            base = len(branch_ctx.history)
            branch_frame = previous.frame if previous is not None else None
            if semaphore is not None:
                async with semaphore:
                    outcome = await self.run(chains[position], branch_ctx, branch_frame)
            else:
                outcome = await self.run(chains[position], branch_ctx, branch_frame)
            settle_order.append(position)
            return BranchOutcome(
                position, outcome, list(prior_history) + branch_ctx.history[base:]
            )

        outcomes: Dict[int, BranchOutcome] = {}
        for position, branch in cached.items():
            if branch.status == "completed":
                outcomes[position] = BranchOutcome(
                    position, Continue(branch.result), list(branch.history)
                )
        pending = [position for position in range(len(chains)) if position not in outcomes]
        # Branch contexts are forked before any branch starts.
        branch_ctxs = {
            position: ctx.fork(
                inputs[position],
                history=cached[position].history if position in cached else [],
            )
            for position in pending
        }
        for result in await asyncio.gather(
            *(run_branch(position, branch_ctxs[position]) for position in pending)
        ):
            outcomes[result.index] = result

        ordered = [outcomes[position] for position in range(len(chains))]
        return self._join(step, index, ctx, entry, ordered, settle_order)

    def _join(
        self,
        step: Step,
        index: int,
        ctx: ExecutionContext,
        entry: Any,
        ordered: List[BranchOutcome],
        settle_order: List[int],
    ) -> StepOutcome:
        failures = [
            ordered[position]
            for position in settle_order
            if isinstance(ordered[position].outcome, Fail)
        ]
        if failures:
            error = failures[0].outcome.error
            error.diagnostics = [self._diagnose(branch) for branch in ordered]
            logger.error(
                f"Step {step.step_id}: {len(failures)} of {len(ordered)} branches failed; "
                f"first failure in branch {failures[0].index}"
            )
            return Fail(error)

        cancelled = [b for b in ordered if isinstance(b.outcome, Cancel)]
        if cancelled:
            return Cancel(cancelled[0].outcome.reason)

        suspended = [b for b in ordered if isinstance(b.outcome, Suspend)]
        if suspended:
            branches = [
                BranchFrame(
                    index=b.index,
                    status="suspended",
                    frame=b.outcome.point.frame,
                    history=b.history,
                )
                if isinstance(b.outcome, Suspend)
                else BranchFrame(
                    index=b.index,
                    status="completed",
                    result=b.outcome.data,
                    history=b.history,
                )
                for b in ordered
            ]
            primary = suspended[0]
            frame = ResumeFrame(
                step_index=index,
                step_id=step.step_id,
                data=_snapshot(entry),
                branches=branches,
                resume_branch=primary.index,
            )
            logger.info(
                f"Step {step.step_id}: {len(suspended)} branch(es) suspended, "
                f"resume targets branch {primary.index}"
            )
            return Suspend(replace(primary.outcome.point, frame=frame))

        for branch in ordered:
            ctx.history.extend(branch.history)
        return Continue([branch.outcome.data for branch in ordered])

    @staticmethod
    def _diagnose(branch: BranchOutcome) -> Dict[str, Any]:
        outcome = branch.outcome
        if isinstance(outcome, Continue):
            return {"branch": branch.index, "status": "completed"}
        if isinstance(outcome, Suspend):
            return {
                "branch": branch.index,
                "status": "suspended",
                "step_id": outcome.point.step_id,
                "reason": outcome.point.reason,
            }
        if isinstance(outcome, Fail):
            return {
                "branch": branch.index,
                "status": "failed",
                "step_id": outcome.error.step_id,
                "error": outcome.error.message,
            }
        return {"branch": branch.index, "status": "cancelled", "reason": outcome.reason}

    async def _run_race(
        self, step: RaceStep, index: int, ctx: ExecutionContext, frame: Optional[ResumeFrame]
    ) -> StepOutcome:
        entry = ctx.data

        if frame is not None and frame.branches:
            suspended = frame.branches[0]
            branch_ctx = ctx.fork(entry, history=suspended.history)
            ctx.hand_over_resume(branch_ctx)
            base = len(branch_ctx.history)
            outcome = await self.run(step.chains[suspended.index], branch_ctx, suspended.frame)
            history = list(suspended.history) + branch_ctx.history[base:]
            return self._settle_race(step, index, ctx, entry, suspended.index, outcome, history)

        branch_ctxs = [ctx.fork(entry, isolated_cancel=True) for _ in step.chains]
        base = len(ctx.history)
        tasks = [
            asyncio.create_task(self.run(chain, branch_ctx))
            for chain, branch_ctx in zip(step.chains, branch_ctxs)
        ]
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            raise

        winner = min(tasks.index(task) for task in done)
        for position, (task, branch_ctx) in enumerate(zip(tasks, branch_ctxs)):
            if position == winner:
                continue
            branch_ctx.detach()
            branch_ctx.cancel_signal.cancel(f"Race '{step.step_id}' settled")
            if not task.done():
                self._orphan(task)

        logger.debug(f"Race {step.step_id} won by branch {winner}")
        outcome = tasks[winner].result()
        history = branch_ctxs[winner].history[base:]
        return self._settle_race(step, index, ctx, entry, winner, outcome, history)

    def _settle_race(
        self,
        step: RaceStep,
        index: int,
        ctx: ExecutionContext,
        entry: Any,
        winner: int,
        outcome: StepOutcome,
        history: list,
    ) -> StepOutcome:
        if isinstance(outcome, Continue):
            ctx.history.extend(history)
            return outcome
        if isinstance(outcome, Suspend):
            frame = ResumeFrame(
                step_index=index,
                step_id=step.step_id,
                data=_snapshot(entry),
                branches=[
                    BranchFrame(
                        index=winner,
                        status="suspended",
                        frame=outcome.point.frame,
                        history=history,
                    )
                ],
                resume_branch=winner,
            )
            return Suspend(replace(outcome.point, frame=frame))
        return outcome

    def _orphan(self, task: asyncio.Task) -> None:
        self._orphans.add(task)
        task.add_done_callback(self._reap)

    def _reap(self, task: asyncio.Task) -> None:
        self._orphans.discard(task)
        if task.cancelled():
            return
        if task.exception() is not None:
            logger.warning(f"Discarded race branch raised: {task.exception()!r}")
        else:
            logger.debug("Discarded outcome of a race branch that lost")
