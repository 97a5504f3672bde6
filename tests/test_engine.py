"""End-to-end tests of step semantics through the runtime."""

import asyncio
import threading

import pytest
from pydantic import BaseModel

from flowrelay import (
    CallableDelegate,
    GuardrailDecision,
    WorkflowHooks,
    create_chain,
    from_fn,
    from_input,
    from_state,
    from_step,
    from_value,
)


def _pipeline():
    return (
        create_chain(id="pipeline")
        .and_then(lambda ctx: ctx.data + 1, id="inc")
        .and_map(lambda value: value * 10, id="scale")
        .and_tap(lambda ctx: None, id="noop")
        .and_then(lambda ctx: {"value": ctx.data}, id="wrap")
    )


@pytest.mark.asyncio
async def test_sequential_chain_is_deterministic(runtime):
    first = await runtime.start(_pipeline(), 2)
    second = await runtime.start(_pipeline(), 2)

    assert first.status == "completed"
    assert first.result == {"value": 30}
    assert first.step_ids == ["inc", "scale", "noop", "wrap"]
    assert first.result == second.result
    assert first.history == second.history


@pytest.mark.asyncio
async def test_step_output_is_readable_from_later_steps(runtime):
    chain = (
        create_chain(id="lookup")
        .and_then(lambda ctx: {"user": "ada"}, id="load-user")
        .and_then(lambda ctx: "orders", id="load-orders")
        .and_then(lambda ctx: ctx.get_step_output("load-user")["user"], id="pick")
    )
    result = await runtime.start(chain, None)
    assert result.result == "ada"


@pytest.mark.asyncio
async def test_failure_names_step_and_keeps_data_snapshot(runtime):
    def explode(ctx):
        raise RuntimeError("disk full")

    chain = (
        create_chain(id="explode")
        .and_then(lambda ctx: {"n": 1}, id="prepare")
        .and_then(explode, id="write")
        .and_then(lambda ctx: "never", id="after")
    )
    result = await runtime.start(chain, None)

    assert result.status == "failed"
    assert result.error.kind == "step_failed"
    assert result.error.step_id == "write"
    assert result.error.data_snapshot == {"n": 1}
    assert "disk full" in result.error.message
    assert result.step_ids == ["prepare"]


@pytest.mark.asyncio
async def test_input_schema_violation_fails_without_running(runtime):
    class Payment(BaseModel):
        amount: float

    calls = []
    chain = create_chain(id="payments", input_schema=Payment).and_then(
        lambda ctx: calls.append(ctx.data), id="charge"
    )
    result = await runtime.start(chain, {"amount": "lots"})

    assert result.status == "failed"
    assert result.error.kind == "validation_error"
    assert result.error.violations[0].path == ["amount"]
    assert calls == []


@pytest.mark.asyncio
async def test_output_schema_violation_fails_step(runtime):
    chain = create_chain(id="counts").and_then(
        lambda ctx: "three", id="count", output_schema=int
    )
    result = await runtime.start(chain, None)

    assert result.status == "failed"
    assert result.error.kind == "validation_error"
    assert result.error.step_id == "count"


@pytest.mark.asyncio
async def test_output_schema_value_is_threaded_to_next_step(runtime):
    class Count(BaseModel):
        value: int

    chain = (
        create_chain(id="typed-count")
        .and_then(lambda ctx: {"value": "3"}, id="count", output_schema=Count)
        .and_then(lambda ctx: ctx.data.value + 1, id="next")
    )
    result = await runtime.start(chain, None)

    assert result.status == "completed"
    assert result.result == 4
    assert result.history[0].output == Count(value=3)


# ----------------------------------------------------------------------
# Conditionals


@pytest.mark.asyncio
async def test_when_runs_sub_chain_only_if_predicate_holds(runtime):
    chain = create_chain(id="discount").and_when(
        lambda data: data["total"] > 100,
        lambda ctx: {**ctx.data, "discount": 10},
        id="apply-discount",
    )

    big = await runtime.start(chain, {"total": 150})
    small = await runtime.start(chain, {"total": 50})

    assert big.result == {"total": 150, "discount": 10}
    assert small.result == {"total": 50}


@pytest.mark.asyncio
async def test_branch_picks_first_matching_case(runtime):
    chain = create_chain(id="triage").and_branch(
        [
            (lambda data: data["severity"] == "high", lambda ctx: "page-oncall"),
            (lambda data: data["severity"] in ("high", "low"), lambda ctx: "ticket"),
        ],
        default=lambda ctx: "ignore",
        id="route",
    )

    assert (await runtime.start(chain, {"severity": "high"})).result == "page-oncall"
    assert (await runtime.start(chain, {"severity": "low"})).result == "ticket"
    assert (await runtime.start(chain, {"severity": "info"})).result == "ignore"


@pytest.mark.asyncio
async def test_branch_without_match_or_default_fails(runtime):
    chain = create_chain(id="strict-triage").and_branch(
        [(lambda data: data == "high", lambda ctx: "page")], id="route"
    )
    result = await runtime.start(chain, "medium")

    assert result.status == "failed"
    assert result.error.kind == "no_branch_matched"
    assert result.error.step_id == "route"


# ----------------------------------------------------------------------
# Parallel combinators


@pytest.mark.asyncio
async def test_all_keeps_declaration_order_and_copies_data(runtime):
    async def slow(ctx):
        await asyncio.sleep(0.03)
        ctx.data["tag"] = "slow"
        return ctx.data

    def fast(ctx):
        ctx.data["tag"] = "fast"
        return ctx.data

    payload = {"n": 1}
    chain = create_chain(id="fan-out").and_all([slow, fast], id="both")
    result = await runtime.start(chain, payload)

    assert result.result == [{"n": 1, "tag": "slow"}, {"n": 1, "tag": "fast"}]
    assert payload == {"n": 1}
    assert result.step_ids == ["slow", "fast", "both"]


@pytest.mark.asyncio
async def test_all_branches_share_workflow_state(runtime):
    def count(ctx):
        ctx.set_workflow_state(lambda state: {**state, "hits": state.get("hits", 0) + 1})
        return ctx.data

    chain = (
        create_chain(id="counting")
        .and_all([count, count, count], id="fan")
        .and_then(lambda ctx: ctx.workflow_state["hits"], id="read")
    )
    result = await runtime.start(chain, None)
    assert result.result == 3


@pytest.mark.asyncio
async def test_all_failure_reports_every_branch(runtime):
    def boom(ctx):
        raise RuntimeError("kaput")

    chain = create_chain(id="mixed").and_all([lambda ctx: 1, boom], id="mixed-step")
    result = await runtime.start(chain, None)

    assert result.status == "failed"
    assert result.error.step_id == "boom"
    statuses = [d["status"] for d in result.error.diagnostics]
    assert statuses == ["completed", "failed"]


@pytest.mark.asyncio
async def test_all_failure_wins_over_suspension(runtime):
    def wait(ctx):
        ctx.suspend("waiting")

    def boom(ctx):
        raise ValueError("bad")

    chain = create_chain(id="fail-first").and_all([wait, boom], id="pair")
    result = await runtime.start(chain, None)

    assert result.status == "failed"
    assert [d["status"] for d in result.error.diagnostics] == ["suspended", "failed"]
    assert await runtime.store.peek(result.execution_id) is None


@pytest.mark.asyncio
async def test_all_suspended_branch_resumes_and_keeps_completed_results(runtime):
    completed_runs = []

    def auto(ctx):
        completed_runs.append(ctx.data)
        return "auto"

    def needs_approval(ctx):
        if ctx.is_resuming:
            return {"approved": ctx.resume_data["ok"]}
        ctx.suspend("waiting for reviewer", {"ask": "approve?"})

    chain = (
        create_chain(id="review")
        .and_all([auto, needs_approval], id="checks")
        .and_then(lambda ctx: ctx.data, id="collect")
    )
    started = await runtime.start(chain, {"doc": 1})

    assert started.status == "suspended"
    assert started.reason == "waiting for reviewer"
    assert started.suspend_data == {"ask": "approve?"}

    resumed = await runtime.resume(started.execution_id, {"ok": True})

    assert resumed.status == "completed"
    assert resumed.result == ["auto", {"approved": True}]
    assert len(completed_runs) == 1
    assert resumed.step_ids == ["auto", "needs_approval", "checks", "collect"]


@pytest.mark.asyncio
async def test_all_with_two_suspended_branches_resumes_each_in_turn(runtime):
    def asker(label):
        def ask(ctx):
            if ctx.is_resuming:
                return f"{label}:{ctx.resume_data}"
            ctx.suspend(f"{label} waits")

        ask.__name__ = f"ask_{label}"
        return ask

    chain = create_chain(id="two-asks").and_all([asker("a"), asker("b")], id="asks")
    started = await runtime.start(chain, None)
    assert started.status == "suspended"
    assert started.reason == "a waits"

    second = await runtime.resume(started.execution_id, "x")
    assert second.status == "suspended"
    assert second.reason == "b waits"

    done = await runtime.resume(started.execution_id, "y")
    assert done.status == "completed"
    assert done.result == ["a:x", "b:y"]


@pytest.mark.asyncio
async def test_all_rejects_branch_data_that_cannot_be_copied(runtime):
    chain = (
        create_chain(id="locked")
        .and_then(lambda ctx: {"lock": threading.Lock()}, id="open")
        .and_all([lambda ctx: 1, lambda ctx: 2], id="fan")
    )
    result = await runtime.start(chain, None)

    assert result.status == "failed"
    assert result.error.step_id == "fan"
    assert "deep-copyable" in result.error.message


@pytest.mark.asyncio
async def test_race_adopts_fastest_branch_and_discards_losers(runtime):
    def branch(label, delay):
        async def run(ctx):
            await asyncio.sleep(delay)
            ctx.set_workflow_state(lambda state: {**state, label: True})
            return label

        run.__name__ = f"branch_{label}"
        return run

    captured = {}
    chain = (
        create_chain(id="race")
        .and_race(
            [branch("A", 0.01), branch("B", 0.05), branch("C", 0.1)], id="first"
        )
        .and_tap(lambda ctx: captured.setdefault("ctx", ctx), id="capture")
    )
    result = await runtime.start(chain, None)

    assert result.status == "completed"
    assert result.result == "A"
    assert result.step_ids == ["branch_A", "first", "capture"]

    # Let the losing branches finish; their writes must not land.
    await asyncio.sleep(0.15)
    assert dict(captured["ctx"].workflow_state) == {"A": True}
    assert not runtime.engine._orphans


@pytest.mark.asyncio
async def test_race_suspension_resumes_winning_branch(runtime):
    async def slow(ctx):
        await asyncio.sleep(0.05)
        return "slow"

    def ask(ctx):
        if ctx.is_resuming:
            return ctx.resume_data
        ctx.suspend("ask a human")

    chain = create_chain(id="race-suspend").and_race([slow, ask], id="either")
    started = await runtime.start(chain, None)
    assert started.status == "suspended"

    resumed = await runtime.resume(started.execution_id, "human answer")
    assert resumed.status == "completed"
    assert resumed.result == "human answer"
    await asyncio.sleep(0.06)


# ----------------------------------------------------------------------
# Iteration


@pytest.mark.asyncio
@pytest.mark.parametrize("concurrency", [1, 3])
async def test_for_each_preserves_order(runtime, concurrency):
    async def double(ctx):
        await asyncio.sleep(0.005 * (5 - ctx.data))
        return ctx.data * 2

    chain = create_chain(id=f"each-{concurrency}").and_for_each(
        double, concurrency=concurrency, id="each"
    )
    result = await runtime.start(chain, [1, 2, 3, 4])

    assert result.status == "completed"
    assert result.result == [2, 4, 6, 8]


@pytest.mark.asyncio
async def test_for_each_items_and_map_item_options(runtime):
    chain = create_chain(id="each-options").and_for_each(
        lambda ctx: f"{ctx.data[0]}:{ctx.data[1]}",
        items=lambda data: data["names"],
        map_item=lambda item, index: (index, item),
        id="label",
    )
    result = await runtime.start(chain, {"names": ["a", "b"]})
    assert result.result == ["0:a", "1:b"]


@pytest.mark.asyncio
async def test_for_each_rejects_non_sequence(runtime):
    chain = create_chain(id="each-bad").and_for_each(lambda ctx: ctx.data, id="each")
    result = await runtime.start(chain, "abc")

    assert result.status == "failed"
    assert result.error.step_id == "each"


@pytest.mark.asyncio
async def test_for_each_suspends_mid_list_and_resumes(runtime):
    def review_item(ctx):
        if ctx.is_resuming:
            return ctx.data * ctx.resume_data["factor"]
        if ctx.data == 2:
            ctx.suspend("item 2 needs review")
        return ctx.data

    chain = create_chain(id="each-suspend").and_for_each(review_item, id="items")
    started = await runtime.start(chain, [1, 2, 3])
    assert started.status == "suspended"

    resumed = await runtime.resume(started.execution_id, {"factor": 10})
    assert resumed.result == [1, 20, 3]


@pytest.mark.asyncio
async def test_concurrent_for_each_suspends_one_item_and_resumes(runtime):
    seen = []

    async def review_item(ctx):
        if ctx.is_resuming:
            return ctx.data * ctx.resume_data["factor"]
        seen.append(ctx.data)
        await asyncio.sleep(0.001 * ctx.data)
        if ctx.data == 2:
            ctx.suspend("item 2 needs review")
        return ctx.data

    chain = create_chain(id="each-parallel-suspend").and_for_each(
        review_item, concurrency=3, id="items"
    )
    started = await runtime.start(chain, [1, 2, 3])
    assert started.status == "suspended"
    assert started.reason == "item 2 needs review"

    resumed = await runtime.resume(started.execution_id, {"factor": 10})
    assert resumed.status == "completed"
    assert resumed.result == [1, 20, 3]
    assert sorted(seen) == [1, 2, 3]


@pytest.mark.asyncio
async def test_loop_variants(runtime):
    grow = create_chain(id="grow").and_loop(
        lambda data: data < 5, lambda ctx: ctx.data + 2, id="grow-loop"
    )
    until = create_chain(id="until").and_do_until(
        lambda ctx: ctx.data + 1, lambda data: data >= 3, id="until-loop"
    )
    do_while = create_chain(id="do-while").and_do_while(
        lambda ctx: ctx.data + 1, lambda data: data < 3, id="while-loop"
    )

    assert (await runtime.start(grow, 0)).result == 6
    assert (await runtime.start(grow, 9)).result == 9
    assert (await runtime.start(until, 10)).result == 11
    assert (await runtime.start(do_while, 0)).result == 3


@pytest.mark.asyncio
async def test_loop_suspends_inside_body_and_resumes(runtime):
    def step(ctx):
        if ctx.data == 2 and not ctx.is_resuming:
            ctx.suspend("checkpoint")
        return ctx.data + 1

    chain = create_chain(id="loop-suspend").and_loop(lambda data: data < 4, step, id="loop")
    started = await runtime.start(chain, 0)
    assert started.status == "suspended"

    resumed = await runtime.resume(started.execution_id)
    assert resumed.status == "completed"
    assert resumed.result == 4


# ----------------------------------------------------------------------
# Guardrails, map and agents


@pytest.mark.asyncio
async def test_guardrails_modify_and_block(runtime):
    def redact(ctx):
        return GuardrailDecision.modify(ctx.data.replace("bad", "***"))

    def no_secrets(ctx):
        if "password" in ctx.data:
            return GuardrailDecision.block("secret detected")
        return True

    chain = (
        create_chain(id="safety")
        .and_guardrail(redact, no_secrets, id="safety-check")
        .and_then(lambda ctx: ctx.data.upper(), id="shout")
    )

    ok = await runtime.start(chain, "a bad word")
    blocked = await runtime.start(chain, "my password")

    assert ok.result == "A *** WORD"
    assert blocked.status == "failed"
    assert blocked.error.kind == "guardrail_blocked"
    assert blocked.error.step_id == "safety-check"


@pytest.mark.asyncio
async def test_map_entries_compose_new_data(runtime):
    chain = (
        create_chain(id="compose")
        .and_then(lambda ctx: {"user": {"name": "ada"}}, id="load")
        .and_tap(
            lambda ctx: ctx.set_workflow_state(lambda state: {**state, "region": "eu"}),
            id="remember",
        )
        .and_map(
            {
                "name": from_step("load", "user.name"),
                "region": from_state("region"),
                "source": from_value("api"),
                "raw": from_input(),
                "size": from_fn(lambda ctx: len(ctx.data)),
            },
            id="shape",
        )
    )
    result = await runtime.start(chain, {"q": 1})

    assert result.result == {
        "name": "ada",
        "region": "eu",
        "source": "api",
        "raw": {"q": 1},
        "size": 1,
    }


class Summary(BaseModel):
    title: str
    words: int


@pytest.mark.asyncio
async def test_agent_output_is_validated_and_mapped(runtime):
    prompts = []

    def fake_model(prompt):
        prompts.append(prompt)
        return {"title": prompt.upper(), "words": 2}

    chain = create_chain(id="summarize").and_agent(
        lambda data: f"summarize {data['topic']}",
        CallableDelegate(fake_model),
        Summary,
        mapper=lambda output, ctx: output.title,
        id="summarize-topic",
    )
    result = await runtime.start(chain, {"topic": "rivers"})

    assert result.result == "SUMMARIZE RIVERS"
    assert prompts == ["summarize rivers"]


@pytest.mark.asyncio
async def test_agent_invalid_output_and_delegate_errors(runtime):
    def broken(prompt):
        raise ConnectionError("model offline")

    invalid = create_chain(id="invalid").and_agent(
        "summarize", CallableDelegate(lambda prompt: {"title": "x"}), Summary, id="ask"
    )
    offline = create_chain(id="offline").and_agent(
        "summarize", CallableDelegate(broken), Summary, id="ask"
    )

    invalid_result = await runtime.start(invalid, None)
    offline_result = await runtime.start(offline, None)

    assert invalid_result.error.kind == "validation_error"
    assert invalid_result.error.violations[0].path == ["words"]
    assert offline_result.error.kind == "delegate_failed"
    assert offline_result.error.step_id == "ask"


# ----------------------------------------------------------------------
# Retries, cancellation, events and hooks


@pytest.mark.asyncio
async def test_retries_expose_attempt_and_eventually_succeed(runtime):
    attempts = []

    def flaky(ctx):
        attempts.append(ctx.retry_count)
        if len(attempts) < 3:
            raise ConnectionError("flaky")
        return "ok"

    chain = create_chain(id="retry").and_then(flaky, id="flaky", retries=2)
    result = await runtime.start(chain, None)

    assert result.result == "ok"
    assert attempts == [0, 1, 2]


@pytest.mark.asyncio
async def test_retries_exhausted_fails(runtime):
    def always(ctx):
        raise ConnectionError("down")

    chain = create_chain(id="retry-fail").and_then(always, id="always", retries=1)
    result = await runtime.start(chain, None)
    assert result.status == "failed"
    assert "down" in result.error.message


@pytest.mark.asyncio
async def test_cancel_stops_before_next_step(runtime):
    async def slow(ctx):
        await asyncio.sleep(0.05)
        return ctx.data

    chain = (
        create_chain(id="cancellable")
        .and_then(slow, id="first")
        .and_then(lambda ctx: "never", id="second")
    )
    task = asyncio.create_task(runtime.start(chain, 1, execution_id="exec-cancel"))
    await asyncio.sleep(0.01)

    assert runtime.cancel("exec-cancel", "user abort")
    result = await task

    assert result.status == "cancelled"
    assert result.reason == "user abort"
    assert result.step_ids == ["first"]
    assert (await runtime.status("exec-cancel")).status == "cancelled"
    assert not runtime.cancel("exec-cancel")


@pytest.mark.asyncio
async def test_events_and_progress_are_published(runtime):
    events = []

    async def report(ctx):
        await ctx.emit({"pct": 50})
        return ctx.data

    chain = create_chain(id="events").and_then(report, id="report")
    await runtime.start(chain, 1, on_event=events.append)

    types = [event.type for event in events]
    assert types[0] == "workflow-start"
    assert types[-1] == "workflow-completed"
    assert "step-start" in types
    assert "step-complete" in types
    progress = next(event for event in events if event.type == "progress")
    assert progress.step_id == "report"
    assert progress.payload == {"pct": 50}


@pytest.mark.asyncio
async def test_hooks_fire_and_hook_errors_are_ignored(runtime):
    calls = []

    def broken_hook(ctx, step_id):
        raise RuntimeError("hook bug")

    hooks = WorkflowHooks(
        on_start=lambda ctx: calls.append("start"),
        on_step_start=broken_hook,
        on_step_end=lambda ctx, step_id: calls.append(f"end:{step_id}"),
        on_finish=lambda result: calls.append(f"finish:{result.result}"),
        on_end=lambda result: calls.append("end"),
    )
    chain = create_chain(id="hooked", hooks=hooks).and_then(lambda ctx: 7, id="seven")
    result = await runtime.start(chain, None)

    assert result.status == "completed"
    assert calls == ["start", "end:seven", "finish:7", "end"]


@pytest.mark.asyncio
async def test_suspend_data_is_checked_against_suspend_schema(runtime):
    class Question(BaseModel):
        text: str

    def ask(ctx):
        ctx.suspend("needs input", {"txt": "typo"})

    chain = create_chain(id="suspend-schema").and_then(
        ask, id="ask", suspend_schema=Question
    )
    result = await runtime.start(chain, None)

    assert result.status == "failed"
    assert result.error.kind == "validation_error"
    assert result.error.step_id == "ask"
