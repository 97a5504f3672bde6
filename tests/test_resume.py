"""Suspend/resume behaviour: the expense approval flow and resume guarantees."""

import asyncio
from datetime import timedelta
from typing import Optional

import pytest
from pydantic import BaseModel, ConfigDict, Field

from flowrelay import ChainRegistry, WorkflowRuntime, create_chain
from flowrelay.persistence import SQLiteSuspensionStore


class Expense(BaseModel):
    id: str
    amount: float
    submitted_by: str


class ManagerDecision(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    approved: bool
    manager_id: str = Field(alias="managerId")
    adjusted_amount: Optional[float] = Field(default=None, alias="adjustedAmount")


def check_approval(ctx):
    expense = ctx.data
    if ctx.is_resuming:
        decision = ctx.resume_data
        final = (
            decision.adjusted_amount
            if decision.adjusted_amount is not None
            else expense.amount
        )
        return {
            "status": "approved" if decision.approved else "rejected",
            "approvedBy": decision.manager_id,
            "finalAmount": final,
        }
    if expense.amount > 500:
        ctx.suspend("Manager approval required", {"amount": expense.amount})
    return {"status": "approved", "approvedBy": "system", "finalAmount": expense.amount}


def expense_chain():
    return create_chain(id="expense-approval", input_schema=Expense).and_then(
        check_approval,
        id="check-approval",
        input_schema=Expense,
        resume_schema=ManagerDecision,
    )


@pytest.mark.asyncio
async def test_expense_above_limit_suspends_and_resumes_with_manager_decision(runtime):
    started = await runtime.start(
        expense_chain(), {"id": "e1", "amount": 750, "submitted_by": "u1"}
    )

    assert started.status == "suspended"
    assert started.reason == "Manager approval required"
    assert started.suspend_data == {"amount": 750}
    assert (await runtime.status(started.execution_id)).status == "suspended"

    resumed = await runtime.resume(
        started.execution_id,
        {"approved": True, "managerId": "m1", "adjustedAmount": 650},
    )

    assert resumed.status == "completed"
    assert resumed.result == {"status": "approved", "approvedBy": "m1", "finalAmount": 650}
    assert (await runtime.status(started.execution_id)).status == "completed"


@pytest.mark.asyncio
async def test_expense_at_or_below_limit_is_auto_approved(runtime):
    result = await runtime.start(
        expense_chain(), {"id": "e2", "amount": 100, "submitted_by": "u1"}
    )

    assert result.status == "completed"
    assert result.result == {"status": "approved", "approvedBy": "system", "finalAmount": 100}


@pytest.mark.asyncio
async def test_resume_is_single_use(runtime):
    started = await runtime.start(
        expense_chain(), {"id": "e3", "amount": 900, "submitted_by": "u2"}
    )
    decision = {"approved": False, "managerId": "m2"}

    first = await runtime.resume(started.execution_id, decision)
    second = await runtime.resume(started.execution_id, decision)

    assert first.status == "completed"
    assert first.result["status"] == "rejected"
    assert second.status == "failed"
    assert second.error.kind == "resume_already_consumed"


@pytest.mark.asyncio
async def test_resume_unknown_execution(runtime):
    result = await runtime.resume("does-not-exist", {})
    assert result.status == "failed"
    assert result.error.kind == "resume_not_found"


@pytest.mark.asyncio
async def test_invalid_payload_keeps_suspension_resumable(runtime):
    started = await runtime.start(
        expense_chain(), {"id": "e4", "amount": 800, "submitted_by": "u3"}
    )

    rejected = await runtime.resume(started.execution_id, {"approved": "maybe"})

    assert rejected.status == "failed"
    assert rejected.error.kind == "resume_invalid_payload"
    assert rejected.error.violations
    record = await runtime.store.peek(started.execution_id)
    assert record is not None and not record.is_consumed

    accepted = await runtime.resume(
        started.execution_id, {"approved": True, "managerId": "m3"}
    )
    assert accepted.status == "completed"
    assert accepted.result["finalAmount"] == 800


@pytest.mark.asyncio
async def test_concurrent_resumes_have_a_single_winner(runtime):
    started = await runtime.start(
        expense_chain(), {"id": "e5", "amount": 1000, "submitted_by": "u4"}
    )
    decision = {"approved": True, "managerId": "m4"}

    results = await asyncio.gather(
        runtime.resume(started.execution_id, decision),
        runtime.resume(started.execution_id, decision),
    )

    statuses = sorted(result.status for result in results)
    assert statuses == ["completed", "failed"]
    loser = next(result for result in results if result.status == "failed")
    assert loser.error.kind == "resume_already_consumed"


@pytest.mark.asyncio
async def test_suspension_inside_when_resumes_nested_step(runtime):
    def review(ctx):
        if ctx.is_resuming:
            return {**ctx.data, "reviewed_by": ctx.resume_data}
        ctx.suspend("needs review")

    chain = (
        create_chain(id="nested")
        .and_then(lambda ctx: {"risky": True}, id="score")
        .and_when(lambda data: data["risky"], review, id="maybe-review")
        .and_then(lambda ctx: ctx.data, id="done")
    )
    started = await runtime.start(chain, None)
    record = await runtime.store.peek(started.execution_id)

    assert record.step_id == "maybe-review"
    assert record.suspended_step_id == "review"
    assert record.step_index == 1

    resumed = await runtime.resume(started.execution_id, "lead")
    assert resumed.result == {"risky": True, "reviewed_by": "lead"}
    assert resumed.step_ids == ["score", "review", "maybe-review", "done"]


def _round_trip_chain(pause):
    def gate(ctx):
        if pause and not ctx.is_resuming:
            ctx.suspend("pause")
        ctx.set_workflow_state(lambda state: {**state, "gate": "passed"})
        return ctx.data

    return (
        create_chain(id=f"round-trip-{pause}")
        .and_then(lambda ctx: ctx.data + [1], id="a")
        .and_tap(
            lambda ctx: ctx.set_workflow_state(lambda state: {**state, "seen": len(ctx.data)}),
            id="remember",
        )
        .and_then(gate, id="gate")
        .and_then(
            lambda ctx: ctx.data + [2, dict(ctx.workflow_state)], id="b"
        )
    )


@pytest.mark.asyncio
async def test_round_trip_through_sqlite_matches_uninterrupted_run(tmp_path):
    store = SQLiteSuspensionStore(tmp_path / "flow.db")
    runtime = WorkflowRuntime(store=store)

    uninterrupted = await runtime.start(_round_trip_chain(False), [])
    suspended = await runtime.start(_round_trip_chain(True), [])
    assert suspended.status == "suspended"

    # A fresh runtime over the same store stands in for another process.
    other = WorkflowRuntime(
        store=SQLiteSuspensionStore(tmp_path / "flow.db"),
        registry=ChainRegistry([_round_trip_chain(True)]),
    )
    resumed = await other.resume(suspended.execution_id)

    assert resumed.status == "completed"
    assert resumed.result == uninterrupted.result
    assert resumed.step_ids == uninterrupted.step_ids
    assert resumed.result[-1] == {"seen": 1, "gate": "passed"}


@pytest.mark.asyncio
async def test_expense_flow_survives_sqlite_serialization(tmp_path):
    store = SQLiteSuspensionStore(tmp_path / "expenses.db")
    runtime = WorkflowRuntime(store=store)

    started = await runtime.start(
        expense_chain(), {"id": "e6", "amount": 720, "submitted_by": "u5"}
    )
    resumed = await runtime.resume(
        started.execution_id, {"approved": True, "managerId": "m5"}
    )

    assert resumed.result == {"status": "approved", "approvedBy": "m5", "finalAmount": 720}


@pytest.mark.asyncio
async def test_resume_with_unregistered_chain_is_not_found(store):
    runtime = WorkflowRuntime(store=store)
    started = await runtime.start(expense_chain(), {"id": "e7", "amount": 999, "submitted_by": "u"})

    stranger = WorkflowRuntime(store=store)
    result = await stranger.resume(started.execution_id, {"approved": True, "managerId": "m"})

    assert result.error.kind == "resume_not_found"
    assert not (await store.peek(started.execution_id)).is_consumed


class Receipt(BaseModel):
    number: str
    total: float


def typed_gate(ctx):
    expense = ctx.data
    if expense.amount > 500 and not ctx.is_resuming:
        ctx.suspend("Manager approval required")
    return {"seen": type(expense).__name__, "amount": expense.amount}


@pytest.mark.asyncio
async def test_step_input_schema_yields_same_value_with_or_without_suspension(runtime):
    chain = create_chain(id="typed-step").and_then(
        typed_gate, id="gate", input_schema=Expense
    )

    direct = await runtime.start(chain, {"id": "e8", "amount": 100, "submitted_by": "u"})
    started = await runtime.start(chain, {"id": "e9", "amount": 900, "submitted_by": "u"})
    resumed = await runtime.resume(started.execution_id)

    assert direct.result == {"seen": "Expense", "amount": 100}
    assert started.status == "suspended"
    assert resumed.result == {"seen": "Expense", "amount": 900}


@pytest.mark.asyncio
async def test_chain_input_model_survives_sqlite_for_untyped_step(tmp_path):
    chain = create_chain(id="typed-chain", input_schema=Expense).and_then(
        typed_gate, id="gate"
    )
    runtime = WorkflowRuntime(store=SQLiteSuspensionStore(tmp_path / "typed.db"))
    started = await runtime.start(chain, {"id": "e10", "amount": 640, "submitted_by": "u"})
    assert started.status == "suspended"

    other = WorkflowRuntime(
        store=SQLiteSuspensionStore(tmp_path / "typed.db"),
        registry=ChainRegistry([chain]),
    )
    resumed = await other.resume(started.execution_id)

    assert resumed.status == "completed"
    assert resumed.result == {"seen": "Expense", "amount": 640}


@pytest.mark.asyncio
async def test_model_output_is_restored_after_sqlite_sleep(tmp_path):
    from flowrelay import SleepScheduler
    from flowrelay.contracts import utcnow

    chain = (
        create_chain(id="receipt")
        .and_then(lambda ctx: Receipt(number="r-1", total=12.5), id="issue")
        .and_sleep(60, id="cool-off")
        .and_then(
            lambda ctx: {
                "total": ctx.data.total,
                "issued": ctx.get_step_output("issue").number,
            },
            id="settle",
        )
    )
    runtime = WorkflowRuntime(store=SQLiteSuspensionStore(tmp_path / "receipts.db"))
    started = await runtime.start(chain, None)
    assert started.status == "suspended"

    other = WorkflowRuntime(
        store=SQLiteSuspensionStore(tmp_path / "receipts.db"),
        registry=ChainRegistry([chain]),
    )
    woken = await SleepScheduler(other).run_once(now=utcnow() + timedelta(seconds=61))

    assert [r.status for r in woken] == ["completed"]
    assert woken[0].result == {"total": 12.5, "issued": "r-1"}
    assert woken[0].history[0].output == Receipt(number="r-1", total=12.5)
