"""Full approval flow persisted in SQLite."""

import asyncio
from datetime import timedelta

import pytest

from signoff.config import SignoffConfig
from signoff.contracts import ApprovalStatus, EventType, StepState, WorkflowState, utcnow
from signoff.orchestrator import Orchestrator
from signoff.persistence import SQLStateRepository
from signoff.queues import InMemoryJobQueue


@pytest.mark.asyncio
async def test_approval_flow_survives_restart(tmp_path, expense_steps):
    url = f"sqlite:///{tmp_path / 'signoff.db'}"
    queue = InMemoryJobQueue()
    orchestrator = Orchestrator(SQLStateRepository(url), queue, config=SignoffConfig())

    await orchestrator.create_definition("expense_approval", expense_steps)
    workflow = await orchestrator.create_workflow(
        "expense_approval", {"amount": 500, "description": "Team lunch"}
    )
    assert workflow.state == WorkflowState.WAITING_APPROVAL
    approval = (await orchestrator.get_workflow_details(workflow.id)).approvals[0]
    await orchestrator.submit_approval_decision(approval.token, "approved", "ok", "ana")
    await orchestrator.close()

    # a fresh process picks up the queued decision from the same database
    restarted = Orchestrator(SQLStateRepository(url), queue, config=SignoffConfig())
    await restarted.process_pending()

    details = await restarted.get_workflow_details(workflow.id)
    assert details.workflow.state == WorkflowState.DONE
    assert all(s.state == StepState.DONE for s in details.workflow.steps)
    assert details.approvals[0].status == ApprovalStatus.APPROVED
    assert details.approvals[0].decided_by == "ana"
    await restarted.close()


@pytest.mark.asyncio
async def test_replay_and_expiry_in_sqlite(tmp_path, expense_steps):
    repo = SQLStateRepository(f"sqlite:///{tmp_path / 'signoff.db'}")
    orchestrator = Orchestrator(repo, InMemoryJobQueue(), config=SignoffConfig())

    await orchestrator.create_definition("expense_approval", expense_steps)
    workflow = await orchestrator.create_workflow(
        "expense_approval", {"amount": 500, "description": "Team lunch"}
    )
    first, human, _ = workflow.ordered_steps()

    await orchestrator.replay_step(workflow.id, first.id, "recheck")

    approvals = await repo.list_approvals(step_id=human.id)
    assert [a.status for a in approvals] == [ApprovalStatus.EXPIRED, ApprovalStatus.PENDING]
    assert len(await repo.list_step_replays(first.id)) == 1

    assert await orchestrator.run_expiry_sweep(utcnow() + timedelta(hours=25)) == 1
    resent = await orchestrator.resend_approval(approvals[1].id)
    assert (await repo.get_approval_by_token(resent.new_token)).status == ApprovalStatus.PENDING
    await orchestrator.close()


@pytest.mark.asyncio
async def test_concurrent_settlements_apply_one_decision(tmp_path, expense_steps):
    repo = SQLStateRepository(f"sqlite:///{tmp_path / 'signoff.db'}")
    orchestrator = Orchestrator(repo, InMemoryJobQueue(), config=SignoffConfig())

    await orchestrator.create_definition("expense_approval", expense_steps)
    workflow = await orchestrator.create_workflow(
        "expense_approval", {"amount": 500, "description": "Team lunch"}
    )
    approval = (await orchestrator.get_workflow_details(workflow.id)).approvals[0]

    results = await asyncio.gather(
        orchestrator.settlement.settle(approval.token, "approved", None, "ana"),
        orchestrator.settlement.settle(approval.token, "rejected", None, "bob"),
    )

    applied = [r for r in results if not r.skipped]
    assert len(applied) == 1
    assert [r.reason for r in results if r.skipped] == ["already_processed"]

    details = await orchestrator.get_workflow_details(workflow.id, event_limit=100)
    decided = [
        e
        for e in details.events
        if e.type in (EventType.APPROVAL_APPROVED, EventType.APPROVAL_REJECTED)
    ]
    assert len(decided) == 1
    assert details.approvals[0].status == ApprovalStatus(applied[0].decision)
    expected = (
        WorkflowState.DONE if applied[0].decision == "approved" else WorkflowState.REJECTED
    )
    assert details.workflow.state == expected
    await orchestrator.close()


@pytest.mark.asyncio
async def test_queued_decision_outlives_deadline_in_sqlite(tmp_path, expense_steps):
    repo = SQLStateRepository(f"sqlite:///{tmp_path / 'signoff.db'}")
    orchestrator = Orchestrator(repo, InMemoryJobQueue(), config=SignoffConfig())

    await orchestrator.create_definition("expense_approval", expense_steps)
    workflow = await orchestrator.create_workflow(
        "expense_approval", {"amount": 500, "description": "Team lunch"}
    )
    approval = (await orchestrator.get_workflow_details(workflow.id)).approvals[0]

    await orchestrator.submit_approval_decision(approval.token, "approved")
    assert await orchestrator.run_expiry_sweep(utcnow() + timedelta(hours=25)) == 0
    await orchestrator.process_pending()

    details = await orchestrator.get_workflow_details(workflow.id)
    assert details.workflow.state == WorkflowState.DONE
    assert details.approvals[0].status == ApprovalStatus.APPROVED
    await orchestrator.close()
