"""Approval expiry and resend."""

from datetime import timedelta

import pytest

from signoff.constants import NOTIFICATION_QUEUE
from signoff.contracts import ApprovalStatus, EventType, WorkflowState, utcnow
from signoff.errors import ApprovalNotFound, InvalidApprovalState, ValidationFailed


async def _waiting_workflow(orchestrator, expense_steps):
    await orchestrator.create_definition("expense_approval", expense_steps)
    workflow = await orchestrator.create_workflow(
        "expense_approval", {"amount": 500, "description": "Team lunch"}
    )
    approval = (await orchestrator.get_workflow_details(workflow.id)).approvals[0]
    return workflow, approval


@pytest.mark.asyncio
async def test_sweep_expires_only_overdue_approvals(orchestrator, repo, queue, expense_steps):
    workflow, approval = await _waiting_workflow(orchestrator, expense_steps)
    await orchestrator.process_pending()

    assert await orchestrator.run_expiry_sweep() == 0
    assert await orchestrator.run_expiry_sweep(utcnow() + timedelta(hours=25)) == 1

    expired = await repo.get_approval(approval.id)
    assert expired.status == ApprovalStatus.EXPIRED
    # expiry leaves the workflow waiting so the request can be resent
    workflow = await orchestrator.get_workflow(workflow.id)
    assert workflow.state == WorkflowState.WAITING_APPROVAL
    assert queue.pending(NOTIFICATION_QUEUE) == 1

    details = await orchestrator.get_workflow_details(workflow.id)
    assert details.events[0].type == EventType.APPROVAL_EXPIRED
    assert details.events[0].payload["approvalId"] == approval.id

    # a second sweep finds nothing left to expire
    assert await orchestrator.run_expiry_sweep(utcnow() + timedelta(hours=25)) == 0


@pytest.mark.asyncio
async def test_resend_issues_new_token(orchestrator, repo, expense_steps):
    workflow, approval = await _waiting_workflow(orchestrator, expense_steps)
    await orchestrator.run_expiry_sweep(utcnow() + timedelta(hours=25))

    result = await orchestrator.resend_approval(approval.id)

    assert result.approval_id == approval.id
    assert result.new_token != approval.token
    assert result.new_expiry > utcnow() + timedelta(hours=23)
    resent = await repo.get_approval(approval.id)
    assert resent.status == ApprovalStatus.PENDING
    assert await repo.get_approval_by_token(approval.token) is None

    details = await orchestrator.get_workflow_details(workflow.id)
    assert details.events[0].type == EventType.APPROVAL_RESENT
    assert approval.token not in str(details.events[0].payload)

    # the old token is dead, the new one settles the workflow
    with pytest.raises(ApprovalNotFound):
        await orchestrator.submit_approval_decision(approval.token, "approved")
    await orchestrator.submit_approval_decision(result.new_token, "approved")
    await orchestrator.process_pending()
    assert (await orchestrator.get_workflow(workflow.id)).state == WorkflowState.DONE


@pytest.mark.asyncio
async def test_resend_requires_expired_status(orchestrator, expense_steps):
    _, approval = await _waiting_workflow(orchestrator, expense_steps)

    with pytest.raises(InvalidApprovalState):
        await orchestrator.resend_approval(approval.id)
    with pytest.raises(ApprovalNotFound):
        await orchestrator.resend_approval("missing")


@pytest.mark.asyncio
async def test_resend_refuses_superseded_approval(orchestrator, repo, expense_steps):
    workflow, approval = await _waiting_workflow(orchestrator, expense_steps)
    human = workflow.ordered_steps()[1]
    # re-running the step expires the first approval and opens a second one
    await orchestrator.execute_or_replay_step(workflow.id, human.id)
    assert (await repo.get_approval(approval.id)).status == ApprovalStatus.EXPIRED

    with pytest.raises(InvalidApprovalState):
        await orchestrator.resend_approval(approval.id)


@pytest.mark.asyncio
async def test_resend_refused_once_step_moved_on(orchestrator, repo, expense_steps):
    workflow, approval = await _waiting_workflow(orchestrator, expense_steps)
    first = workflow.ordered_steps()[0]
    await orchestrator.run_expiry_sweep(utcnow() + timedelta(hours=25))

    # replaying the first step with bad metadata fails it and parks the rest
    stored = await repo.get_workflow(workflow.id)
    stored.metadata["amount"] = 15000
    await repo.save_workflow(stored)
    with pytest.raises(ValidationFailed):
        await orchestrator.replay_step(workflow.id, first.id)

    with pytest.raises(InvalidApprovalState, match="no longer waiting"):
        await orchestrator.resend_approval(approval.id)


@pytest.mark.asyncio
async def test_run_periodically_sweeps(orchestrator, repo, expense_steps):
    _, approval = await _waiting_workflow(orchestrator, expense_steps)
    approval.expires_at = utcnow() - timedelta(seconds=1)
    await repo.save_approval(approval)

    await orchestrator.sweeper.run_periodically(interval=0.01, lifespan=0.05)

    assert (await repo.get_approval(approval.id)).status == ApprovalStatus.EXPIRED
