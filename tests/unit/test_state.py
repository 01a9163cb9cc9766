from datetime import timedelta

from signoff.contracts import (
    Approval,
    ApprovalStatus,
    Step,
    StepKind,
    StepState,
    WorkflowState,
    utcnow,
)
from signoff.engine import derive_workflow_state


def _steps(*states):
    return [
        Step(workflow_id="wf", idx=i, kind=StepKind.AUTO, state=state)
        for i, state in enumerate(states)
    ]


def _approval(status):
    return Approval(
        workflow_id="wf",
        step_id="s",
        channel="web",
        status=status,
        expires_at=utcnow() + timedelta(hours=1),
    )


def test_rejection_wins_over_everything():
    steps = _steps(StepState.FAILED, StepState.DONE)
    approvals = [_approval(ApprovalStatus.APPROVED), _approval(ApprovalStatus.REJECTED)]
    assert derive_workflow_state(steps, approvals) == WorkflowState.REJECTED


def test_failed_step_beats_waiting():
    steps = _steps(StepState.WAITING, StepState.FAILED)
    assert derive_workflow_state(steps, []) == WorkflowState.FAILED


def test_all_done_is_done():
    assert derive_workflow_state(_steps(StepState.DONE, StepState.DONE), []) == WorkflowState.DONE


def test_no_steps_is_done():
    assert derive_workflow_state([], []) == WorkflowState.DONE


def test_waiting_and_ready():
    assert (
        derive_workflow_state(_steps(StepState.DONE, StepState.WAITING, StepState.READY), [])
        == WorkflowState.WAITING_APPROVAL
    )
    assert (
        derive_workflow_state(_steps(StepState.DONE, StepState.READY), [])
        == WorkflowState.RUNNING
    )


def test_only_pending_steps_is_pending():
    assert (
        derive_workflow_state(_steps(StepState.DONE, StepState.PENDING), [])
        == WorkflowState.PENDING
    )


def test_expired_and_pending_approvals_do_not_affect_state():
    steps = _steps(StepState.DONE, StepState.WAITING)
    approvals = [_approval(ApprovalStatus.EXPIRED), _approval(ApprovalStatus.PENDING)]
    assert derive_workflow_state(steps, approvals) == WorkflowState.WAITING_APPROVAL


def test_derivation_is_idempotent():
    steps = _steps(StepState.DONE, StepState.WAITING, StepState.PENDING)
    approvals = [_approval(ApprovalStatus.PENDING)]
    first = derive_workflow_state(steps, approvals)
    assert derive_workflow_state(steps, approvals) == first
