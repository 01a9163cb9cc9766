"""Aggregate workflow state derived from step and approval facts."""

from __future__ import annotations

from typing import Iterable

from ..contracts import Approval, ApprovalStatus, Step, StepState, WorkflowState


def derive_workflow_state(
    steps: Iterable[Step], approvals: Iterable[Approval]
) -> WorkflowState:
    """Compute the workflow state.

    Precedence, highest first: a rejected approval, a failed step, all steps
    done, a waiting step, a ready step. Anything else is ``PENDING``.
    """
    steps = list(steps)
    if any(a.status == ApprovalStatus.REJECTED for a in approvals):
        return WorkflowState.REJECTED
    states = [s.state for s in steps]
    if StepState.FAILED in states:
        return WorkflowState.FAILED
    if all(s == StepState.DONE for s in states):
        return WorkflowState.DONE
    if StepState.WAITING in states:
        return WorkflowState.WAITING_APPROVAL
    if StepState.READY in states:
        return WorkflowState.RUNNING
    return WorkflowState.PENDING
