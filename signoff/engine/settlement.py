"""Accepting and applying human decisions."""

from __future__ import annotations

import logging
from typing import Optional

from ..constants import APPROVAL_QUEUE, DEFAULT_ACTOR, DEFAULT_MAX_ATTEMPTS, approval_job_id
from ..contracts import (
    ApprovalStatus,
    Event,
    EventType,
    Job,
    SettlementResult,
    StepState,
    SubmissionReceipt,
    utcnow,
)
from ..errors import AlreadyProcessed, ApprovalExpired, ApprovalNotFound, InvalidApprovalState
from ..persistence import StateRepository
from ..queues import BaseJobQueue
from .driver import WorkflowDriver

logger = logging.getLogger(__name__)

DECISIONS = ("approved", "rejected")


def _check_decision(decision: str) -> str:
    if decision not in DECISIONS:
        raise InvalidApprovalState(
            f"Decision must be one of {', '.join(DECISIONS)}, got {decision!r}"
        )
    return decision


class ApprovalSettlement:
    """Two-phase decision handling.

    :meth:`submit_decision` validates the token and queues a job keyed by it,
    so duplicate submissions collapse into one. :meth:`settle` runs in the
    approval worker and applies the decision exactly once; replays of the
    same job find the approval already decided and do nothing.
    """

    def __init__(
        self,
        repository: StateRepository,
        driver: WorkflowDriver,
        queue: Optional[BaseJobQueue] = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        self._repository = repository
        self._driver = driver
        self._queue = queue
        self._max_attempts = max_attempts

    async def submit_decision(
        self,
        token: str,
        decision: str,
        feedback: Optional[str] = None,
        decided_by: str = DEFAULT_ACTOR,
    ) -> SubmissionReceipt:
        _check_decision(decision)
        approval = await self._repository.get_approval_by_token(token)
        if approval is None:
            raise ApprovalNotFound("Invalid approval token")
        if approval.status != ApprovalStatus.PENDING:
            raise AlreadyProcessed(f"Approval already {approval.status.value}")
        if approval.is_expired():
            raise ApprovalExpired("Approval has expired")
        if self._queue is None:
            raise RuntimeError("No approval queue configured")
        # the sweeper leaves stamped approvals alone until the job settles them
        if not await self._repository.mark_decision_queued(token, utcnow()):
            current = await self._repository.get_approval_by_token(token)
            if current is not None and current.status == ApprovalStatus.EXPIRED:
                raise ApprovalExpired("Approval has expired")
            raise AlreadyProcessed("Approval already processed")

        job = Job(
            job_id=approval_job_id(token),
            name="approval_decision",
            max_attempts=self._max_attempts,
            payload={
                "token": token,
                "decision": decision,
                "feedback": feedback,
                "decided_by": decided_by,
            },
        )
        queued = await self._queue.enqueue(APPROVAL_QUEUE, job)
        if queued:
            logger.info(f"Approval decision queued: {job.job_id} ({decision})")
        else:
            logger.info(f"Approval decision {job.job_id} already queued")
        return SubmissionReceipt(job_id=job.job_id, decision=decision, queued=queued)

    async def settle(
        self,
        token: str,
        decision: str,
        feedback: Optional[str] = None,
        decided_by: str = DEFAULT_ACTOR,
    ) -> SettlementResult:
        _check_decision(decision)
        async with self._repository.transaction() as repo:
            approval = await repo.get_approval_by_token(token)
            if approval is None:
                raise ApprovalNotFound("Invalid approval token")
            claimed = False
            if approval.status == ApprovalStatus.PENDING:
                approval.status = ApprovalStatus(decision)
                approval.feedback = feedback
                approval.decided_by = decided_by
                claimed = await repo.save_approval(
                    approval, expected_status=ApprovalStatus.PENDING
                )
            if not claimed:
                logger.info(f"Approval {approval.id} already processed, skipping")
                return SettlementResult(
                    workflow_id=approval.workflow_id,
                    skipped=True,
                    reason="already_processed",
                )

            step = await repo.get_step(approval.step_id)
            if step is not None:
                step.state = StepState.DONE
                step.executed_at = utcnow()
                await repo.save_step(step)

            event_type = (
                EventType.APPROVAL_APPROVED
                if decision == "approved"
                else EventType.APPROVAL_REJECTED
            )
            await repo.add_event(
                Event(
                    workflow_id=approval.workflow_id,
                    type=event_type,
                    payload={
                        "approvalId": approval.id,
                        "stepId": approval.step_id,
                        "stepIndex": step.idx if step else None,
                        "decision": decision,
                        "feedback": feedback,
                        "decidedBy": decided_by,
                    },
                )
            )

        logger.info(f"Approval {approval.id} {decision} by {decided_by}")
        if decision == "approved":
            await self._driver.execute(approval.workflow_id)
        else:
            await self._driver.refresh_state(approval.workflow_id)
        return SettlementResult(workflow_id=approval.workflow_id, decision=decision)
