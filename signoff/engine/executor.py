"""Runs a single step of a workflow."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Optional

from ..config import ValidationConfig
from ..constants import DEFAULT_APPROVAL_TTL_HOURS, DEFAULT_CHANNEL
from ..contracts import (
    Approval,
    Event,
    EventType,
    Step,
    StepKind,
    StepState,
    Workflow,
    utcnow,
)
from ..notifications import Notifier, notify_safely
from ..persistence import StateRepository
from .actions import AUTO_ACTIONS, ActionContext, HandlerRegistry
from .compensation import Compensator

logger = logging.getLogger(__name__)


class StepExecutor:
    """Execute AUTO steps and open approval requests for HUMAN steps.

    A failing step is marked ``FAILED``, recorded, compensated, and the
    original error is re-raised to the caller.
    """

    def __init__(
        self,
        repository: StateRepository,
        notifier: Optional[Notifier] = None,
        actions: HandlerRegistry = AUTO_ACTIONS,
        compensator: Optional[Compensator] = None,
        approval_ttl: timedelta = timedelta(hours=DEFAULT_APPROVAL_TTL_HOURS),
        validation: Optional[ValidationConfig] = None,
    ) -> None:
        self._repository = repository
        self._notifier = notifier
        self._actions = actions
        self._validation = validation or ValidationConfig()
        self._compensator = compensator or Compensator(
            repository, validation=self._validation
        )
        self.approval_ttl = approval_ttl

    async def run(self, workflow: Workflow, step: Step) -> Step:
        logger.info(
            f"Executing step {step.idx} ({step.kind.value}) for workflow {workflow.id}"
        )
        step.state = StepState.READY
        await self._repository.save_step(step)
        try:
            if step.kind == StepKind.AUTO:
                await self._run_auto(workflow, step)
            else:
                await self.request_approval(workflow, step)
        except Exception as exc:
            await self._mark_failed(workflow, step, exc)
            await self._compensator.compensate(workflow, step)
            raise
        return step

    async def _run_auto(self, workflow: Workflow, step: Step) -> None:
        ctx = ActionContext(workflow=workflow, step=step, validation=self._validation)
        await self._actions.run(step.config.action, ctx)

        step.state = StepState.DONE
        step.executed_at = utcnow()
        step.failed_at = None
        async with self._repository.transaction() as repo:
            await repo.save_step(step)
            await repo.add_event(
                Event(
                    workflow_id=workflow.id,
                    type=EventType.STEP_EXECUTED,
                    payload={
                        "stepId": step.id,
                        "stepIndex": step.idx,
                        "action": step.config.action,
                    },
                )
            )
        logger.info(f"Step {step.idx} completed for workflow {workflow.id}")

    async def request_approval(self, workflow: Workflow, step: Step) -> Approval:
        """Open a fresh approval for ``step`` and park it in ``WAITING``.

        Any approval still pending for the step is expired first, so a step
        never has more than one live token.
        """
        now = utcnow()
        approval = Approval(
            workflow_id=workflow.id,
            step_id=step.id,
            channel=step.config.channel or DEFAULT_CHANNEL,
            expires_at=now + self.approval_ttl,
        )
        async with self._repository.transaction() as repo:
            superseded = await repo.expire_pending_approvals([step.id], now)
            if superseded:
                logger.info(f"Expired {superseded} superseded approval(s) for step {step.idx}")
            await repo.add_approval(approval)
            step.state = StepState.WAITING
            step.failed_at = None
            await repo.save_step(step)
            await repo.add_event(
                Event(
                    workflow_id=workflow.id,
                    type=EventType.APPROVAL_REQUESTED,
                    payload={
                        "approvalId": approval.id,
                        "stepId": step.id,
                        "stepIndex": step.idx,
                        "channel": approval.channel,
                        "expiresAt": approval.expires_at.isoformat(),
                    },
                )
            )
        logger.info(
            f"Approval {approval.id} requested for step {step.idx} of workflow {workflow.id}"
        )
        await notify_safely(
            self._notifier, "notify_approval_requested", approval, workflow, step
        )
        return approval

    async def _mark_failed(self, workflow: Workflow, step: Step, exc: Exception) -> None:
        logger.error(f"Step {step.idx} failed for workflow {workflow.id}: {exc}")
        step.state = StepState.FAILED
        step.failed_at = utcnow()
        async with self._repository.transaction() as repo:
            await repo.save_step(step)
            await repo.add_event(
                Event(
                    workflow_id=workflow.id,
                    type=EventType.STEP_FAILED,
                    payload={
                        "stepId": step.id,
                        "stepIndex": step.idx,
                        "error": str(exc),
                        "errorType": type(exc).__name__,
                    },
                )
            )
