"""Replay, forced execution and restart of workflow steps."""

from __future__ import annotations

import logging
from typing import Optional, Tuple

from ..constants import DEFAULT_ACTOR
from ..contracts import (
    ApprovalStatus,
    Event,
    EventType,
    ReplayResult,
    Step,
    StepReplay,
    StepState,
    Workflow,
    WorkflowState,
    utcnow,
)
from ..errors import (
    InvalidWorkflowState,
    StepExecutionDisabled,
    StepNotFound,
    StepNotReplayable,
    WorkflowNotFound,
)
from ..persistence import StateRepository
from .compensation import Compensator
from .driver import WorkflowDriver
from .executor import StepExecutor

logger = logging.getLogger(__name__)


class ReplayManager:
    """Operator actions that re-run parts of a workflow.

    A rejected workflow stays rejected: none of these operations apply to it.
    """

    def __init__(
        self,
        repository: StateRepository,
        executor: StepExecutor,
        driver: WorkflowDriver,
        compensator: Optional[Compensator] = None,
    ) -> None:
        self._repository = repository
        self._executor = executor
        self._driver = driver
        self._compensator = compensator or Compensator(repository)

    async def _load(
        self, repo: StateRepository, workflow_id: str, step_id: str
    ) -> Tuple[Workflow, Step]:
        workflow = await repo.get_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFound(f"Workflow {workflow_id} not found")
        step = workflow.step_by_id(step_id)
        if step is None:
            raise StepNotFound(f"Step {step_id} not found in workflow {workflow_id}")
        return workflow, step

    async def _ensure_not_rejected(self, repo: StateRepository, workflow_id: str) -> None:
        rejected = await repo.list_approvals(
            workflow_id=workflow_id, status=ApprovalStatus.REJECTED
        )
        if rejected:
            raise InvalidWorkflowState(f"Workflow {workflow_id} was rejected")

    async def _run_and_continue(self, workflow_id: str, step_id: str, resume: bool) -> Step:
        workflow = await self._driver.get(workflow_id)
        step = workflow.step_by_id(step_id)
        try:
            step = await self._executor.run(workflow, step)
        except Exception:
            await self._driver.refresh_state(workflow_id)
            raise
        if resume and step.state == StepState.DONE:
            await self._driver.execute(workflow_id)
        else:
            await self._driver.refresh_state(workflow_id)
        return step

    # ------------------------------------------------------------------
    async def replay(
        self,
        workflow_id: str,
        step_id: str,
        reason: Optional[str] = None,
        replayed_by: str = DEFAULT_ACTOR,
    ) -> ReplayResult:
        """Re-run a step and reset everything after it to ``PENDING``."""
        async with self._repository.transaction() as repo:
            workflow, step = await self._load(repo, workflow_id, step_id)
            if not step.can_replay:
                raise StepNotReplayable(f"Step {step.idx} cannot be replayed")
            await self._ensure_not_rejected(repo, workflow_id)

            now = utcnow()
            step.state = StepState.READY
            step.failed_at = None
            step.replay_count += 1
            await repo.save_step(step)

            downstream = [s for s in workflow.steps if s.idx > step.idx]
            for later in downstream:
                later.state = StepState.PENDING
                later.failed_at = None
                later.executed_at = None
                await repo.save_step(later)
            await repo.expire_pending_approvals(
                [step.id, *(s.id for s in downstream)], now
            )

            workflow.current_step_index = step.idx
            workflow.state = WorkflowState.RUNNING
            await repo.save_workflow(workflow)

            await repo.add_step_replay(
                StepReplay(
                    step_id=step.id,
                    workflow_id=workflow_id,
                    reason=reason or "Manual replay",
                    replayed_by=replayed_by,
                )
            )
            await repo.add_event(
                Event(
                    workflow_id=workflow_id,
                    type=EventType.STEP_REPLAY_INITIATED,
                    payload={
                        "stepId": step.id,
                        "stepIndex": step.idx,
                        "reason": reason,
                        "replayedBy": replayed_by,
                        "replayCount": step.replay_count,
                        "resetSteps": len(downstream),
                    },
                )
            )

        logger.info(f"Replaying step {step.idx} of workflow {workflow_id}")
        await self._run_and_continue(workflow_id, step_id, resume=True)
        return ReplayResult(
            workflow_id=workflow_id,
            step_id=step_id,
            mode="replay",
            message=(
                f"Step {step.idx + 1} replayed successfully. "
                "Subsequent steps set to pending."
            ),
        )

    async def execute_step(
        self,
        workflow_id: str,
        step_id: str,
        reason: Optional[str] = None,
        executed_by: str = DEFAULT_ACTOR,
    ) -> ReplayResult:
        """Run one step now without touching the steps after it."""
        async with self._repository.transaction() as repo:
            workflow, step = await self._load(repo, workflow_id, step_id)
            if not step.can_execute:
                raise StepExecutionDisabled(f"Step {step.idx} cannot be executed manually")
            await self._ensure_not_rejected(repo, workflow_id)
            await repo.add_event(
                Event(
                    workflow_id=workflow_id,
                    type=EventType.STEP_MANUAL_EXECUTION,
                    payload={
                        "stepId": step.id,
                        "stepIndex": step.idx,
                        "reason": reason,
                        "executedBy": executed_by,
                    },
                )
            )

        # continue the workflow only when this step sits at the head of the line
        earlier_done = all(
            s.state == StepState.DONE for s in workflow.steps if s.idx < step.idx
        )
        logger.info(f"Manually executing step {step.idx} of workflow {workflow_id}")
        await self._run_and_continue(workflow_id, step_id, resume=earlier_done)
        return ReplayResult(
            workflow_id=workflow_id,
            step_id=step_id,
            mode="execute",
            message=f"Step {step.idx + 1} executed successfully.",
        )

    async def execute_or_replay(
        self,
        workflow_id: str,
        step_id: str,
        reason: Optional[str] = None,
        actor: str = DEFAULT_ACTOR,
    ) -> ReplayResult:
        """Replay steps behind the cursor, execute the rest."""
        workflow = await self._driver.get(workflow_id)
        step = workflow.step_by_id(step_id)
        if step is None:
            raise StepNotFound(f"Step {step_id} not found in workflow {workflow_id}")
        if step.idx < workflow.current_step_index:
            return await self.replay(workflow_id, step_id, reason, replayed_by=actor)
        return await self.execute_step(workflow_id, step_id, reason, executed_by=actor)

    async def compensate(self, workflow: Workflow, failed_step: Step) -> bool:
        return await self._compensator.compensate(workflow, failed_step)

    async def restart(
        self,
        workflow_id: str,
        restarted_by: str = DEFAULT_ACTOR,
        reason: Optional[str] = None,
    ) -> Workflow:
        """Reset every step to ``READY`` and run the workflow from the top."""
        async with self._repository.transaction() as repo:
            workflow = await repo.get_workflow(workflow_id)
            if workflow is None:
                raise WorkflowNotFound(f"Workflow {workflow_id} not found")
            await self._ensure_not_rejected(repo, workflow_id)

            for step in workflow.steps:
                step.state = StepState.READY
                step.failed_at = None
                step.executed_at = None
                await repo.save_step(step)
            await repo.expire_pending_approvals([s.id for s in workflow.steps], utcnow())

            workflow.current_step_index = 0
            workflow.state = WorkflowState.RUNNING
            await repo.save_workflow(workflow)
            await repo.add_event(
                Event(
                    workflow_id=workflow_id,
                    type=EventType.WORKFLOW_RESTARTED,
                    payload={"restartedBy": restarted_by, "reason": reason},
                )
            )

        logger.info(f"Restarting workflow {workflow_id}")
        return await self._driver.execute(workflow_id)
