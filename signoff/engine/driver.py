"""Advances workflows through their steps."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from ..contracts import (
    ApprovalStatus,
    Event,
    EventType,
    Step,
    StepState,
    Workflow,
    WorkflowDetails,
    WorkflowState,
    utcnow,
)
from ..errors import InvalidWorkflowState, StepNotFound, WorkflowNotFound
from ..persistence import StateRepository
from .definitions import DefinitionService
from .executor import StepExecutor
from .state import derive_workflow_state

logger = logging.getLogger(__name__)


class WorkflowDriver:
    """Creates workflows and walks them forward until they block or finish.

    The stored workflow state is always a projection of its steps and
    approvals, recomputed by :meth:`refresh_state` after every change.
    """

    def __init__(
        self,
        repository: StateRepository,
        executor: StepExecutor,
        definitions: Optional[DefinitionService] = None,
    ) -> None:
        self._repository = repository
        self._executor = executor
        self._definitions = definitions or DefinitionService(repository)

    # ------------------------------------------------------------------
    async def create(
        self, workflow_type: str, metadata: Optional[Dict[str, Any]] = None
    ) -> Workflow:
        """Instantiate the active definition of ``workflow_type``."""
        definition = await self._definitions.get_active(workflow_type)
        workflow = Workflow(
            type=definition.name,
            definition_version=definition.version,
            metadata=dict(metadata or {}),
        )
        workflow.steps = [
            Step(
                workflow_id=workflow.id,
                idx=idx,
                kind=template.kind,
                config=template.config.model_copy(deep=True),
                compensating=(
                    template.compensating.model_copy(deep=True)
                    if template.compensating
                    else None
                ),
                can_replay=template.can_replay,
                can_execute=template.can_execute,
            )
            for idx, template in enumerate(definition.steps)
        ]
        async with self._repository.transaction() as repo:
            await repo.add_workflow(workflow)
            await repo.add_event(
                Event(
                    workflow_id=workflow.id,
                    type=EventType.WORKFLOW_CREATED,
                    payload={
                        "definitionType": workflow.type,
                        "definitionVersion": workflow.definition_version,
                        "stepsCount": len(workflow.steps),
                    },
                )
            )
        logger.info(
            f"Created workflow {workflow.id} ({workflow.type} v{workflow.definition_version})"
        )
        return workflow

    async def get(self, workflow_id: str) -> Workflow:
        workflow = await self._repository.get_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFound(f"Workflow {workflow_id} not found")
        return workflow

    async def get_details(self, workflow_id: str, event_limit: int = 20) -> WorkflowDetails:
        workflow = await self.get(workflow_id)
        approvals = await self._repository.list_approvals(workflow_id=workflow_id)
        events = await self._repository.list_events(workflow_id, limit=event_limit)
        return WorkflowDetails(workflow=workflow, approvals=approvals, events=events)

    async def list(self) -> list[Workflow]:
        return await self._repository.list_workflows()

    async def delete(self, workflow_id: str) -> None:
        if not await self._repository.delete_workflow(workflow_id):
            raise WorkflowNotFound(f"Workflow {workflow_id} not found")
        logger.info(f"Deleted workflow {workflow_id}")

    # ------------------------------------------------------------------
    async def execute(self, workflow_id: str) -> Workflow:
        """Run steps in order until one waits for a human, fails, or all are done.

        Completed steps are skipped, so calling this again after a crash or a
        settled approval resumes where the workflow left off.
        """
        workflow = await self.get(workflow_id)
        rejected = await self._repository.list_approvals(
            workflow_id=workflow_id, status=ApprovalStatus.REJECTED
        )
        if rejected:
            logger.info(f"Workflow {workflow_id} was rejected; not executing further steps")
            return await self.refresh_state(workflow_id)

        logger.info(f"Executing workflow {workflow_id}")
        try:
            for step in workflow.ordered_steps():
                if step.state == StepState.DONE:
                    workflow.current_step_index = step.idx + 1
                    continue
                workflow.current_step_index = step.idx
                step = await self._executor.run(workflow, step)
                if step.state == StepState.WAITING:
                    logger.info(f"Workflow {workflow_id} waiting for approval at step {step.idx}")
                    break
                workflow.current_step_index = step.idx + 1
        except Exception:
            await self._save_cursor(workflow)
            await self.refresh_state(workflow_id)
            raise

        await self._save_cursor(workflow)
        return await self.refresh_state(workflow_id)

    async def _save_cursor(self, workflow: Workflow) -> None:
        stored = await self._repository.get_workflow(workflow.id)
        if stored is None:
            return
        stored.current_step_index = workflow.current_step_index
        await self._repository.save_workflow(stored)

    async def refresh_state(self, workflow_id: str) -> Workflow:
        """Recompute and persist the derived workflow state."""
        async with self._repository.transaction() as repo:
            workflow = await repo.get_workflow(workflow_id)
            if workflow is None:
                raise WorkflowNotFound(f"Workflow {workflow_id} not found")
            approvals = await repo.list_approvals(workflow_id=workflow_id)
            new_state = derive_workflow_state(workflow.steps, approvals)
            if new_state == workflow.state:
                return workflow

            previous = workflow.state
            workflow.state = new_state
            if new_state == WorkflowState.DONE:
                workflow.current_step_index = len(workflow.steps)
            await repo.save_workflow(workflow)
            await repo.add_event(
                Event(
                    workflow_id=workflow_id,
                    type=EventType.WORKFLOW_STATE_CHANGED,
                    payload={"from": previous.value, "to": new_state.value},
                )
            )
            if new_state == WorkflowState.DONE:
                await repo.add_event(
                    Event(
                        workflow_id=workflow_id,
                        type=EventType.WORKFLOW_COMPLETED,
                        payload={
                            "completedAt": utcnow().isoformat(),
                            "stepsCount": len(workflow.steps),
                        },
                    )
                )
        logger.info(f"Workflow {workflow_id} state: {previous.value} -> {new_state.value}")
        return workflow

    async def retry_step(self, step_id: str) -> Workflow:
        """Reset a failed step and resume the workflow from it."""
        step = await self._repository.get_step(step_id)
        if step is None:
            raise StepNotFound(f"Step {step_id} not found")
        if step.state != StepState.FAILED:
            raise InvalidWorkflowState(
                f"Only failed steps can be retried (step {step.idx} is {step.state.value})"
            )
        step.state = StepState.READY
        step.failed_at = None
        async with self._repository.transaction() as repo:
            await repo.save_step(step)
            await repo.add_event(
                Event(
                    workflow_id=step.workflow_id,
                    type=EventType.STEP_RETRY,
                    payload={"stepId": step.id, "stepIndex": step.idx},
                )
            )
        logger.info(f"Retrying step {step.idx} of workflow {step.workflow_id}")
        return await self.execute(step.workflow_id)
