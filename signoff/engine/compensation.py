"""Best-effort compensation for failed steps."""

from __future__ import annotations

import logging

from ..config import ValidationConfig
from ..contracts import Event, EventType, Step, Workflow
from ..persistence import StateRepository
from .actions import COMPENSATIONS, ActionContext, HandlerRegistry

logger = logging.getLogger(__name__)


class Compensator:
    """Runs a failed step's ``compensating`` handler.

    The handler is a pluggable collaborator: the engine records that it ran
    (or failed) but does not itself roll back any persisted engine state.
    Failures are recorded as events and never raised, so they cannot mask
    the step failure that triggered them.
    """

    def __init__(
        self,
        repository: StateRepository,
        handlers: HandlerRegistry = COMPENSATIONS,
        validation: ValidationConfig | None = None,
    ) -> None:
        self._repository = repository
        self._handlers = handlers
        self._validation = validation or ValidationConfig()

    async def compensate(self, workflow: Workflow, failed_step: Step) -> bool:
        spec = failed_step.compensating
        if spec is None:
            logger.warning(f"No compensation logic defined for step {failed_step.idx}")
            return False

        logger.info(f"Executing compensation '{spec.action}' for step {failed_step.idx}")
        ctx = ActionContext(
            workflow=workflow,
            step=failed_step,
            validation=self._validation,
            parameters=dict(spec.parameters),
        )
        try:
            await self._handlers.run(spec.action, ctx)
        except Exception as exc:
            logger.error(f"Compensation failed for step {failed_step.idx}: {exc}")
            await self._repository.add_event(
                Event(
                    workflow_id=workflow.id,
                    type=EventType.COMPENSATION_FAILED,
                    payload={
                        "stepId": failed_step.id,
                        "stepIndex": failed_step.idx,
                        "compensation": spec.model_dump(mode="json"),
                        "error": str(exc),
                    },
                )
            )
            return False

        await self._repository.add_event(
            Event(
                workflow_id=workflow.id,
                type=EventType.COMPENSATION_EXECUTED,
                payload={
                    "stepId": failed_step.id,
                    "stepIndex": failed_step.idx,
                    "compensation": spec.model_dump(mode="json"),
                },
            )
        )
        logger.info(f"Compensation executed for step {failed_step.idx}")
        return True
