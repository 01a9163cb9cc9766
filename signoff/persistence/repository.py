"""Repository abstraction for workflow state persistence."""

from __future__ import annotations

from datetime import datetime
from typing import AsyncContextManager, Iterable, Optional, Protocol

from ..contracts import (
    Approval,
    ApprovalStatus,
    Event,
    Step,
    StepReplay,
    Workflow,
    WorkflowDefinition,
)


class StateRepository(Protocol):
    """Protocol for state persistence backends.

    Every multi-row transition (settlement, replay, restart) runs inside
    ``transaction()``: the repository yielded by it applies all writes
    atomically and rolls them back if the block raises.
    """

    def transaction(self) -> AsyncContextManager["StateRepository"]:
        """Open an atomic unit of work."""

    # -- definitions ---------------------------------------------------
    async def add_definition(self, definition: WorkflowDefinition) -> None:
        """Persist a new definition version."""

    async def get_latest_definition(
        self, name: str, active_only: bool = True
    ) -> WorkflowDefinition | None:
        """Return the highest version for ``name``."""

    async def list_definitions(self) -> list[WorkflowDefinition]:
        """Return all definitions ordered by name then version descending."""

    async def deactivate_definitions(self, name: str) -> int:
        """Mark every active version of ``name`` inactive."""

    # -- workflows -----------------------------------------------------
    async def add_workflow(self, workflow: Workflow) -> None:
        """Persist a workflow together with its steps."""

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        """Retrieve a workflow with its steps ordered by ``idx``."""

    async def list_workflows(self) -> list[Workflow]:
        """Return all workflows (without steps)."""

    async def save_workflow(self, workflow: Workflow) -> None:
        """Persist workflow-level fields (not its steps)."""

    async def delete_workflow(self, workflow_id: str) -> bool:
        """Delete a workflow and everything it owns."""

    # -- steps ---------------------------------------------------------
    async def get_step(self, step_id: str) -> Step | None:
        """Retrieve one step."""

    async def save_step(self, step: Step) -> None:
        """Persist step fields."""

    # -- approvals -----------------------------------------------------
    async def add_approval(self, approval: Approval) -> None:
        """Persist a new approval."""

    async def get_approval(self, approval_id: str) -> Approval | None:
        """Retrieve an approval by id."""

    async def get_approval_by_token(self, token: str) -> Approval | None:
        """Retrieve an approval by its external token."""

    async def save_approval(
        self, approval: Approval, expected_status: Optional[ApprovalStatus] = None
    ) -> bool:
        """Persist approval fields.

        With ``expected_status`` the write only happens if the stored status
        still equals it. Returns whether a row was written.
        """

    async def expire_approval(self, approval_id: str, now: datetime) -> bool:
        """Expire a pending approval unless a decision for it is queued."""

    async def mark_decision_queued(self, token: str, at: datetime) -> bool:
        """Stamp a pending approval as having a queued decision.

        Returns ``False`` if the approval is no longer pending. Stamping an
        already stamped approval succeeds and keeps the first time.
        """

    async def list_approvals(
        self,
        workflow_id: Optional[str] = None,
        step_id: Optional[str] = None,
        status: Optional[ApprovalStatus] = None,
    ) -> list[Approval]:
        """Return approvals matching every given filter, oldest first."""

    async def list_expired_approvals(self, now: datetime) -> list[Approval]:
        """Return pending approvals past their deadline with no decision queued."""

    async def expire_pending_approvals(
        self, step_ids: Iterable[str], now: datetime
    ) -> int:
        """Force pending approvals of ``step_ids`` to expired."""

    # -- audit ---------------------------------------------------------
    async def add_event(self, event: Event) -> None:
        """Append an event."""

    async def list_events(
        self, workflow_id: str, limit: Optional[int] = None
    ) -> list[Event]:
        """Return events for a workflow, newest first."""

    async def add_step_replay(self, replay: StepReplay) -> None:
        """Append a replay audit row."""

    async def list_step_replays(self, step_id: str) -> list[StepReplay]:
        """Return replay rows for a step, oldest first."""
