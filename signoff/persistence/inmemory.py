"""In-memory implementation of the state repository."""

from __future__ import annotations

import asyncio
import copy
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Dict, Iterable, List, Optional

from ..contracts import (
    Approval,
    ApprovalStatus,
    Event,
    Step,
    StepReplay,
    Workflow,
    WorkflowDefinition,
    utcnow,
)
from .repository import StateRepository


class InMemoryStateRepository(StateRepository):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records are copied on the way in and
    out so callers never alias stored state.
    """

    def __init__(self) -> None:
        self._definitions: Dict[str, WorkflowDefinition] = {}
        self._workflows: Dict[str, Workflow] = {}
        self._steps: Dict[str, Step] = {}
        self._approvals: Dict[str, Approval] = {}
        self._events: List[Event] = []
        self._replays: List[StepReplay] = []
        self._lock = asyncio.Lock()
        self._owner: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["InMemoryStateRepository"]:
        current = asyncio.current_task()
        if self._owner is not None and self._owner is current:
            # nested unit of work joins the outer one
            yield self
            return

        async with self._lock:
            self._owner = current
            snapshot = self._snapshot()
            try:
                yield self
            except BaseException:
                self._restore(snapshot)
                raise
            finally:
                self._owner = None

    def _snapshot(self) -> tuple:
        return copy.deepcopy(
            (
                self._definitions,
                self._workflows,
                self._steps,
                self._approvals,
                self._events,
                self._replays,
            )
        )

    def _restore(self, snapshot: tuple) -> None:
        (
            self._definitions,
            self._workflows,
            self._steps,
            self._approvals,
            self._events,
            self._replays,
        ) = snapshot

    # ------------------------------------------------------------------
    async def add_definition(self, definition: WorkflowDefinition) -> None:
        self._definitions[definition.id] = definition.model_copy(deep=True)

    async def get_latest_definition(
        self, name: str, active_only: bool = True
    ) -> WorkflowDefinition | None:
        candidates = [
            d
            for d in self._definitions.values()
            if d.name == name and (d.is_active or not active_only)
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda d: d.version).model_copy(deep=True)

    async def list_definitions(self) -> list[WorkflowDefinition]:
        ordered = sorted(self._definitions.values(), key=lambda d: (d.name, -d.version))
        return [d.model_copy(deep=True) for d in ordered]

    async def deactivate_definitions(self, name: str) -> int:
        count = 0
        for definition in self._definitions.values():
            if definition.name == name and definition.is_active:
                definition.is_active = False
                count += 1
        return count

    # ------------------------------------------------------------------
    async def add_workflow(self, workflow: Workflow) -> None:
        stored = workflow.model_copy(deep=True)
        for step in stored.steps:
            self._steps[step.id] = step
        stored.steps = []
        self._workflows[stored.id] = stored

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        wf = self._workflows.get(workflow_id)
        if wf is None:
            return None
        result = wf.model_copy(deep=True)
        steps = [s for s in self._steps.values() if s.workflow_id == workflow_id]
        result.steps = [s.model_copy(deep=True) for s in sorted(steps, key=lambda s: s.idx)]
        return result

    async def list_workflows(self) -> list[Workflow]:
        ordered = sorted(self._workflows.values(), key=lambda w: w.created_at)
        return [w.model_copy(deep=True) for w in ordered]

    async def save_workflow(self, workflow: Workflow) -> None:
        if workflow.id not in self._workflows:
            return
        stored = workflow.model_copy(deep=True, update={"updated_at": utcnow()})
        stored.steps = []
        self._workflows[workflow.id] = stored

    async def delete_workflow(self, workflow_id: str) -> bool:
        if self._workflows.pop(workflow_id, None) is None:
            return False
        step_ids = {s.id for s in self._steps.values() if s.workflow_id == workflow_id}
        for step_id in step_ids:
            del self._steps[step_id]
        self._approvals = {
            k: a for k, a in self._approvals.items() if a.workflow_id != workflow_id
        }
        self._events = [e for e in self._events if e.workflow_id != workflow_id]
        self._replays = [r for r in self._replays if r.workflow_id != workflow_id]
        return True

    # ------------------------------------------------------------------
    async def get_step(self, step_id: str) -> Step | None:
        step = self._steps.get(step_id)
        return step.model_copy(deep=True) if step else None

    async def save_step(self, step: Step) -> None:
        if step.id not in self._steps:
            return
        self._steps[step.id] = step.model_copy(deep=True, update={"updated_at": utcnow()})

    # ------------------------------------------------------------------
    async def add_approval(self, approval: Approval) -> None:
        if any(a.token == approval.token for a in self._approvals.values()):
            raise ValueError("approval token already in use")
        self._approvals[approval.id] = approval.model_copy(deep=True)

    async def get_approval(self, approval_id: str) -> Approval | None:
        approval = self._approvals.get(approval_id)
        return approval.model_copy(deep=True) if approval else None

    async def get_approval_by_token(self, token: str) -> Approval | None:
        for approval in self._approvals.values():
            if approval.token == token:
                return approval.model_copy(deep=True)
        return None

    async def save_approval(
        self, approval: Approval, expected_status: Optional[ApprovalStatus] = None
    ) -> bool:
        stored = self._approvals.get(approval.id)
        if stored is None:
            return False
        if expected_status is not None and stored.status != expected_status:
            return False
        self._approvals[approval.id] = approval.model_copy(
            deep=True, update={"updated_at": utcnow()}
        )
        return True

    async def expire_approval(self, approval_id: str, now: datetime) -> bool:
        approval = self._approvals.get(approval_id)
        if (
            approval is None
            or approval.status != ApprovalStatus.PENDING
            or approval.decision_queued_at is not None
        ):
            return False
        approval.status = ApprovalStatus.EXPIRED
        approval.updated_at = now
        return True

    async def mark_decision_queued(self, token: str, at: datetime) -> bool:
        for approval in self._approvals.values():
            if approval.token == token and approval.status == ApprovalStatus.PENDING:
                if approval.decision_queued_at is None:
                    approval.decision_queued_at = at
                    approval.updated_at = at
                return True
        return False

    async def list_approvals(
        self,
        workflow_id: Optional[str] = None,
        step_id: Optional[str] = None,
        status: Optional[ApprovalStatus] = None,
    ) -> list[Approval]:
        matches = [
            a
            for a in self._approvals.values()
            if (workflow_id is None or a.workflow_id == workflow_id)
            and (step_id is None or a.step_id == step_id)
            and (status is None or a.status == status)
        ]
        return [a.model_copy(deep=True) for a in sorted(matches, key=lambda a: a.created_at)]

    async def list_expired_approvals(self, now: datetime) -> list[Approval]:
        return [
            a.model_copy(deep=True)
            for a in self._approvals.values()
            if a.status == ApprovalStatus.PENDING
            and a.expires_at < now
            and a.decision_queued_at is None
        ]

    async def expire_pending_approvals(
        self, step_ids: Iterable[str], now: datetime
    ) -> int:
        targets = set(step_ids)
        count = 0
        for approval in self._approvals.values():
            if approval.step_id in targets and approval.status == ApprovalStatus.PENDING:
                approval.status = ApprovalStatus.EXPIRED
                approval.expires_at = now
                approval.updated_at = now
                count += 1
        return count

    # ------------------------------------------------------------------
    async def add_event(self, event: Event) -> None:
        self._events.append(event)

    async def list_events(
        self, workflow_id: str, limit: Optional[int] = None
    ) -> list[Event]:
        events = [e for e in reversed(self._events) if e.workflow_id == workflow_id]
        return events[:limit] if limit is not None else events

    async def add_step_replay(self, replay: StepReplay) -> None:
        self._replays.append(replay)

    async def list_step_replays(self, step_id: str) -> list[StepReplay]:
        return [r for r in self._replays if r.step_id == step_id]
