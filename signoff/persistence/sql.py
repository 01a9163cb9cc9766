"""SQL implementation of the state repository (SQLite or PostgreSQL)."""

from __future__ import annotations

import copy
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Iterable, Optional

from sqlalchemy import delete, update
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlmodel import SQLModel, select

from ..contracts import (
    Approval,
    ApprovalStatus,
    CompensationSpec,
    Event,
    EventType,
    Step,
    StepConfig,
    StepKind,
    StepReplay,
    StepState,
    StepTemplate,
    Workflow,
    WorkflowDefinition,
    WorkflowState,
    utcnow,
)
from .repository import StateRepository
from .tables import (
    ApprovalRow,
    DefinitionRow,
    EventRow,
    StepReplayRow,
    StepRow,
    WorkflowRow,
)


def async_database_url(database_url: str) -> str:
    """Map a plain database URL onto its async SQLAlchemy driver."""
    if database_url.startswith("sqlite://"):
        return database_url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    if database_url.startswith("postgres://"):
        return database_url.replace("postgres://", "postgresql+asyncpg://", 1)
    if database_url.startswith("postgresql://"):
        return database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return database_url


# Timestamps are bound as aware UTC. SQLite keeps only the wall-clock part,
# so values read back without a zone are UTC.
def _to_db(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _from_db(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SQLStateRepository(StateRepository):
    """Persist workflow state using SQLModel over an async SQLAlchemy engine."""

    def __init__(
        self,
        database_url: str,
        engine: AsyncEngine | None = None,
        session: AsyncSession | None = None,
    ) -> None:
        self.database_url = async_database_url(database_url)
        if engine is None:
            connect_args = (
                {"check_same_thread": False}
                if self.database_url.startswith("sqlite")
                else {}
            )
            engine = create_async_engine(
                self.database_url, echo=False, connect_args=connect_args
            )
        self.engine = engine
        self._session = session
        self._initialized = session is not None

    async def init_db(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        self._initialized = True

    async def dispose(self) -> None:
        await self.engine.dispose()

    # ------------------------------------------------------------------
    # Session handling
    @asynccontextmanager
    async def _use_session(self) -> AsyncIterator[AsyncSession]:
        if self._session is not None:
            yield self._session
            return
        if not self._initialized:
            await self.init_db()
        async with AsyncSession(self.engine, expire_on_commit=False) as session:
            async with session.begin():
                yield session

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["SQLStateRepository"]:
        if self._session is not None:
            yield self
            return
        async with self._use_session() as session:
            bound = copy.copy(self)
            bound._session = session
            yield bound

    # ------------------------------------------------------------------
    # Row mapping
    @staticmethod
    def _definition(row: DefinitionRow) -> WorkflowDefinition:
        return WorkflowDefinition(
            id=row.id,
            name=row.name,
            version=row.version,
            description=row.description,
            steps=[StepTemplate.model_validate(s) for s in row.steps or []],
            is_active=row.is_active,
            created_at=_from_db(row.created_at),
        )

    @staticmethod
    def _workflow(row: WorkflowRow, steps: list[Step] | None = None) -> Workflow:
        return Workflow(
            id=row.id,
            type=row.type,
            definition_version=row.definition_version,
            state=WorkflowState(row.state),
            metadata=row.meta or {},
            current_step_index=row.current_step_index,
            created_at=_from_db(row.created_at),
            updated_at=_from_db(row.updated_at),
            steps=steps or [],
        )

    @staticmethod
    def _workflow_row(workflow: Workflow) -> WorkflowRow:
        return WorkflowRow(
            id=workflow.id,
            type=workflow.type,
            definition_version=workflow.definition_version,
            state=workflow.state.value,
            meta=workflow.metadata,
            current_step_index=workflow.current_step_index,
            created_at=_to_db(workflow.created_at),
            updated_at=_to_db(utcnow()),
        )

    @staticmethod
    def _step(row: StepRow) -> Step:
        return Step(
            id=row.id,
            workflow_id=row.workflow_id,
            idx=row.idx,
            kind=StepKind(row.kind),
            state=StepState(row.state),
            config=StepConfig.model_validate(row.config or {}),
            compensating=(
                CompensationSpec.model_validate(row.compensating)
                if row.compensating
                else None
            ),
            replay_count=row.replay_count,
            can_replay=row.can_replay,
            can_execute=row.can_execute,
            failed_at=_from_db(row.failed_at),
            executed_at=_from_db(row.executed_at),
            created_at=_from_db(row.created_at),
            updated_at=_from_db(row.updated_at),
        )

    @staticmethod
    def _step_row(step: Step) -> StepRow:
        return StepRow(
            id=step.id,
            workflow_id=step.workflow_id,
            idx=step.idx,
            kind=step.kind.value,
            state=step.state.value,
            config=step.config.model_dump(mode="json"),
            compensating=(
                step.compensating.model_dump(mode="json") if step.compensating else None
            ),
            replay_count=step.replay_count,
            can_replay=step.can_replay,
            can_execute=step.can_execute,
            failed_at=_to_db(step.failed_at),
            executed_at=_to_db(step.executed_at),
            created_at=_to_db(step.created_at),
            updated_at=_to_db(utcnow()),
        )

    @staticmethod
    def _approval(row: ApprovalRow) -> Approval:
        return Approval(
            id=row.id,
            workflow_id=row.workflow_id,
            step_id=row.step_id,
            token=row.token,
            channel=row.channel,
            status=ApprovalStatus(row.status),
            expires_at=_from_db(row.expires_at),
            feedback=row.feedback,
            decided_by=row.decided_by,
            decision_queued_at=_from_db(row.decision_queued_at),
            created_at=_from_db(row.created_at),
            updated_at=_from_db(row.updated_at),
        )

    @staticmethod
    def _approval_row(approval: Approval) -> ApprovalRow:
        return ApprovalRow(
            id=approval.id,
            workflow_id=approval.workflow_id,
            step_id=approval.step_id,
            token=approval.token,
            channel=approval.channel,
            status=approval.status.value,
            expires_at=_to_db(approval.expires_at),
            feedback=approval.feedback,
            decided_by=approval.decided_by,
            decision_queued_at=_to_db(approval.decision_queued_at),
            created_at=_to_db(approval.created_at),
            updated_at=_to_db(utcnow()),
        )

    # ------------------------------------------------------------------
    # Definitions
    async def add_definition(self, definition: WorkflowDefinition) -> None:
        async with self._use_session() as session:
            session.add(
                DefinitionRow(
                    id=definition.id,
                    name=definition.name,
                    version=definition.version,
                    description=definition.description,
                    steps=[s.model_dump(mode="json") for s in definition.steps],
                    is_active=definition.is_active,
                    created_at=_to_db(definition.created_at),
                )
            )

    async def get_latest_definition(
        self, name: str, active_only: bool = True
    ) -> WorkflowDefinition | None:
        async with self._use_session() as session:
            stmt = select(DefinitionRow).where(DefinitionRow.name == name)
            if active_only:
                stmt = stmt.where(DefinitionRow.is_active == True)  # noqa: E712
            stmt = stmt.order_by(DefinitionRow.version.desc()).limit(1)
            row = (await session.execute(stmt)).scalars().first()
            return self._definition(row) if row else None

    async def list_definitions(self) -> list[WorkflowDefinition]:
        async with self._use_session() as session:
            stmt = select(DefinitionRow).order_by(
                DefinitionRow.name, DefinitionRow.version.desc()
            )
            rows = (await session.execute(stmt)).scalars().all()
            return [self._definition(r) for r in rows]

    async def deactivate_definitions(self, name: str) -> int:
        async with self._use_session() as session:
            result = await session.execute(
                update(DefinitionRow)
                .where(DefinitionRow.name == name, DefinitionRow.is_active == True)  # noqa: E712
                .values(is_active=False)
            )
            return result.rowcount or 0

    # ------------------------------------------------------------------
    # Workflows
    async def add_workflow(self, workflow: Workflow) -> None:
        async with self._use_session() as session:
            session.add(self._workflow_row(workflow))
            await session.flush()
            for step in workflow.steps:
                session.add(self._step_row(step))

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        async with self._use_session() as session:
            row = await session.get(WorkflowRow, workflow_id)
            if row is None:
                return None
            step_rows = (
                await session.execute(
                    select(StepRow)
                    .where(StepRow.workflow_id == workflow_id)
                    .order_by(StepRow.idx)
                )
            ).scalars().all()
            return self._workflow(row, [self._step(s) for s in step_rows])

    async def list_workflows(self) -> list[Workflow]:
        async with self._use_session() as session:
            rows = (
                await session.execute(select(WorkflowRow).order_by(WorkflowRow.created_at))
            ).scalars().all()
            return [self._workflow(r) for r in rows]

    async def save_workflow(self, workflow: Workflow) -> None:
        async with self._use_session() as session:
            if await session.get(WorkflowRow, workflow.id) is None:
                return
            await session.merge(self._workflow_row(workflow))

    async def delete_workflow(self, workflow_id: str) -> bool:
        async with self._use_session() as session:
            if await session.get(WorkflowRow, workflow_id) is None:
                return False
            for table in (StepReplayRow, EventRow, ApprovalRow, StepRow):
                await session.execute(delete(table).where(table.workflow_id == workflow_id))
            await session.execute(delete(WorkflowRow).where(WorkflowRow.id == workflow_id))
            return True

    # ------------------------------------------------------------------
    # Steps
    async def get_step(self, step_id: str) -> Step | None:
        async with self._use_session() as session:
            row = await session.get(StepRow, step_id)
            return self._step(row) if row else None

    async def save_step(self, step: Step) -> None:
        async with self._use_session() as session:
            if await session.get(StepRow, step.id) is None:
                return
            await session.merge(self._step_row(step))

    # ------------------------------------------------------------------
    # Approvals
    async def add_approval(self, approval: Approval) -> None:
        async with self._use_session() as session:
            session.add(self._approval_row(approval))

    async def get_approval(self, approval_id: str) -> Approval | None:
        async with self._use_session() as session:
            row = await session.get(ApprovalRow, approval_id)
            return self._approval(row) if row else None

    async def get_approval_by_token(self, token: str) -> Approval | None:
        async with self._use_session() as session:
            row = (
                await session.execute(select(ApprovalRow).where(ApprovalRow.token == token))
            ).scalars().first()
            return self._approval(row) if row else None

    async def save_approval(
        self, approval: Approval, expected_status: Optional[ApprovalStatus] = None
    ) -> bool:
        # a single conditional UPDATE, so concurrent writers cannot both
        # move the same approval out of ``expected_status``
        row = self._approval_row(approval)
        stmt = update(ApprovalRow).where(ApprovalRow.id == approval.id)
        if expected_status is not None:
            stmt = stmt.where(ApprovalRow.status == expected_status.value)
        stmt = stmt.values(
            token=row.token,
            channel=row.channel,
            status=row.status,
            expires_at=row.expires_at,
            feedback=row.feedback,
            decided_by=row.decided_by,
            decision_queued_at=row.decision_queued_at,
            updated_at=row.updated_at,
        ).execution_options(synchronize_session=False)
        async with self._use_session() as session:
            result = await session.execute(stmt)
            return bool(result.rowcount)

    async def expire_approval(self, approval_id: str, now: datetime) -> bool:
        async with self._use_session() as session:
            result = await session.execute(
                update(ApprovalRow)
                .where(
                    ApprovalRow.id == approval_id,
                    ApprovalRow.status == ApprovalStatus.PENDING.value,
                    ApprovalRow.decision_queued_at.is_(None),
                )
                .values(status=ApprovalStatus.EXPIRED.value, updated_at=_to_db(now))
                .execution_options(synchronize_session=False)
            )
            return bool(result.rowcount)

    async def mark_decision_queued(self, token: str, at: datetime) -> bool:
        async with self._use_session() as session:
            pending = (
                ApprovalRow.token == token,
                ApprovalRow.status == ApprovalStatus.PENDING.value,
            )
            await session.execute(
                update(ApprovalRow)
                .where(*pending, ApprovalRow.decision_queued_at.is_(None))
                .values(decision_queued_at=_to_db(at), updated_at=_to_db(at))
                .execution_options(synchronize_session=False)
            )
            row = (
                await session.execute(select(ApprovalRow.id).where(*pending))
            ).first()
            return row is not None

    async def list_approvals(
        self,
        workflow_id: Optional[str] = None,
        step_id: Optional[str] = None,
        status: Optional[ApprovalStatus] = None,
    ) -> list[Approval]:
        async with self._use_session() as session:
            stmt = select(ApprovalRow)
            if workflow_id is not None:
                stmt = stmt.where(ApprovalRow.workflow_id == workflow_id)
            if step_id is not None:
                stmt = stmt.where(ApprovalRow.step_id == step_id)
            if status is not None:
                stmt = stmt.where(ApprovalRow.status == status.value)
            rows = (
                await session.execute(stmt.order_by(ApprovalRow.created_at))
            ).scalars().all()
            return [self._approval(r) for r in rows]

    async def list_expired_approvals(self, now: datetime) -> list[Approval]:
        async with self._use_session() as session:
            stmt = select(ApprovalRow).where(
                ApprovalRow.status == ApprovalStatus.PENDING.value,
                ApprovalRow.expires_at < _to_db(now),
                ApprovalRow.decision_queued_at.is_(None),
            )
            rows = (await session.execute(stmt)).scalars().all()
            return [self._approval(r) for r in rows]

    async def expire_pending_approvals(
        self, step_ids: Iterable[str], now: datetime
    ) -> int:
        ids = list(step_ids)
        if not ids:
            return 0
        async with self._use_session() as session:
            result = await session.execute(
                update(ApprovalRow)
                .where(
                    ApprovalRow.step_id.in_(ids),
                    ApprovalRow.status == ApprovalStatus.PENDING.value,
                )
                .values(
                    status=ApprovalStatus.EXPIRED.value,
                    expires_at=_to_db(now),
                    updated_at=_to_db(now),
                )
                .execution_options(synchronize_session="fetch")
            )
            return result.rowcount or 0

    # ------------------------------------------------------------------
    # Audit
    async def add_event(self, event: Event) -> None:
        async with self._use_session() as session:
            session.add(
                EventRow(
                    id=event.id,
                    workflow_id=event.workflow_id,
                    type=event.type.value,
                    payload=event.payload,
                    created_at=_to_db(event.created_at),
                )
            )

    async def list_events(
        self, workflow_id: str, limit: Optional[int] = None
    ) -> list[Event]:
        async with self._use_session() as session:
            stmt = (
                select(EventRow)
                .where(EventRow.workflow_id == workflow_id)
                .order_by(EventRow.created_at.desc())
            )
            if limit is not None:
                stmt = stmt.limit(limit)
            rows = (await session.execute(stmt)).scalars().all()
            return [
                Event(
                    id=r.id,
                    workflow_id=r.workflow_id,
                    type=EventType(r.type),
                    payload=r.payload or {},
                    created_at=_from_db(r.created_at),
                )
                for r in rows
            ]

    async def add_step_replay(self, replay: StepReplay) -> None:
        async with self._use_session() as session:
            session.add(
                StepReplayRow(
                    id=replay.id,
                    step_id=replay.step_id,
                    workflow_id=replay.workflow_id,
                    reason=replay.reason,
                    replayed_by=replay.replayed_by,
                    created_at=_to_db(replay.created_at),
                )
            )

    async def list_step_replays(self, step_id: str) -> list[StepReplay]:
        async with self._use_session() as session:
            rows = (
                await session.execute(
                    select(StepReplayRow)
                    .where(StepReplayRow.step_id == step_id)
                    .order_by(StepReplayRow.created_at)
                )
            ).scalars().all()
            return [
                StepReplay(
                    id=r.id,
                    step_id=r.step_id,
                    workflow_id=r.workflow_id,
                    reason=r.reason,
                    replayed_by=r.replayed_by,
                    created_at=_from_db(r.created_at),
                )
                for r in rows
            ]
