"""SQLModel tables backing :class:`SQLStateRepository`."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, Column, DateTime
from sqlmodel import Field, SQLModel


def _timestamp(nullable: bool = False, **kwargs: Any) -> Any:
    # every timestamp column is timezone-aware; values are bound as UTC
    return Field(sa_column=Column(DateTime(timezone=True), nullable=nullable), **kwargs)


class DefinitionRow(SQLModel, table=True):
    __tablename__ = "workflow_definitions"

    id: str = Field(primary_key=True)
    name: str = Field(index=True)
    version: int
    description: Optional[str] = None
    steps: list = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    is_active: bool = True
    created_at: datetime = _timestamp()


class WorkflowRow(SQLModel, table=True):
    __tablename__ = "workflows"

    id: str = Field(primary_key=True)
    type: str = Field(index=True)
    definition_version: int = 1
    state: str
    meta: dict = Field(default_factory=dict, sa_column=Column("metadata", JSON))
    current_step_index: int = 0
    created_at: datetime = _timestamp()
    updated_at: datetime = _timestamp()


class StepRow(SQLModel, table=True):
    __tablename__ = "steps"

    id: str = Field(primary_key=True)
    workflow_id: str = Field(foreign_key="workflows.id", index=True)
    idx: int
    kind: str
    state: str
    config: dict = Field(default_factory=dict, sa_column=Column(JSON))
    compensating: Optional[dict] = Field(default=None, sa_column=Column(JSON, nullable=True))
    replay_count: int = 0
    can_replay: bool = True
    can_execute: bool = True
    failed_at: Optional[datetime] = _timestamp(nullable=True, default=None)
    executed_at: Optional[datetime] = _timestamp(nullable=True, default=None)
    created_at: datetime = _timestamp()
    updated_at: datetime = _timestamp()


class ApprovalRow(SQLModel, table=True):
    __tablename__ = "approvals"

    id: str = Field(primary_key=True)
    workflow_id: str = Field(foreign_key="workflows.id", index=True)
    step_id: str = Field(foreign_key="steps.id", index=True)
    token: str = Field(unique=True, index=True)
    channel: str
    status: str = Field(index=True)
    expires_at: datetime = _timestamp()
    feedback: Optional[str] = None
    decided_by: Optional[str] = None
    decision_queued_at: Optional[datetime] = _timestamp(nullable=True, default=None)
    created_at: datetime = _timestamp()
    updated_at: datetime = _timestamp()


class EventRow(SQLModel, table=True):
    __tablename__ = "events"

    id: str = Field(primary_key=True)
    workflow_id: str = Field(foreign_key="workflows.id", index=True)
    type: str
    payload: dict = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = _timestamp()


class StepReplayRow(SQLModel, table=True):
    __tablename__ = "step_replays"

    id: str = Field(primary_key=True)
    step_id: str = Field(foreign_key="steps.id", index=True)
    workflow_id: str = Field(foreign_key="workflows.id", index=True)
    reason: Optional[str] = None
    replayed_by: str
    created_at: datetime = _timestamp()
