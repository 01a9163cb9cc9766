"""Core records exchanged between the engine, the state store and the queues."""

from __future__ import annotations

import secrets
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .constants import DEFAULT_ACTOR, DEFAULT_MAX_ATTEMPTS


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def new_token() -> str:
    """Mint an unguessable approval token."""
    return secrets.token_urlsafe(24)


class WorkflowState(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    WAITING_APPROVAL = "WAITING_APPROVAL"
    DONE = "DONE"
    FAILED = "FAILED"
    REJECTED = "REJECTED"


class StepKind(str, Enum):
    AUTO = "AUTO"
    HUMAN = "HUMAN"


class StepState(str, Enum):
    READY = "READY"
    WAITING = "WAITING"
    DONE = "DONE"
    FAILED = "FAILED"
    PENDING = "PENDING"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"
    # reserved: nothing assigns it, and every check treats it as settled
    CANCELLED = "cancelled"


Decision = Literal["approved", "rejected"]


class EventType(str, Enum):
    WORKFLOW_CREATED = "WORKFLOW_CREATED"
    WORKFLOW_STATE_CHANGED = "WORKFLOW_STATE_CHANGED"
    WORKFLOW_COMPLETED = "WORKFLOW_COMPLETED"
    WORKFLOW_RESTARTED = "WORKFLOW_RESTARTED"
    STEP_EXECUTED = "STEP_EXECUTED"
    STEP_FAILED = "STEP_FAILED"
    STEP_RETRY = "STEP_RETRY"
    STEP_MANUAL_EXECUTION = "STEP_MANUAL_EXECUTION"
    STEP_REPLAY_INITIATED = "STEP_REPLAY_INITIATED"
    APPROVAL_REQUESTED = "APPROVAL_REQUESTED"
    APPROVAL_APPROVED = "APPROVAL_APPROVED"
    APPROVAL_REJECTED = "APPROVAL_REJECTED"
    APPROVAL_EXPIRED = "APPROVAL_EXPIRED"
    APPROVAL_RESENT = "APPROVAL_RESENT"
    COMPENSATION_EXECUTED = "COMPENSATION_EXECUTED"
    COMPENSATION_FAILED = "COMPENSATION_FAILED"


# ---------------------------------------------------------------------------
# Definitions


class ApprovalField(BaseModel):
    """A form field shown to the approver."""

    name: str
    type: Literal["text", "textarea", "number", "select", "checkbox"] = "text"
    label: str
    required: bool = False
    options: List[str] = Field(default_factory=list)
    placeholder: Optional[str] = None


class StepConfig(BaseModel):
    """Per-step settings.

    AUTO steps use ``action`` (and ``message`` for ``send_notification``);
    HUMAN steps use ``channel``, ``channels`` and the approver fields. Keys
    not known here are collected into ``extra`` so that definitions can carry
    handler-specific settings without loosening validation of the rest.
    """

    action: Optional[str] = None
    message: Optional[str] = None
    channel: Optional[str] = None
    channels: List[str] = Field(default_factory=list)
    title: Optional[str] = None
    assignee: Optional[str] = None
    required: bool = True
    fields: List[ApprovalField] = Field(default_factory=list)
    extra: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _collect_extra(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        known = set(cls.model_fields)
        extra = dict(data.get("extra") or {})
        cleaned = {}
        for key, value in data.items():
            if key in known:
                cleaned[key] = value
            else:
                extra[key] = value
        cleaned["extra"] = extra
        return cleaned


class CompensationSpec(BaseModel):
    """Rollback action run when the owning step fails."""

    action: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    rollback_steps: Optional[int] = None


class StepTemplate(BaseModel):
    """One step of a workflow definition."""

    idx: Optional[int] = None
    kind: StepKind
    config: StepConfig = Field(default_factory=StepConfig)
    compensating: Optional[CompensationSpec] = None
    can_replay: bool = True
    can_execute: bool = True


class WorkflowDefinition(BaseModel):
    """Versioned, named list of step templates."""

    id: str = Field(default_factory=new_id)
    name: str
    version: int = 1
    description: Optional[str] = None
    steps: List[StepTemplate] = Field(default_factory=list)
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Instances


class Step(BaseModel):
    """A step instance owned by one workflow."""

    id: str = Field(default_factory=new_id)
    workflow_id: str
    idx: int
    kind: StepKind
    state: StepState = StepState.READY
    config: StepConfig = Field(default_factory=StepConfig)
    compensating: Optional[CompensationSpec] = None
    replay_count: int = 0
    can_replay: bool = True
    can_execute: bool = True
    failed_at: Optional[datetime] = None
    executed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Workflow(BaseModel):
    """A running instance of a workflow definition."""

    id: str = Field(default_factory=new_id)
    type: str
    definition_version: int = 1
    state: WorkflowState = WorkflowState.PENDING
    metadata: Dict[str, Any] = Field(default_factory=dict)
    current_step_index: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    steps: List[Step] = Field(default_factory=list)

    def step_by_id(self, step_id: str) -> Optional[Step]:
        return next((s for s in self.steps if s.id == step_id), None)

    def ordered_steps(self) -> List[Step]:
        return sorted(self.steps, key=lambda s: s.idx)


class Approval(BaseModel):
    """One human decision request bound to a step occurrence."""

    id: str = Field(default_factory=new_id)
    workflow_id: str
    step_id: str
    token: str = Field(default_factory=new_token)
    channel: str
    status: ApprovalStatus = ApprovalStatus.PENDING
    expires_at: datetime
    feedback: Optional[str] = None
    decided_by: Optional[str] = None
    # set once a decision for this token is accepted onto the queue
    decision_queued_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at < (now or utcnow())


class Event(BaseModel):
    """Append-only audit entry."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    workflow_id: str
    type: EventType
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class StepReplay(BaseModel):
    """Append-only audit row written for every replay."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    step_id: str
    workflow_id: str
    reason: Optional[str] = None
    replayed_by: str = DEFAULT_ACTOR
    created_at: datetime = Field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Results returned across the boundary


class SubmissionReceipt(BaseModel):
    job_id: str
    decision: Decision
    queued: bool


class SettlementResult(BaseModel):
    workflow_id: Optional[str] = None
    decision: Optional[Decision] = None
    skipped: bool = False
    reason: Optional[str] = None


class ReplayResult(BaseModel):
    workflow_id: str
    step_id: str
    mode: Literal["replay", "execute"]
    message: str


class ResendResult(BaseModel):
    approval_id: str
    new_token: str
    new_expiry: datetime


# ---------------------------------------------------------------------------
# Queue envelope


class Job(BaseModel):
    """Envelope carried over a job queue."""

    job_id: str
    name: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    attempt: int = 1
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    enqueued_at: datetime = Field(default_factory=utcnow)
    last_error: Optional[str] = None

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str | bytes) -> "Job":
        return cls.model_validate_json(data)

    def bump_attempt(self, error: Optional[str] = None) -> "Job":
        """Return a copy scheduled for the next delivery attempt."""
        return self.model_copy(
            update={"attempt": self.attempt + 1, "last_error": error, "enqueued_at": utcnow()}
        )

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.max_attempts


class WorkflowDetails(BaseModel):
    """A workflow with its approvals and most recent events."""

    workflow: Workflow
    approvals: List[Approval] = Field(default_factory=list)
    events: List[Event] = Field(default_factory=list)
