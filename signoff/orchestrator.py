"""Single entry point wiring the engine to its backends."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, Optional

from .config import SignoffConfig, load_config
from .constants import DEFAULT_ACTOR
from .contracts import (
    ReplayResult,
    ResendResult,
    SubmissionReceipt,
    Workflow,
    WorkflowDefinition,
    WorkflowDetails,
)
from .engine import (
    AUTO_ACTIONS,
    COMPENSATIONS,
    ApprovalSettlement,
    Compensator,
    DefinitionService,
    ExpirySweeper,
    HandlerRegistry,
    ReplayManager,
    StepExecutor,
    WorkflowDriver,
)
from .notifications import ChannelDispatcher, Notifier, QueueNotifier
from .persistence import StateRepository, get_repository
from .queues import BaseJobQueue, InMemoryJobQueue, get_queue
from .workers import ApprovalWorker, NotificationWorker

logger = logging.getLogger(__name__)


class Orchestrator:
    """Boundary operations of the workflow engine.

    Holds one repository, one job queue and the engine services built on
    them. Both workers are created on demand against the same queue.
    """

    def __init__(
        self,
        repository: StateRepository,
        queue: BaseJobQueue,
        config: Optional[SignoffConfig] = None,
        notifier: Optional[Notifier] = None,
        dispatcher: Optional[ChannelDispatcher] = None,
        actions: Optional[HandlerRegistry] = None,
        compensations: Optional[HandlerRegistry] = None,
    ) -> None:
        self.config = config or SignoffConfig()
        self.repository = repository
        self.queue = queue
        self.notifier = notifier or QueueNotifier(
            queue, max_attempts=self.config.queue.max_attempts
        )
        self.dispatcher = dispatcher or ChannelDispatcher.from_config(self.config)

        ttl = timedelta(hours=self.config.approvals.ttl_hours)
        self.compensator = Compensator(
            repository,
            handlers=compensations or COMPENSATIONS,
            validation=self.config.validation,
        )
        self.definitions = DefinitionService(repository)
        self.executor = StepExecutor(
            repository,
            notifier=self.notifier,
            actions=actions or AUTO_ACTIONS,
            compensator=self.compensator,
            approval_ttl=ttl,
            validation=self.config.validation,
        )
        self.driver = WorkflowDriver(repository, self.executor, self.definitions)
        self.settlement = ApprovalSettlement(
            repository,
            self.driver,
            queue=queue,
            max_attempts=self.config.queue.max_attempts,
        )
        self.replays = ReplayManager(repository, self.executor, self.driver, self.compensator)
        self.sweeper = ExpirySweeper(repository, notifier=self.notifier, approval_ttl=ttl)

    @classmethod
    def from_config(
        cls, config: Optional[SignoffConfig] = None, **kwargs: Any
    ) -> "Orchestrator":
        explicit = config is not None
        config = config or load_config()
        # without an explicit config, reuse the process-wide repository
        repository = get_repository(config=config) if explicit else get_repository()
        queue = get_queue(config=config)
        logger.info(
            f"Using {type(repository).__name__} with {type(queue).__name__}"
        )
        return cls(repository, queue, config=config, **kwargs)

    # ------------------------------------------------------------------
    async def connect(self) -> None:
        await self.queue.connect()

    async def close(self) -> None:
        await self.queue.disconnect()
        dispose = getattr(self.repository, "dispose", None)
        if dispose is not None:
            await dispose()

    def approval_worker(self) -> ApprovalWorker:
        return ApprovalWorker(
            self.queue,
            self.settlement,
            concurrency=self.config.workers.approval_concurrency,
            backoff_base=self.config.queue.backoff_base,
            backoff_jitter=self.config.queue.backoff_jitter,
        )

    def notification_worker(self) -> NotificationWorker:
        return NotificationWorker(
            self.queue,
            self.dispatcher,
            concurrency=self.config.workers.notification_concurrency,
            backoff_base=self.config.queue.backoff_base,
            backoff_jitter=self.config.queue.backoff_jitter,
        )

    @property
    def runs_in_process(self) -> bool:
        """True when queued jobs can only be consumed by this process."""
        return isinstance(self.queue, InMemoryJobQueue)

    async def process_pending(self) -> Dict[str, int]:
        """Drain both queues in this process; return jobs handled per queue."""
        approvals = await self.approval_worker().drain()
        notifications = await self.notification_worker().drain()
        return {"approvals": approvals, "notifications": notifications}

    # ------------------------------------------------------------------
    # Definitions

    async def create_definition(
        self, name: str, steps: Iterable[Any], description: Optional[str] = None
    ) -> WorkflowDefinition:
        return await self.definitions.create(name, steps, description)

    async def get_active_definition(self, name: str) -> WorkflowDefinition:
        return await self.definitions.get_active(name)

    async def list_definitions(self) -> list[WorkflowDefinition]:
        return await self.definitions.list_definitions()

    async def deactivate_definition(self, name: str) -> int:
        return await self.definitions.deactivate(name)

    # ------------------------------------------------------------------
    # Workflows

    async def create_workflow(
        self,
        workflow_type: str,
        metadata: Optional[Dict[str, Any]] = None,
        start: bool = True,
    ) -> Workflow:
        """Create a workflow and, unless ``start`` is false, run it."""
        workflow = await self.driver.create(workflow_type, metadata)
        if not start:
            return workflow
        return await self.driver.execute(workflow.id)

    async def execute_workflow(self, workflow_id: str) -> Workflow:
        return await self.driver.execute(workflow_id)

    async def get_workflow(self, workflow_id: str) -> Workflow:
        return await self.driver.get(workflow_id)

    async def get_workflow_details(
        self, workflow_id: str, event_limit: int = 20
    ) -> WorkflowDetails:
        return await self.driver.get_details(workflow_id, event_limit=event_limit)

    async def list_workflows(self) -> list[Workflow]:
        return await self.driver.list()

    async def delete_workflow(self, workflow_id: str) -> None:
        await self.driver.delete(workflow_id)

    async def retry_step(self, step_id: str) -> Workflow:
        return await self.driver.retry_step(step_id)

    async def replay_step(
        self,
        workflow_id: str,
        step_id: str,
        reason: Optional[str] = None,
        actor: str = DEFAULT_ACTOR,
    ) -> ReplayResult:
        return await self.replays.replay(workflow_id, step_id, reason, replayed_by=actor)

    async def execute_or_replay_step(
        self,
        workflow_id: str,
        step_id: str,
        reason: Optional[str] = None,
        actor: str = DEFAULT_ACTOR,
    ) -> ReplayResult:
        return await self.replays.execute_or_replay(workflow_id, step_id, reason, actor=actor)

    async def restart_workflow(
        self,
        workflow_id: str,
        actor: str = DEFAULT_ACTOR,
        reason: Optional[str] = None,
    ) -> Workflow:
        return await self.replays.restart(workflow_id, restarted_by=actor, reason=reason)

    # ------------------------------------------------------------------
    # Approvals

    async def submit_approval_decision(
        self,
        token: str,
        decision: str,
        feedback: Optional[str] = None,
        decided_by: str = DEFAULT_ACTOR,
    ) -> SubmissionReceipt:
        return await self.settlement.submit_decision(token, decision, feedback, decided_by)

    async def resend_approval(self, approval_id: str) -> ResendResult:
        return await self.sweeper.resend(approval_id)

    async def run_expiry_sweep(self, now: Optional[datetime] = None) -> int:
        return await self.sweeper.sweep(now)
