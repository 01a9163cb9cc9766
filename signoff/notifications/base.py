"""Notification hand-off used by the engine."""

from __future__ import annotations

import hashlib
import logging
from typing import Optional, Protocol

from ..constants import DEFAULT_MAX_ATTEMPTS, NOTIFICATION_QUEUE
from ..contracts import Approval, Job, Step, Workflow
from ..queues import BaseJobQueue

logger = logging.getLogger(__name__)

APPROVAL_REQUESTED = "approval_requested"
APPROVAL_EXPIRED = "approval_expired"


class Notifier(Protocol):
    """Decides that a notification is due; delivery happens elsewhere."""

    async def notify_approval_requested(
        self, approval: Approval, workflow: Workflow, step: Step
    ) -> None:
        """Announce a new (or resent) approval request."""

    async def notify_approval_expired(self, approval: Approval) -> None:
        """Announce that an approval passed its deadline."""


class LoggingNotifier:
    """Notifier that only logs; used when no queue is wired in."""

    async def notify_approval_requested(
        self, approval: Approval, workflow: Workflow, step: Step
    ) -> None:
        logger.info(
            f"Approval {approval.id} requested for step {step.idx} of workflow "
            f"{workflow.id} via {approval.channel}"
        )

    async def notify_approval_expired(self, approval: Approval) -> None:
        logger.info(f"Approval {approval.id} for workflow {approval.workflow_id} expired")


def _fingerprint(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()[:12]


class QueueNotifier:
    """Enqueue notification jobs for the notification worker to fan out."""

    def __init__(
        self, queue: BaseJobQueue, max_attempts: int = DEFAULT_MAX_ATTEMPTS
    ) -> None:
        self._queue = queue
        self._max_attempts = max_attempts

    async def notify_approval_requested(
        self, approval: Approval, workflow: Workflow, step: Step
    ) -> None:
        job = Job(
            # keyed per token so a resend is not collapsed into the original
            job_id=f"notification-{approval.id}-{_fingerprint(approval.token)}",
            name=APPROVAL_REQUESTED,
            max_attempts=self._max_attempts,
            payload={
                "approval": approval.model_dump(mode="json"),
                "workflow": workflow.model_dump(mode="json", exclude={"steps"}),
                "step": step.model_dump(mode="json"),
            },
        )
        queued = await self._queue.enqueue(NOTIFICATION_QUEUE, job)
        if queued:
            logger.info(f"Notification queued: {job.job_id}")
        else:
            logger.warning(f"Notification {job.job_id} already queued, skipping")

    async def notify_approval_expired(self, approval: Approval) -> None:
        job = Job(
            job_id=f"expiry-{approval.id}-{_fingerprint(approval.token)}",
            name=APPROVAL_EXPIRED,
            max_attempts=self._max_attempts,
            payload={"approval": approval.model_dump(mode="json")},
        )
        await self._queue.enqueue(NOTIFICATION_QUEUE, job)


async def notify_safely(
    notifier: Optional[Notifier], method: str, *args: object
) -> None:
    """Call ``notifier.<method>`` and log failures instead of raising."""
    if notifier is None:
        return
    try:
        await getattr(notifier, method)(*args)
    except Exception as exc:
        logger.error(f"Notifier {method} failed: {exc}")
