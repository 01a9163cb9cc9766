"""Worker delivering queued notifications to their channels."""

from __future__ import annotations

from typing import Any, Dict, Optional

from ..constants import NOTIFICATION_QUEUE
from ..contracts import Approval, Job, Step, Workflow
from ..notifications import ChannelDispatcher
from ..queues import BaseJobQueue
from .base import QueueWorker


class NotificationWorker(QueueWorker):
    """Fan each notification job out to all of its channels.

    Per-channel failures are reported in the job result and do not fail the
    job, so one broken webhook never triggers resends on the healthy ones.
    """

    topic = NOTIFICATION_QUEUE

    def __init__(
        self,
        queue: BaseJobQueue,
        dispatcher: ChannelDispatcher,
        concurrency: int = 10,
        **kwargs: Any,
    ) -> None:
        super().__init__(queue, concurrency=concurrency, **kwargs)
        self._dispatcher = dispatcher

    async def process(self, job: Job) -> Dict[str, Optional[str]]:
        payload = job.payload
        approval = Approval.model_validate(payload["approval"])
        workflow = (
            Workflow.model_validate(payload["workflow"]) if payload.get("workflow") else None
        )
        step = Step.model_validate(payload["step"]) if payload.get("step") else None
        return await self._dispatcher.fan_out(job.name, approval, workflow, step)
