"""Worker applying queued approval decisions."""

from __future__ import annotations

from typing import Any

from ..constants import APPROVAL_QUEUE, DEFAULT_ACTOR
from ..contracts import Job
from ..engine import ApprovalSettlement
from ..queues import BaseJobQueue
from .base import QueueWorker


class ApprovalWorker(QueueWorker):
    topic = APPROVAL_QUEUE

    def __init__(
        self,
        queue: BaseJobQueue,
        settlement: ApprovalSettlement,
        concurrency: int = 5,
        **kwargs: Any,
    ) -> None:
        super().__init__(queue, concurrency=concurrency, **kwargs)
        self._settlement = settlement

    async def process(self, job: Job) -> Any:
        payload = job.payload
        result = await self._settlement.settle(
            payload["token"],
            payload["decision"],
            feedback=payload.get("feedback"),
            decided_by=payload.get("decided_by") or DEFAULT_ACTOR,
        )
        return result.model_dump(mode="json")
