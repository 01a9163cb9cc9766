"""Base job queue interface for deferred engine work."""

from __future__ import annotations

import abc
import asyncio
from typing import AsyncIterator, Optional, Tuple

from ..contracts import Job

# (topic, serialized job) as handed out by ``pop``; used for ack/retry
RawJob = Tuple[str, str]


class BaseJobQueue(metaclass=abc.ABCMeta):
    """Abstract at-least-once job queue with per-key deduplication.

    A job id stays reserved from ``enqueue`` until the job is acknowledged or
    moved to the failed list, so a second ``enqueue`` with the same id while
    the first is queued or in flight is collapsed into the first.
    """

    async def connect(self) -> None:
        """Open connection to broker (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to broker (no-op by default)."""
        pass

    @abc.abstractmethod
    async def enqueue(self, topic: str, job: Job) -> bool:
        """Queue ``job``; return ``False`` if its id is already reserved."""
        raise NotImplementedError

    @abc.abstractmethod
    async def pop(
        self, topic: str, timeout: float = 1.0
    ) -> Optional[Tuple[RawJob, Job]]:
        """Take the next job, waiting up to ``timeout`` seconds."""
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, raw_job: RawJob) -> None:
        """Acknowledge successful processing and release the job id."""
        raise NotImplementedError

    @abc.abstractmethod
    async def retry(self, raw_job: RawJob, job: Job) -> None:
        """Requeue ``job`` (already bumped) in place of ``raw_job``."""
        raise NotImplementedError

    @abc.abstractmethod
    async def dead_letter(self, raw_job: RawJob, job: Job) -> None:
        """Move ``job`` to the failed list and release its id."""
        raise NotImplementedError

    async def recover(self, topic: str) -> int:
        """Requeue jobs a stopped consumer popped but never settled.

        Called when a worker starts. Jobs still held by a live consumer are
        requeued too, so handlers must tolerate an occasional second delivery.
        Returns how many jobs were requeued (none by default).
        """
        return 0

    @abc.abstractmethod
    async def failed_jobs(self, topic: str) -> list[Job]:
        """Return jobs that exhausted their attempts."""
        raise NotImplementedError

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawJob, Job]]:
        """Yield jobs from ``topic``.

        Args:
            topic: The topic to subscribe to
            lifespan: Maximum time in seconds to keep consuming. If None, runs indefinitely.
        """
        loop = asyncio.get_running_loop()
        start_time = loop.time()

        while True:
            if lifespan is not None and loop.time() - start_time >= lifespan:
                break
            item = await self.pop(topic, timeout=min(1.0, lifespan or 1.0))
            if item is not None:
                yield item
