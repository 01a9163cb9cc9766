"""Queue consumer shared by the approval and notification workers."""

from __future__ import annotations

import abc
import asyncio
import logging
from typing import Any, Optional, Set

from ..constants import DEFAULT_BACKOFF_BASE, DEFAULT_BACKOFF_JITTER
from ..contracts import Job
from ..queues import BaseJobQueue, RawJob
from ..utils import retry

logger = logging.getLogger(__name__)


class QueueWorker(metaclass=abc.ABCMeta):
    """Consume one topic with bounded concurrency.

    A job that raises is retried with exponential backoff until it runs out
    of attempts, then moved to the topic's failed list.
    """

    topic: str

    def __init__(
        self,
        queue: BaseJobQueue,
        concurrency: int = 1,
        backoff_base: float = DEFAULT_BACKOFF_BASE,
        backoff_jitter: float = DEFAULT_BACKOFF_JITTER,
    ) -> None:
        self._queue = queue
        self.concurrency = max(1, concurrency)
        self.backoff_base = backoff_base
        self.backoff_jitter = backoff_jitter

    @abc.abstractmethod
    async def process(self, job: Job) -> Any:
        """Do the work for ``job``; raise to trigger a retry."""
        raise NotImplementedError

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Consume jobs until ``lifespan`` seconds have passed (forever if None)."""
        logger.info(f"Worker for '{self.topic}' started (concurrency={self.concurrency})")
        recovered = await self._queue.recover(self.topic)
        if recovered:
            logger.warning(f"Requeued {recovered} unfinished jobs on '{self.topic}'")
        semaphore = asyncio.Semaphore(self.concurrency)
        in_flight: Set[asyncio.Task] = set()

        async def run(raw: RawJob, job: Job) -> None:
            try:
                await self.handle(raw, job)
            finally:
                semaphore.release()

        async for raw, job in self._queue.subscribe(self.topic, lifespan=lifespan):
            await semaphore.acquire()
            task = asyncio.create_task(run(raw, job))
            in_flight.add(task)
            task.add_done_callback(in_flight.discard)

        if in_flight:
            await asyncio.gather(*in_flight)
        logger.info(f"Worker for '{self.topic}' stopped")

    async def drain(self) -> int:
        """Process queued jobs one at a time until the topic is empty."""
        handled = 0
        while True:
            item = await self._queue.pop(self.topic, timeout=0)
            if item is None:
                return handled
            await self.handle(*item)
            handled += 1

    async def handle(self, raw: RawJob, job: Job) -> bool:
        """Process one job and ack, retry or dead-letter it. Return success."""
        try:
            result = await self.process(job)
        except Exception as exc:
            error = str(exc) or type(exc).__name__
            if job.exhausted:
                logger.error(
                    f"Job {job.job_id} failed after {job.attempt} attempts: {error}"
                )
                await self._queue.dead_letter(
                    raw, job.model_copy(update={"last_error": error})
                )
            else:
                logger.warning(
                    f"Job {job.job_id} failed (attempt {job.attempt}/{job.max_attempts}): "
                    f"{error}"
                )
                await retry.schedule_retry(
                    job.attempt, base=self.backoff_base, jitter=self.backoff_jitter
                )
                await self._queue.retry(raw, job.bump_attempt(error))
            return False

        await self._queue.ack(raw)
        logger.info(f"Job {job.job_id} completed: {result}")
        return True
