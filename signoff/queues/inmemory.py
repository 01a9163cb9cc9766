"""In-memory job queue for tests and single-process deployments."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import Deque, Dict, List, Optional, Set, Tuple

from ..contracts import Job
from .base import BaseJobQueue, RawJob


class InMemoryJobQueue(BaseJobQueue):
    """Simple in-process queue."""

    def __init__(self) -> None:
        self._queues: Dict[str, Deque[RawJob]] = defaultdict(deque)
        self._failed: Dict[str, List[Job]] = defaultdict(list)
        self._reserved: Set[str] = set()
        self._lock = asyncio.Lock()
        self._ready = asyncio.Condition(self._lock)

    async def enqueue(self, topic: str, job: Job) -> bool:
        async with self._ready:
            if job.job_id in self._reserved:
                return False
            self._reserved.add(job.job_id)
            self._queues[topic].append((topic, job.to_json()))
            self._ready.notify_all()
        return True

    async def pop(
        self, topic: str, timeout: float = 1.0
    ) -> Optional[Tuple[RawJob, Job]]:
        async with self._ready:
            if not self._queues[topic] and timeout > 0:
                try:
                    await asyncio.wait_for(
                        self._ready.wait_for(lambda: bool(self._queues[topic])),
                        timeout,
                    )
                except asyncio.TimeoutError:
                    return None
            if not self._queues[topic]:
                return None
            raw = self._queues[topic].popleft()
        return raw, Job.from_json(raw[1])

    async def ack(self, raw_job: RawJob) -> None:
        job = Job.from_json(raw_job[1])
        async with self._lock:
            self._reserved.discard(job.job_id)

    async def retry(self, raw_job: RawJob, job: Job) -> None:
        topic = raw_job[0]
        async with self._ready:
            self._queues[topic].append((topic, job.to_json()))
            self._ready.notify_all()

    async def dead_letter(self, raw_job: RawJob, job: Job) -> None:
        async with self._lock:
            self._failed[raw_job[0]].append(job)
            self._reserved.discard(job.job_id)

    async def failed_jobs(self, topic: str) -> list[Job]:
        return list(self._failed[topic])

    def pending(self, topic: str) -> int:
        """Number of jobs waiting on ``topic``."""
        return len(self._queues[topic])
