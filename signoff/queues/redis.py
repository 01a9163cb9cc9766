"""Redis job queue for cross-process workers."""

from __future__ import annotations

from typing import Any, Optional, Tuple

import redis.asyncio as redis

from ..contracts import Job
from .base import BaseJobQueue, RawJob


class RedisJobQueue(BaseJobQueue):
    """Redis-backed queue.

    Jobs are pushed onto ``signoff:<topic>`` and atomically moved to
    ``signoff:<topic>:processing`` when popped. Jobs a crashed worker left
    there are put back by :meth:`recover`. Job ids are reserved with
    ``SET NX`` keys that expire after ``reservation_ttl`` seconds, so a lost
    job cannot block its id forever.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        prefix: str = "signoff",
        reservation_ttl: int = 3600,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.prefix = prefix
        self.reservation_ttl = reservation_ttl
        self._redis: Optional[Any] = None

    def _key(self, *parts: str) -> str:
        return ":".join((self.prefix, *parts))

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def _client(self) -> Any:
        if not self._redis:
            await self.connect()
        return self._redis

    async def enqueue(self, topic: str, job: Job) -> bool:
        client = await self._client()
        reserved = await client.set(
            self._key("job", job.job_id), topic, nx=True, ex=self.reservation_ttl
        )
        if not reserved:
            return False
        await client.lpush(self._key(topic), job.to_json())
        return True

    async def pop(
        self, topic: str, timeout: float = 1.0
    ) -> Optional[Tuple[RawJob, Job]]:
        client = await self._client()
        payload = await client.blmove(
            self._key(topic),
            self._key(topic, "processing"),
            timeout,
            src="RIGHT",
            dest="LEFT",
        )
        if payload is None:
            return None
        return (topic, payload), Job.from_json(payload)

    async def ack(self, raw_job: RawJob) -> None:
        client = await self._client()
        topic, payload = raw_job
        job = Job.from_json(payload)
        await client.lrem(self._key(topic, "processing"), 1, payload)
        await client.delete(self._key("job", job.job_id))

    async def retry(self, raw_job: RawJob, job: Job) -> None:
        client = await self._client()
        topic, payload = raw_job
        async with client.pipeline(transaction=True) as pipe:
            pipe.lrem(self._key(topic, "processing"), 1, payload)
            pipe.lpush(self._key(topic), job.to_json())
            pipe.expire(self._key("job", job.job_id), self.reservation_ttl)
            await pipe.execute()

    async def dead_letter(self, raw_job: RawJob, job: Job) -> None:
        client = await self._client()
        topic, payload = raw_job
        async with client.pipeline(transaction=True) as pipe:
            pipe.lrem(self._key(topic, "processing"), 1, payload)
            pipe.lpush(self._key(topic, "failed"), job.to_json())
            pipe.delete(self._key("job", job.job_id))
            await pipe.execute()

    async def recover(self, topic: str) -> int:
        client = await self._client()
        moved = 0
        # oldest in-flight job ends up first in line again
        while await client.lmove(
            self._key(topic, "processing"), self._key(topic), src="LEFT", dest="RIGHT"
        ):
            moved += 1
        return moved

    async def failed_jobs(self, topic: str) -> list[Job]:
        client = await self._client()
        payloads = await client.lrange(self._key(topic, "failed"), 0, -1)
        return [Job.from_json(p) for p in payloads]
