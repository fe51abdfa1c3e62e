"""Job brokers: where queued, delayed, completed and dead jobs live.

``InMemoryJobBroker`` backs local mode and tests. ``RedisJobBroker`` is the
durable production broker; per queue it keeps a ready list, a processing
list of claimed jobs, a sorted set of delayed retries scored by due time, a
dead-letter list and a completed list trimmed to ``COMPLETED_RETENTION``
entries.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import math
import time
from collections import deque
from dataclasses import replace
from typing import Callable, Protocol, runtime_checkable

import redis.asyncio as redis
from redis.asyncio.client import Pipeline
from redis.commands.core import AsyncScript

from .models import COMPLETED_RETENTION, Job

logger = logging.getLogger(__name__)

# Moves every due member of the delayed set (KEYS[1]) onto the ready list
# (KEYS[2]) atomically; ARGV[1] is the current epoch time.
_PROMOTE_DUE = """
local due = redis.call("ZRANGEBYSCORE", KEYS[1], "-inf", ARGV[1])
for _, member in ipairs(due) do
    redis.call("ZREM", KEYS[1], member)
    redis.call("LPUSH", KEYS[2], member)
end
return #due
"""


@runtime_checkable
class JobBroker(Protocol):
    async def connect(self) -> None: ...
    async def declare_queue(self, queue_name: str) -> None: ...
    async def requeue_stalled(self, queue_name: str) -> int: ...
    async def push(self, job: Job) -> None: ...
    async def schedule(self, job: Job, delay_seconds: float) -> None: ...
    async def pop(self, queue_name: str, timeout: float) -> Job | None: ...
    async def complete(self, job: Job) -> None: ...
    async def dead_letter(self, job: Job) -> None: ...
    async def close(self) -> None: ...


# ── In-memory ────────────────────────────────────────────────────


class InMemoryJobBroker:
    """Process-local broker (no persistence across restarts)."""

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._ready: dict[str, deque[Job]] = {}
        self._delayed: dict[str, list[tuple[float, int, Job]]] = {}
        self._completed: dict[str, deque[Job]] = {}
        self._dead: dict[str, list[Job]] = {}
        self._seq = itertools.count()
        self._cond: asyncio.Condition | None = None
        self._closed = False

    def _condition(self) -> asyncio.Condition:
        # Created lazily so the broker binds to the running loop.
        if self._cond is None:
            self._cond = asyncio.Condition()
        return self._cond

    async def connect(self) -> None:
        self._closed = False

    async def declare_queue(self, queue_name: str) -> None:
        self._ready.setdefault(queue_name, deque())
        self._delayed.setdefault(queue_name, [])
        self._completed.setdefault(queue_name, deque(maxlen=COMPLETED_RETENTION))
        self._dead.setdefault(queue_name, [])

    async def requeue_stalled(self, queue_name: str) -> int:
        return 0

    async def push(self, job: Job) -> None:
        cond = self._condition()
        async with cond:
            self._ready[job.queue_name].append(job)
            cond.notify_all()

    async def schedule(self, job: Job, delay_seconds: float) -> None:
        due = self._clock() + delay_seconds
        cond = self._condition()
        async with cond:
            heapq.heappush(self._delayed[job.queue_name], (due, next(self._seq), job))
            cond.notify_all()

    def _promote_due(self, queue_name: str) -> float | None:
        """Move due delayed jobs to the ready list; return seconds until the next one."""
        delayed = self._delayed[queue_name]
        now = self._clock()
        while delayed and delayed[0][0] <= now:
            _, _, job = heapq.heappop(delayed)
            self._ready[queue_name].append(job)
        return delayed[0][0] - now if delayed else None

    async def pop(self, queue_name: str, timeout: float) -> Job | None:
        cond = self._condition()
        deadline = self._clock() + timeout
        async with cond:
            while not self._closed:
                next_due = self._promote_due(queue_name)
                ready = self._ready[queue_name]
                if ready:
                    return ready.popleft()
                remaining = deadline - self._clock()
                if remaining <= 0:
                    return None
                wait_for = remaining if next_due is None else min(remaining, next_due)
                try:
                    await asyncio.wait_for(cond.wait(), timeout=wait_for)
                except asyncio.TimeoutError:
                    pass
        return None

    async def complete(self, job: Job) -> None:
        self._completed[job.queue_name].appendleft(job)

    async def dead_letter(self, job: Job) -> None:
        self._dead[job.queue_name].append(job)

    async def close(self) -> None:
        self._closed = True
        if self._cond is not None:
            async with self._cond:
                self._cond.notify_all()

    # ── Inspection ───────────────────────────────────────────────

    def pending(self, queue_name: str) -> list[Job]:
        return list(self._ready.get(queue_name, ()))

    def delayed(self, queue_name: str) -> list[Job]:
        return [job for _, _, job in sorted(self._delayed.get(queue_name, []))]

    def completed(self, queue_name: str) -> list[Job]:
        return list(self._completed.get(queue_name, ()))

    def dead(self, queue_name: str) -> list[Job]:
        return list(self._dead.get(queue_name, ()))


# ── Redis ────────────────────────────────────────────────────────


class RedisJobBroker:
    """Durable broker on Redis lists and sorted sets.

    ``pop`` moves a job from the ready list onto the queue's processing list
    in one command; ``complete``, ``schedule`` and ``dead_letter`` remove it
    from there in the same transaction that records the outcome. Whatever is
    still on a processing list belonged to a consumer that died mid-job and
    is put back by ``requeue_stalled``.
    """

    def __init__(
        self,
        redis_url: str,
        *,
        prefix: str = "envctl",
        client: redis.Redis | None = None,
    ) -> None:
        self._redis_url = redis_url
        self._prefix = prefix
        self._client = client
        self._promote_script: AsyncScript | None = None
        # Job id -> the exact entry claimed onto the processing list.
        self._claimed: dict[str, str] = {}

    def _key(self, kind: str, queue_name: str) -> str:
        return f"{self._prefix}:{kind}:{queue_name}"

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            raise RuntimeError("RedisJobBroker is not connected")
        return self._client

    async def connect(self) -> None:
        if self._client is None:
            self._client = redis.Redis.from_url(self._redis_url, decode_responses=True)
        await self._client.ping()
        logger.info("Connected to job broker at %s", self._redis_url.rsplit("@", 1)[-1])

    async def declare_queue(self, queue_name: str) -> None:
        await self.client.sadd(f"{self._prefix}:queues", queue_name)

    async def requeue_stalled(self, queue_name: str) -> int:
        """Put jobs left on the processing list back at the head of the queue."""
        processing = self._key("processing", queue_name)
        ready = self._key("queue", queue_name)
        moved = 0
        while await self.client.lmove(processing, ready, "LEFT", "RIGHT") is not None:
            moved += 1
        if moved:
            logger.warning("Requeued %d stalled job(s) on %s", moved, queue_name)
        return moved

    async def push(self, job: Job) -> None:
        await self.client.lpush(self._key("queue", job.queue_name), job.to_json())

    def _release(self, pipe: Pipeline, job: Job) -> None:
        raw = self._claimed.pop(job.id, None)
        if raw is not None:
            pipe.lrem(self._key("processing", job.queue_name), 1, raw)

    async def schedule(self, job: Job, delay_seconds: float) -> None:
        due = time.time() + delay_seconds
        job = replace(job, available_at=due)
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.zadd(self._key("delayed", job.queue_name), {job.to_json(): due})
            self._release(pipe, job)
            await pipe.execute()

    async def _promote_due(self, queue_name: str) -> int:
        if self._promote_script is None:
            self._promote_script = self.client.register_script(_PROMOTE_DUE)
        return await self._promote_script(
            keys=[self._key("delayed", queue_name), self._key("queue", queue_name)],
            args=[time.time()],
        )

    async def pop(self, queue_name: str, timeout: float) -> Job | None:
        await self._promote_due(queue_name)
        raw = await self.client.blmove(
            self._key("queue", queue_name),
            self._key("processing", queue_name),
            max(1, math.ceil(timeout)),
            "RIGHT",
            "LEFT",
        )
        if raw is None:
            return None
        job = Job.from_json(raw)
        self._claimed[job.id] = raw
        return job

    async def complete(self, job: Job) -> None:
        key = self._key("completed", job.queue_name)
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.lpush(key, job.to_json())
            pipe.ltrim(key, 0, COMPLETED_RETENTION - 1)
            self._release(pipe, job)
            await pipe.execute()

    async def dead_letter(self, job: Job) -> None:
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.lpush(self._key("dead", job.queue_name), job.to_json())
            self._release(pipe, job)
            await pipe.execute()

    async def close(self) -> None:
        self._claimed.clear()
        self._promote_script = None
        if self._client is not None:
            await self._client.aclose()
            self._client = None
