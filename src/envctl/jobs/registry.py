"""Job registry and workers.

``JobRegistry`` is constructed once at service start and passed to whatever
enqueues or consumes jobs. It owns the broker, the retry policy and one
``Worker`` per queue.

Each worker runs ``concurrency`` asyncio slots; a slot takes one job, runs the
handler to completion and only then takes the next. A handler exception
schedules a delayed retry until the attempt budget is spent, after which the
job is dead-lettered. Shutdown stops slots from taking new jobs and waits
for in-flight ones.
"""

from __future__ import annotations

import asyncio
from dataclasses import replace
from typing import Any, Awaitable, Callable, Iterable

from envctl.errors import JobExhaustedError, JobQueueError
from envctl.observability.logging import bind_job_context, get_logger
from envctl.observability.metrics import (
    JOB_OUTCOMES_TOTAL,
    JOBS_ENQUEUED_TOTAL,
    JOBS_IN_FLIGHT,
)

from .brokers import JobBroker
from .models import (
    KNOWN_QUEUES,
    OUTCOME_COMPLETED,
    OUTCOME_DEAD_LETTERED,
    Job,
    JobEvent,
    RetryPolicy,
)

logger = get_logger(__name__)

JobHandler = Callable[[Job], Awaitable[Any]]
JobListener = Callable[[JobEvent], None]

DEFAULT_POLL_TIMEOUT_SECONDS = 1.0


class Worker:
    """Execution slots for one queue."""

    def __init__(
        self,
        registry: JobRegistry,
        queue_name: str,
        handler: JobHandler,
        *,
        concurrency: int = 1,
        poll_timeout: float = DEFAULT_POLL_TIMEOUT_SECONDS,
    ) -> None:
        if concurrency < 1:
            raise ValueError('concurrency must be >= 1')
        self.queue_name = queue_name
        self.handler = handler
        self.concurrency = concurrency
        self._registry = registry
        self._poll_timeout = poll_timeout
        self._stopping = asyncio.Event()
        self._slots: list[asyncio.Task[None]] = []

    @property
    def running(self) -> bool:
        return bool(self._slots) and not self._stopping.is_set()

    def start(self) -> None:
        if self._slots:
            return
        self._slots = [
            asyncio.create_task(self._run_slot(i), name=f'{self.queue_name}-slot-{i}')
            for i in range(self.concurrency)
        ]
        logger.info('worker_started', queue=self.queue_name, concurrency=self.concurrency)

    async def stop(self) -> None:
        """Stop taking jobs and wait for in-flight ones to finish."""
        self._stopping.set()
        if self._slots:
            await asyncio.gather(*self._slots, return_exceptions=True)
        logger.info('worker_stopped', queue=self.queue_name)

    async def _run_slot(self, slot: int) -> None:
        broker = self._registry.broker
        while not self._stopping.is_set():
            try:
                job = await broker.pop(self.queue_name, self._poll_timeout)
            except Exception:
                logger.exception('job_pop_failed', queue=self.queue_name, slot=slot)
                await asyncio.sleep(self._poll_timeout)
                continue
            if job is None:
                continue
            try:
                await self._execute(job)
            except Exception:
                # Broker failed while recording the outcome; the job is lost.
                logger.exception('job_outcome_not_recorded', queue=self.queue_name, job_id=job.id)

    async def _execute(self, job: Job) -> None:
        job = replace(job, attempt_count=job.attempt_count + 1)
        with bind_job_context(queue=job.queue_name, job_id=job.id, attempt=job.attempt_count):
            JOBS_IN_FLIGHT.labels(queue=job.queue_name).inc()
            try:
                await self.handler(job)
            except Exception as exc:
                await self._registry.fail_job(job, exc)
            else:
                await self._registry.complete_job(job)
            finally:
                JOBS_IN_FLIGHT.labels(queue=job.queue_name).dec()


class JobRegistry:
    """Owns the broker connection, queues and workers.

    Args:
        broker: Where jobs are stored.
        retry_policy: Attempt budget and backoff applied to every queue.
        queues: Queue names created by ``initialize``.
    """

    def __init__(
        self,
        broker: JobBroker,
        retry_policy: RetryPolicy | None = None,
        *,
        queues: Iterable[str] = KNOWN_QUEUES,
        poll_timeout: float = DEFAULT_POLL_TIMEOUT_SECONDS,
    ) -> None:
        self.broker = broker
        self.retry_policy = retry_policy or RetryPolicy()
        self.queues = tuple(queues)
        self._poll_timeout = poll_timeout
        self._workers: dict[str, Worker] = {}
        self._listeners: list[JobListener] = []
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def workers(self) -> dict[str, Worker]:
        return dict(self._workers)

    async def initialize(self, *, recover_stalled: bool = False) -> None:
        """Connect and declare queues.

        With ``recover_stalled`` jobs a dead consumer left claimed are put
        back on their queues; only the process that runs the workers passes
        it, since a claimed job of a live consumer would be run twice.
        """
        if self._initialized:
            return
        await self.broker.connect()
        requeued = 0
        for queue_name in self.queues:
            await self.broker.declare_queue(queue_name)
            if recover_stalled:
                requeued += await self.broker.requeue_stalled(queue_name)
        self._initialized = True
        logger.info('job_registry_initialized', queues=list(self.queues), requeued=requeued)

    def _require_queue(self, queue_name: str) -> None:
        if not self._initialized:
            raise JobQueueError('job registry is not initialized')
        if queue_name not in self.queues:
            raise JobQueueError(f'unknown queue {queue_name!r}')

    def add_listener(self, listener: JobListener) -> None:
        self._listeners.append(listener)

    async def enqueue(self, queue_name: str, payload: dict[str, Any]) -> Job:
        """Record a job; returns once the broker holds it, not once it ran."""
        self._require_queue(queue_name)
        job = Job(
            queue_name=queue_name,
            payload=dict(payload),
            max_attempts=self.retry_policy.max_attempts,
        )
        await self.broker.push(job)
        JOBS_ENQUEUED_TOTAL.labels(queue=queue_name).inc()
        logger.info('job_enqueued', queue=queue_name, job_id=job.id)
        return job

    def register_worker(
        self,
        queue_name: str,
        handler: JobHandler,
        *,
        concurrency: int = 1,
    ) -> Worker:
        """Start a worker for ``queue_name``. A second call returns the first worker."""
        self._require_queue(queue_name)
        existing = self._workers.get(queue_name)
        if existing is not None:
            logger.warning('worker_already_registered', queue=queue_name)
            return existing
        worker = Worker(
            self, queue_name, handler,
            concurrency=concurrency, poll_timeout=self._poll_timeout,
        )
        self._workers[queue_name] = worker
        worker.start()
        return worker

    async def shutdown(self) -> None:
        if not self._initialized:
            return
        self._initialized = False
        workers = list(self._workers.values())
        self._workers.clear()
        await asyncio.gather(*(worker.stop() for worker in workers))
        await self.broker.close()
        logger.info('job_registry_shutdown')

    # ── Outcomes ─────────────────────────────────────────────────

    def _notify(self, event: JobEvent) -> None:
        for listener in self._listeners:
            try:
                listener(event)
            except Exception:
                logger.exception('job_listener_failed', kind=event.kind, job_id=event.job.id)

    async def complete_job(self, job: Job) -> None:
        job = replace(job, outcome=OUTCOME_COMPLETED, last_error=None)
        await self.broker.complete(job)
        JOB_OUTCOMES_TOTAL.labels(queue=job.queue_name, outcome='completed').inc()
        logger.info('job_completed', queue=job.queue_name, job_id=job.id, attempt=job.attempt_count)
        self._notify(JobEvent('completed', job))

    async def fail_job(self, job: Job, exc: Exception) -> None:
        job = replace(job, last_error=str(exc) or type(exc).__name__)
        if not self.retry_policy.exhausted(job.attempt_count):
            delay = self.retry_policy.delay_after(job.attempt_count)
            await self.broker.schedule(job, delay)
            JOB_OUTCOMES_TOTAL.labels(queue=job.queue_name, outcome='failed').inc()
            logger.warning(
                'job_failed_retrying',
                queue=job.queue_name,
                job_id=job.id,
                attempt=job.attempt_count,
                max_attempts=job.max_attempts,
                retry_in_seconds=delay,
                error=job.last_error,
            )
            self._notify(JobEvent('failed', job, exc))
            return

        job = replace(job, outcome=OUTCOME_DEAD_LETTERED)
        await self.broker.dead_letter(job)
        JOB_OUTCOMES_TOTAL.labels(queue=job.queue_name, outcome='dead_lettered').inc()
        exhausted = JobExhaustedError(job.queue_name, job.id, job.attempt_count, job.last_error)
        logger.error('job_dead_lettered', queue=job.queue_name, job_id=job.id, error=str(exhausted))
        self._notify(JobEvent(OUTCOME_DEAD_LETTERED, job, exhausted))
