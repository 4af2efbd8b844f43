"""
QA Resolver — Job Queue

Named queues with idempotent job ids, state inspection and operator
actions, over two interchangeable backends:

  - ArqQueueBackend:    arq + Redis (production, multi-process)
  - MemoryQueueBackend: in-process dict (dev/testing)

GenerationQueue layers the per-entity dedup rule on top: an entity with
a waiting, active or delayed job gets no second job; once its latest job
has finished a fresh id {entity_id}-{epoch_ms} is minted. The latest job
id per entity is remembered so retry ids take part in dedup too.

The check-then-add sequence is not atomic. Two concurrent enqueues for
one entity can both pass the check; generation is idempotent per key so
the duplicate is harmless.

Usage:
    backend = ArqQueueBackend(redis_url="redis://localhost:6379")
    await backend.open()
    queue = GenerationQueue(backend, config_provider)
    job_id = await queue.enqueue("ticket-42")      # None if already queued
    await backend.close()
"""

from __future__ import annotations

import contextlib
import logging
import os
import threading
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Iterator

from jobs.models import (
    FINISHED_STATES, GENERATION_QUEUE, JOB_FUNCTIONS, LIVE_STATES,
    JobState, QueueJob,
)
from resolver.errors import InvalidJobState, NotFound, QueueOperationFailed

logger = logging.getLogger("qa_resolver.queue")

LATEST_JOB_KEY_PREFIX = "qa_resolver:latest_job:"

# finished job results and latest-job pointers expire after this
KEEP_RESULT_SECONDS = int(os.environ.get("RESOLVER_KEEP_RESULT_SECONDS", "604800"))


def _now_ms() -> int:
    return int(time.time() * 1000)


# ═══════════════════════════════════════════════════════════════════
# Backend Interface
# ═══════════════════════════════════════════════════════════════════

class QueueBackend:
    """Abstract interface for named job queues. All methods are coroutines."""

    async def open(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def add(
        self,
        queue: str,
        payload: dict[str, Any],
        job_id: str,
        defer_ms: int = 0,
        defer_until: datetime | None = None,
    ) -> str | None:
        """Add a job. Returns the job id, or None if the id already exists."""
        raise NotImplementedError

    async def get_state(self, queue: str, job_id: str) -> JobState | None:
        raise NotImplementedError

    async def get_job(self, queue: str, job_id: str) -> QueueJob | None:
        raise NotImplementedError

    async def list_jobs(self, queue: str, state: JobState | None = None) -> list[QueueJob]:
        raise NotImplementedError

    async def requeue(self, queue: str, job: QueueJob) -> None:
        """Move a finished job back to waiting under the same id."""
        raise NotImplementedError

    async def delete(self, queue: str, job_id: str) -> None:
        raise NotImplementedError

    async def latest_job_id(self, queue: str, entity_id: str) -> str | None:
        raise NotImplementedError

    async def remember_job(self, queue: str, entity_id: str, job_id: str) -> None:
        raise NotImplementedError


# ═══════════════════════════════════════════════════════════════════
# Memory Backend (dev/test)
# ═══════════════════════════════════════════════════════════════════

class MemoryQueueBackend(QueueBackend):
    """
    Thread-safe in-process queue.

    Nothing consumes jobs on its own; tests and dev loops drive the
    lifecycle with claim() / mark_completed() / mark_failed().
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._jobs: dict[str, dict[str, QueueJob]] = {}
        self._latest: dict[tuple[str, str], str] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def _refresh(self, job: QueueJob) -> QueueJob:
        if job.state == JobState.DELAYED and self._clock() >= job.run_at:
            job.state = JobState.WAITING
        return job

    async def add(self, queue, payload, job_id, defer_ms=0, defer_until=None):
        now = self._clock()
        if defer_until is not None:
            run_at = defer_until.timestamp()
        else:
            run_at = now + defer_ms / 1000.0
        with self._lock:
            jobs = self._jobs.setdefault(queue, {})
            if job_id in jobs:
                return None
            jobs[job_id] = QueueJob(
                id=job_id,
                queue=queue,
                function=JOB_FUNCTIONS.get(queue, queue),
                state=JobState.DELAYED if run_at > now else JobState.WAITING,
                payload=dict(payload),
                enqueued_at=now,
                run_at=run_at,
            )
        return job_id

    async def get_state(self, queue, job_id):
        job = await self.get_job(queue, job_id)
        return job.state if job else None

    async def get_job(self, queue, job_id):
        with self._lock:
            job = self._jobs.get(queue, {}).get(job_id)
            return self._refresh(job) if job else None

    async def list_jobs(self, queue, state=None):
        with self._lock:
            jobs = [self._refresh(j) for j in self._jobs.get(queue, {}).values()]
        return [j for j in jobs if state is None or j.state == state]

    async def requeue(self, queue, job):
        with self._lock:
            stored = self._jobs[queue][job.id]
            stored.state = JobState.WAITING
            stored.last_error = ""
            stored.run_at = self._clock()
            stored.started_at = 0.0
            stored.finished_at = 0.0

    async def delete(self, queue, job_id):
        with self._lock:
            self._jobs.get(queue, {}).pop(job_id, None)

    async def latest_job_id(self, queue, entity_id):
        with self._lock:
            return self._latest.get((queue, entity_id))

    async def remember_job(self, queue, entity_id, job_id):
        with self._lock:
            self._latest[(queue, entity_id)] = job_id

    # ── Lifecycle drivers ───────────────────────────────────────

    def claim(self, queue: str) -> QueueJob | None:
        """Oldest waiting job → active."""
        with self._lock:
            ready = [
                self._refresh(j) for j in self._jobs.get(queue, {}).values()
            ]
            ready = sorted(
                (j for j in ready if j.state == JobState.WAITING),
                key=lambda j: (j.run_at, j.enqueued_at),
            )
            if not ready:
                return None
            job = ready[0]
            job.state = JobState.ACTIVE
            job.started_at = self._clock()
            return job

    def mark_completed(self, queue: str, job_id: str) -> None:
        with self._lock:
            job = self._jobs[queue][job_id]
            job.state = JobState.COMPLETED
            job.finished_at = self._clock()

    def mark_failed(self, queue: str, job_id: str, error: str) -> None:
        with self._lock:
            job = self._jobs[queue][job_id]
            job.state = JobState.FAILED
            job.finished_at = self._clock()
            job.last_error = error[:500]


# ═══════════════════════════════════════════════════════════════════
# Arq Backend (production, Redis)
# ═══════════════════════════════════════════════════════════════════

@contextlib.contextmanager
def _redis_errors(operation: str) -> Iterator[None]:
    from redis.exceptions import RedisError
    try:
        yield
    except (RedisError, OSError) as e:
        raise QueueOperationFailed(f"Queue {operation} failed: {e}") from e


class ArqQueueBackend(QueueBackend):
    """
    arq on Redis. Each named queue is an arq queue; the worker for a queue
    is started with queue_name set to that name (see jobs.arq_worker).

    Finished jobs stay inspectable through their arq result key for
    KEEP_RESULT_SECONDS (the generation worker's keep_result). The
    latest-job pointer hash is refreshed with the same TTL on every write.
    GenerationQueue.clean() removes finished jobs sooner.
    """

    def __init__(self, redis_url: str | None = None):
        self.redis_url = redis_url or os.environ.get("REDIS_URL", "redis://localhost:6379")
        self._pool = None

    async def open(self) -> None:
        from arq import create_pool
        from arq.connections import RedisSettings

        if self._pool is not None:
            return
        with _redis_errors("connect"):
            self._pool = await create_pool(RedisSettings.from_dsn(self.redis_url))
        logger.info("Arq queue backend connected")

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.aclose()
            self._pool = None

    @property
    def pool(self):
        if self._pool is None:
            raise QueueOperationFailed("Queue backend is not open; call open() first")
        return self._pool

    def _job(self, queue: str, job_id: str):
        from arq.jobs import Job
        return Job(job_id, self.pool, _queue_name=queue)

    async def add(self, queue, payload, job_id, defer_ms=0, defer_until=None):
        with _redis_errors("add"):
            job = await self.pool.enqueue_job(
                JOB_FUNCTIONS.get(queue, queue),
                _job_id=job_id,
                _queue_name=queue,
                _defer_by=timedelta(milliseconds=defer_ms) if defer_ms and defer_until is None else None,
                _defer_until=defer_until,
                **payload,
            )
        return job_id if job is not None else None

    async def get_state(self, queue, job_id):
        from arq.jobs import JobStatus

        job = self._job(queue, job_id)
        with _redis_errors("status"):
            status = await job.status()
            if status == JobStatus.not_found:
                return None
            if status == JobStatus.complete:
                result = await job.result_info()
                return JobState.COMPLETED if result is None or result.success else JobState.FAILED
        if status == JobStatus.in_progress:
            return JobState.ACTIVE
        if status == JobStatus.deferred:
            return JobState.DELAYED
        return JobState.WAITING

    async def get_job(self, queue, job_id):
        state = await self.get_state(queue, job_id)
        if state is None:
            return None
        job = self._job(queue, job_id)
        with _redis_errors("info"):
            info = await job.info()
        if info is None:
            return None
        return _to_queue_job(queue, job_id, state, info)

    async def list_jobs(self, queue, state=None):
        with _redis_errors("list"):
            queued = await self.pool.zrange(queue, 0, -1)
            results = await self.pool.all_job_results()

        ids = [j.decode() if isinstance(j, bytes) else j for j in queued]
        ids += [r.job_id for r in results if r.queue_name == queue and r.job_id not in ids]

        jobs = []
        for job_id in ids:
            job = await self.get_job(queue, job_id)
            if job is not None and (state is None or job.state == state):
                jobs.append(job)
        return jobs

    async def requeue(self, queue, job):
        from arq.constants import result_key_prefix, retry_key_prefix

        with _redis_errors("retry"):
            await self.pool.delete(result_key_prefix + job.id, retry_key_prefix + job.id)
        added = await self.add(queue, job.payload, job.id)
        if added is None:
            raise QueueOperationFailed(f"Job '{job.id}' could not be re-enqueued")

    async def delete(self, queue, job_id):
        from arq.constants import (
            in_progress_key_prefix, job_key_prefix, result_key_prefix, retry_key_prefix,
        )

        with _redis_errors("remove"):
            await self.pool.delete(
                job_key_prefix + job_id,
                result_key_prefix + job_id,
                retry_key_prefix + job_id,
                in_progress_key_prefix + job_id,
            )
            await self.pool.zrem(queue, job_id)

    async def latest_job_id(self, queue, entity_id):
        with _redis_errors("lookup"):
            value = await self.pool.hget(LATEST_JOB_KEY_PREFIX + queue, entity_id)
        if isinstance(value, bytes):
            value = value.decode()
        return value

    async def remember_job(self, queue, entity_id, job_id):
        key = LATEST_JOB_KEY_PREFIX + queue
        with _redis_errors("lookup"):
            async with self.pool.pipeline(transaction=True) as pipe:
                pipe.hset(key, entity_id, job_id)
                pipe.expire(key, KEEP_RESULT_SECONDS)
                await pipe.execute()


def _timestamp(value: Any) -> float:
    return value.timestamp() if isinstance(value, datetime) else 0.0


def _to_queue_job(queue: str, job_id: str, state: JobState, info: Any) -> QueueJob:
    """Build a QueueJob from an arq JobDef or JobResult."""
    last_error = ""
    if state == JobState.FAILED:
        last_error = str(getattr(info, "result", ""))[:500]
    score = getattr(info, "score", None)
    return QueueJob(
        id=job_id,
        queue=queue,
        function=info.function,
        state=state,
        payload=dict(info.kwargs or {}),
        last_error=last_error,
        enqueued_at=_timestamp(info.enqueue_time),
        run_at=score / 1000.0 if score else 0.0,
        started_at=_timestamp(getattr(info, "start_time", None)),
        finished_at=_timestamp(getattr(info, "finish_time", None)),
    )


# ═══════════════════════════════════════════════════════════════════
# Generation Queue (dedup + operator actions)
# ═══════════════════════════════════════════════════════════════════

class GenerationQueue:
    """Enqueue with per-entity dedup, plus inspection and operator actions."""

    def __init__(
        self,
        backend: QueueBackend,
        config_provider: Any = None,
        queue_name: str = GENERATION_QUEUE,
        clock_ms: Callable[[], int] = _now_ms,
    ):
        self.backend = backend
        self.config_provider = config_provider
        self.queue_name = queue_name
        self._clock_ms = clock_ms

    async def enqueue(self, entity_id: str) -> str | None:
        """Job id, or None when the entity already has a live job."""
        latest = await self.backend.latest_job_id(self.queue_name, entity_id)

        state = None
        for candidate in dict.fromkeys(c for c in (latest, entity_id) if c):
            state = await self.backend.get_state(self.queue_name, candidate)
            if state is not None:
                break

        if state in LIVE_STATES:
            logger.info("Entity %s already has a %s job; skipping", entity_id, state.value)
            return None
        if state in FINISHED_STATES:
            job_id = f"{entity_id}-{self._clock_ms()}"
        else:
            job_id = entity_id

        added = await self.backend.add(
            self.queue_name, {"entity_id": entity_id, "retry_count": 0}, job_id,
        )
        if added is None:
            logger.info("Job id %s already exists; skipping", job_id)
            return None
        await self.backend.remember_job(self.queue_name, entity_id, job_id)
        logger.info("Enqueued job %s for entity %s", job_id, entity_id)
        return job_id

    async def enqueue_if_enabled(self, entity_id: str) -> str | None:
        """enqueue() guarded by the generation toggle, read past the config cache."""
        if self.config_provider is not None:
            cfg = self.config_provider.get_config(bypass_cache=True)
            if not cfg.generation_feature_enabled:
                logger.info("Background generation disabled; not enqueuing %s", entity_id)
                return None
        return await self.enqueue(entity_id)

    async def enqueue_retry(self, entity_id: str, retry_count: int, delay_ms: int) -> str | None:
        """Schedule attempt retry_count as {entity_id}-retry-{retry_count}."""
        job_id = f"{entity_id}-retry-{retry_count}"
        added = await self.backend.add(
            self.queue_name,
            {"entity_id": entity_id, "retry_count": retry_count},
            job_id,
            defer_ms=delay_ms,
        )
        if added is not None:
            await self.backend.remember_job(self.queue_name, entity_id, job_id)
            logger.info("Scheduled retry %s in %d ms", job_id, delay_ms)
        return added

    # ── Operator actions ────────────────────────────────────────

    async def get_job(self, job_id: str) -> QueueJob:
        job = await self.backend.get_job(self.queue_name, job_id)
        if job is None:
            raise NotFound(f"Job '{job_id}' not found in queue '{self.queue_name}'")
        return job

    async def list_jobs(self, state: JobState | str | None = None) -> list[QueueJob]:
        if state is not None:
            state = JobState(state)
        return await self.backend.list_jobs(self.queue_name, state)

    async def counts(self) -> dict[str, int]:
        counts = {s.value: 0 for s in JobState}
        for job in await self.backend.list_jobs(self.queue_name):
            counts[job.state.value] += 1
        return counts

    async def retry(self, job_id: str) -> QueueJob:
        """failed → waiting under the same id."""
        job = await self.get_job(job_id)
        if job.state != JobState.FAILED:
            raise InvalidJobState(f"Only failed jobs can be retried; '{job_id}' is {job.state.value}")
        await self.backend.requeue(self.queue_name, job)
        await self.backend.remember_job(self.queue_name, job.entity_id or job_id, job_id)
        logger.info("Operator retried job %s", job_id)
        return await self.get_job(job_id)

    async def remove(self, job_id: str) -> None:
        job = await self.get_job(job_id)
        if job.state == JobState.ACTIVE:
            raise InvalidJobState(f"Job '{job_id}' is active and cannot be removed")
        await self.backend.delete(self.queue_name, job_id)
        logger.info("Operator removed job %s", job_id)

    async def clean(self, state: JobState | str) -> int:
        """Remove every completed or failed job. Returns the number removed."""
        state = JobState(state)
        if state not in FINISHED_STATES:
            raise InvalidJobState(f"Only completed or failed jobs can be cleaned, not {state.value}")
        jobs = await self.backend.list_jobs(self.queue_name, state)
        for job in jobs:
            await self.backend.delete(self.queue_name, job.id)
        logger.info("Cleaned %d %s jobs from %s", len(jobs), state.value, self.queue_name)
        return len(jobs)


def create_queue_backend(mode: str | None = None, redis_url: str | None = None) -> QueueBackend:
    """
    Create the queue backend.

    RESOLVER_QUEUE_MODE env var or explicit mode:
      - "arq":    ArqQueueBackend (default)
      - "memory": MemoryQueueBackend
    """
    mode = (mode or os.environ.get("RESOLVER_QUEUE_MODE", "arq")).lower()
    if mode == "memory":
        logger.info("Queue backend: MemoryQueueBackend")
        return MemoryQueueBackend()
    if mode == "arq":
        logger.info("Queue backend: ArqQueueBackend")
        return ArqQueueBackend(redis_url=redis_url)
    raise ValueError(f"Unknown queue mode '{mode}'. Supported: arq, memory")
