"""
Job Queue
═════════

Producer side of the background pipeline plus the job-state store the
workers report into.

  Celery (Redis transport)   carries the task messages
  Redis (redis.asyncio)      per-job state hash, one sorted set per state,
                             and the per-document dedup key

Queues and their policies:

  queue               attempts  backoff   keep completed      keep failed
  document-indexing   3         5s × 2ⁿ   24h, last 1000      7 days
  entity-extraction   2         10s × 2ⁿ  24h, last 500       7 days
  batch-operations    3         5s × 2ⁿ   24h, last 100       7 days

Deduplication:
  Indexing and extraction jobs use an id derived from the document
  (doc-index-<id>, entity-extract-<id>). The first enqueue claims a Redis
  key with SET NX; while that job is outstanding (waiting, active or
  delayed) further enqueues are no-ops. The key is released when the job
  completes or fails for good, so a finished document can be queued again.

Key layout (prefix defaults to "documind:queue"):
  <prefix>:<queue>:job:<job_id>     hash  name, state, data, priority, attempts, error …
  <prefix>:<queue>:<state>          zset  job ids scored by last transition time
  <prefix>:<queue>:dedup:<job_id>   str   held while the job is outstanding
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncGenerator, Callable, Optional

import redis.asyncio as aioredis
from celery import Celery

from documind.core.config import Settings
from documind.core.exceptions import (
    PreconditionFailedError,
    QueueNotConfiguredError,
    ValidationError,
)
from documind.workers.celery_app import (
    BATCH_OPERATION_TASK,
    BATCH_OPERATIONS,
    DOCUMENT_INDEXING,
    ENTITY_EXTRACTION,
    EXTRACT_ENTITIES_TASK,
    INDEX_DOCUMENT_TASK,
    MAX_PRIORITY,
    QUEUE_NAMES,
)

logger = logging.getLogger(__name__)

DAY = 24 * 3600

# Upper bound on how long a dedup key can outlive a worker that died
# without reporting back.
DEDUP_TTL_SECONDS = 6 * 3600


# ---------------------------------------------------------------------------
# Enums and policies
# ---------------------------------------------------------------------------

class JobPriority(str, Enum):
    HIGH   = "high"
    NORMAL = "normal"
    LOW    = "low"

    @property
    def rank(self) -> int:
        """Lower runs first."""
        return PRIORITY_MAP[self]


PRIORITY_MAP = {
    JobPriority.HIGH:   1,
    JobPriority.NORMAL: 5,
    JobPriority.LOW:    10,
}

BATCH_PRIORITY = 10


class JobState(str, Enum):
    WAITING   = "waiting"
    ACTIVE    = "active"
    DELAYED   = "delayed"
    COMPLETED = "completed"
    FAILED    = "failed"


class BatchOperation(str, Enum):
    REINDEX_ALL          = "reindex_all"
    EXTRACT_ENTITIES_ALL = "extract_entities_all"
    CLEANUP              = "cleanup"


@dataclass(frozen=True)
class QueuePolicy:
    name:                   str
    attempts:               int
    backoff_seconds:        float
    keep_completed_seconds: int
    keep_completed_count:   int
    keep_failed_seconds:    int

    def retry_countdown(self, retries_done: int) -> float:
        """Exponential backoff before attempt `retries_done + 2`."""
        return self.backoff_seconds * (2 ** retries_done)


POLICIES: dict[str, QueuePolicy] = {
    DOCUMENT_INDEXING: QueuePolicy(DOCUMENT_INDEXING, 3, 5.0, DAY, 1000, 7 * DAY),
    ENTITY_EXTRACTION: QueuePolicy(ENTITY_EXTRACTION, 2, 10.0, DAY, 500, 7 * DAY),
    BATCH_OPERATIONS:  QueuePolicy(BATCH_OPERATIONS, 3, 5.0, DAY, 100, 7 * DAY),
}


# ---------------------------------------------------------------------------
# Job payloads
# ---------------------------------------------------------------------------

@dataclass
class DocumentIndexingJob:
    document_id:              uuid.UUID
    org_id:                   uuid.UUID
    priority:                 JobPriority = JobPriority.NORMAL
    enable_entity_extraction: bool = True

    @property
    def job_id(self) -> str:
        return f"doc-index-{self.document_id}"

    def to_payload(self) -> dict[str, Any]:
        return {
            "document_id":              str(self.document_id),
            "org_id":                   str(self.org_id),
            "priority":                 self.priority.value,
            "enable_entity_extraction": self.enable_entity_extraction,
        }

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "DocumentIndexingJob":
        return cls(
            document_id=uuid.UUID(str(data["document_id"])),
            org_id=uuid.UUID(str(data["org_id"])),
            priority=JobPriority(data.get("priority") or JobPriority.NORMAL.value),
            enable_entity_extraction=bool(data.get("enable_entity_extraction", True)),
        )


@dataclass
class EntityExtractionJob:
    document_id: uuid.UUID
    org_id:      uuid.UUID
    chunk_ids:   list[uuid.UUID] = field(default_factory=list)

    @property
    def job_id(self) -> str:
        return f"entity-extract-{self.document_id}"

    def to_payload(self) -> dict[str, Any]:
        return {
            "document_id": str(self.document_id),
            "org_id":      str(self.org_id),
            "chunk_ids":   [str(c) for c in self.chunk_ids],
        }

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "EntityExtractionJob":
        return cls(
            document_id=uuid.UUID(str(data["document_id"])),
            org_id=uuid.UUID(str(data["org_id"])),
            chunk_ids=[uuid.UUID(str(c)) for c in data.get("chunk_ids", [])],
        )


@dataclass
class BatchOperationJob:
    operation_type: BatchOperation
    org_id:         uuid.UUID
    options:        dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        return {
            "operation_type": self.operation_type.value,
            "org_id":         str(self.org_id),
            "options":        dict(self.options),
        }

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "BatchOperationJob":
        try:
            operation = BatchOperation(data["operation_type"])
        except ValueError as exc:
            raise ValidationError(f"Unknown operation type: {data['operation_type']}", exc) from exc
        return cls(
            operation_type=operation,
            org_id=uuid.UUID(str(data["org_id"])),
            options=dict(data.get("options") or {}),
        )


@dataclass
class EnqueuedJob:
    job_id:  str
    queue:   str
    created: bool    # False when an outstanding job with this id already existed


@dataclass
class QueueStats:
    waiting:   int = 0
    active:    int = 0
    completed: int = 0
    failed:    int = 0
    delayed:   int = 0


def celery_priority(rank: int) -> int:
    return max(0, min(rank, MAX_PRIORITY))


def create_redis(url: str) -> aioredis.Redis:
    return aioredis.from_url(
        url,
        decode_responses=True,
        socket_connect_timeout=5,
    )


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------

class JobQueue:
    """
    Usage:
        queue = JobQueue.from_settings(settings, celery_app)
        await queue.open()
        job   = await queue.enqueue_indexing(DocumentIndexingJob(doc_id, org_id))
        await queue.close()
    """

    def __init__(
        self,
        redis: Optional[aioredis.Redis],
        celery: Celery,
        *,
        key_prefix: str = "documind:queue",
        dedup_ttl: int = DEDUP_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._redis      = redis
        self._celery     = celery
        self._prefix     = key_prefix
        self._dedup_ttl  = dedup_ttl
        self._clock      = clock

        self._closing    = False
        self._in_flight  = 0
        self._idle       = asyncio.Event()
        self._idle.set()

    @classmethod
    def from_settings(cls, settings: Settings, celery: Celery) -> "JobQueue":
        redis = create_redis(settings.redis_url) if settings.redis_url else None
        return cls(redis, celery, key_prefix=settings.queue_key_prefix)

    @property
    def is_configured(self) -> bool:
        return self._redis is not None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> None:
        self._closing = False
        if self._redis is None:
            logger.warning("Job queue not configured (REDIS_URL missing); enqueue is disabled")
            return
        await self._redis.ping()
        logger.info("Job queue opened | prefix=%s", self._prefix)

    async def close(self) -> None:
        """Refuse new enqueues, wait for in-flight ones, then release Redis."""
        self._closing = True
        await self._idle.wait()
        if self._redis is not None:
            await self._redis.aclose()
        logger.info("Job queue closed")

    @asynccontextmanager
    async def _tracked(self) -> AsyncGenerator[aioredis.Redis, None]:
        if self._redis is None:
            raise QueueNotConfiguredError()
        if self._closing:
            raise PreconditionFailedError("Job queue is shutting down")

        self._in_flight += 1
        self._idle.clear()
        try:
            yield self._redis
        finally:
            self._in_flight -= 1
            if self._in_flight == 0:
                self._idle.set()

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    async def enqueue_indexing(self, job: DocumentIndexingJob) -> EnqueuedJob:
        return await self._enqueue(
            queue=DOCUMENT_INDEXING,
            task_name=INDEX_DOCUMENT_TASK,
            job_name="index-document",
            job_id=job.job_id,
            payload=job.to_payload(),
            rank=job.priority.rank,
            dedup=True,
        )

    async def enqueue_extraction(self, job: EntityExtractionJob) -> EnqueuedJob:
        return await self._enqueue(
            queue=ENTITY_EXTRACTION,
            task_name=EXTRACT_ENTITIES_TASK,
            job_name="extract-entities",
            job_id=job.job_id,
            payload=job.to_payload(),
            rank=PRIORITY_MAP[JobPriority.NORMAL],
            dedup=True,
        )

    async def enqueue_batch(self, job: BatchOperationJob) -> EnqueuedJob:
        return await self._enqueue(
            queue=BATCH_OPERATIONS,
            task_name=BATCH_OPERATION_TASK,
            job_name=job.operation_type.value,
            job_id=f"batch-{uuid.uuid4().hex}",
            payload=job.to_payload(),
            rank=BATCH_PRIORITY,
            dedup=False,
        )

    async def _enqueue(
        self,
        *,
        queue: str,
        task_name: str,
        job_name: str,
        job_id: str,
        payload: dict[str, Any],
        rank: int,
        dedup: bool,
    ) -> EnqueuedJob:
        async with self._tracked() as redis:
            lock_key = self._key(queue, "dedup", job_id)
            if dedup:
                claimed = await redis.set(lock_key, "1", nx=True, ex=self._dedup_ttl)
                if not claimed:
                    logger.info("Enqueue skipped, job outstanding | queue=%s job_id=%s", queue, job_id)
                    return EnqueuedJob(job_id=job_id, queue=queue, created=False)

            now = self._clock()
            async with redis.pipeline(transaction=True) as pipe:
                pipe.delete(self._key(queue, "job", job_id))
                pipe.hset(self._key(queue, "job", job_id), mapping={
                    "name":       job_name,
                    "state":      JobState.WAITING.value,
                    "data":       json.dumps(payload),
                    "priority":   rank,
                    "attempts":   0,
                    "created_at": now,
                    "updated_at": now,
                })
                self._move(pipe, queue, job_id, JobState.WAITING, now)
                await pipe.execute()

            try:
                await asyncio.to_thread(
                    self._celery.send_task,
                    task_name,
                    kwargs={"job_id": job_id, **payload},
                    task_id=job_id,
                    queue=queue,
                    priority=celery_priority(rank),
                )
            except Exception:
                logger.error("Enqueue failed | queue=%s job_id=%s", queue, job_id, exc_info=True)
                await self._forget(redis, queue, job_id, release=dedup)
                raise

            logger.info("Job enqueued | queue=%s job_id=%s priority=%d", queue, job_id, rank)
            return EnqueuedJob(job_id=job_id, queue=queue, created=True)

    # ------------------------------------------------------------------
    # State transitions (reported by workers)
    # ------------------------------------------------------------------

    async def mark_active(self, queue: str, job_id: str, attempt: int) -> None:
        await self._transition(queue, job_id, JobState.ACTIVE, attempts=attempt)

    async def mark_delayed(self, queue: str, job_id: str, error: str, countdown: float) -> None:
        await self._transition(
            queue, job_id, JobState.DELAYED,
            error=error, retry_at=self._clock() + countdown,
        )

    async def mark_completed(self, queue: str, job_id: str, result: dict[str, Any] | None = None) -> None:
        policy = POLICIES[queue]
        await self._transition(
            queue, job_id, JobState.COMPLETED,
            result=json.dumps(result or {}, default=str),
            error="",
            finished_at=self._clock(),
            expire=policy.keep_completed_seconds,
        )
        await self._release(queue, job_id)
        await self._trim(queue, JobState.COMPLETED, policy.keep_completed_seconds, policy.keep_completed_count)

    async def mark_failed(self, queue: str, job_id: str, error: str) -> None:
        policy = POLICIES[queue]
        await self._transition(
            queue, job_id, JobState.FAILED,
            error=error,
            finished_at=self._clock(),
            expire=policy.keep_failed_seconds,
        )
        await self._release(queue, job_id)
        await self._trim(queue, JobState.FAILED, policy.keep_failed_seconds, None)

    async def _transition(
        self,
        queue: str,
        job_id: str,
        state: JobState,
        *,
        expire: int | None = None,
        **fields: Any,
    ) -> None:
        if self._redis is None:
            return
        self._check_queue(queue)

        now = self._clock()
        job_key = self._key(queue, "job", job_id)
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.hset(job_key, mapping={"state": state.value, "updated_at": now, **fields})
            self._move(pipe, queue, job_id, state, now)
            if expire is not None:
                pipe.expire(job_key, expire)
            await pipe.execute()

        logger.debug("Job state | queue=%s job_id=%s state=%s", queue, job_id, state.value)

    async def _release(self, queue: str, job_id: str) -> None:
        if self._redis is not None:
            await self._redis.delete(self._key(queue, "dedup", job_id))

    async def _trim(self, queue: str, state: JobState, max_age: int, max_count: int | None) -> None:
        """Drop state entries older than `max_age`, then keep at most `max_count`."""
        redis = self._redis
        if redis is None:
            return

        key = self._key(queue, state.value)
        stale = list(await redis.zrangebyscore(key, "-inf", self._clock() - max_age))
        if max_count is not None:
            overflow = await redis.zcard(key) - len(stale) - max_count
            if overflow > 0:
                stale += await redis.zrange(key, len(stale), len(stale) + overflow - 1)

        if not stale:
            return
        async with redis.pipeline(transaction=True) as pipe:
            pipe.zrem(key, *stale)
            pipe.delete(*[self._key(queue, "job", job_id) for job_id in stale])
            await pipe.execute()
        logger.debug("Trimmed jobs | queue=%s state=%s removed=%d", queue, state.value, len(stale))

    async def _forget(self, redis: aioredis.Redis, queue: str, job_id: str, *, release: bool) -> None:
        async with redis.pipeline(transaction=True) as pipe:
            for state in JobState:
                pipe.zrem(self._key(queue, state.value), job_id)
            pipe.delete(self._key(queue, "job", job_id))
            if release:
                pipe.delete(self._key(queue, "dedup", job_id))
            await pipe.execute()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    async def get_job(self, queue: str, job_id: str) -> Optional[dict[str, Any]]:
        async with self._tracked() as redis:
            self._check_queue(queue)
            raw = await redis.hgetall(self._key(queue, "job", job_id))
        if not raw:
            return None
        job = dict(raw)
        job["data"] = json.loads(job.get("data") or "{}")
        job["attempts"] = int(job.get("attempts") or 0)
        job["priority"] = int(job.get("priority") or 0)
        return job

    async def get_queue_stats(self, queue: str) -> QueueStats:
        self._check_queue(queue)
        async with self._tracked() as redis:
            async with redis.pipeline(transaction=False) as pipe:
                for state in JobState:
                    pipe.zcard(self._key(queue, state.value))
                counts = await pipe.execute()
        return QueueStats(**{state.value: int(count) for state, count in zip(JobState, counts)})

    async def get_all_queue_stats(self) -> dict[str, QueueStats]:
        stats = await asyncio.gather(*(self.get_queue_stats(name) for name in QUEUE_NAMES))
        return dict(zip(QUEUE_NAMES, stats))

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    def _key(self, queue: str, *parts: str) -> str:
        return ":".join((self._prefix, queue, *parts))

    def _move(self, pipe, queue: str, job_id: str, state: JobState, now: float) -> None:
        for other in JobState:
            if other is not state:
                pipe.zrem(self._key(queue, other.value), job_id)
        pipe.zadd(self._key(queue, state.value), {job_id: now})

    @staticmethod
    def _check_queue(queue: str) -> None:
        if queue not in POLICIES:
            raise ValidationError(f"Unknown queue: {queue}")
