"""
Unit Tests — JobQueue
═════════════════════
Redis is fakeredis (FakeAsyncRedis); the Celery app is a MagicMock whose
send_task calls are inspected.

Coverage targets:
  ✅ Two rapid enqueues of the same document → one job, one task message
  ✅ Dedup released on completion / final failure → document can be re-queued
  ✅ Priority high/normal/low → Celery priority 1/5/9 (clamped to 0..9)
  ✅ Task message: name, queue, task_id == job_id, kwargs carry the payload
  ✅ Batch jobs are never deduplicated
  ✅ send_task failure → state and dedup key rolled back, error raised
  ✅ State transitions: waiting → active → delayed → completed / failed
  ✅ Retention trimming by age and by count
  ✅ Stats per queue; unknown queue → ValidationError
  ✅ No Redis configured → QueueNotConfiguredError; shutdown refuses enqueues
  ✅ Payload round trip + unknown batch operation → ValidationError
  ✅ Retry countdown = backoff × 2ⁿ
"""

from __future__ import annotations

import asyncio
import json
import uuid
from unittest.mock import MagicMock

import pytest

from documind.core.exceptions import (
    PreconditionFailedError,
    QueueNotConfiguredError,
    ValidationError,
)
from documind.workers.celery_app import (
    BATCH_OPERATIONS,
    DOCUMENT_INDEXING,
    ENTITY_EXTRACTION,
    EXTRACT_ENTITIES_TASK,
    INDEX_DOCUMENT_TASK,
)
from documind.workers.queue import (
    DAY,
    POLICIES,
    BatchOperation,
    BatchOperationJob,
    DocumentIndexingJob,
    EntityExtractionJob,
    JobPriority,
    JobQueue,
    celery_priority,
)


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

class FakeClock:

    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _indexing_job(priority: JobPriority = JobPriority.NORMAL) -> DocumentIndexingJob:
    return DocumentIndexingJob(document_id=uuid.uuid4(), org_id=uuid.uuid4(), priority=priority)


async def _state_of(fake_redis, queue: str, job_id: str) -> str:
    return await fake_redis.hget(f"test:queue:{queue}:job:{job_id}", "state")


# ─────────────────────────────────────────────────────────────────────────────
# Enqueue + dedup
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.queue
class TestEnqueue:

    async def test_rapid_duplicate_enqueue_creates_one_job(self, job_queue, mock_celery):
        job = _indexing_job()

        first, second = await asyncio.gather(
            job_queue.enqueue_indexing(job),
            job_queue.enqueue_indexing(job),
        )

        assert first.job_id == second.job_id == f"doc-index-{job.document_id}"
        assert sorted([first.created, second.created]) == [False, True]
        assert mock_celery.send_task.call_count == 1
        stats = await job_queue.get_queue_stats(DOCUMENT_INDEXING)
        assert stats.waiting == 1

    async def test_task_message(self, job_queue, mock_celery):
        job = _indexing_job(JobPriority.HIGH)

        enqueued = await job_queue.enqueue_indexing(job)

        args, kwargs = mock_celery.send_task.call_args
        assert args == (INDEX_DOCUMENT_TASK,)
        assert kwargs["task_id"] == enqueued.job_id
        assert kwargs["queue"] == DOCUMENT_INDEXING
        assert kwargs["priority"] == 1
        assert kwargs["kwargs"] == {"job_id": enqueued.job_id, **job.to_payload()}

    @pytest.mark.parametrize("priority,expected", [
        (JobPriority.HIGH, 1),
        (JobPriority.NORMAL, 5),
        (JobPriority.LOW, 9),
    ])
    async def test_priority_mapping(self, job_queue, mock_celery, priority, expected):
        await job_queue.enqueue_indexing(_indexing_job(priority))

        assert mock_celery.send_task.call_args.kwargs["priority"] == expected

    async def test_job_hash_is_written(self, job_queue, fake_redis):
        job = _indexing_job(JobPriority.LOW)

        enqueued = await job_queue.enqueue_indexing(job)
        stored = await job_queue.get_job(DOCUMENT_INDEXING, enqueued.job_id)

        assert stored["state"] == "waiting"
        assert stored["name"] == "index-document"
        assert stored["priority"] == 10
        assert stored["attempts"] == 0
        assert stored["data"] == json.loads(json.dumps(job.to_payload()))

    async def test_extraction_jobs_are_deduplicated(self, job_queue, mock_celery):
        job = EntityExtractionJob(document_id=uuid.uuid4(), org_id=uuid.uuid4(), chunk_ids=[uuid.uuid4()])

        first  = await job_queue.enqueue_extraction(job)
        second = await job_queue.enqueue_extraction(job)

        assert first.created is True
        assert second.created is False
        assert mock_celery.send_task.call_args.args == (EXTRACT_ENTITIES_TASK,)
        assert mock_celery.send_task.call_args.kwargs["queue"] == ENTITY_EXTRACTION

    async def test_batch_jobs_are_never_deduplicated(self, job_queue, mock_celery):
        job = BatchOperationJob(operation_type=BatchOperation.CLEANUP, org_id=uuid.uuid4())

        first  = await job_queue.enqueue_batch(job)
        second = await job_queue.enqueue_batch(job)

        assert first.job_id != second.job_id
        assert first.job_id.startswith("batch-")
        assert first.created and second.created
        assert mock_celery.send_task.call_count == 2
        assert mock_celery.send_task.call_args.kwargs["priority"] == 9

    async def test_send_failure_rolls_back(self, job_queue, mock_celery, fake_redis):
        mock_celery.send_task.side_effect = ConnectionError("broker down")
        job = _indexing_job()

        with pytest.raises(ConnectionError):
            await job_queue.enqueue_indexing(job)

        assert await fake_redis.exists(f"test:queue:{DOCUMENT_INDEXING}:dedup:{job.job_id}") == 0
        assert (await job_queue.get_queue_stats(DOCUMENT_INDEXING)).waiting == 0
        assert await job_queue.get_job(DOCUMENT_INDEXING, job.job_id) is None

        mock_celery.send_task.side_effect = None
        retried = await job_queue.enqueue_indexing(job)
        assert retried.created is True


# ─────────────────────────────────────────────────────────────────────────────
# State transitions
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.queue
class TestTransitions:

    async def test_lifecycle_to_completed(self, job_queue, fake_redis):
        enqueued = await job_queue.enqueue_indexing(_indexing_job())
        job_id = enqueued.job_id

        await job_queue.mark_active(DOCUMENT_INDEXING, job_id, attempt=1)
        assert await _state_of(fake_redis, DOCUMENT_INDEXING, job_id) == "active"

        await job_queue.mark_delayed(DOCUMENT_INDEXING, job_id, "timeout", countdown=5)
        assert await _state_of(fake_redis, DOCUMENT_INDEXING, job_id) == "delayed"

        await job_queue.mark_active(DOCUMENT_INDEXING, job_id, attempt=2)
        await job_queue.mark_completed(DOCUMENT_INDEXING, job_id, {"chunks_created": 3})

        stored = await job_queue.get_job(DOCUMENT_INDEXING, job_id)
        assert stored["state"] == "completed"
        assert stored["attempts"] == 2
        assert json.loads(stored["result"]) == {"chunks_created": 3}

        stats = await job_queue.get_queue_stats(DOCUMENT_INDEXING)
        assert (stats.waiting, stats.active, stats.delayed, stats.completed) == (0, 0, 0, 1)

    async def test_completion_releases_dedup(self, job_queue, mock_celery):
        job = _indexing_job()
        first = await job_queue.enqueue_indexing(job)

        await job_queue.mark_completed(DOCUMENT_INDEXING, first.job_id)
        again = await job_queue.enqueue_indexing(job)

        assert again.created is True
        assert mock_celery.send_task.call_count == 2

    async def test_final_failure_releases_dedup(self, job_queue):
        job = _indexing_job()
        first = await job_queue.enqueue_indexing(job)

        await job_queue.mark_failed(DOCUMENT_INDEXING, first.job_id, "No text content extracted from document")

        stored = await job_queue.get_job(DOCUMENT_INDEXING, first.job_id)
        assert stored["state"] == "failed"
        assert stored["error"] == "No text content extracted from document"
        assert (await job_queue.enqueue_indexing(job)).created is True

    async def test_delayed_job_still_blocks_duplicates(self, job_queue):
        job = _indexing_job()
        first = await job_queue.enqueue_indexing(job)

        await job_queue.mark_delayed(DOCUMENT_INDEXING, first.job_id, "boom", countdown=10)

        assert (await job_queue.enqueue_indexing(job)).created is False

    async def test_completed_jobs_expire(self, job_queue, fake_redis):
        enqueued = await job_queue.enqueue_indexing(_indexing_job())

        await job_queue.mark_completed(DOCUMENT_INDEXING, enqueued.job_id)

        ttl = await fake_redis.ttl(f"test:queue:{DOCUMENT_INDEXING}:job:{enqueued.job_id}")
        assert 0 < ttl <= DAY

    async def test_unknown_queue(self, job_queue):
        with pytest.raises(ValidationError):
            await job_queue.mark_active("no-such-queue", "job", attempt=1)


# ─────────────────────────────────────────────────────────────────────────────
# Retention
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.queue
class TestRetention:

    async def test_completed_trimmed_by_count(self, fake_redis, mock_celery):
        clock = FakeClock()
        queue = JobQueue(fake_redis, mock_celery, key_prefix="test:queue", clock=clock)
        keep = POLICIES[BATCH_OPERATIONS].keep_completed_count

        ids = []
        for _ in range(keep + 3):
            clock.now += 1
            enqueued = await queue.enqueue_batch(
                BatchOperationJob(operation_type=BatchOperation.CLEANUP, org_id=uuid.uuid4())
            )
            await queue.mark_completed(BATCH_OPERATIONS, enqueued.job_id)
            ids.append(enqueued.job_id)

        stats = await queue.get_queue_stats(BATCH_OPERATIONS)
        assert stats.completed == keep
        assert await queue.get_job(BATCH_OPERATIONS, ids[0]) is None
        assert await queue.get_job(BATCH_OPERATIONS, ids[-1]) is not None

    async def test_failed_trimmed_by_age(self, fake_redis, mock_celery):
        clock = FakeClock()
        queue = JobQueue(fake_redis, mock_celery, key_prefix="test:queue", clock=clock)

        old = await queue.enqueue_indexing(_indexing_job())
        await queue.mark_failed(DOCUMENT_INDEXING, old.job_id, "old failure")

        clock.now += 8 * DAY
        new = await queue.enqueue_indexing(_indexing_job())
        await queue.mark_failed(DOCUMENT_INDEXING, new.job_id, "new failure")

        stats = await queue.get_queue_stats(DOCUMENT_INDEXING)
        assert stats.failed == 1
        assert await queue.get_job(DOCUMENT_INDEXING, old.job_id) is None


# ─────────────────────────────────────────────────────────────────────────────
# Stats, configuration & lifecycle
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.queue
class TestQueueLifecycle:

    async def test_all_queue_stats(self, job_queue):
        await job_queue.enqueue_indexing(_indexing_job())
        await job_queue.enqueue_batch(BatchOperationJob(operation_type=BatchOperation.REINDEX_ALL, org_id=uuid.uuid4()))

        stats = await job_queue.get_all_queue_stats()

        assert set(stats) == {DOCUMENT_INDEXING, ENTITY_EXTRACTION, BATCH_OPERATIONS}
        assert stats[DOCUMENT_INDEXING].waiting == 1
        assert stats[BATCH_OPERATIONS].waiting == 1
        assert stats[ENTITY_EXTRACTION].waiting == 0

    async def test_stats_for_unknown_queue(self, job_queue):
        with pytest.raises(ValidationError):
            await job_queue.get_queue_stats("no-such-queue")

    async def test_not_configured(self, mock_celery):
        queue = JobQueue(None, mock_celery)
        await queue.open()

        assert queue.is_configured is False
        with pytest.raises(QueueNotConfiguredError):
            await queue.enqueue_indexing(_indexing_job())
        with pytest.raises(QueueNotConfiguredError):
            await queue.get_all_queue_stats()
        mock_celery.send_task.assert_not_called()

    async def test_transitions_without_redis_are_noops(self, mock_celery):
        queue = JobQueue(None, mock_celery)

        await queue.mark_active(DOCUMENT_INDEXING, "job", attempt=1)
        await queue.mark_completed(DOCUMENT_INDEXING, "job")

    async def test_close_refuses_new_enqueues(self, fake_redis, mock_celery):
        queue = JobQueue(fake_redis, mock_celery, key_prefix="test:queue")
        await queue.open()

        await queue.close()

        with pytest.raises(PreconditionFailedError, match="shutting down"):
            await queue.enqueue_indexing(_indexing_job())

    async def test_close_waits_for_in_flight_enqueue(self, fake_redis):
        release = asyncio.Event()
        celery = MagicMock()

        def slow_send(*_args, **_kwargs):
            asyncio.run_coroutine_threadsafe(release.wait(), loop).result()

        loop = asyncio.get_running_loop()
        celery.send_task = MagicMock(side_effect=slow_send)
        queue = JobQueue(fake_redis, celery, key_prefix="test:queue")
        await queue.open()

        enqueue = asyncio.create_task(queue.enqueue_indexing(_indexing_job()))
        await asyncio.sleep(0.05)
        close = asyncio.create_task(queue.close())
        await asyncio.sleep(0.05)
        assert not close.done()

        release.set()
        enqueued = await enqueue
        await close
        assert enqueued.created is True


# ─────────────────────────────────────────────────────────────────────────────
# Payloads & policies
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.queue
class TestPayloads:

    def test_indexing_payload_round_trip(self):
        job = _indexing_job(JobPriority.HIGH)

        assert DocumentIndexingJob.from_payload(job.to_payload()) == job

    def test_extraction_payload_is_json_safe(self):
        job = EntityExtractionJob(document_id=uuid.uuid4(), org_id=uuid.uuid4(), chunk_ids=[uuid.uuid4()])

        assert EntityExtractionJob.from_payload(json.loads(json.dumps(job.to_payload()))) == job

    def test_unknown_batch_operation(self):
        with pytest.raises(ValidationError, match="Unknown operation type"):
            BatchOperationJob.from_payload({"operation_type": "defrag", "org_id": str(uuid.uuid4())})

    @pytest.mark.parametrize("rank,expected", [(-3, 0), (0, 0), (5, 5), (9, 9), (10, 9), (42, 9)])
    def test_celery_priority_clamped(self, rank, expected):
        assert celery_priority(rank) == expected

    def test_retry_countdown_is_exponential(self):
        policy = POLICIES[DOCUMENT_INDEXING]

        assert [policy.retry_countdown(n) for n in range(3)] == [5.0, 10.0, 20.0]

    def test_policies(self):
        assert POLICIES[DOCUMENT_INDEXING].attempts == 3
        assert POLICIES[ENTITY_EXTRACTION].attempts == 2
        assert POLICIES[ENTITY_EXTRACTION].backoff_seconds == 10.0
        assert POLICIES[BATCH_OPERATIONS].keep_completed_count == 100
