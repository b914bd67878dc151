"""
Celery Application Factory

Configures the Celery app for background indexing and knowledge-graph work.
Broker: Redis (REDIS_URL / CELERY_BROKER_URL). Without one the app falls
back to the in-memory transport so the API can still import it; the
JobQueue refuses to enqueue in that case.

Queue topology:
  document-indexing   — one job per document, priority-ordered
  entity-extraction   — LLM extraction over freshly written chunks
  batch-operations    — org-wide reindex / extraction / cleanup

Job state for introspection (waiting/active/delayed/completed/failed) is
kept by JobQueue in Redis, not in Celery results. Task payloads carry ids
only, never file bytes or chunk text.
"""

from __future__ import annotations

import logging

from celery import Celery
from celery.signals import task_failure, task_postrun, task_prerun, task_retry
from kombu import Exchange, Queue

from documind.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Queue and task names
# ---------------------------------------------------------------------------

DOCUMENT_INDEXING = "document-indexing"
ENTITY_EXTRACTION = "entity-extraction"
BATCH_OPERATIONS  = "batch-operations"

QUEUE_NAMES = (DOCUMENT_INDEXING, ENTITY_EXTRACTION, BATCH_OPERATIONS)

INDEX_DOCUMENT_TASK   = "documind.workers.tasks.index_document"
EXTRACT_ENTITIES_TASK = "documind.workers.tasks.extract_entities"
BATCH_OPERATION_TASK  = "documind.workers.tasks.run_batch_operation"

# Redis transport orders priorities 0 (first) .. 9 (last)
MAX_PRIORITY = 9

JOBS_EXCHANGE = Exchange("documind", type="direct", durable=True)

TASK_QUEUES = tuple(
    Queue(
        name,
        exchange=JOBS_EXCHANGE,
        routing_key=name,
        queue_arguments={"x-max-priority": 10},
        durable=True,
    )
    for name in QUEUE_NAMES
)

TASK_ROUTES = {
    INDEX_DOCUMENT_TASK:   {"queue": DOCUMENT_INDEXING},
    EXTRACT_ENTITIES_TASK: {"queue": ENTITY_EXTRACTION},
    BATCH_OPERATION_TASK:  {"queue": BATCH_OPERATIONS},
}

# ---------------------------------------------------------------------------
# Celery app factory
# ---------------------------------------------------------------------------

def create_celery_app(settings: Settings | None = None) -> Celery:
    settings = settings or get_settings()
    app = Celery("documind")

    app.conf.update(
        # --- Broker / Backend ---
        broker_url=settings.broker_url,
        result_backend=settings.result_backend,
        broker_transport_options={
            "priority_steps":       list(range(MAX_PRIORITY + 1)),
            "queue_order_strategy": "priority",
            "sep":                  ":",
        },

        # --- Serialization (reject non-JSON messages) ---
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        event_serializer="json",

        # --- Queues ---
        task_queues=TASK_QUEUES,
        task_routes=TASK_ROUTES,
        task_default_queue=DOCUMENT_INDEXING,
        task_default_exchange="documind",
        task_default_routing_key=DOCUMENT_INDEXING,
        task_default_priority=5,

        # --- Reliability ---
        task_acks_late=True,         # ack only after task completes (prevents message loss on crash)
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,  # one task at a time per worker slot

        # --- Timeouts ---
        task_soft_time_limit=300,
        task_time_limit=360,

        # --- Result TTL ---
        result_expires=3600,   # job state lives in JobQueue, not Celery results

        # --- Timezone ---
        timezone="UTC",
        enable_utc=True,

        # --- Worker ---
        worker_max_tasks_per_child=200,
    )

    app.autodiscover_tasks(["documind.workers"])

    return app


celery_app = create_celery_app()


# ---------------------------------------------------------------------------
# Celery signals: structured task logging
# ---------------------------------------------------------------------------

@task_prerun.connect
def on_task_prerun(task_id, task, args, kwargs, **_):
    logger.info(
        "Task start | task_id=%s task=%s doc=%s org=%s",
        task_id, task.name,
        kwargs.get("document_id", "?"),
        kwargs.get("org_id", "?"),
    )


@task_postrun.connect
def on_task_postrun(task_id, task, args, kwargs, retval, state, **_):
    logger.info(
        "Task end | task_id=%s task=%s state=%s doc=%s",
        task_id, task.name, state, kwargs.get("document_id", "?"),
    )


@task_retry.connect
def on_task_retry(request, reason, einfo, **_):
    logger.warning(
        "Task retry | task_id=%s task=%s attempt=%d reason=%s",
        request.id, request.task, request.retries + 1, reason,
    )


@task_failure.connect
def on_task_failure(task_id, exception, args, kwargs, traceback, einfo, **_):
    logger.error(
        "Task failed | task_id=%s doc=%s error=%s",
        task_id, kwargs.get("document_id", "?"), exception,
        exc_info=True,
    )
