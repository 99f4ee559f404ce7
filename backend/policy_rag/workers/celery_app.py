"""
Celery Application Factory

Configures the Celery app for async document processing.
Broker: RabbitMQ (amqp://) in production; Redis or memory:// in local dev and tests.
Result backend: optional — document state lives in the database, not in task results.

Queue topology:
  documents.ingest   — document processing pipeline
  documents.retry    — beat-driven sweeper (stale pending / stuck processing)
  system.health      — internal health-check tasks

Task payloads carry ids only (document_id, organization_id), never file bytes;
the worker loads the file from blob storage.
"""

from __future__ import annotations

import logging

from celery import Celery
from celery.signals import task_failure, task_postrun, task_prerun
from kombu import Exchange, Queue

from policy_rag.core.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Queue and exchange definitions
# ---------------------------------------------------------------------------

DOCUMENTS_EXCHANGE = Exchange("documents", type="direct", durable=True)

TASK_QUEUES = (
    Queue(
        "documents.ingest",
        exchange=DOCUMENTS_EXCHANGE,
        routing_key="documents.ingest",
        durable=True,
    ),
    Queue(
        "documents.retry",
        exchange=DOCUMENTS_EXCHANGE,
        routing_key="documents.retry",
        durable=True,
    ),
    Queue(
        "system.health",
        Exchange("system", type="direct"),
        routing_key="system.health",
        durable=True,
    ),
)

TASK_ROUTES = {
    "policy_rag.workers.tasks.process_document": {"queue": "documents.ingest"},
    "policy_rag.workers.tasks.sweep_documents":  {"queue": "documents.retry"},
    "policy_rag.workers.tasks.health_check":     {"queue": "system.health"},
}

SWEEP_INTERVAL_SECONDS = 60


# ---------------------------------------------------------------------------
# Celery app factory
# ---------------------------------------------------------------------------

def create_celery_app() -> Celery:
    app = Celery("policy_rag")

    app.conf.update(
        # --- Broker / Backend ---
        broker_url=settings.celery_broker_url,
        result_backend=settings.celery_result_backend,

        # --- Serialization (reject non-JSON messages) ---
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        event_serializer="json",

        # --- Queues ---
        task_queues=TASK_QUEUES,
        task_routes=TASK_ROUTES,
        task_default_queue="documents.ingest",
        task_default_exchange="documents",
        task_default_routing_key="documents.ingest",

        # --- Reliability ---
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,   # one document at a time per worker process

        # --- Timeouts ---
        task_soft_time_limit=300,
        task_time_limit=360,

        result_expires=3600,

        timezone="UTC",
        enable_utc=True,

        # --- Beat schedule (sweeper) ---
        beat_schedule={
            "sweep-documents-every-60s": {
                "task":     "policy_rag.workers.tasks.sweep_documents",
                "schedule": SWEEP_INTERVAL_SECONDS,
                "options":  {"queue": "documents.retry"},
            },
        },

        worker_max_tasks_per_child=200,
    )

    app.autodiscover_tasks(["policy_rag.workers"])

    return app


celery_app = create_celery_app()


# ---------------------------------------------------------------------------
# Celery signals: task lifecycle logging
# ---------------------------------------------------------------------------

@task_prerun.connect
def on_task_prerun(task_id, task, args, kwargs, **_):
    logger.info(
        "Task start | task_id=%s task=%s doc=%s org=%s",
        task_id, task.name,
        (kwargs or {}).get("document_id", "-"),
        (kwargs or {}).get("organization_id", "-"),
    )


@task_postrun.connect
def on_task_postrun(task_id, task, args, kwargs, retval, state, **_):
    logger.info(
        "Task end | task_id=%s task=%s state=%s doc=%s",
        task_id, task.name, state, (kwargs or {}).get("document_id", "-"),
    )


@task_failure.connect
def on_task_failure(task_id, exception, args, kwargs, traceback, einfo, **_):
    logger.error(
        "Task failed | task_id=%s doc=%s error=%s",
        task_id, (kwargs or {}).get("document_id", "-"), exception,
        exc_info=True,
    )
