"""
Celery Application Factory

Configures the Celery app for the two asynchronous pipeline stages.
Broker: RabbitMQ (amqp://) in production; Redis (redis://) as fallback for local dev.
Result backend: Redis (optional — attempt state lives in the database, not in Celery results).

Queue topology:
  attempts.ocr            one OCR task per uploaded artifact
  attempts.mapping        column-mapping jobs (the rate-limited LLM stage)
  attempts.maintenance    beat-driven stale-attempt scanner + usage cleanup
  attempts.mapping.dead   dead-letter channel; NOT in task_queues, so no
                          worker consumes it unless started with -Q explicitly

Delivery model:
  task_acks_late + task_reject_on_worker_lost → at-least-once delivery.
  A message whose worker dies is redelivered after the visibility timeout,
  so every handler must be safe to run twice for the same attempt.

Task payloads carry only the attempt id. Never pass document bytes.
"""

from __future__ import annotations

import logging

from celery import Celery
from celery.schedules import crontab
from celery.signals import task_failure, task_postrun, task_prerun
from kombu import Exchange, Queue

from catalog_pipeline.core.config import get_settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Queue and exchange definitions
# ---------------------------------------------------------------------------

ATTEMPTS_EXCHANGE = Exchange("attempts", type="direct", durable=True)

OCR_QUEUE         = "attempts.ocr"
MAPPING_QUEUE     = "attempts.mapping"
MAINTENANCE_QUEUE = "attempts.maintenance"

TASK_QUEUES = (
    Queue(OCR_QUEUE,         exchange=ATTEMPTS_EXCHANGE, routing_key=OCR_QUEUE,         durable=True),
    Queue(MAPPING_QUEUE,     exchange=ATTEMPTS_EXCHANGE, routing_key=MAPPING_QUEUE,     durable=True),
    Queue(MAINTENANCE_QUEUE, exchange=ATTEMPTS_EXCHANGE, routing_key=MAINTENANCE_QUEUE, durable=True),
)

DEAD_LETTER_QUEUE = Queue(
    "attempts.mapping.dead",
    exchange=ATTEMPTS_EXCHANGE,
    routing_key="attempts.mapping.dead",
    durable=True,
)

TASK_ROUTES = {
    "catalog_pipeline.workers.tasks.run_ocr":                 {"queue": OCR_QUEUE},
    "catalog_pipeline.workers.tasks.map_attempt":             {"queue": MAPPING_QUEUE},
    "catalog_pipeline.workers.tasks.requeue_stale_attempts":  {"queue": MAINTENANCE_QUEUE},
    "catalog_pipeline.workers.tasks.cleanup_usage_records":   {"queue": MAINTENANCE_QUEUE},
    "catalog_pipeline.workers.tasks.dead_letter_mapping_job": {"queue": DEAD_LETTER_QUEUE.name},
}

# ---------------------------------------------------------------------------
# Celery app factory
# ---------------------------------------------------------------------------

def create_celery_app() -> Celery:
    settings = get_settings()
    app = Celery("catalog_pipeline")

    app.conf.update(
        # --- Broker / Backend ---
        broker_url=settings.celery_broker_url,
        result_backend=settings.celery_result_backend,
        broker_transport_options={
            # Redis/SQS: unacked messages reappear after this many seconds
            "visibility_timeout": settings.mapping_visibility_timeout_seconds,
        },

        # --- Serialization (reject non-JSON messages) ---
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        event_serializer="json",

        # --- Queues ---
        task_queues=TASK_QUEUES,
        task_routes=TASK_ROUTES,
        task_default_queue=MAPPING_QUEUE,
        task_default_exchange=ATTEMPTS_EXCHANGE.name,
        task_default_routing_key=MAPPING_QUEUE,

        # --- Reliability ---
        task_acks_late=True,         # ack only after task completes (prevents message loss on crash)
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,  # one task at a time per worker (prevents overload)

        # --- Retries ---
        task_default_retry_delay=30,    # seconds

        # --- Timeouts ---
        task_soft_time_limit=300,   # 5 min: sends SIGTERM, task can handle gracefully
        task_time_limit=360,        # 6 min: sends SIGKILL as final backstop

        # --- Result TTL ---
        result_expires=3600,

        # --- Timezone ---
        timezone="UTC",
        enable_utc=True,

        # --- Beat schedule (stale-attempt scanner, usage retention) ---
        beat_schedule={
            "requeue-stale-attempts-every-5m": {
                "task":     "catalog_pipeline.workers.tasks.requeue_stale_attempts",
                "schedule": 300,
                "options":  {"queue": MAINTENANCE_QUEUE},
            },
            "cleanup-usage-records-daily": {
                "task":     "catalog_pipeline.workers.tasks.cleanup_usage_records",
                "schedule": crontab(hour=2, minute=0),
                "options":  {"queue": MAINTENANCE_QUEUE},
            },
        },

        # --- Worker ---
        worker_max_tasks_per_child=200,   # recycle workers to prevent memory bloat
    )

    app.autodiscover_tasks(["catalog_pipeline.workers"])

    return app


celery_app = create_celery_app()


# ---------------------------------------------------------------------------
# Celery signals: task lifecycle logging
# ---------------------------------------------------------------------------

@task_prerun.connect
def on_task_prerun(task_id, task, args, kwargs, **_):
    logger.info(
        "Task start | task_id=%s task=%s attempt=%s",
        task_id, task.name, (kwargs or {}).get("attempt_id", "?"),
    )


@task_postrun.connect
def on_task_postrun(task_id, task, args, kwargs, retval, state, **_):
    logger.info(
        "Task end | task_id=%s task=%s state=%s attempt=%s",
        task_id, task.name, state, (kwargs or {}).get("attempt_id", "?"),
    )


@task_failure.connect
def on_task_failure(task_id, exception, args, kwargs, traceback, einfo, **_):
    logger.error(
        "Task failed | task_id=%s attempt=%s error=%s",
        task_id, (kwargs or {}).get("attempt_id", "?"), exception,
        exc_info=True,
    )
