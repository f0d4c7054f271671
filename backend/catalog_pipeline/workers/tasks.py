"""
Celery Tasks — Catalog Extraction Pipeline

Task: run_ocr
  One invocation per uploaded artifact. Delegates to OcrStage.run; OCR and
  storage failures are recorded on the attempt. Infrastructure errors (DB
  unreachable …) are retried by Celery.

Task: map_attempt
  Consumes {attempt_id} from attempts.mapping and calls
  MappingJobHandler.handle once. Routing of failures:
    PreconditionFailedError / malformed id  → dead-letter immediately
    attempt no longer exists (purged)       → drop with a warning
    DeliveryLimitExceededError              → dead-letter (the handler counts
                                              every delivery on the attempt,
                                              worker-lost redeliveries too)
    anything else                           → self.retry() until
                                              mapping_max_redeliveries, then
                                              record failure + dead-letter

Task: dead_letter_mapping_job
  Parked on attempts.mapping.dead for manual inspection. Running it (a
  worker started with -Q attempts.mapping.dead) only logs the record.

Task: requeue_stale_attempts
  Beat task — re-publishes attempts stuck in 'pending' or 'ocr_complete'
  for longer than stale_attempt_minutes. Covers broker outages at enqueue
  time. Each attempt is claimed (requeued_at stamped) before publishing, so
  one stale attempt is re-published at most once per window, however many
  scanner runs overlap it.

Task: cleanup_usage_records
  Daily beat task (02:00 UTC) — deletes upload-quota counters older than
  usage_retention_days.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Any
from uuid import UUID

from celery import Task

from catalog_pipeline.core.config import get_settings
from catalog_pipeline.core.errors import (
    DeliveryLimitExceededError,
    NotFoundError,
    PreconditionFailedError,
)
from catalog_pipeline.models.attempts import AttemptStatus
from catalog_pipeline.workers.celery_app import DEAD_LETTER_QUEUE, celery_app

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Async task helper
# Run async coroutines inside Celery's synchronous task context.
# ---------------------------------------------------------------------------

def run_async(coro):
    """Execute an async coroutine from a synchronous Celery task."""
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)

    import concurrent.futures
    with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
        return pool.submit(asyncio.run, coro).result()


# ---------------------------------------------------------------------------
# OCR stage
# ---------------------------------------------------------------------------

@celery_app.task(
    name="catalog_pipeline.workers.tasks.run_ocr",
    bind=True,
    max_retries=3,
    default_retry_delay=30,
    acks_late=True,
    reject_on_worker_lost=True,
)
def run_ocr(self: Task, *, attempt_id: str) -> dict[str, Any]:
    try:
        recorded = run_async(_run_ocr_async(UUID(attempt_id)))
    except ValueError:
        logger.error("OCR task with malformed attempt id | attempt=%s", attempt_id)
        return {"attempt_id": attempt_id, "outcome": "rejected"}
    except NotFoundError:
        logger.warning("OCR task for missing attempt | attempt=%s", attempt_id)
        return {"attempt_id": attempt_id, "outcome": "not_found"}
    except PreconditionFailedError as exc:
        logger.error("OCR result rejected | attempt=%s error=%s", attempt_id, exc)
        return {"attempt_id": attempt_id, "outcome": "rejected"}
    except Exception as exc:
        logger.exception("OCR task error | attempt=%s", attempt_id)
        raise self.retry(exc=exc)

    return {"attempt_id": attempt_id, "outcome": "recorded" if recorded else "skipped"}


async def _run_ocr_async(attempt_id: UUID) -> bool:
    from catalog_pipeline.dependencies import worker_container

    async with worker_container() as container:
        return await container.pipeline.ocr_stage.run(attempt_id)


# ---------------------------------------------------------------------------
# Mapping stage
# ---------------------------------------------------------------------------

@celery_app.task(
    name="catalog_pipeline.workers.tasks.map_attempt",
    bind=True,
    max_retries=None,             # redelivery budget enforced below
    default_retry_delay=30,
    acks_late=True,
    reject_on_worker_lost=True,
    soft_time_limit=270,
    time_limit=330,
)
def map_attempt(self: Task, *, attempt_id: str) -> dict[str, Any]:
    deliveries = self.request.retries + 1
    try:
        outcome = run_async(_map_attempt_async(UUID(attempt_id)))
    except ValueError:
        dead_letter(attempt_id, "malformed attempt id", deliveries)
        return {"attempt_id": attempt_id, "outcome": "dead_lettered"}
    except NotFoundError:
        logger.warning("Mapping job for missing attempt | attempt=%s", attempt_id)
        return {"attempt_id": attempt_id, "outcome": "not_found"}
    except DeliveryLimitExceededError as exc:
        # The handler already failed the attempt; the persisted count also
        # covers deliveries lost with their worker, which retries never see.
        dead_letter(attempt_id, exc.message, exc.deliveries)
        return {"attempt_id": attempt_id, "outcome": "dead_lettered"}
    except PreconditionFailedError as exc:
        dead_letter(attempt_id, exc.message, deliveries)
        return {"attempt_id": attempt_id, "outcome": "dead_lettered"}
    except Exception as exc:
        max_redeliveries = get_settings().mapping_max_redeliveries
        if self.request.retries >= max_redeliveries:
            reason = f"Mapping job dead-lettered after {deliveries} deliveries: {exc}"
            run_async(_record_dead_letter_failure(UUID(attempt_id), reason))
            dead_letter(attempt_id, str(exc), deliveries)
            return {"attempt_id": attempt_id, "outcome": "dead_lettered"}
        logger.warning(
            "Mapping job error, redelivering | attempt=%s delivery=%d/%d error=%s",
            attempt_id, deliveries, max_redeliveries + 1, exc,
        )
        raise self.retry(exc=exc)

    return {"attempt_id": attempt_id, "outcome": outcome.value}


async def _map_attempt_async(attempt_id: UUID):
    from catalog_pipeline.dependencies import worker_container

    async with worker_container() as container:
        return await container.mapping_handler.handle(attempt_id)


async def _record_dead_letter_failure(attempt_id: UUID, reason: str) -> None:
    """Mark the attempt failed so users see it and can reprocess."""
    from catalog_pipeline.dependencies import worker_container

    try:
        async with worker_container() as container:
            await container.store.record_failure(attempt_id, reason)
    except Exception as exc:
        logger.error("Could not record dead-letter failure | attempt=%s error=%s", attempt_id, exc)


def dead_letter(attempt_id: str, reason: str, deliveries: int) -> None:
    logger.error(
        "Mapping job dead-lettered | attempt=%s deliveries=%d reason=%s",
        attempt_id, deliveries, reason,
    )
    dead_letter_mapping_job.apply_async(
        kwargs={"attempt_id": attempt_id, "reason": reason, "deliveries": deliveries},
        queue=DEAD_LETTER_QUEUE,
    )


@celery_app.task(name="catalog_pipeline.workers.tasks.dead_letter_mapping_job")
def dead_letter_mapping_job(*, attempt_id: str, reason: str, deliveries: int) -> dict[str, Any]:
    logger.error(
        "Dead-letter inspection | attempt=%s deliveries=%d reason=%s",
        attempt_id, deliveries, reason,
    )
    return {"attempt_id": attempt_id, "reason": reason, "deliveries": deliveries}


# ---------------------------------------------------------------------------
# Stale-attempt scanner (beat)
# ---------------------------------------------------------------------------

@celery_app.task(name="catalog_pipeline.workers.tasks.requeue_stale_attempts")
def requeue_stale_attempts() -> dict[str, int]:
    return run_async(_requeue_stale_attempts_async())


async def _requeue_stale_attempts_async() -> dict[str, int]:
    from catalog_pipeline.dependencies import worker_container

    older_than = timedelta(minutes=get_settings().stale_attempt_minutes)
    pending: list = []
    ready: list = []
    async with worker_container() as container:
        store = container.store
        for attempt in await store.find_stale(AttemptStatus.PENDING, older_than):
            if await store.claim_requeue(attempt.id, AttemptStatus.PENDING, older_than):
                pending.append(attempt)
        for attempt in await store.find_stale(AttemptStatus.OCR_COMPLETE, older_than):
            if await store.claim_requeue(attempt.id, AttemptStatus.OCR_COMPLETE, older_than):
                ready.append(attempt)

    for attempt in pending:
        run_ocr.apply_async(kwargs={"attempt_id": str(attempt.id)})
    for attempt in ready:
        map_attempt.apply_async(kwargs={"attempt_id": str(attempt.id)})

    if pending or ready:
        logger.info("Stale attempts re-queued | ocr=%d mapping=%d", len(pending), len(ready))
    return {"ocr": len(pending), "mapping": len(ready)}


# ---------------------------------------------------------------------------
# Upload-quota retention (beat, daily)
# ---------------------------------------------------------------------------

@celery_app.task(name="catalog_pipeline.workers.tasks.cleanup_usage_records")
def cleanup_usage_records() -> dict[str, Any]:
    return run_async(_cleanup_usage_records_async())


async def _cleanup_usage_records_async() -> dict[str, Any]:
    from catalog_pipeline.dependencies import worker_container

    retention_days = get_settings().usage_retention_days
    async with worker_container() as container:
        result = await container.quota.cleanup(retention_days)

    return {
        "daily_deleted": result.daily_deleted,
        "ip_deleted":    result.ip_deleted,
        "cutoff":        result.cutoff.isoformat(),
    }
