"""
Job publishing — the enqueue side of the async dispatcher.

Services depend on the JobPublisher protocol only; CeleryJobPublisher is the
production implementation and tests inject an AsyncMock. Messages carry
nothing but the attempt id: workers always re-read state from the store.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol
from uuid import UUID

from catalog_pipeline.core.errors import ExternalServiceError

logger = logging.getLogger(__name__)


class JobPublisher(Protocol):
    async def enqueue_ocr(self, attempt_id: UUID) -> None: ...

    async def enqueue_mapping(self, attempt_id: UUID) -> None: ...


class CeleryJobPublisher:
    """
    Sends pipeline tasks to the Celery broker.
    Import is deferred so the broker connection is not required at module load time.
    """

    async def enqueue_ocr(self, attempt_id: UUID) -> None:
        from catalog_pipeline.workers.tasks import run_ocr

        await self._publish(run_ocr, attempt_id)

    async def enqueue_mapping(self, attempt_id: UUID) -> None:
        from catalog_pipeline.workers.tasks import map_attempt

        await self._publish(map_attempt, attempt_id)

    @staticmethod
    async def _publish(task, attempt_id: UUID) -> None:
        """apply_async blocks on the broker; run it in a thread executor."""
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(
                None,
                lambda: task.apply_async(kwargs={"attempt_id": str(attempt_id)}),
            )
        except Exception as exc:
            logger.error("Publish failed | task=%s attempt=%s error=%s", task.name, attempt_id, exc)
            raise ExternalServiceError("queue", f"could not enqueue {task.name}: {exc}") from exc
        logger.info("Task published | task=%s attempt=%s", task.name, attempt_id)
