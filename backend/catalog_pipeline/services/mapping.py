"""
Mapping job handler — the consume side of the async dispatcher.

One call to MappingJobHandler.handle() per queue message {attempt_id}:

    1. read attempt         terminal → skip (redelivery after completion)
                            pending  → PreconditionFailedError (dead-letter)
    2. count delivery       persisted on the attempt; past max_deliveries the
                            attempt is failed and DeliveryLimitExceededError
                            tells the task to dead-letter
    3. begin_mapping        ocr_complete → mapping_in_progress
                            (already in progress = resumed redelivery)
    4. engine.map()         LLM mapping + row extraction
    5. audit writes         prompts/ and ai-mapping/ bronze copies
    6. record result        → completed
       or record_failure    → failed   (LLM / storage / timeout)

The handler never loops or sleeps. Redelivery and dead-lettering belong to
the transport; anything unexpected propagates to the Celery task.
"""

from __future__ import annotations

import json
import logging
from enum import Enum
from uuid import UUID

from pydantic import ValidationError as PydanticValidationError

from catalog_pipeline.core.errors import (
    DeliveryLimitExceededError,
    ExternalServiceError,
    PreconditionFailedError,
)
from catalog_pipeline.models.attempts import AttemptStatus, ProcessingAttempt
from catalog_pipeline.processing.column_mapping import ColumnMappingEngine
from catalog_pipeline.schemas.extraction import MappingPayload, OcrPayload, OcrTable
from catalog_pipeline.services.attempt_store import AttemptStore
from catalog_pipeline.storage.s3 import ArtifactStorage, AuditKind

logger = logging.getLogger(__name__)


class MappingOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED    = "failed"
    SKIPPED   = "skipped"


def stored_ocr_payload(attempt: ProcessingAttempt) -> OcrPayload:
    """Rebuild the typed OCR payload from the attempt's stored columns."""
    return OcrPayload(
        text=attempt.ocr_text or "",
        tables=[OcrTable.model_validate(t) for t in (attempt.ocr_tables or [])],
        page_count=attempt.ocr_page_count or 0,
    )


def _mapping_audit_body(attempt: ProcessingAttempt, payload: MappingPayload) -> str:
    body = {
        "attempt_id":    str(attempt.id),
        "root_id":       str(attempt.root_id),
        "attempt_index": attempt.attempt_index,
        "vendor_key":    attempt.vendor_key,
        **payload.model_dump(mode="json", exclude={"prompt"}),
        "total_tokens":  payload.total_tokens,
        "product_count": payload.product_count,
    }
    return json.dumps(body, indent=2)


class MappingJobHandler:
    def __init__(
        self,
        store: AttemptStore,
        engine: ColumnMappingEngine,
        storage: ArtifactStorage,
        max_deliveries: int = 6,
    ) -> None:
        self._store = store
        self._engine = engine
        self._storage = storage
        self._max_deliveries = max_deliveries

    async def handle(self, attempt_id: UUID) -> MappingOutcome:
        attempt = await self._store.get(attempt_id)
        status = AttemptStatus(attempt.status)

        if status.is_terminal:
            logger.info("Mapping skipped, attempt already terminal | attempt=%s status=%s", attempt_id, status.value)
            return MappingOutcome.SKIPPED
        if status == AttemptStatus.PENDING:
            raise PreconditionFailedError(
                "Mapping job received before the OCR result was recorded.",
                attempt_id=attempt_id,
                current_status=status.value,
            )

        deliveries = await self._store.record_mapping_delivery(attempt_id)
        if deliveries is None:
            logger.info("Mapping skipped, attempt finished elsewhere | attempt=%s", attempt_id)
            return MappingOutcome.SKIPPED
        if deliveries > self._max_deliveries:
            # Earlier deliveries died without recording an outcome (worker lost).
            await self._fail(
                attempt_id,
                f"Mapping job abandoned after {deliveries - 1} deliveries without a result.",
            )
            raise DeliveryLimitExceededError(attempt_id, deliveries)

        await self._store.begin_mapping(attempt_id)

        try:
            ocr = stored_ocr_payload(attempt)
        except PydanticValidationError as exc:
            return await self._fail(attempt_id, f"Stored OCR tables are malformed: {exc.error_count()} error(s)")

        try:
            payload = await self._engine.map(ocr)
            await self._storage.put_audit(AuditKind.PROMPT, attempt.id, attempt.attempt_index, payload.prompt)
            await self._storage.put_audit(
                AuditKind.MAPPING, attempt.id, attempt.attempt_index,
                _mapping_audit_body(attempt, payload),
            )
        except ExternalServiceError as exc:
            return await self._fail(attempt_id, exc.message)

        try:
            await self._store.record_mapping_result(attempt_id, payload)
        except PreconditionFailedError:
            if await self._is_terminal(attempt_id):
                # A concurrent duplicate delivery finished first.
                logger.warning("Mapping result discarded, attempt finished elsewhere | attempt=%s", attempt_id)
                return MappingOutcome.SKIPPED
            raise

        return MappingOutcome.COMPLETED

    async def _fail(self, attempt_id: UUID, reason: str) -> MappingOutcome:
        try:
            await self._store.record_failure(attempt_id, reason)
        except PreconditionFailedError:
            if await self._is_terminal(attempt_id):
                logger.warning("Failure discarded, attempt finished elsewhere | attempt=%s", attempt_id)
                return MappingOutcome.SKIPPED
            raise
        return MappingOutcome.FAILED

    async def _is_terminal(self, attempt_id: UUID) -> bool:
        current = await self._store.get(attempt_id)
        return AttemptStatus(current.status).is_terminal
