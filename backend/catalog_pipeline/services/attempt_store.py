"""
Attempt Store — the processing-attempt state machine.

Every lifecycle transition is ONE conditional UPDATE on ONE row:

    UPDATE processing_attempts
       SET status = :next, ...
     WHERE id = :id AND status IN (:expected)

rowcount == 1  → the transition applied.
rowcount == 0  → re-read the row and classify:
    row missing                                → NotFoundError
    row already holds the same result          → no-op (duplicate delivery)
    anything else                              → PreconditionFailedError

No locks are taken. Two workers racing on the same attempt both issue the
guarded UPDATE; exactly one matches, the other falls into the classification
above. That is what makes redelivery and concurrent duplicates harmless.

    pending ──record_ocr_result──▶ ocr_complete ──begin_mapping──▶ mapping_in_progress
                                        │                                │
                                        └──────record_mapping_result─────┴──▶ completed
    (any non-terminal) ──record_failure──▶ failed
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Iterable, Optional
from uuid import UUID

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError

from catalog_pipeline.core.errors import (
    InvalidStateError,
    NotFoundError,
    PreconditionFailedError,
    ValidationError,
)
from catalog_pipeline.db.session import Database
from catalog_pipeline.models.attempts import AttemptStatus, ExportStatus, ProcessingAttempt
from catalog_pipeline.schemas.attempts import AttemptMetadata
from catalog_pipeline.schemas.extraction import MappingPayload, OcrPayload

logger = logging.getLogger(__name__)

NO_PRODUCTS_REVIEW_REASON = "No products extracted"

_NON_TERMINAL = (
    AttemptStatus.PENDING,
    AttemptStatus.OCR_COMPLETE,
    AttemptStatus.MAPPING_IN_PROGRESS,
)

_MONEY = Decimal("0.000001")
_CONFIDENCE = Decimal("0.0001")


# ---------------------------------------------------------------------------
# Time + numeric helpers
# ---------------------------------------------------------------------------

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def to_money(value: Decimal | float | int) -> Decimal:
    return Decimal(str(value)).quantize(_MONEY)


def _to_confidence(value: Optional[float]) -> Optional[Decimal]:
    if value is None:
        return None
    return Decimal(str(value)).quantize(_CONFIDENCE)


# ---------------------------------------------------------------------------
# Stored-payload views (used for duplicate detection and for reprocessing)
# ---------------------------------------------------------------------------

def ocr_identity(attempt: ProcessingAttempt) -> dict:
    return {
        "text":       attempt.ocr_text,
        "tables":     attempt.ocr_tables or [],
        "page_count": attempt.ocr_page_count,
    }


def mapping_identity(attempt: ProcessingAttempt) -> dict:
    return {
        "products":       attempt.products or [],
        "column_mapping": attempt.column_mapping,
        "vendor_label":   attempt.vendor_label,
    }


def _statuses(values: Iterable[AttemptStatus]) -> list[str]:
    return [s.value for s in values]


# ---------------------------------------------------------------------------
# AttemptStore
# ---------------------------------------------------------------------------

class AttemptStore:
    """Authoritative record of processing attempts. Injected, never global."""

    def __init__(self, database: Database) -> None:
        self.database = database

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, attempt_id: UUID) -> ProcessingAttempt:
        _require_id(attempt_id)
        async with self.database.session() as session:
            attempt = await session.get(ProcessingAttempt, attempt_id)
        if attempt is None:
            raise NotFoundError(attempt_id)
        return attempt

    async def list_by_root(self, root_id: UUID) -> list[ProcessingAttempt]:
        async with self.database.session() as session:
            result = await session.execute(
                select(ProcessingAttempt)
                .where(ProcessingAttempt.root_id == root_id)
                .order_by(ProcessingAttempt.attempt_index.asc())
            )
            return list(result.scalars().all())

    async def find_stale(
        self,
        status: AttemptStatus,
        older_than: timedelta,
        limit: int = 100,
    ) -> list[ProcessingAttempt]:
        """
        Attempts that have sat in ``status`` longer than ``older_than`` and
        were not re-queued within that window either.
        """
        cutoff = utcnow() - older_than
        async with self.database.session() as session:
            result = await session.execute(
                select(ProcessingAttempt)
                .where(
                    ProcessingAttempt.status == status.value,
                    ProcessingAttempt.updated_at < cutoff,
                    _not_requeued_since(cutoff),
                )
                .order_by(ProcessingAttempt.updated_at.asc())
                .limit(limit)
            )
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create(self, metadata: AttemptMetadata) -> UUID:
        """
        Insert an ORIGINAL attempt: status=pending, root_id=id, index 0.

        The partial unique index on (vendor_key) WHERE attempt_index = 0 is
        the final guard for one lineage per vendor; two concurrent uploads
        for the same vendor race on the INSERT and exactly one wins.
        """
        attempt_id = uuid.uuid4()
        now = utcnow()
        try:
            async with self.database.session() as session:
                session.add(ProcessingAttempt(
                    id=attempt_id,
                    root_id=attempt_id,
                    attempt_index=0,
                    parent_id=None,
                    document_name=metadata.document_name,
                    storage_path=metadata.storage_path,
                    size_bytes=metadata.size_bytes,
                    content_type=metadata.content_type,
                    vendor_key=metadata.vendor_key,
                    status=AttemptStatus.PENDING.value,
                    export_status=ExportStatus.NOT_EXPORTED.value,
                    requires_manual_review=False,
                    mapping_deliveries=0,
                    uploaded_at=now,
                    updated_at=now,
                ))
        except IntegrityError:
            logger.warning("Duplicate original rejected | vendor=%s", metadata.vendor_key)
            raise PreconditionFailedError(
                f"A document already exists for vendor {metadata.vendor_key}. "
                "Purge its lineage before uploading again."
            )

        logger.info(
            "Attempt created | attempt=%s vendor=%s document=%s",
            attempt_id, metadata.vendor_key, metadata.document_name,
        )
        return attempt_id

    async def discard(self, attempt_id: UUID) -> bool:
        """Remove an original that never left ``pending`` (its artifact was never stored)."""
        async with self.database.session() as session:
            result = await session.execute(
                delete(ProcessingAttempt).where(
                    ProcessingAttempt.id == attempt_id,
                    ProcessingAttempt.attempt_index == 0,
                    ProcessingAttempt.status == AttemptStatus.PENDING.value,
                )
            )
        discarded = result.rowcount == 1
        if discarded:
            logger.info("Attempt discarded | attempt=%s", attempt_id)
        return discarded

    # ------------------------------------------------------------------
    # Worker bookkeeping
    # ------------------------------------------------------------------

    async def claim_requeue(
        self,
        attempt_id: UUID,
        status: AttemptStatus,
        older_than: timedelta,
    ) -> bool:
        """
        Stamp ``requeued_at`` on a stale attempt. Returns False when another
        scanner already re-queued it within the window or the attempt moved on.
        updated_at is left untouched; it tracks lifecycle progress only.
        """
        now = utcnow()
        cutoff = now - older_than
        stmt = (
            update(ProcessingAttempt)
            .where(
                ProcessingAttempt.id == attempt_id,
                ProcessingAttempt.status == status.value,
                ProcessingAttempt.updated_at < cutoff,
                _not_requeued_since(cutoff),
            )
            .values(requeued_at=now, updated_at=ProcessingAttempt.updated_at)
            .execution_options(synchronize_session=False)
        )
        async with self.database.session() as session:
            result = await session.execute(stmt)
        return result.rowcount == 1

    async def record_mapping_delivery(self, attempt_id: UUID) -> Optional[int]:
        """
        Count one delivery of the mapping job and return the running total.

        Counted in the row, not in the broker, so deliveries that die with
        their worker (and never reach a retry) still add up. Returns None
        when the attempt no longer accepts mapping work.
        """
        _require_id(attempt_id)
        applied = await self._transition(
            attempt_id,
            expected=(AttemptStatus.OCR_COMPLETE, AttemptStatus.MAPPING_IN_PROGRESS),
            values={"mapping_deliveries": ProcessingAttempt.mapping_deliveries + 1},
        )
        if not applied:
            return None
        current = await self.get(attempt_id)
        return current.mapping_deliveries

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def record_ocr_result(self, attempt_id: UUID, payload: OcrPayload) -> None:
        """pending → ocr_complete, storing the OCR payload."""
        _require_id(attempt_id)
        applied = await self._transition(
            attempt_id,
            expected=(AttemptStatus.PENDING,),
            values={
                "status":          AttemptStatus.OCR_COMPLETE.value,
                "ocr_text":        payload.text,
                "ocr_tables":      [t.model_dump(mode="json") for t in payload.tables],
                "ocr_page_count":  payload.page_count,
                "ocr_table_count": payload.table_count,
                "ocr_cost_usd":    to_money(payload.cost_usd),
                "ocr_confidence":  _to_confidence(payload.confidence),
            },
        )
        if applied:
            logger.info(
                "OCR recorded | attempt=%s pages=%d tables=%d",
                attempt_id, payload.page_count, payload.table_count,
            )
            return

        current = await self.get(attempt_id)
        if current.has_ocr_payload and ocr_identity(current) == payload.identity():
            logger.info("OCR result already recorded | attempt=%s status=%s", attempt_id, current.status)
            return
        raise PreconditionFailedError(
            f"Cannot record OCR result: attempt is '{current.status}', expected 'pending'.",
            attempt_id=attempt_id,
            current_status=current.status,
        )

    async def begin_mapping(self, attempt_id: UUID) -> None:
        """ocr_complete → mapping_in_progress. Already in progress is a no-op."""
        _require_id(attempt_id)
        applied = await self._transition(
            attempt_id,
            expected=(AttemptStatus.OCR_COMPLETE,),
            values={
                "status":             AttemptStatus.MAPPING_IN_PROGRESS.value,
                "mapping_started_at": utcnow(),
            },
        )
        if applied:
            logger.info("Mapping started | attempt=%s", attempt_id)
            return

        current = await self.get(attempt_id)
        if current.status == AttemptStatus.MAPPING_IN_PROGRESS.value:
            # Redelivered after a visibility timeout; the job resumes.
            logger.warning("Mapping already in progress | attempt=%s", attempt_id)
            return
        raise PreconditionFailedError(
            f"Cannot begin mapping: attempt is '{current.status}', expected 'ocr_complete'.",
            attempt_id=attempt_id,
            current_status=current.status,
        )

    async def record_mapping_result(self, attempt_id: UUID, payload: MappingPayload) -> None:
        """
        ocr_complete | mapping_in_progress → completed.

        Zero products is a successful result: the attempt completes with
        product_count=0 and is flagged for manual review.
        """
        _require_id(attempt_id)
        current = await self.get(attempt_id)
        now = utcnow()
        started = as_utc(current.mapping_started_at)
        duration_ms = int((now - started).total_seconds() * 1000) if started else None
        empty = payload.product_count == 0

        applied = await self._transition(
            attempt_id,
            expected=(AttemptStatus.OCR_COMPLETE, AttemptStatus.MAPPING_IN_PROGRESS),
            values={
                "status":                 AttemptStatus.COMPLETED.value,
                "mapping_started_at":     func.coalesce(ProcessingAttempt.mapping_started_at, now),
                "mapping_completed_at":   now,
                "duration_ms":            duration_ms,
                "products":               [p.model_dump(mode="json") for p in payload.products],
                "column_mapping":         payload.column_mapping.model_dump(mode="json"),
                "ai_model":               payload.model,
                "ai_prompt":              payload.prompt,
                "prompt_tokens":          payload.prompt_tokens,
                "completion_tokens":      payload.completion_tokens,
                "total_tokens":           payload.total_tokens,
                "mapping_cost_usd":       to_money(payload.cost_usd),
                "vendor_label":           payload.vendor_label,
                "product_count":          payload.product_count,
                "requires_manual_review": empty,
                "review_reason":          NO_PRODUCTS_REVIEW_REASON if empty else None,
            },
        )
        if applied:
            logger.info(
                "Mapping recorded | attempt=%s products=%d review=%s duration_ms=%s",
                attempt_id, payload.product_count, empty, duration_ms,
            )
            return

        current = await self.get(attempt_id)
        if (
            current.status == AttemptStatus.COMPLETED.value
            and mapping_identity(current) == payload.identity()
        ):
            logger.info("Mapping result already recorded | attempt=%s", attempt_id)
            return
        raise PreconditionFailedError(
            f"Cannot record mapping result: attempt is '{current.status}'.",
            attempt_id=attempt_id,
            current_status=current.status,
        )

    async def record_failure(self, attempt_id: UUID, reason: str) -> None:
        """Any non-terminal status → failed, persisting the reason."""
        _require_id(attempt_id)
        if not reason or not reason.strip():
            raise ValidationError("A failure reason is required.", field="reason")

        applied = await self._transition(
            attempt_id,
            expected=_NON_TERMINAL,
            values={
                "status":        AttemptStatus.FAILED.value,
                "error_message": reason,
            },
        )
        if applied:
            logger.warning("Attempt failed | attempt=%s reason=%s", attempt_id, reason)
            return

        current = await self.get(attempt_id)
        if current.status == AttemptStatus.FAILED.value and current.error_message == reason:
            logger.info("Failure already recorded | attempt=%s", attempt_id)
            return
        raise PreconditionFailedError(
            f"Cannot record failure: attempt is already '{current.status}'.",
            attempt_id=attempt_id,
            current_status=current.status,
        )

    # ------------------------------------------------------------------
    # Review
    # ------------------------------------------------------------------

    async def mark_reviewed(self, attempt_id: UUID, reviewer: str) -> ProcessingAttempt:
        """Record a human review of a terminal attempt and clear the review flag."""
        _require_id(attempt_id)
        if not reviewer or not reviewer.strip():
            raise ValidationError("A reviewer is required.", field="reviewer")

        applied = await self._transition(
            attempt_id,
            expected=(AttemptStatus.COMPLETED, AttemptStatus.FAILED),
            values={
                "reviewed_by":            reviewer,
                "reviewed_at":            utcnow(),
                "requires_manual_review": False,
            },
        )
        current = await self.get(attempt_id)
        if not applied:
            raise InvalidStateError(
                f"Only completed or failed attempts can be reviewed (status '{current.status}').",
                attempt_id=attempt_id,
                current_status=current.status,
            )
        logger.info("Attempt reviewed | attempt=%s reviewer=%s", attempt_id, reviewer)
        return current

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _transition(
        self,
        attempt_id: UUID,
        expected: tuple[AttemptStatus, ...],
        values: dict[str, Any],
    ) -> bool:
        stmt = (
            update(ProcessingAttempt)
            .where(
                ProcessingAttempt.id == attempt_id,
                ProcessingAttempt.status.in_(_statuses(expected)),
            )
            .values(**values, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        async with self.database.session() as session:
            result = await session.execute(stmt)
        return result.rowcount == 1


def _not_requeued_since(cutoff: datetime):
    return or_(
        ProcessingAttempt.requeued_at.is_(None),
        ProcessingAttempt.requeued_at < cutoff,
    )


def _require_id(attempt_id: Optional[UUID]) -> None:
    if attempt_id is None:
        raise ValidationError("attempt_id is required.", field="attempt_id")
