"""
Reprocessing Tree Manager — immutable attempt lineages.

A lineage is every attempt sharing one root_id:

    root (index 0) ── reprocess ──▶ index 1 ── reprocess ──▶ index 2
          └──────────── reprocess ─────────────────────────▶ index 3

Rules:
  - reprocess INSERTS a new attempt; it never updates the source or root.
  - root_id is always the source's root_id, so reprocessing a reprocess
    still points at the true root (the tree is flat, not a chain).
  - attempt_index = max(index in lineage) + 1, computed from the lineage.
    Two concurrent reprocess calls can compute the same index; the unique
    constraint on (root_id, attempt_index) rejects one, which recomputes.
  - OCR is never re-run: the new attempt copies the source's OCR payload
    and starts at ocr_complete, then a mapping job is enqueued.

Administrative purge is the only way attempts disappear: one non-root
attempt at a time, or a whole lineage. Promoted attempts are never deleted.
Purging a lineage also deletes its uploaded artifact from S3 (best effort);
the bronze-layer audit copies are kept.
"""

from __future__ import annotations

import logging
import uuid
from typing import Optional
from uuid import UUID

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError

from catalog_pipeline.core.errors import (
    ExternalServiceError,
    InvalidStateError,
    NotFoundError,
    PreconditionFailedError,
)
from catalog_pipeline.models.attempts import AttemptStatus, ExportStatus, ProcessingAttempt
from catalog_pipeline.services.attempt_store import AttemptStore, utcnow
from catalog_pipeline.services.dispatch import JobPublisher
from catalog_pipeline.storage.s3 import ArtifactStorage

logger = logging.getLogger(__name__)

# Source metadata + OCR payload carried verbatim into every new attempt
_COPIED_FIELDS = (
    "document_name",
    "storage_path",
    "size_bytes",
    "content_type",
    "vendor_key",
    "ocr_text",
    "ocr_tables",
    "ocr_page_count",
    "ocr_table_count",
    "ocr_cost_usd",
    "ocr_confidence",
)


class ReprocessingManager:
    MAX_INDEX_ATTEMPTS = 3

    def __init__(
        self,
        store: AttemptStore,
        publisher: JobPublisher,
        storage: Optional[ArtifactStorage] = None,
    ) -> None:
        self._store = store
        self._publisher = publisher
        self._storage = storage

    # ------------------------------------------------------------------
    # Reprocess
    # ------------------------------------------------------------------

    async def reprocess(self, source_attempt_id: UUID) -> ProcessingAttempt:
        """
        Create the next attempt in the source's lineage and enqueue mapping.

        Raises:
            NotFoundError:            unknown source id.
            PreconditionFailedError:  source has no OCR payload yet.
        """
        source = await self._store.get(source_attempt_id)
        if source.status == AttemptStatus.PENDING.value or not source.has_ocr_payload:
            raise PreconditionFailedError(
                "Cannot reprocess an attempt without an OCR result.",
                attempt_id=source.id,
                current_status=source.status,
            )

        for n in range(1, self.MAX_INDEX_ATTEMPTS + 1):
            try:
                new_attempt = await self._insert_next(source)
                break
            except IntegrityError:
                logger.warning(
                    "Attempt index collision | root=%s try=%d/%d",
                    source.root_id, n, self.MAX_INDEX_ATTEMPTS,
                )
        else:
            raise PreconditionFailedError(
                f"Could not allocate an attempt index after {self.MAX_INDEX_ATTEMPTS} tries.",
                attempt_id=source.id,
            )

        logger.info(
            "Reprocess | source=%s new=%s root=%s index=%d",
            source.id, new_attempt.id, new_attempt.root_id, new_attempt.attempt_index,
        )

        try:
            await self._publisher.enqueue_mapping(new_attempt.id)
        except ExternalServiceError as exc:
            # The attempt is durable; the stale-attempt scanner re-enqueues it.
            logger.error("Mapping enqueue failed | attempt=%s error=%s", new_attempt.id, exc)

        return new_attempt

    async def _insert_next(self, source: ProcessingAttempt) -> ProcessingAttempt:
        now = utcnow()
        async with self._store.database.session() as session:
            max_index = (
                await session.execute(
                    select(func.max(ProcessingAttempt.attempt_index))
                    .where(ProcessingAttempt.root_id == source.root_id)
                )
            ).scalar_one_or_none()

            new_attempt = ProcessingAttempt(
                id=uuid.uuid4(),
                root_id=source.root_id,
                attempt_index=(max_index or 0) + 1,
                parent_id=source.id,
                status=AttemptStatus.OCR_COMPLETE.value,
                export_status=ExportStatus.NOT_EXPORTED.value,
                requires_manual_review=False,
                uploaded_at=now,
                updated_at=now,
                **{field: getattr(source, field) for field in _COPIED_FIELDS},
            )
            session.add(new_attempt)
        return new_attempt

    # ------------------------------------------------------------------
    # Lineage queries
    # ------------------------------------------------------------------

    async def list_lineage(self, attempt_id: UUID) -> list[ProcessingAttempt]:
        """Every attempt sharing this attempt's root, by attempt_index ascending."""
        attempt = await self._store.get(attempt_id)
        lineage = await self._store.list_by_root(attempt.root_id)
        if not lineage:
            # Purged between the two reads.
            raise NotFoundError(attempt_id)
        return lineage

    # ------------------------------------------------------------------
    # Administrative purge
    # ------------------------------------------------------------------

    async def delete_attempt(self, attempt_id: UUID) -> list[UUID]:
        """Delete ONE non-root, non-promoted attempt."""
        attempt = await self._store.get(attempt_id)
        if attempt.is_original:
            raise InvalidStateError(
                "The original attempt cannot be deleted on its own; purge the lineage instead.",
                attempt_id=attempt.id,
                current_status=attempt.status,
            )

        async with self._store.database.session() as session:
            result = await session.execute(
                delete(ProcessingAttempt)
                .where(
                    ProcessingAttempt.id == attempt.id,
                    ProcessingAttempt.export_status != ExportStatus.CONFIRMED.value,
                )
                .execution_options(synchronize_session=False)
            )
        if result.rowcount != 1:
            raise InvalidStateError(
                "A promoted attempt cannot be deleted.",
                attempt_id=attempt.id,
                current_status=attempt.status,
            )

        logger.warning("Attempt deleted | attempt=%s root=%s index=%d", attempt.id, attempt.root_id, attempt.attempt_index)
        return [attempt.id]

    async def purge_lineage(self, attempt_id: UUID) -> list[UUID]:
        """Delete every attempt of the lineage containing ``attempt_id``."""
        attempt = await self._store.get(attempt_id)
        root_id = attempt.root_id

        async with self._store.database.session() as session:
            rows = (
                await session.execute(
                    select(
                        ProcessingAttempt.id,
                        ProcessingAttempt.export_status,
                        ProcessingAttempt.storage_path,
                    )
                    .where(ProcessingAttempt.root_id == root_id)
                    .order_by(ProcessingAttempt.attempt_index.asc())
                )
            ).all()
            if any(row.export_status == ExportStatus.CONFIRMED.value for row in rows):
                raise InvalidStateError(
                    "A lineage containing a promoted attempt cannot be purged.",
                    attempt_id=attempt.id,
                    current_status=attempt.status,
                )
            await session.execute(
                delete(ProcessingAttempt)
                .where(ProcessingAttempt.root_id == root_id)
                .execution_options(synchronize_session=False)
            )

        deleted = [row.id for row in rows]
        logger.warning("Lineage purged | root=%s attempts=%d", root_id, len(deleted))
        await self._delete_artifacts({row.storage_path for row in rows})
        return deleted

    async def _delete_artifacts(self, keys: set[str]) -> None:
        """Best effort: the rows are gone either way, a leftover object is only logged."""
        if self._storage is None:
            return
        for key in sorted(keys):
            try:
                await self._storage.delete_object(key)
            except ExternalServiceError as exc:
                logger.warning("Artifact left behind after purge | key=%s error=%s", key, exc)
