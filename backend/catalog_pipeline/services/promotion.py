"""
Promotion Manager — exactly-once export of an attempt into the catalog.

    promote(attempt_id)
      status != completed            → InvalidStateError
      export_status == rejected      → InvalidStateError
      export_status == confirmed     → recorded exported_count (no inserts)
      zero valid products            → NoProductsError (export_status unchanged)
      otherwise, ONE transaction:
        UPDATE ... SET export_status='confirmed' WHERE export_status='not_exported'
        rowcount 1 → INSERT one catalog_entries row per valid product
        rowcount 0 → a concurrent promote won; return its recorded count

The claim and the inserts commit together, so a crash between them leaves
the attempt unpromoted rather than half-exported. (source_attempt_id,
line_number) is unique as a second line of defence against duplicates.
"""

from __future__ import annotations

import logging
from uuid import UUID

from sqlalchemy import update

from catalog_pipeline.core.errors import InvalidStateError, NoProductsError, ValidationError
from catalog_pipeline.models.attempts import (
    AttemptStatus,
    CatalogEntry,
    ExportStatus,
    ProcessingAttempt,
)
from catalog_pipeline.schemas.extraction import Product
from catalog_pipeline.services.attempt_store import AttemptStore, utcnow

logger = logging.getLogger(__name__)


def valid_products(attempt: ProcessingAttempt) -> list[tuple[int, Product]]:
    """(line_number, product) for every valid stored product; 1-based lines."""
    result: list[tuple[int, Product]] = []
    for line_number, raw in enumerate(attempt.products or [], start=1):
        product = Product.model_validate(raw)
        if product.is_valid:
            result.append((line_number, product))
    return result


class PromotionManager:
    def __init__(self, store: AttemptStore) -> None:
        self._store = store

    async def promote(self, attempt_id: UUID) -> int:
        """Copy the attempt's valid products into the catalog; returns the count."""
        attempt = await self._store.get(attempt_id)

        if attempt.status != AttemptStatus.COMPLETED.value:
            raise InvalidStateError(
                f"Only completed attempts can be promoted (status '{attempt.status}').",
                attempt_id=attempt.id,
                current_status=attempt.status,
            )
        if attempt.export_status == ExportStatus.REJECTED.value:
            raise InvalidStateError(
                "This attempt was rejected and cannot be promoted.",
                attempt_id=attempt.id,
                current_status=attempt.status,
            )
        if attempt.export_status == ExportStatus.CONFIRMED.value:
            logger.info("Promote no-op, already confirmed | attempt=%s count=%s", attempt.id, attempt.exported_count)
            return attempt.exported_count or 0

        products = valid_products(attempt)
        if not products:
            raise NoProductsError(attempt.id)

        vendor_name = attempt.vendor_label or attempt.vendor_key
        now = utcnow()
        async with self._store.database.session() as session:
            claim = await session.execute(
                update(ProcessingAttempt)
                .where(
                    ProcessingAttempt.id == attempt.id,
                    ProcessingAttempt.status == AttemptStatus.COMPLETED.value,
                    ProcessingAttempt.export_status == ExportStatus.NOT_EXPORTED.value,
                )
                .values(
                    export_status=ExportStatus.CONFIRMED.value,
                    exported_at=now,
                    exported_count=len(products),
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            claimed = claim.rowcount == 1
            if claimed:
                session.add_all([
                    CatalogEntry(
                        vendor_key=attempt.vendor_key,
                        vendor_name=vendor_name,
                        sku=product.sku.strip(),
                        name=product.name.strip(),
                        price=product.price,
                        unit=product.unit,
                        description=product.description,
                        source_attempt_id=attempt.id,
                        source_document_name=attempt.document_name,
                        line_number=line_number,
                        created_at=now,
                    )
                    for line_number, product in products
                ])

        if claimed:
            logger.info(
                "Promoted | attempt=%s vendor=%s exported=%d",
                attempt.id, attempt.vendor_key, len(products),
            )
            return len(products)

        current = await self._store.get(attempt.id)
        if current.export_status == ExportStatus.CONFIRMED.value:
            logger.info("Promote lost race, returning winner's count | attempt=%s", attempt.id)
            return current.exported_count or 0
        raise InvalidStateError(
            f"Attempt export state changed to '{current.export_status}' during promotion.",
            attempt_id=current.id,
            current_status=current.status,
        )

    async def reject(self, attempt_id: UUID, reviewer: str, reason: str) -> ProcessingAttempt:
        """not_exported → rejected on a completed attempt. Repeat calls are no-ops."""
        if not reviewer or not reviewer.strip():
            raise ValidationError("A reviewer is required.", field="reviewer")
        if not reason or not reason.strip():
            raise ValidationError("A rejection reason is required.", field="reason")

        now = utcnow()
        async with self._store.database.session() as session:
            result = await session.execute(
                update(ProcessingAttempt)
                .where(
                    ProcessingAttempt.id == attempt_id,
                    ProcessingAttempt.status == AttemptStatus.COMPLETED.value,
                    ProcessingAttempt.export_status == ExportStatus.NOT_EXPORTED.value,
                )
                .values(
                    export_status=ExportStatus.REJECTED.value,
                    reviewed_by=reviewer,
                    reviewed_at=now,
                    review_reason=reason,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )

        current = await self._store.get(attempt_id)
        if result.rowcount == 1:
            logger.info("Export rejected | attempt=%s reviewer=%s", attempt_id, reviewer)
            return current
        if current.export_status == ExportStatus.REJECTED.value:
            return current
        raise InvalidStateError(
            f"Cannot reject: attempt is '{current.status}' with export status '{current.export_status}'.",
            attempt_id=current.id,
            current_status=current.status,
        )
