"""
CatalogPipeline — the public facade over the extraction lifecycle.

The API layer and the workers talk to this object only. It owns no state of
its own: every call delegates to the injected store / stage / manager that
implements it.
"""

from __future__ import annotations

from typing import Optional
from uuid import UUID

from catalog_pipeline.core.errors import ExternalServiceError
from catalog_pipeline.models.attempts import ProcessingAttempt
from catalog_pipeline.schemas.extraction import MappingPayload, OcrPayload
from catalog_pipeline.services.attempt_store import AttemptStore
from catalog_pipeline.services.ingestion import IngestionService, OcrStage
from catalog_pipeline.services.promotion import PromotionManager
from catalog_pipeline.services.quota import UsageStats
from catalog_pipeline.services.versioning import ReprocessingManager


class CatalogPipeline:
    def __init__(
        self,
        store: AttemptStore,
        ingestion: IngestionService,
        ocr_stage: OcrStage,
        reprocessing: ReprocessingManager,
        promotion: PromotionManager,
    ) -> None:
        self.store = store
        self.ingestion = ingestion
        self.ocr_stage = ocr_stage
        self.reprocessing = reprocessing
        self.promotion = promotion

    # Upload + stage callbacks

    async def submit_upload(
        self,
        vendor_key: str,
        data: bytes,
        document_name: Optional[str] = None,
        client_ip: Optional[str] = None,
    ) -> ProcessingAttempt:
        return await self.ingestion.submit_upload(vendor_key, data, document_name, client_ip)

    async def report_ocr_result(self, attempt_id: UUID, payload: OcrPayload) -> None:
        await self.ocr_stage.complete(attempt_id, payload)

    async def report_mapping_result(self, attempt_id: UUID, payload: MappingPayload) -> None:
        await self.store.record_mapping_result(attempt_id, payload)

    async def report_failure(self, attempt_id: UUID, reason: str) -> None:
        await self.store.record_failure(attempt_id, reason)

    # Interactive operations

    async def reprocess(self, attempt_id: UUID) -> ProcessingAttempt:
        return await self.reprocessing.reprocess(attempt_id)

    async def promote(self, attempt_id: UUID) -> int:
        return await self.promotion.promote(attempt_id)

    async def reject(self, attempt_id: UUID, reviewer: str, reason: str) -> ProcessingAttempt:
        return await self.promotion.reject(attempt_id, reviewer, reason)

    async def mark_reviewed(self, attempt_id: UUID, reviewer: str) -> ProcessingAttempt:
        return await self.store.mark_reviewed(attempt_id, reviewer)

    # Queries

    async def get_attempt(self, attempt_id: UUID) -> ProcessingAttempt:
        return await self.store.get(attempt_id)

    async def list_lineage(self, attempt_id: UUID) -> list[ProcessingAttempt]:
        return await self.reprocessing.list_lineage(attempt_id)

    async def usage_stats(self) -> UsageStats:
        if self.ingestion.quota is None:
            raise ExternalServiceError("quota", "upload quotas are not configured")
        return await self.ingestion.quota.stats()

    # Administrative purge

    async def delete_attempt(self, attempt_id: UUID) -> list[UUID]:
        return await self.reprocessing.delete_attempt(attempt_id)

    async def purge_lineage(self, attempt_id: UUID) -> list[UUID]:
        return await self.reprocessing.purge_lineage(attempt_id)
