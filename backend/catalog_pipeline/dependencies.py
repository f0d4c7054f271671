"""
Process wiring — the only place that builds concrete collaborators.

    API process     get_container() (cached) → FastAPI dependencies below
    Celery worker   worker_container()       → fresh per task, disposed after

Everything else receives its store / storage / adapters through __init__.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from functools import lru_cache
from typing import AsyncGenerator, Optional

from catalog_pipeline.core.config import Settings, get_settings
from catalog_pipeline.db.session import Database
from catalog_pipeline.llm.client import LLMClient
from catalog_pipeline.processing.column_mapping import ColumnMappingEngine
from catalog_pipeline.processing.ocr import TextractOcrClient
from catalog_pipeline.services.attempt_store import AttemptStore
from catalog_pipeline.services.dispatch import CeleryJobPublisher, JobPublisher
from catalog_pipeline.services.ingestion import IngestionService, OcrStage
from catalog_pipeline.services.mapping import MappingJobHandler
from catalog_pipeline.services.pipeline import CatalogPipeline
from catalog_pipeline.services.promotion import PromotionManager
from catalog_pipeline.services.quota import UploadQuota
from catalog_pipeline.services.versioning import ReprocessingManager
from catalog_pipeline.storage.s3 import ArtifactStorage


@dataclass
class Container:
    database:        Database
    store:           AttemptStore
    pipeline:        CatalogPipeline
    mapping_handler: MappingJobHandler
    quota:           UploadQuota


def build_container(
    settings: Settings,
    database: Optional[Database] = None,
    publisher: Optional[JobPublisher] = None,
) -> Container:
    database = database or Database.from_settings(settings)
    publisher = publisher or CeleryJobPublisher()

    store = AttemptStore(database)
    storage = ArtifactStorage.from_settings(settings)
    quota = UploadQuota.from_settings(settings)
    engine = ColumnMappingEngine(LLMClient.from_settings(settings), settings.llm_context_chars)

    pipeline = CatalogPipeline(
        store=store,
        ingestion=IngestionService(store, storage, publisher, settings.max_upload_bytes, quota),
        ocr_stage=OcrStage(store, storage, TextractOcrClient.from_settings(settings), publisher),
        reprocessing=ReprocessingManager(store, publisher, storage),
        promotion=PromotionManager(store),
    )
    return Container(
        database=database,
        store=store,
        pipeline=pipeline,
        mapping_handler=MappingJobHandler(
            store, engine, storage,
            max_deliveries=settings.mapping_max_redeliveries + 1,
        ),
        quota=quota,
    )


# ---------------------------------------------------------------------------
# API process
# ---------------------------------------------------------------------------

@lru_cache(maxsize=1)
def get_container() -> Container:
    return build_container(get_settings())


def get_pipeline() -> CatalogPipeline:
    """FastAPI dependency; overridden in tests."""
    return get_container().pipeline


def get_database() -> Database:
    """FastAPI dependency; overridden in tests."""
    return get_container().database


# ---------------------------------------------------------------------------
# Celery worker
# ---------------------------------------------------------------------------

@asynccontextmanager
async def worker_container() -> AsyncGenerator[Container, None]:
    """A container bound to the current task's event loop."""
    settings = get_settings()
    container = build_container(settings, database=Database.from_settings(settings, pooled=False))
    try:
        yield container
    finally:
        await container.database.dispose()
        await container.quota.close()
