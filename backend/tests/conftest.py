"""
Root conftest.py — Shared fixtures for ALL tests (unit + integration)

Fixture hierarchy:
  function-scoped : database, store, mock_storage, mock_publisher, mock_llm,
                    mock_ocr, memory_redis, pipeline, mapping_handler, make_attempt,
                    app_with_overrides, async_client

Environment strategy:
  - State-machine tests run against a real SQLAlchemy async engine on a
    throwaway SQLite file (sqlite+aiosqlite) — guarded UPDATEs, unique
    constraints and rowcounts behave as they do in PostgreSQL.
  - S3, Textract, the LLM and the Celery publisher are AsyncMock/MagicMock
    fakes; the quota Redis is an in-memory dict. No network calls are made.

How to run:
  pytest                          # all tests
  pytest -m unit                  # unit tests only (fast, no I/O)
  pytest -m integration           # API tests through the FastAPI stack
"""

from __future__ import annotations

import fnmatch
import os
import uuid
from decimal import Decimal
from typing import AsyncGenerator, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from httpx import AsyncClient

# ─────────────────────────────────────────────────────────────────────────────
# Patch settings BEFORE any app imports so modules read test config
# ─────────────────────────────────────────────────────────────────────────────

os.environ.setdefault("DATABASE_URL",          "sqlite+aiosqlite:///./catalog_pipeline_test.db")
os.environ.setdefault("AWS_REGION",            "us-east-1")
os.environ.setdefault("AWS_ACCESS_KEY_ID",     "test")
os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "test")
os.environ.setdefault("S3_BUCKET",             "test-bucket")
os.environ.setdefault("OPENAI_API_KEY",        "sk-test-key")
os.environ.setdefault("CELERY_BROKER_URL",     "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")
os.environ.setdefault("APP_ENV",               "development")
os.environ.setdefault("DEBUG",                 "true")

from catalog_pipeline.db.session import Database  # noqa: E402
from catalog_pipeline.llm.client import LLMClient, LLMCompletion  # noqa: E402
from catalog_pipeline.models.attempts import AttemptStatus  # noqa: E402
from catalog_pipeline.processing.column_mapping import ColumnMappingEngine  # noqa: E402
from catalog_pipeline.processing.ocr import TextractOcrClient  # noqa: E402
from catalog_pipeline.schemas.attempts import AttemptMetadata  # noqa: E402
from catalog_pipeline.schemas.extraction import (  # noqa: E402
    CellKind,
    ColumnMapping,
    MappingPayload,
    OcrPayload,
    OcrTable,
    Product,
    TableCell,
)
from catalog_pipeline.services.attempt_store import AttemptStore  # noqa: E402
from catalog_pipeline.services.dispatch import CeleryJobPublisher  # noqa: E402
from catalog_pipeline.services.ingestion import IngestionService, OcrStage  # noqa: E402
from catalog_pipeline.services.mapping import MappingJobHandler  # noqa: E402
from catalog_pipeline.services.pipeline import CatalogPipeline  # noqa: E402
from catalog_pipeline.services.promotion import PromotionManager  # noqa: E402
from catalog_pipeline.services.quota import UploadQuota  # noqa: E402
from catalog_pipeline.services.versioning import ReprocessingManager  # noqa: E402
from catalog_pipeline.storage.s3 import ArtifactStorage, StoredObject, audit_key  # noqa: E402

VENDOR_KEY = "ACME_TOOLS_11_25"

MAPPING_JSON = (
    '{"vendor": "Acme Tools", "columnMapping": '
    '{"sku": 0, "name": 1, "price": 2, "unit": null, "description": null}}'
)


# ─────────────────────────────────────────────────────────────────────────────
# Sample documents
# ─────────────────────────────────────────────────────────────────────────────

def pdf_bytes(size: int = 256) -> bytes:
    """Minimal PDF that passes magic-byte detection."""
    header = b"%PDF-1.4\n1 0 obj\n<< /Type /Catalog /Pages 2 0 R >>\nendobj\n"
    return header + b"x" * max(0, size - len(header))


def catalog_table() -> OcrTable:
    """Header [SKU, Name, Price]; rows [A1, Widget, $1,234.56] and [<empty>, NoSku, $5]."""
    rows = [
        ("SKU", "Name", "Price"),
        ("A1",  "Widget", "$1,234.56"),
        ("",    "NoSku",  "$5"),
    ]
    cells = [
        TableCell(
            row=r,
            column=c,
            kind=CellKind.HEADER if r == 0 else CellKind.CONTENT,
            content=text,
        )
        for r, row in enumerate(rows)
        for c, text in enumerate(row)
    ]
    return OcrTable(cells=cells)


@pytest.fixture
def sample_pdf_bytes() -> bytes:
    return pdf_bytes()


@pytest.fixture
def sample_ocr_payload() -> OcrPayload:
    return OcrPayload(
        text="ACME TOOLS price list November 2025\nSKU Name Price\nA1 Widget $1,234.56",
        tables=[catalog_table()],
        page_count=1,
        cost_usd=Decimal("0.015"),
        confidence=0.97,
    )


@pytest.fixture
def sample_mapping_payload() -> MappingPayload:
    return MappingPayload(
        products=[
            Product(sku="A1", name="Widget", price=Decimal("1234.56")),
            Product(sku="B2", name="Gadget", price=Decimal("5"), unit="EA"),
        ],
        column_mapping=ColumnMapping(sku=0, name=1, price=2),
        vendor_label="Acme Tools",
        model="gpt-4o",
        prompt="Table 0, Column 0: \"SKU\"",
        prompt_tokens=120,
        completion_tokens=30,
        cost_usd=Decimal("0.0006"),
    )


# ─────────────────────────────────────────────────────────────────────────────
# Database: real async engine on a per-test SQLite file
# ─────────────────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def database(tmp_path) -> AsyncGenerator[Database, None]:
    from sqlalchemy.ext.asyncio import create_async_engine

    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'pipeline.db'}")
    db = Database(engine)
    await db.create_all()
    yield db
    await db.dispose()


@pytest.fixture
def store(database) -> AttemptStore:
    return AttemptStore(database)


# ─────────────────────────────────────────────────────────────────────────────
# Mock S3 storage service
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def mock_storage(sample_pdf_bytes):
    """
    Fully mocked ArtifactStorage.
    All I/O methods are AsyncMock — no real AWS calls made.
    """
    storage = MagicMock(spec=ArtifactStorage)
    storage.bucket = "test-bucket"

    async def _put_upload(vendor_key, file_name, body, content_type="application/pdf"):
        return StoredObject(
            key=f"uploads/{vendor_key}/{file_name}",
            bucket="test-bucket",
            size_bytes=len(body),
            content_type=content_type,
            etag="d41d8cd98f00b204e9800998ecf8427e",
        )

    async def _put_audit(kind, attempt_id, attempt_index, body):
        return f"bronze-layer/{audit_key(kind, attempt_id, attempt_index)}"

    storage.upload_key.side_effect = lambda vendor_key, file_name: f"uploads/{vendor_key}/{file_name}"
    storage.put_upload    = AsyncMock(side_effect=_put_upload)
    storage.get_object    = AsyncMock(return_value=sample_pdf_bytes)
    storage.put_audit     = AsyncMock(side_effect=_put_audit)
    storage.delete_object = AsyncMock(return_value=None)
    return storage


# ─────────────────────────────────────────────────────────────────────────────
# Mock task publisher, LLM and OCR adapters
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def mock_publisher():
    """Mocked CeleryJobPublisher — records calls without touching Celery/broker."""
    publisher = MagicMock(spec=CeleryJobPublisher)
    publisher.enqueue_ocr     = AsyncMock(return_value=None)
    publisher.enqueue_mapping = AsyncMock(return_value=None)
    return publisher


@pytest.fixture
def mock_llm():
    llm = MagicMock(spec=LLMClient)
    llm.model_name = "gpt-4o"
    llm.complete = AsyncMock(return_value=LLMCompletion(
        content=MAPPING_JSON,
        model="gpt-4o",
        prompt_tokens=400,
        completion_tokens=60,
    ))
    return llm


@pytest.fixture
def mock_ocr(sample_ocr_payload):
    ocr = MagicMock(spec=TextractOcrClient)
    ocr.analyze = AsyncMock(return_value=sample_ocr_payload)
    return ocr


class InMemoryRedis:
    """The slice of redis.asyncio.Redis that UploadQuota uses, over a dict."""

    def __init__(self) -> None:
        self.data: dict[str, int] = {}

    async def get(self, key):
        value = self.data.get(key)
        return None if value is None else str(value)

    async def incr(self, key):
        self.data[key] = self.data.get(key, 0) + 1
        return self.data[key]

    async def delete(self, *keys):
        return sum(1 for key in keys if self.data.pop(key, None) is not None)

    async def scan_iter(self, match=None):
        for key in list(self.data):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key

    async def aclose(self):
        return None


@pytest.fixture
def memory_redis() -> InMemoryRedis:
    return InMemoryRedis()


# ─────────────────────────────────────────────────────────────────────────────
# Services wired over the real store + mocked collaborators
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def pipeline(store, mock_storage, mock_publisher, mock_ocr, memory_redis) -> CatalogPipeline:
    return CatalogPipeline(
        store=store,
        ingestion=IngestionService(
            store, mock_storage, mock_publisher,
            max_upload_bytes=1024 * 1024,
            quota=UploadQuota(memory_redis),
        ),
        ocr_stage=OcrStage(store, mock_storage, mock_ocr, mock_publisher),
        reprocessing=ReprocessingManager(store, mock_publisher, mock_storage),
        promotion=PromotionManager(store),
    )


@pytest.fixture
def mapping_handler(store, mock_llm, mock_storage) -> MappingJobHandler:
    return MappingJobHandler(store, ColumnMappingEngine(mock_llm), mock_storage)


@pytest.fixture
def make_attempt(store, sample_ocr_payload, sample_mapping_payload):
    """
    Factory fixture: creates an original attempt and walks it forward to
    the requested status through the real store transitions.
    """
    async def _make(
        status: AttemptStatus = AttemptStatus.PENDING,
        vendor_key: str = VENDOR_KEY,
        mapping: Optional[MappingPayload] = None,
    ) -> uuid.UUID:
        attempt_id = await store.create(AttemptMetadata(
            document_name="ACME_TOOLS-11-25.pdf",
            storage_path=f"uploads/{vendor_key}/ACME_TOOLS-11-25.pdf",
            size_bytes=256,
            content_type="application/pdf",
            vendor_key=vendor_key,
        ))
        if status == AttemptStatus.PENDING:
            return attempt_id

        await store.record_ocr_result(attempt_id, sample_ocr_payload)
        if status == AttemptStatus.OCR_COMPLETE:
            return attempt_id

        await store.begin_mapping(attempt_id)
        if status == AttemptStatus.MAPPING_IN_PROGRESS:
            return attempt_id

        if status == AttemptStatus.FAILED:
            await store.record_failure(attempt_id, "llm: service unavailable")
            return attempt_id

        await store.record_mapping_result(attempt_id, mapping or sample_mapping_payload)
        return attempt_id

    return _make


# ─────────────────────────────────────────────────────────────────────────────
# FastAPI test client with dependency overrides
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def app_with_overrides(pipeline, database):
    """
    FastAPI app with the wiring dependencies overridden:
      - get_pipeline → pipeline over the SQLite store and mocked adapters
      - get_database → the SQLite Database (for /ready)
    """
    from catalog_pipeline.dependencies import get_database, get_pipeline
    from catalog_pipeline.main import app

    app.dependency_overrides[get_pipeline] = lambda: pipeline
    app.dependency_overrides[get_database] = lambda: database

    yield app

    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def async_client(app_with_overrides) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP test client using the overridden app.

    httpx >= 0.28 removed the 'app=' shortcut; use ASGITransport explicitly.
    """
    from httpx import ASGITransport
    transport = ASGITransport(app=app_with_overrides)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
