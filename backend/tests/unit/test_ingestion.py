"""
Unit Tests — IngestionService + OcrStage
═════════════════════════════════════════
Upload validation, the original attempt it creates, and the OCR stage that
moves it to ocr_complete.

All tests:
  • Use the SQLite-backed store plus mock_storage, mock_publisher, mock_ocr
  • Never touch real S3, Textract, or Celery

Coverage targets:
  ✅ Valid PDF            → pending original attempt, OCR enqueued
  ✅ S3 key               → uploads/<vendor_key>/<BASE>-<MM>-<YY>.pdf
  ✅ Bad vendor key       → ValidationError (format, month)
  ✅ Empty / huge / non-PDF file → ValidationError
  ✅ Vendor already has a lineage → PreconditionFailedError, nothing stored
  ✅ Concurrent uploads for one vendor → one lineage, one S3 write
  ✅ Storage failure      → ExternalServiceError, no attempt created, retry allowed
  ✅ Upload quotas        → daily / per-IP hourly limits, counted on success only
  ✅ Broker down          → attempt still created
  ✅ OCR stage            → ocr_complete + mapping enqueued + audit artifacts
  ✅ OCR failure          → failed with reason
  ✅ OCR redelivery       → skipped for non-pending attempts
"""

from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import func, select

from catalog_pipeline.core.errors import (
    ExternalServiceError,
    PreconditionFailedError,
    QuotaExceededError,
    ValidationError,
)
from catalog_pipeline.models.attempts import AttemptStatus, ProcessingAttempt
from catalog_pipeline.services.ingestion import (
    IngestionService,
    OcrStage,
    parse_vendor_key,
    validate_pdf,
)
from catalog_pipeline.services.quota import UploadQuota
from catalog_pipeline.storage.s3 import AuditKind

PDF = b"%PDF-1.4\n" + b"0" * 128


@pytest.fixture
def ingestion(store, mock_storage, mock_publisher) -> IngestionService:
    return IngestionService(store, mock_storage, mock_publisher, max_upload_bytes=1024)


@pytest.fixture
def ocr_stage(store, mock_storage, mock_ocr, mock_publisher) -> OcrStage:
    return OcrStage(store, mock_storage, mock_ocr, mock_publisher)


async def _attempt_count(database) -> int:
    async with database.session() as session:
        return (await session.execute(select(func.count()).select_from(ProcessingAttempt))).scalar_one()


# ─────────────────────────────────────────────────────────────────────────────
# Validation helpers
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.ingestion
class TestVendorKey:

    def test_valid_key_is_split(self):
        key = parse_vendor_key("BETTER_LIVING_11_25")

        assert key.base == "BETTER_LIVING"
        assert key.month == "11"
        assert key.year == "25"
        assert key.file_name == "BETTER_LIVING-11-25.pdf"

    def test_surrounding_whitespace_is_ignored(self):
        assert parse_vendor_key("  ACME_01_26 ").value == "ACME_01_26"

    @pytest.mark.parametrize("raw", [
        None,
        "",
        "better_living_11_25",
        "BETTER LIVING_11_25",
        "BETTER_LIVING_2025",
        "BETTER_LIVING_1_25",
        "_11_25",
    ])
    def test_malformed_key_raises(self, raw):
        with pytest.raises(ValidationError) as exc_info:
            parse_vendor_key(raw)
        assert exc_info.value.field == "vendor_key"

    @pytest.mark.parametrize("raw", ["ACME_00_25", "ACME_13_25"])
    def test_month_out_of_range_raises(self, raw):
        with pytest.raises(ValidationError):
            parse_vendor_key(raw)


@pytest.mark.unit
@pytest.mark.ingestion
class TestValidatePdf:

    def test_pdf_passes(self):
        validate_pdf(PDF, max_bytes=1024)

    def test_empty_file_raises(self):
        with pytest.raises(ValidationError):
            validate_pdf(b"", max_bytes=1024)

    def test_oversized_file_raises(self):
        with pytest.raises(ValidationError):
            validate_pdf(PDF + b"0" * 2048, max_bytes=1024)

    def test_non_pdf_raises(self):
        with pytest.raises(ValidationError):
            validate_pdf(b"MZ\x90\x00 not a pdf", max_bytes=1024)


# ─────────────────────────────────────────────────────────────────────────────
# Upload
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.ingestion
class TestSubmitUpload:

    async def test_valid_upload_creates_pending_original(self, ingestion, mock_publisher):
        attempt = await ingestion.submit_upload("ACME_TOOLS_11_25", PDF, "Acme November.pdf")

        assert attempt.status == AttemptStatus.PENDING.value
        assert attempt.root_id == attempt.id
        assert attempt.attempt_index == 0
        assert attempt.vendor_key == "ACME_TOOLS_11_25"
        assert attempt.document_name == "Acme November.pdf"
        assert attempt.size_bytes == len(PDF)
        assert attempt.content_type == "application/pdf"
        mock_publisher.enqueue_ocr.assert_awaited_once_with(attempt.id)

    async def test_storage_key_is_server_constructed(self, ingestion, mock_storage):
        attempt = await ingestion.submit_upload("ACME_TOOLS_11_25", PDF, "../../etc/passwd")

        mock_storage.put_upload.assert_awaited_once_with(
            "ACME_TOOLS_11_25", "ACME_TOOLS-11-25.pdf", PDF, "application/pdf",
        )
        assert attempt.storage_path == "uploads/ACME_TOOLS_11_25/ACME_TOOLS-11-25.pdf"
        assert attempt.document_name == "passwd"

    async def test_document_name_defaults_to_vendor_file_name(self, ingestion):
        attempt = await ingestion.submit_upload("ACME_TOOLS_11_25", PDF)

        assert attempt.document_name == "ACME_TOOLS-11-25.pdf"

    async def test_invalid_input_stores_nothing(self, ingestion, database, mock_storage):
        with pytest.raises(ValidationError):
            await ingestion.submit_upload("acme", PDF)
        with pytest.raises(ValidationError):
            await ingestion.submit_upload("ACME_TOOLS_11_25", b"plain text")

        mock_storage.put_upload.assert_not_awaited()
        assert await _attempt_count(database) == 0

    async def test_second_upload_for_vendor_is_refused(self, ingestion, database, mock_storage):
        await ingestion.submit_upload("ACME_TOOLS_11_25", PDF)

        with pytest.raises(PreconditionFailedError) as exc_info:
            await ingestion.submit_upload("ACME_TOOLS_11_25", PDF)

        assert "ACME_TOOLS_11_25" in exc_info.value.message
        assert mock_storage.put_upload.await_count == 1
        assert await _attempt_count(database) == 1

    async def test_concurrent_uploads_for_vendor_create_one_lineage(
        self, ingestion, database, mock_storage
    ):
        results = await asyncio.gather(
            ingestion.submit_upload("ACME_TOOLS_11_25", PDF, "first.pdf"),
            ingestion.submit_upload("ACME_TOOLS_11_25", PDF, "second.pdf"),
            return_exceptions=True,
        )

        refused = [r for r in results if isinstance(r, PreconditionFailedError)]
        accepted = [r for r in results if not isinstance(r, BaseException)]
        assert len(refused) == 1
        assert len(accepted) == 1
        assert mock_storage.put_upload.await_count == 1
        assert await _attempt_count(database) == 1

    async def test_storage_failure_creates_no_attempt(self, ingestion, database, mock_storage):
        mock_storage.put_upload.side_effect = ExternalServiceError("storage", "AccessDenied")

        with pytest.raises(ExternalServiceError):
            await ingestion.submit_upload("ACME_TOOLS_11_25", PDF)

        assert await _attempt_count(database) == 0

    async def test_upload_can_be_retried_after_storage_failure(self, ingestion, mock_storage):
        mock_storage.put_upload.side_effect = [ExternalServiceError("storage", "timed out"), None]

        with pytest.raises(ExternalServiceError):
            await ingestion.submit_upload("ACME_TOOLS_11_25", PDF)
        attempt = await ingestion.submit_upload("ACME_TOOLS_11_25", PDF)

        assert attempt.status == AttemptStatus.PENDING.value

    async def test_broker_down_still_creates_attempt(self, ingestion, store, mock_publisher):
        mock_publisher.enqueue_ocr.side_effect = ExternalServiceError("queue", "connection refused")

        attempt = await ingestion.submit_upload("ACME_TOOLS_11_25", PDF)

        assert (await store.get(attempt.id)).status == AttemptStatus.PENDING.value


# ─────────────────────────────────────────────────────────────────────────────
# Upload quotas
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.ingestion
class TestUploadQuotas:

    def _service(self, store, mock_storage, mock_publisher, memory_redis, **limits) -> IngestionService:
        return IngestionService(
            store, mock_storage, mock_publisher,
            max_upload_bytes=1024,
            quota=UploadQuota(memory_redis, **limits),
        )

    async def test_daily_limit_refuses_next_upload(
        self, store, mock_storage, mock_publisher, memory_redis, database
    ):
        service = self._service(store, mock_storage, mock_publisher, memory_redis, max_daily_uploads=1)

        await service.submit_upload("ACME_TOOLS_11_25", PDF, client_ip="10.0.0.1")
        with pytest.raises(QuotaExceededError) as exc_info:
            await service.submit_upload("OTHER_VENDOR_11_25", PDF, client_ip="10.0.0.2")

        assert exc_info.value.scope == "daily"
        assert exc_info.value.limit == 1
        assert mock_storage.put_upload.await_count == 1
        assert await _attempt_count(database) == 1

    async def test_hourly_limit_is_per_client_ip(self, store, mock_storage, mock_publisher, memory_redis):
        service = self._service(
            store, mock_storage, mock_publisher, memory_redis, max_uploads_per_ip_per_hour=1,
        )

        await service.submit_upload("ACME_TOOLS_11_25", PDF, client_ip="10.0.0.1")
        with pytest.raises(QuotaExceededError) as exc_info:
            await service.submit_upload("OTHER_VENDOR_11_25", PDF, client_ip="10.0.0.1")
        attempt = await service.submit_upload("THIRD_VENDOR_11_25", PDF, client_ip="10.0.0.2")

        assert exc_info.value.scope == "ip"
        assert attempt.vendor_key == "THIRD_VENDOR_11_25"

    async def test_refused_upload_is_not_counted(self, store, mock_storage, mock_publisher, memory_redis):
        service = self._service(store, mock_storage, mock_publisher, memory_redis, max_daily_uploads=5)

        await service.submit_upload("ACME_TOOLS_11_25", PDF, client_ip="10.0.0.1")
        with pytest.raises(PreconditionFailedError):
            await service.submit_upload("ACME_TOOLS_11_25", PDF, client_ip="10.0.0.1")

        assert list(memory_redis.data.values()) == [1, 1]

    async def test_unlimited_quota_never_touches_redis(self, store, mock_storage, mock_publisher, memory_redis):
        service = self._service(store, mock_storage, mock_publisher, memory_redis)

        await service.submit_upload("ACME_TOOLS_11_25", PDF, client_ip="10.0.0.1")

        assert memory_redis.data == {}


# ─────────────────────────────────────────────────────────────────────────────
# OCR stage
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.ingestion
class TestOcrStage:

    async def test_pending_attempt_reaches_ocr_complete(
        self, ocr_stage, store, make_attempt, mock_storage, mock_ocr, mock_publisher, sample_pdf_bytes
    ):
        attempt_id = await make_attempt()

        recorded = await ocr_stage.run(attempt_id)

        assert recorded is True
        attempt = await store.get(attempt_id)
        assert attempt.status == AttemptStatus.OCR_COMPLETE.value
        assert attempt.ocr_table_count == 1
        mock_storage.get_object.assert_awaited_once_with(attempt.storage_path)
        mock_ocr.analyze.assert_awaited_once_with(
            sample_pdf_bytes, s3_bucket="test-bucket", s3_key=attempt.storage_path,
        )
        mock_publisher.enqueue_mapping.assert_awaited_once_with(attempt_id)

    async def test_raw_and_ocr_audit_artifacts_written(self, ocr_stage, make_attempt, mock_storage):
        attempt_id = await make_attempt()

        await ocr_stage.run(attempt_id)

        calls = mock_storage.put_audit.await_args_list
        assert [c.args[0] for c in calls] == [AuditKind.RAW, AuditKind.OCR]
        assert all(c.args[1] == attempt_id and c.args[2] == 0 for c in calls)

    async def test_ocr_failure_marks_attempt_failed(self, ocr_stage, store, make_attempt, mock_ocr, mock_publisher):
        mock_ocr.analyze.side_effect = ExternalServiceError("ocr", "timed out after 120s")
        attempt_id = await make_attempt()

        recorded = await ocr_stage.run(attempt_id)

        assert recorded is False
        attempt = await store.get(attempt_id)
        assert attempt.status == AttemptStatus.FAILED.value
        assert attempt.error_message == "ocr: timed out after 120s"
        mock_publisher.enqueue_mapping.assert_not_awaited()

    async def test_non_pending_attempt_is_skipped(self, ocr_stage, make_attempt, mock_ocr):
        attempt_id = await make_attempt(AttemptStatus.OCR_COMPLETE)

        recorded = await ocr_stage.run(attempt_id)

        assert recorded is False
        mock_ocr.analyze.assert_not_awaited()

    async def test_reported_ocr_result_is_idempotent(
        self, ocr_stage, store, make_attempt, sample_ocr_payload, mock_publisher
    ):
        attempt_id = await make_attempt()

        await ocr_stage.complete(attempt_id, sample_ocr_payload)
        await ocr_stage.complete(attempt_id, sample_ocr_payload)

        assert (await store.get(attempt_id)).status == AttemptStatus.OCR_COMPLETE.value
        assert mock_publisher.enqueue_mapping.await_count == 2
