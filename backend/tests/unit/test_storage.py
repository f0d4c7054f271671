"""
Unit Tests — ArtifactStorage (S3)
══════════════════════════════════
Tests for catalog_pipeline/storage/s3.py with a mocked aioboto3 session.

Coverage:
  ✅ Upload key is uploads/<vendor_key>/<file_name>
  ✅ put_upload returns a StoredObject with the stripped ETag
  ✅ Audit keys are versioned by attempt_index, per kind and extension
  ✅ Text audit bodies are UTF-8 encoded
  ✅ delete_object removes the upload (lineage purge)
  ✅ ClientError / timeout → ExternalServiceError("storage")
"""

from __future__ import annotations

import asyncio
import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest
from botocore.exceptions import ClientError

from catalog_pipeline.core.errors import ExternalServiceError
from catalog_pipeline.storage.s3 import ArtifactStorage, AuditKind, audit_key

ATTEMPT_ID = uuid.UUID("5f0c2d43-8d0a-4c36-9a57-2c1b1f1d6f10")


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def _client_error(code: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": "test"}}, "operation")


def _build_s3_mock() -> AsyncMock:
    """Build a mock S3 client context manager."""
    s3 = AsyncMock()
    s3.__aenter__ = AsyncMock(return_value=s3)
    s3.__aexit__  = AsyncMock(return_value=None)
    s3.put_object = AsyncMock(return_value={"ETag": '"etag-123"', "VersionId": "v1"})
    body = MagicMock()
    body.read = AsyncMock(return_value=b"%PDF-1.4 stored")
    s3.get_object = AsyncMock(return_value={"Body": body})
    return s3


def _storage(s3: AsyncMock, timeout_seconds: float = 30.0) -> ArtifactStorage:
    session = MagicMock()
    session.client.return_value = s3
    return ArtifactStorage(bucket="test-bucket", session=session, timeout_seconds=timeout_seconds)


# ─────────────────────────────────────────────────────────────────────────────
# Tests
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.s3
class TestArtifactStorage:

    async def test_put_upload_writes_vendor_scoped_key(self):
        s3 = _build_s3_mock()
        storage = _storage(s3)

        stored = await storage.put_upload("ACME_TOOLS_11_25", "ACME_TOOLS-11-25.pdf", b"%PDF-1.4")

        assert stored.key == "uploads/ACME_TOOLS_11_25/ACME_TOOLS-11-25.pdf"
        assert stored.bucket == "test-bucket"
        assert stored.etag == "etag-123"
        assert stored.version_id == "v1"
        assert stored.size_bytes == 8
        kwargs = s3.put_object.await_args.kwargs
        assert kwargs["Key"] == stored.key
        assert kwargs["ContentType"] == "application/pdf"
        assert kwargs["Metadata"] == {"vendor_key": "ACME_TOOLS_11_25"}

    async def test_get_object_reads_body(self):
        s3 = _build_s3_mock()
        storage = _storage(s3)

        data = await storage.get_object("uploads/ACME_TOOLS_11_25/ACME_TOOLS-11-25.pdf")

        assert data == b"%PDF-1.4 stored"
        s3.get_object.assert_awaited_once_with(
            Bucket="test-bucket", Key="uploads/ACME_TOOLS_11_25/ACME_TOOLS-11-25.pdf",
        )

    @pytest.mark.parametrize("kind, expected", [
        (AuditKind.RAW,     f"raw/{ATTEMPT_ID}-v2.pdf"),
        (AuditKind.OCR,     f"ocr/{ATTEMPT_ID}-v2.json"),
        (AuditKind.MAPPING, f"ai-mapping/{ATTEMPT_ID}-v2.json"),
        (AuditKind.PROMPT,  f"prompts/{ATTEMPT_ID}-v2.txt"),
    ])
    def test_audit_key_layout(self, kind, expected):
        assert audit_key(kind, ATTEMPT_ID, 2) == expected

    async def test_put_audit_encodes_text_under_bronze_prefix(self):
        s3 = _build_s3_mock()
        storage = _storage(s3)

        key = await storage.put_audit(AuditKind.PROMPT, ATTEMPT_ID, 0, "Table 0, Column 0: \"SKU\"")

        assert key == f"bronze-layer/prompts/{ATTEMPT_ID}-v0.txt"
        kwargs = s3.put_object.await_args.kwargs
        assert kwargs["Body"] == b'Table 0, Column 0: "SKU"'
        assert kwargs["ContentType"].startswith("text/plain")
        assert kwargs["Metadata"]["attempt_index"] == "0"

    async def test_client_error_becomes_external_service_error(self):
        s3 = _build_s3_mock()
        s3.put_object = AsyncMock(side_effect=_client_error("AccessDenied"))
        storage = _storage(s3)

        with pytest.raises(ExternalServiceError) as exc_info:
            await storage.put_upload("ACME_TOOLS_11_25", "ACME_TOOLS-11-25.pdf", b"%PDF-1.4")

        assert exc_info.value.service == "storage"
        assert "AccessDenied" in exc_info.value.message

    async def test_delete_object_removes_upload_key(self):
        s3 = _build_s3_mock()
        s3.delete_object = AsyncMock(return_value={})
        storage = _storage(s3)

        await storage.delete_object("uploads/ACME_TOOLS_11_25/ACME_TOOLS-11-25.pdf")

        s3.delete_object.assert_awaited_once_with(
            Bucket="test-bucket", Key="uploads/ACME_TOOLS_11_25/ACME_TOOLS-11-25.pdf",
        )

    async def test_delete_client_error_becomes_external_service_error(self):
        s3 = _build_s3_mock()
        s3.delete_object = AsyncMock(side_effect=_client_error("AccessDenied"))
        storage = _storage(s3)

        with pytest.raises(ExternalServiceError) as exc_info:
            await storage.delete_object("uploads/ACME_TOOLS_11_25/ACME_TOOLS-11-25.pdf")

        assert exc_info.value.service == "storage"

    async def test_timeout_becomes_external_service_error(self):
        async def _slow_get(**_):
            await asyncio.sleep(1)

        s3 = _build_s3_mock()
        s3.get_object = AsyncMock(side_effect=_slow_get)
        storage = _storage(s3, timeout_seconds=0.01)

        with pytest.raises(ExternalServiceError) as exc_info:
            await storage.get_object("uploads/x.pdf")

        assert "timed out" in exc_info.value.message
