"""
SQLAlchemy ORM Models — Processing Attempts & Catalog Entries

Using SQLAlchemy mapped classes (2.x style) for full async support.
Column types are dialect-portable (Uuid, JSON with a JSONB variant) so the
same metadata runs on PostgreSQL in production and SQLite in tests.

Lineage model:
    Every upload creates an ORIGINAL attempt (attempt_index=0, root_id=id).
    Every reprocess creates a NEW attempt in the same lineage
    (root_id = original id, attempt_index = max + 1, parent_id = source).
    History is never rewritten: a reprocess inserts, it does not update.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    Text,
    UniqueConstraint,
    Uuid,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JSONType = JSON().with_variant(JSONB(), "postgresql")


# ---------------------------------------------------------------------------
# State enums
# ---------------------------------------------------------------------------

class AttemptStatus(str, Enum):
    """
    Forward-only lifecycle of one attempt:
        pending → ocr_complete → mapping_in_progress → completed | failed
    """
    PENDING             = "pending"               # artifact stored, OCR not yet recorded
    OCR_COMPLETE        = "ocr_complete"          # OCR payload stored, mapping job queued
    MAPPING_IN_PROGRESS = "mapping_in_progress"   # a worker claimed the mapping job
    COMPLETED           = "completed"             # mapping payload stored
    FAILED              = "failed"                # see error_message

    @property
    def is_terminal(self) -> bool:
        return self in (AttemptStatus.COMPLETED, AttemptStatus.FAILED)


class ExportStatus(str, Enum):
    NOT_EXPORTED = "not_exported"
    CONFIRMED    = "confirmed"     # products copied into catalog_entries
    REJECTED     = "rejected"      # reviewer declined this attempt's products


# ---------------------------------------------------------------------------
# Declarative base: shared across all models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# ProcessingAttempt: processing_attempts
# ---------------------------------------------------------------------------

class ProcessingAttempt(Base):
    """
    One OCR + mapping run over one uploaded artifact.

    Mutated only through guarded single-row UPDATEs issued by AttemptStore,
    PromotionManager and the review operations; every guard names the
    status (or export_status) the row must currently hold.
    """

    __tablename__ = "processing_attempts"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'ocr_complete', 'mapping_in_progress', 'completed', 'failed')",
            name="processing_attempts_status_check",
        ),
        CheckConstraint(
            "export_status IN ('not_exported', 'confirmed', 'rejected')",
            name="processing_attempts_export_status_check",
        ),
        UniqueConstraint("root_id", "attempt_index", name="uq_attempts_lineage_index"),
        # One lineage per vendor: at most one original row per vendor_key.
        Index(
            "uq_attempts_vendor_original",
            "vendor_key",
            unique=True,
            postgresql_where=text("attempt_index = 0"),
            sqlite_where=text("attempt_index = 0"),
        ),
        Index("idx_attempts_status",     "status"),
        Index("idx_attempts_root_id",    "root_id"),
        Index("idx_attempts_vendor_key", "vendor_key"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # Versioning
    root_id:       Mapped[uuid.UUID]           = mapped_column(Uuid, nullable=False)
    attempt_index: Mapped[int]                 = mapped_column(Integer, nullable=False, default=0)
    parent_id:     Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    # Source metadata
    document_name: Mapped[str] = mapped_column(Text, nullable=False)
    storage_path:  Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="S3 key of the uploaded artifact: uploads/<vendor_key>/<file>",
    )
    size_bytes:   Mapped[int] = mapped_column(BigInteger, nullable=False)
    content_type: Mapped[str] = mapped_column(Text, nullable=False)
    vendor_key:   Mapped[str] = mapped_column(Text, nullable=False, comment="Owning vendor, e.g. BETTER_LIVING_11_25")

    # Lifecycle
    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=AttemptStatus.PENDING.value,
        server_default=AttemptStatus.PENDING.value,
    )
    uploaded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    mapping_started_at:   Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    mapping_completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_ms:          Mapped[Optional[int]]      = mapped_column(Integer, nullable=True)
    mapping_deliveries:   Mapped[int]                = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default="0",
        comment="Mapping-job deliveries seen by workers, redeliveries included",
    )
    requeued_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Last time the stale-attempt scanner re-published this attempt",
    )

    # OCR payload: copied verbatim into every reprocessed attempt
    ocr_text:        Mapped[Optional[str]]     = mapped_column(Text, nullable=True)
    ocr_tables:      Mapped[Optional[list]]    = mapped_column(JSONType, nullable=True)
    ocr_page_count:  Mapped[Optional[int]]     = mapped_column(Integer, nullable=True)
    ocr_table_count: Mapped[Optional[int]]     = mapped_column(Integer, nullable=True)
    ocr_cost_usd:    Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 6), nullable=True)
    ocr_confidence:  Mapped[Optional[Decimal]] = mapped_column(Numeric(5, 4), nullable=True)

    # Mapping payload
    products:          Mapped[Optional[list]]    = mapped_column(JSONType, nullable=True)
    column_mapping:    Mapped[Optional[dict]]    = mapped_column(JSONType, nullable=True)
    ai_model:          Mapped[Optional[str]]     = mapped_column(Text, nullable=True)
    ai_prompt:         Mapped[Optional[str]]     = mapped_column(Text, nullable=True)
    prompt_tokens:     Mapped[Optional[int]]     = mapped_column(Integer, nullable=True)
    completion_tokens: Mapped[Optional[int]]     = mapped_column(Integer, nullable=True)
    total_tokens:      Mapped[Optional[int]]     = mapped_column(Integer, nullable=True)
    mapping_cost_usd:  Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 6), nullable=True)
    vendor_label:      Mapped[Optional[str]]     = mapped_column(Text, nullable=True)
    product_count:     Mapped[Optional[int]]     = mapped_column(Integer, nullable=True)

    # Review
    requires_manual_review: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    review_reason: Mapped[Optional[str]]      = mapped_column(Text, nullable=True)
    reviewed_by:   Mapped[Optional[str]]      = mapped_column(Text, nullable=True)
    reviewed_at:   Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Export
    export_status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=ExportStatus.NOT_EXPORTED.value,
        server_default=ExportStatus.NOT_EXPORTED.value,
    )
    exported_at:    Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    exported_count: Mapped[Optional[int]]      = mapped_column(Integer, nullable=True)

    # Failure
    error_message: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Populated only when status='failed'",
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    @property
    def is_original(self) -> bool:
        return self.attempt_index == 0

    @property
    def has_ocr_payload(self) -> bool:
        return self.ocr_text is not None and self.ocr_tables is not None

    def __repr__(self) -> str:
        return (
            f"<ProcessingAttempt id={self.id} root={self.root_id} "
            f"index={self.attempt_index} status={self.status}>"
        )


# ---------------------------------------------------------------------------
# CatalogEntry: catalog_entries
# ---------------------------------------------------------------------------

class CatalogEntry(Base):
    """
    One promoted product. Append-only: created by PromotionManager, never
    updated. (source_attempt_id, line_number) is unique so a replayed
    promotion can never insert the same product twice.
    """

    __tablename__ = "catalog_entries"
    __table_args__ = (
        UniqueConstraint("source_attempt_id", "line_number", name="uq_catalog_entries_source_line"),
        Index("idx_catalog_entries_vendor_key", "vendor_key"),
        Index("idx_catalog_entries_sku",        "sku"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    vendor_key:  Mapped[str] = mapped_column(Text, nullable=False)
    vendor_name: Mapped[str] = mapped_column(Text, nullable=False)

    sku:         Mapped[str]           = mapped_column(Text, nullable=False)
    name:        Mapped[str]           = mapped_column(Text, nullable=False)
    price:       Mapped[Decimal]       = mapped_column(Numeric(18, 4), nullable=False)
    unit:        Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    source_attempt_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("processing_attempts.id"),
        nullable=False,
    )
    source_document_name: Mapped[str] = mapped_column(Text, nullable=False)
    line_number:          Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return f"<CatalogEntry sku={self.sku!r} attempt={self.source_attempt_id}>"
