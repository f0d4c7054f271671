"""
Extraction payloads — OCR output, LLM column mapping, extracted products.

These are the typed shapes that flow between the OCR stage, the mapping
stage and the attempt store. Untyped JSON from Textract or the LLM is
validated into these models at the adapter boundary and rejected on shape
mismatch; nothing downstream indexes into raw dicts.

Stored form:
    ocr_tables      → [OcrTable.model_dump(mode="json"), ...]
    products        → [Product.model_dump(mode="json"), ...]   (price as string)
    column_mapping  → ColumnMapping.model_dump(mode="json")
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# OCR
# ---------------------------------------------------------------------------

class CellKind(str, Enum):
    HEADER  = "header"
    CONTENT = "content"


class TableCell(BaseModel):
    """One table cell; row/column are 0-based."""
    row:     int      = Field(..., ge=0)
    column:  int      = Field(..., ge=0)
    kind:    CellKind = CellKind.CONTENT
    content: str      = ""


class OcrTable(BaseModel):
    cells: list[TableCell] = Field(default_factory=list)

    @property
    def header_cells(self) -> list[TableCell]:
        return [c for c in self.cells if c.kind == CellKind.HEADER]

    @property
    def row_count(self) -> int:
        """Max content row index + 1 (0 when the table has no content cells)."""
        rows = [c.row for c in self.cells if c.kind == CellKind.CONTENT]
        return max(rows) + 1 if rows else 0

    def cell_text(self, row: int, column: int) -> Optional[str]:
        for cell in self.cells:
            if cell.row == row and cell.column == column:
                return cell.content
        return None


class OcrPayload(BaseModel):
    """Result of one OCR pass over an uploaded artifact."""
    text:       str
    tables:     list[OcrTable] = Field(default_factory=list)
    page_count: int            = Field(0, ge=0)
    cost_usd:   Decimal        = Field(Decimal("0"), ge=0)
    confidence: Optional[float] = Field(None, ge=0.0, le=1.0)

    @property
    def table_count(self) -> int:
        return len(self.tables)

    def identity(self) -> dict:
        """Fields that define "the same OCR result" for duplicate detection."""
        return {
            "text":       self.text,
            "tables":     [t.model_dump(mode="json") for t in self.tables],
            "page_count": self.page_count,
        }


# ---------------------------------------------------------------------------
# LLM column mapping
# ---------------------------------------------------------------------------

class ColumnMapping(BaseModel):
    """
    Column index per semantic role, shared by every table in the document.
    name is required; the other roles may be absent.
    """
    sku:         Optional[int] = Field(None, ge=0)
    name:        int           = Field(..., ge=0)
    price:       Optional[int] = Field(None, ge=0)
    unit:        Optional[int] = Field(None, ge=0)
    description: Optional[int] = Field(None, ge=0)


class ColumnMappingResponse(BaseModel):
    """Closed JSON shape the LLM must return."""
    model_config = ConfigDict(populate_by_name=True)

    vendor:         Optional[str] = None
    column_mapping: ColumnMapping = Field(..., alias="columnMapping")


# ---------------------------------------------------------------------------
# Products & mapping payload
# ---------------------------------------------------------------------------

class Product(BaseModel):
    sku:         str
    name:        str
    price:       Decimal       = Field(Decimal("0"), ge=0)
    unit:        Optional[str] = None
    description: Optional[str] = None

    @property
    def is_valid(self) -> bool:
        return bool(self.sku.strip()) and bool(self.name.strip())


class MappingPayload(BaseModel):
    """Everything the mapping stage records on a completed attempt."""
    products:          list[Product] = Field(default_factory=list)
    column_mapping:    ColumnMapping
    vendor_label:      Optional[str] = None
    model:             str
    prompt:            str
    prompt_tokens:     int     = Field(0, ge=0)
    completion_tokens: int     = Field(0, ge=0)
    cost_usd:          Decimal = Field(Decimal("0"), ge=0)

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    @property
    def product_count(self) -> int:
        return len(self.products)

    def identity(self) -> dict:
        """Fields that define "the same mapping result" for duplicate detection."""
        return {
            "products":       [p.model_dump(mode="json") for p in self.products],
            "column_mapping": self.column_mapping.model_dump(mode="json"),
            "vendor_label":   self.vendor_label,
        }
