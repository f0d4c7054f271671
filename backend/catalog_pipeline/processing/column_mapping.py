"""
Column-Mapping & Row-Extraction Engine
═══════════════════════════════════════

Turns OCR tables into validated products in two steps:

  1. Mapping  (one LLM call per document)
     Every header cell of every table is listed as
         Table <t>, Column <c>: "<header text>"
     and the LLM returns ONE column index per semantic role
     {sku, name, price, unit, description}. Vendor catalogs repeat the
     same layout on every page, so one mapping serves all tables.

  2. Extraction  (deterministic, no I/O)
     For each table: rows 1..row_count-1 (row 0 holds the headers),
     read the mapped column per role, keep the row only when sku AND
     name are non-empty after trimming.

Price parsing:
    "$1,234.56" → strip everything but digits , .  → "1,234.56"
                → first match of [\\d,]+\\.?\\d*     → "1,234.56"
                → drop thousands separators         → Decimal("1234.56")
    no match    → Decimal("0")

Failure policy:
    LLM error / timeout / non-JSON / wrong shape → MappingFailedError
    Zero products after a good mapping          → NOT an error
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional

from pydantic import ValidationError as PydanticValidationError

from catalog_pipeline.core.errors import ExternalServiceError, MappingFailedError
from catalog_pipeline.llm.client import LLMClient
from catalog_pipeline.schemas.extraction import (
    ColumnMapping,
    ColumnMappingResponse,
    MappingPayload,
    OcrPayload,
    OcrTable,
    Product,
)

logger = logging.getLogger(__name__)

_PRICE_NOISE = re.compile(r"[^\d,.]")
_PRICE_NUMBER = re.compile(r"[\d,]+\.?\d*")

PROMPT_TEMPLATE = """You are analyzing product catalog tables. Extract products with the following MINIMAL REQUIRED SCHEMA:
- name (product name/description) - REQUIRED
- SKU (item code/product code) - REQUIRED
- price (MSRP/cost) - REQUIRED when present
- unit (dimensions/size/packaging) - OPTIONAL
- description (additional details) - OPTIONAL

Table headers found in the document:
{headers}

Questions:
- Which column index is the SKU / item code?
- Which column index is the Product Name? (look for product descriptions, NOT category headers)
- Which column index is the price?
- Which column index, if any, is the unit or packaging?
- Which column index, if any, is an additional description?
Use the same column indexes for every table; the layout is consistent across pages.

Document text (excerpt):
{context}

Return ONLY a JSON object of this exact shape:
{{
  "vendor": "vendor name from document",
  "columnMapping": {{
    "sku": column_index_number or null,
    "name": column_index_number,
    "price": column_index_number or null,
    "unit": column_index_number or null,
    "description": column_index_number or null
  }}
}}"""


@dataclass(frozen=True)
class HeaderRef:
    table_index:  int
    column_index: int
    text:         str


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def collect_headers(tables: list[OcrTable]) -> list[HeaderRef]:
    """Every header cell across all tables, in table then column order."""
    headers: list[HeaderRef] = []
    for t_idx, table in enumerate(tables):
        for cell in sorted(table.header_cells, key=lambda c: (c.column, c.row)):
            headers.append(HeaderRef(t_idx, cell.column, cell.content.strip()))
    return headers


def parse_price(text: Optional[str]) -> Decimal:
    if not text:
        return Decimal("0")
    match = _PRICE_NUMBER.search(_PRICE_NOISE.sub("", text))
    if match is None:
        return Decimal("0")
    try:
        return Decimal(match.group(0).replace(",", ""))
    except InvalidOperation:
        return Decimal("0")


def _role_text(table: OcrTable, row: int, column: Optional[int]) -> Optional[str]:
    if column is None:
        return None
    text = table.cell_text(row, column)
    if text is None:
        return None
    return text.strip() or None


def extract_products(tables: list[OcrTable], mapping: ColumnMapping) -> list[Product]:
    """Apply one document-wide mapping to every table; invalid rows are dropped."""
    products: list[Product] = []
    for table in tables:
        for row in range(1, table.row_count):
            sku = _role_text(table, row, mapping.sku)
            name = _role_text(table, row, mapping.name)
            if not sku or not name:
                continue
            products.append(Product(
                sku=sku,
                name=name,
                price=parse_price(_role_text(table, row, mapping.price)),
                unit=_role_text(table, row, mapping.unit),
                description=_role_text(table, row, mapping.description),
            ))
    return products


def parse_mapping_response(content: str) -> ColumnMappingResponse:
    """Validate the LLM's JSON against the closed mapping schema."""
    try:
        data = json.loads(content)
    except (TypeError, json.JSONDecodeError) as exc:
        raise MappingFailedError(f"LLM response is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise MappingFailedError("LLM response is not a JSON object")
    try:
        return ColumnMappingResponse.model_validate(data)
    except PydanticValidationError as exc:
        raise MappingFailedError(
            f"LLM response does not match the column-mapping schema: {exc.error_count()} error(s)"
        ) from exc


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class ColumnMappingEngine:
    """Stateless; safe to share across concurrent mapping jobs."""

    def __init__(self, llm: LLMClient, context_chars: int = 2000) -> None:
        self._llm = llm
        self._context_chars = context_chars

    def build_prompt(self, headers: list[HeaderRef], ocr_text: str) -> str:
        header_lines = "\n".join(
            f'Table {h.table_index}, Column {h.column_index}: "{h.text}"' for h in headers
        )
        return PROMPT_TEMPLATE.format(
            headers=header_lines,
            context=(ocr_text or "")[: self._context_chars],
        )

    async def map(self, ocr: OcrPayload) -> MappingPayload:
        """
        Run mapping + extraction over one OCR payload.

        Raises:
            MappingFailedError: no headers to map, or the LLM call/response
                                was unusable.
        """
        headers = collect_headers(ocr.tables)
        if not headers:
            raise MappingFailedError("OCR output contains no table headers to map")

        prompt = self.build_prompt(headers, ocr.text)
        try:
            completion = await self._llm.complete(prompt)
        except MappingFailedError:
            raise
        except ExternalServiceError as exc:
            raise MappingFailedError(exc.message) from exc

        response = parse_mapping_response(completion.content)
        products = extract_products(ocr.tables, response.column_mapping)

        logger.info(
            "Column mapping | headers=%d tables=%d products=%d vendor=%s mapping=%s",
            len(headers), ocr.table_count, len(products), response.vendor,
            response.column_mapping.model_dump(),
        )
        return MappingPayload(
            products=products,
            column_mapping=response.column_mapping,
            vendor_label=response.vendor,
            model=completion.model,
            prompt=prompt,
            prompt_tokens=completion.prompt_tokens,
            completion_tokens=completion.completion_tokens,
            cost_usd=completion.cost_usd,
        )
