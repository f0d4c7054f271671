"""
Document Processing Package
════════════════════════════

The two extraction stages of a processing attempt:

  OCR (text + tables) → LLM column mapping → product rows

Modules
───────
  ocr.py             Textract AnalyzeDocument client and block parser
  column_mapping.py  Header prompt, LLM mapping response parsing, row extraction

Design principles
─────────────────
  • Components are stateless and dependency-injected.
  • Network calls run in the Celery worker, never in the API process.
  • Failures surface as ExternalServiceError / MappingFailedError; callers
    record them on the attempt.
"""

from catalog_pipeline.processing.column_mapping import ColumnMappingEngine, extract_products
from catalog_pipeline.processing.ocr import TextractOcrClient, parse_textract_blocks

__all__ = [
    "ColumnMappingEngine",
    "extract_products",
    "TextractOcrClient",
    "parse_textract_blocks",
]
