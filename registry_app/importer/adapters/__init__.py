"""Importer adapters turning uploaded files into canonical row payloads."""

from __future__ import annotations

from .spreadsheet import (
    SUPPORTED_FORMATS,
    HeaderValidationResult,
    ParsedRow,
    SpreadsheetAdapter,
    SpreadsheetStatistics,
    detect_format,
)

__all__ = [
    "SUPPORTED_FORMATS",
    "HeaderValidationResult",
    "ParsedRow",
    "SpreadsheetAdapter",
    "SpreadsheetStatistics",
    "detect_format",
]
