"""Spreadsheet adapter for school uploads.

Reads CSV, XLSX and XLS files, validates the header row against the canonical
school contract, and streams rows with lightweight normalization applied so
the staging step can persist them verbatim alongside their canonical values.
"""

from __future__ import annotations

import csv
import math
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from typing import Any, Iterator, Sequence

import pandas as pd

from registry_app.importer.contracts import (
    FieldSpec,
    get_school_alias_map,
    get_school_field_specs,
    get_school_required_headers,
    normalize_header,
)
from registry_app.importer.errors import ParseError

SUPPORTED_FORMATS: tuple[str, ...] = ("csv", "xlsx", "xls")

_EXCEL_ENGINES = {
    "xlsx": "openpyxl",
    "xls": "xlrd",
}


@dataclass(frozen=True)
class HeaderValidationResult:
    raw_headers: tuple[str, ...]
    # canonical name per column position, ``None`` for ignored columns
    canonical_by_position: tuple[str | None, ...]
    ignored_headers: tuple[str, ...]


@dataclass(frozen=True)
class ParsedRow:
    """A parsed spreadsheet row with original and canonical payloads."""

    file_row_number: int
    raw: dict[str, Any]
    normalized: dict[str, Any]


@dataclass
class SpreadsheetStatistics:
    rows_processed: int = 0
    rows_skipped_blank: int = 0
    ignored_headers: tuple[str, ...] = field(default_factory=tuple)


def detect_format(filename: str) -> str:
    """Return the lower-case extension if it is a supported upload format."""

    extension = Path(filename or "").suffix.lower().lstrip(".")
    if extension not in SUPPORTED_FORMATS:
        raise ParseError(
            f"Unsupported file type '.{extension or '?'}'. Upload one of: "
            + ", ".join(f".{fmt}" for fmt in SUPPORTED_FORMATS)
            + "."
        )
    return extension


def _json_safe(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, float) and math.isnan(value):
        return None
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (str, int, float, bool)):
        return value
    # numpy scalars and anything else pandas may hand back
    if hasattr(value, "item"):
        return _json_safe(value.item())
    return str(value)


def _validate_headers(raw_headers: Sequence[Any]) -> HeaderValidationResult:
    sanitized = tuple(str(header or "").strip().lstrip("\ufeff") for header in raw_headers)
    alias_map = get_school_alias_map()
    seen: set[str] = set()
    duplicates: list[str] = []
    ignored: list[str] = []
    canonical_by_position: list[str | None] = []

    for header in sanitized:
        canonical = alias_map.get(normalize_header(header)) if header else None
        if canonical is None:
            canonical_by_position.append(None)
            if header:
                ignored.append(header)
            continue
        if canonical in seen:
            duplicates.append(canonical)
            canonical_by_position.append(None)
            continue
        seen.add(canonical)
        canonical_by_position.append(canonical)

    missing = sorted(set(get_school_required_headers()) - seen)
    if missing or duplicates:
        details = []
        if missing:
            details.append(f"Missing required columns: {', '.join(missing)}.")
        if duplicates:
            details.append(f"Columns mapped more than once: {', '.join(sorted(set(duplicates)))}.")
        raise ParseError(
            "Spreadsheet header validation failed. " + " ".join(details),
            missing=missing,
            duplicates=sorted(set(duplicates)),
        )

    return HeaderValidationResult(
        raw_headers=sanitized,
        canonical_by_position=tuple(canonical_by_position),
        ignored_headers=tuple(ignored),
    )


def _row_is_blank(values: Sequence[Any]) -> bool:
    return all(value is None or (isinstance(value, str) and value.strip() == "") for value in values)


class SpreadsheetAdapter:
    """Reader that enforces the school upload contract for every supported format."""

    def __init__(self, path: Path | str, *, file_format: str | None = None, skip_blank_rows: bool = True) -> None:
        self.path = Path(path)
        self.file_format = file_format or detect_format(self.path.name)
        self.skip_blank_rows = skip_blank_rows
        self.statistics = SpreadsheetStatistics()
        self._header_result: HeaderValidationResult | None = None
        self._field_specs = {spec.name: spec for spec in get_school_field_specs()}

    @property
    def header(self) -> HeaderValidationResult | None:
        return self._header_result

    def iter_rows(self) -> Iterator[ParsedRow]:
        lines = self._read_csv_lines() if self.file_format == "csv" else self._read_excel_lines()

        header_result: HeaderValidationResult | None = None
        for line_number, values in lines:
            if header_result is None:
                if _row_is_blank(values):
                    continue
                header_result = _validate_headers(values)
                self._header_result = header_result
                self.statistics.ignored_headers = header_result.ignored_headers
                continue

            if self.skip_blank_rows and _row_is_blank(values):
                self.statistics.rows_skipped_blank += 1
                continue

            raw, normalized = self._map_row(header_result, values)
            self.statistics.rows_processed += 1
            yield ParsedRow(file_row_number=line_number, raw=raw, normalized=normalized)

        if header_result is None:
            raise ParseError(f"'{self.path.name}' is empty; expected a header row followed by school rows.")
        if self.statistics.rows_processed == 0:
            raise ParseError(f"'{self.path.name}' contains a header but no school rows.")

    def _map_row(
        self, header_result: HeaderValidationResult, values: Sequence[Any]
    ) -> tuple[dict[str, Any], dict[str, Any]]:
        raw: dict[str, Any] = {}
        normalized: dict[str, Any] = {name: None for name in self._field_specs}
        for position, header in enumerate(header_result.raw_headers):
            value = _json_safe(values[position]) if position < len(values) else None
            if header:
                raw[header] = value
            canonical = header_result.canonical_by_position[position]
            if canonical is None:
                continue
            spec: FieldSpec = self._field_specs[canonical]
            normalized[canonical] = spec.normalizer(value) if spec.normalizer else value
        return raw, normalized

    def _read_csv_lines(self) -> Iterator[tuple[int, list[Any]]]:
        try:
            with self.path.open("r", encoding="utf-8-sig", newline="") as handle:
                reader = csv.reader(handle)
                for values in reader:
                    yield reader.line_num, [value if value != "" else None for value in values]
        except UnicodeDecodeError as exc:
            raise ParseError(f"'{self.path.name}' is not UTF-8 encoded text: {exc}") from exc
        except csv.Error as exc:
            raise ParseError(f"'{self.path.name}' is not valid CSV: {exc}") from exc

    def _read_excel_lines(self) -> Iterator[tuple[int, list[Any]]]:
        try:
            frame = pd.read_excel(
                self.path,
                header=None,
                dtype=object,
                engine=_EXCEL_ENGINES[self.file_format],
            )
        except Exception as exc:
            raise ParseError(f"Unable to read workbook '{self.path.name}': {exc}") from exc

        for index, record in enumerate(frame.itertuples(index=False, name=None), start=1):
            yield index, [_json_safe(value) for value in record]
