"""
Field-level validation for staged school rows.

Rules are small declarative objects evaluated per column in schema order, so
a row's error list always reads left to right the way the spreadsheet does.
Nothing here touches the database; the processing step feeds payloads in and
persists the outcome.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Iterable, Mapping, Sequence

from registry_app.importer.contracts import get_school_field_specs
from registry_app.importer.errors import FieldValidationError
from registry_app.models.importer.schema import MatchType, ValidationStatus
from registry_app.models.school import SchoolType

EMIS_CODE_PATTERN = re.compile(r"^[A-Z0-9]{4,20}$")
LATITUDE_RANGE = (-90.0, 90.0)
LONGITUDE_RANGE = (-180.0, 180.0)

SCHOOL_TYPE_ALIASES: Mapping[str, SchoolType] = {
    "primary": SchoolType.PRIMARY,
    "primary school": SchoolType.PRIMARY,
    "secondary": SchoolType.SECONDARY,
    "secondary school": SchoolType.SECONDARY,
    "jss": SchoolType.SECONDARY,
    "sss": SchoolType.SECONDARY,
    "junior secondary": SchoolType.SECONDARY,
    "senior secondary": SchoolType.SECONDARY,
    "combined": SchoolType.COMBINED,
    "combined school": SchoolType.COMBINED,
}

_FIELD_LABELS = {spec.name: spec.label for spec in get_school_field_specs()}
_FIELD_ORDER = tuple(spec.name for spec in get_school_field_specs())
_REQUIRED_FIELDS = frozenset(spec.name for spec in get_school_field_specs() if spec.required)


@dataclass(frozen=True)
class GeoBounds:
    """Bounding box used to flag (not reject) coordinates far from the expected area."""

    min_latitude: float
    max_latitude: float
    min_longitude: float
    max_longitude: float

    @classmethod
    def parse(cls, value: str | Sequence[float] | None) -> "GeoBounds | None":
        if value in (None, "", ()):
            return None
        if isinstance(value, GeoBounds):
            return value
        parts = value.split(",") if isinstance(value, str) else list(value)
        if len(parts) != 4:
            raise ValueError("Geo bounds must be 'min_lat,max_lat,min_lon,max_lon'.")
        min_lat, max_lat, min_lon, max_lon = (float(part) for part in parts)
        return cls(min_lat, max_lat, min_lon, max_lon)

    def contains(self, latitude: float, longitude: float) -> bool:
        return (
            self.min_latitude <= latitude <= self.max_latitude
            and self.min_longitude <= longitude <= self.max_longitude
        )


@dataclass(frozen=True)
class ValidationContext:
    row_number: int
    duplicate_of: int | None = None
    geo_bounds: GeoBounds | None = None


@dataclass(frozen=True)
class RowValidation:
    """Outcome of field validation for a single row."""

    errors: tuple[FieldValidationError, ...]
    school_type: SchoolType | None
    latitude: float | None
    longitude: float | None
    altitude: float | None
    is_duplicate: bool
    is_geo_outlier: bool

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    def error_records(self) -> list[dict[str, str]]:
        return [error.as_record() for error in self.errors]


def _label(field: str) -> str:
    return _FIELD_LABELS.get(field, field)


def _is_blank(value: object | None) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def parse_decimal(value: object | None) -> float | None:
    """Parse a spreadsheet cell as a finite float; ``None`` for blanks."""

    if _is_blank(value):
        return None
    if isinstance(value, bool):
        raise ValueError("boolean is not numeric")
    number = float(str(value).strip()) if not isinstance(value, (int, float)) else float(value)
    if not math.isfinite(number):
        raise ValueError("value is not finite")
    return number


def resolve_school_type(value: object | None) -> SchoolType | None:
    if _is_blank(value):
        return None
    token = " ".join(str(value).split()).lower()
    try:
        return SchoolType(token.upper())
    except ValueError:
        return SCHOOL_TYPE_ALIASES.get(token)


class FieldRule:
    """Declarative rule bound to a single column."""

    code = "FIELD_RULE"
    field = ""

    def evaluate(self, payload: Mapping[str, object | None], context: ValidationContext) -> Iterable[str]:
        """Yield error messages for the configured field."""
        raise NotImplementedError


class EmisCodeFormatRule(FieldRule):
    code = "EMIS_FORMAT"
    field = "emis_code"

    def evaluate(self, payload, context):
        value = str(payload.get(self.field))
        if not EMIS_CODE_PATTERN.match(value):
            yield f"EMIS Code '{value}' must be 4 to 20 letters or digits."


class EmisCodeUniqueRule(FieldRule):
    code = "EMIS_DUPLICATE"
    field = "emis_code"

    def evaluate(self, payload, context):
        if context.duplicate_of is not None:
            yield f"EMIS Code '{payload.get(self.field)}' already appears on row {context.duplicate_of}."


class CoordinateRule(FieldRule):
    code = "COORDINATE_RANGE"

    def __init__(self, field: str, bounds: tuple[float, float]) -> None:
        self.field = field
        self.bounds = bounds

    def evaluate(self, payload, context):
        try:
            number = parse_decimal(payload.get(self.field))
        except ValueError:
            yield f"{_label(self.field)} must be a number."
            return
        low, high = self.bounds
        if number is not None and not low <= number <= high:
            yield f"{_label(self.field)} must be between {low:g} and {high:g}."


class NumericRule(FieldRule):
    code = "NUMERIC"

    def __init__(self, field: str) -> None:
        self.field = field

    def evaluate(self, payload, context):
        try:
            parse_decimal(payload.get(self.field))
        except ValueError:
            yield f"{_label(self.field)} must be a number."


class SchoolTypeRule(FieldRule):
    code = "SCHOOL_TYPE"
    field = "school_type"

    def evaluate(self, payload, context):
        value = payload.get(self.field)
        if resolve_school_type(value) is None:
            allowed = ", ".join(member.value for member in SchoolType)
            yield f"School Type '{value}' must be one of {allowed}."


DEFAULT_RULES: tuple[FieldRule, ...] = (
    EmisCodeFormatRule(),
    EmisCodeUniqueRule(),
    SchoolTypeRule(),
    CoordinateRule("latitude", LATITUDE_RANGE),
    CoordinateRule("longitude", LONGITUDE_RANGE),
    NumericRule("altitude"),
)


def validate_fields(
    payload: Mapping[str, object | None],
    context: ValidationContext,
    *,
    rules: Sequence[FieldRule] = DEFAULT_RULES,
) -> RowValidation:
    """
    Validate one normalized payload.

    Required-value checks run first for each column; a blank column skips its
    remaining rules so the operator sees one actionable message per cell.
    """

    errors: list[FieldValidationError] = []
    for field in _FIELD_ORDER:
        value = payload.get(field)
        if _is_blank(value):
            if field in _REQUIRED_FIELDS:
                errors.append(
                    FieldValidationError(field, f"{_label(field)} is required.", row_number=context.row_number)
                )
            continue
        for rule in rules:
            if rule.field != field:
                continue
            for message in rule.evaluate(payload, context):
                errors.append(FieldValidationError(field, message, row_number=context.row_number))

    latitude = _safe_decimal(payload.get("latitude"), LATITUDE_RANGE)
    longitude = _safe_decimal(payload.get("longitude"), LONGITUDE_RANGE)
    is_geo_outlier = bool(
        context.geo_bounds is not None
        and latitude is not None
        and longitude is not None
        and not context.geo_bounds.contains(latitude, longitude)
    )

    return RowValidation(
        errors=tuple(errors),
        school_type=resolve_school_type(payload.get("school_type")),
        latitude=latitude,
        longitude=longitude,
        altitude=_safe_decimal(payload.get("altitude")),
        is_duplicate=context.duplicate_of is not None,
        is_geo_outlier=is_geo_outlier,
    )


def _safe_decimal(value: object | None, bounds: tuple[float, float] | None = None) -> float | None:
    try:
        number = parse_decimal(value)
    except ValueError:
        return None
    if number is not None and bounds is not None and not bounds[0] <= number <= bounds[1]:
        return None
    return number


def find_duplicate_emis_codes(rows: Iterable[tuple[int, object | None]]) -> dict[int, int]:
    """
    Map each repeated EMIS code occurrence to the row that first used it.

    ``rows`` must be supplied in file order; the first occurrence is never
    flagged.
    """

    first_seen: dict[str, int] = {}
    duplicates: dict[int, int] = {}
    for row_number, emis_code in rows:
        if _is_blank(emis_code):
            continue
        key = str(emis_code).strip().upper()
        if key in first_seen:
            duplicates[row_number] = first_seen[key]
        else:
            first_seen[key] = row_number
    return duplicates


def decide_validation_status(has_errors: bool, match_type: MatchType) -> ValidationStatus:
    """A clean row still needs review until its council is resolved."""

    if has_errors:
        return ValidationStatus.ERROR
    if match_type == MatchType.NONE:
        return ValidationStatus.REQUIRES_REVIEW
    return ValidationStatus.VALID
