"""Canonical school import contract.

Single source of truth for the fixed spreadsheet schema: column names, the
header aliases we accept, and per-column normalizers applied before any
business rule runs.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Mapping, Tuple

Normalizer = Callable[[object | None], object | None]

_HEADER_TOKEN = re.compile(r"[^0-9a-z]+")


def _clean_text(value: object | None) -> object | None:
    if value is None:
        return None
    if isinstance(value, float) and value != value:  # NaN from spreadsheet readers
        return None
    text = " ".join(str(value).split())
    return text or None


def _clean_code(value: object | None) -> object | None:
    # Spreadsheet readers hand numeric codes back as floats (e.g. 120045.0).
    if isinstance(value, float) and value == value and value.is_integer():
        value = int(value)
    text = _clean_text(value)
    if text is None:
        return None
    return str(text).replace(" ", "").upper()


@dataclass(frozen=True)
class FieldSpec:
    """Metadata describing a canonical school column."""

    name: str
    label: str
    description: str
    required: bool = True
    aliases: Tuple[str, ...] = ()
    normalizer: Normalizer | None = _clean_text

    def headers(self) -> Tuple[str, ...]:
        """Return the canonical header, the display label and aliases."""

        return (self.name, self.label, *self.aliases)


SCHOOL_CANONICAL_FIELDS: Tuple[FieldSpec, ...] = (
    FieldSpec(
        name="school_name",
        label="School Name",
        description="Official school name.",
        aliases=("name", "school"),
    ),
    FieldSpec(
        name="emis_code",
        label="EMIS Code",
        description="Education Management Information System code, unique per school.",
        aliases=("emis", "emis_no", "emis_number"),
        normalizer=_clean_code,
    ),
    FieldSpec(
        name="region",
        label="Region",
        description="Region name, used as a hint when resolving the district.",
        aliases=("province",),
    ),
    FieldSpec(
        name="district",
        label="District",
        description="District name, used to scope council matching.",
    ),
    FieldSpec(
        name="council",
        label="Council",
        description="Free-text local council name resolved against the hierarchy.",
        aliases=("local_council", "council_name"),
    ),
    FieldSpec(
        name="school_type",
        label="School Type",
        description="PRIMARY, SECONDARY or COMBINED.",
        aliases=("type", "level", "school_level"),
    ),
    FieldSpec(
        name="chiefdom",
        label="Chiefdom",
        description="Chiefdom the school sits in.",
    ),
    FieldSpec(
        name="section",
        label="Section",
        description="Section within the chiefdom.",
    ),
    FieldSpec(
        name="town",
        label="Town",
        description="Town or village.",
        aliases=("village", "community"),
    ),
    FieldSpec(
        name="latitude",
        label="Latitude",
        description="Decimal degrees, -90 to 90.",
        aliases=("lat",),
    ),
    FieldSpec(
        name="longitude",
        label="Longitude",
        description="Decimal degrees, -180 to 180.",
        aliases=("long", "lng", "lon"),
    ),
    FieldSpec(
        name="altitude",
        label="Altitude",
        description="Elevation in metres.",
        aliases=("alt", "elevation"),
    ),
)


def get_school_field_specs() -> Tuple[FieldSpec, ...]:
    """Return the canonical school field specifications."""

    return SCHOOL_CANONICAL_FIELDS


def get_school_required_headers() -> Tuple[str, ...]:
    """Canonical names that must be present in every upload."""

    return tuple(field.name for field in SCHOOL_CANONICAL_FIELDS if field.required)


def get_school_alias_map() -> Mapping[str, str]:
    """Map normalized header tokens to canonical names (includes aliases)."""

    mapping: dict[str, str] = {}
    for field in SCHOOL_CANONICAL_FIELDS:
        for header in field.headers():
            mapping[normalize_header(header)] = field.name
    return mapping


def normalize_header(header: str) -> str:
    """Normalize a header for comparison (case/space/punctuation agnostic)."""

    token = _HEADER_TOKEN.sub("_", str(header).strip().lower())
    return token.strip("_")
