"""Canonical ingest contract helpers for importer adapters."""

from __future__ import annotations

from .school import (
    SCHOOL_CANONICAL_FIELDS,
    FieldSpec,
    get_school_alias_map,
    get_school_field_specs,
    get_school_required_headers,
    normalize_header,
)

__all__ = [
    "FieldSpec",
    "SCHOOL_CANONICAL_FIELDS",
    "get_school_field_specs",
    "get_school_required_headers",
    "get_school_alias_map",
    "normalize_header",
]
