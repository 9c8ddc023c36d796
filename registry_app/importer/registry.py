"""
Spreadsheet format registry.

Formats register metadata here so configuration validation can occur without
loading the optional Excel reader dependencies.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from importlib.util import find_spec
from typing import Iterable, Mapping, Sequence, Tuple


@dataclass(frozen=True)
class FormatDescriptor:
    """Metadata describing an accepted upload format."""

    name: str
    title: str
    optional_dependencies: Tuple[str, ...] = ()
    summary: str | None = None

    def missing_dependencies(self) -> Tuple[str, ...]:
        """Return the reader modules that cannot be imported in this environment."""
        return tuple(module for module in self.optional_dependencies if find_spec(module) is None)

    @property
    def available(self) -> bool:
        return not self.missing_dependencies()


def get_format_registry() -> Mapping[str, FormatDescriptor]:
    """Return the registry of supported spreadsheet formats."""
    return OrderedDict(
        (
            (
                "csv",
                FormatDescriptor(
                    name="csv",
                    title="CSV Flat File",
                    optional_dependencies=(),
                    summary="UTF-8 comma separated values, header on line 1.",
                ),
            ),
            (
                "xlsx",
                FormatDescriptor(
                    name="xlsx",
                    title="Excel Workbook",
                    optional_dependencies=("openpyxl",),
                    summary="First worksheet of an Office Open XML workbook.",
                ),
            ),
            (
                "xls",
                FormatDescriptor(
                    name="xls",
                    title="Excel 97-2003 Workbook",
                    optional_dependencies=("xlrd",),
                    summary="First worksheet of a legacy binary workbook.",
                ),
            ),
        )
    )


def resolve_formats(
    configured: Sequence[str],
    registry: Mapping[str, FormatDescriptor] | None = None,
) -> Iterable[FormatDescriptor]:
    """
    Map configured format names to registry descriptors, raising on unknowns.
    """
    registry = registry or get_format_registry()
    unknown = sorted({fmt for fmt in configured if fmt not in registry})
    if unknown:
        raise ValueError(
            "Unknown importer formats configured: "
            + ", ".join(unknown)
            + ". Supported formats are: "
            + ", ".join(registry)
            + "."
        )
    return tuple(registry[fmt] for fmt in configured)
