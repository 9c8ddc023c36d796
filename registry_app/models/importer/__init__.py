"""
Importer-specific SQLAlchemy models.

Runs, staged rows, transition history, and commit changesets.
"""

from .schema import (
    ChangeOperation,
    Changeset,
    ChangesetEntry,
    ImmutableChangesetError,
    ImportRun,
    ImportRunEvent,
    ImportRunStatus,
    ImportType,
    MatchType,
    RowAction,
    StagingSchoolRow,
    ValidationStatus,
)

__all__ = [
    "ChangeOperation",
    "Changeset",
    "ChangesetEntry",
    "ImmutableChangesetError",
    "ImportRun",
    "ImportRunEvent",
    "ImportRunStatus",
    "ImportType",
    "MatchType",
    "RowAction",
    "StagingSchoolRow",
    "ValidationStatus",
]
