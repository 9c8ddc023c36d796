# registry_app/models/__init__.py
"""
Database models package
"""

from .base import BaseModel, db
from .geography import Council, CouncilAlias, District, Region, normalize_label
from .importer import (
    ChangeOperation,
    Changeset,
    ChangesetEntry,
    ImportRun,
    ImportRunEvent,
    ImportRunStatus,
    ImportType,
    MatchType,
    RowAction,
    StagingSchoolRow,
    ValidationStatus,
)
from .school import SCHOOL_TRACKED_FIELDS, School, SchoolType
from .user import User, UserRole

__all__ = [
    "db",
    "BaseModel",
    "User",
    "UserRole",
    # Hierarchy
    "Region",
    "District",
    "Council",
    "CouncilAlias",
    "normalize_label",
    # Registry
    "School",
    "SchoolType",
    "SCHOOL_TRACKED_FIELDS",
    # Importer
    "ImportRun",
    "ImportRunEvent",
    "ImportRunStatus",
    "ImportType",
    "StagingSchoolRow",
    "ValidationStatus",
    "MatchType",
    "RowAction",
    "Changeset",
    "ChangesetEntry",
    "ChangeOperation",
]
