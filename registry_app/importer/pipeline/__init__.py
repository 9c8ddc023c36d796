"""
Import pipeline building blocks.

Parsing and staging, field validation, council matching, the run controller
state machine and the commit/rollback engines.
"""

from .changeset import Change, StaleSnapshotError, apply, reverse
from .commit_engine import CommitPlan, CommitResult, apply_commit, build_commit_plan
from .council_matcher import CouncilMatcher, MatchResult
from .hierarchy import CouncilHierarchyIndex, load_hierarchy_index
from .processing import ProcessingSettings, evaluate_row, process_run
from .review_service import ReviewResult, annotate_row, exclude_rows, resolve_council
from .rollback_engine import RollbackResult, reverse_changeset
from .run_controller import (
    ALLOWED_TRANSITIONS,
    cancel_run,
    commit_run,
    create_run,
    get_run,
    reevaluate,
    rollback_run,
    run_lock,
    transition,
)
from .run_service import ImportRunService, RowFilters, serialize_row, serialize_run
from .staging import StagingSummary, stage_rows_from_file
from .validation import GeoBounds, RowValidation, ValidationContext, validate_fields

__all__ = [
    "ALLOWED_TRANSITIONS",
    "Change",
    "CommitPlan",
    "CommitResult",
    "CouncilHierarchyIndex",
    "CouncilMatcher",
    "GeoBounds",
    "ImportRunService",
    "MatchResult",
    "ProcessingSettings",
    "ReviewResult",
    "RollbackResult",
    "RowFilters",
    "RowValidation",
    "StaleSnapshotError",
    "StagingSummary",
    "ValidationContext",
    "annotate_row",
    "apply",
    "apply_commit",
    "build_commit_plan",
    "cancel_run",
    "commit_run",
    "create_run",
    "evaluate_row",
    "exclude_rows",
    "get_run",
    "load_hierarchy_index",
    "process_run",
    "reevaluate",
    "resolve_council",
    "reverse",
    "reverse_changeset",
    "rollback_run",
    "run_lock",
    "serialize_row",
    "serialize_run",
    "stage_rows_from_file",
    "transition",
    "validate_fields",
]
