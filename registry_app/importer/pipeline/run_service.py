"""
Service helpers for import run querying, filtering, and serialization.

The status, rows, recent-runs and hierarchy endpoints (and the CLI) consume
these helpers so SQLAlchemy logic stays centralized and easily testable.
Payloads use the camelCase keys of the public JSON contract.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import func, or_
from sqlalchemy.orm import Session, selectinload

from registry_app.importer.errors import InvalidImportRequestError, RunNotFoundError
from registry_app.importer.pipeline.commit_engine import build_commit_plan
from registry_app.importer.pipeline.run_controller import REVIEWABLE_STATUSES
from registry_app.models import Council, District, Region, User, db
from registry_app.models.importer.schema import (
    ImportRun,
    ImportRunStatus,
    MatchType,
    StagingSchoolRow,
    ValidationStatus,
)

DEFAULT_PAGE = 1
DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 200
DEFAULT_RECENT_LIMIT = 10
MAX_RECENT_LIMIT = 50


@dataclass(frozen=True)
class RowFilters:
    """Canonical set of filter options applied to staging row listings."""

    page: int = DEFAULT_PAGE
    page_size: int = DEFAULT_PAGE_SIZE
    validation_statuses: tuple[ValidationStatus, ...] = ()
    match_types: tuple[MatchType, ...] = ()
    has_errors: bool | None = None
    search: str | None = None

    @classmethod
    def coerce(
        cls,
        *,
        page: int | str | None = None,
        page_size: int | str | None = None,
        validation_statuses: Iterable[str] | None = None,
        match_types: Iterable[str] | None = None,
        has_errors: str | bool | None = None,
        search: str | None = None,
        default_page_size: int = DEFAULT_PAGE_SIZE,
    ) -> "RowFilters":
        """
        Coerce mixed user input into a validated ``RowFilters`` instance.
        """

        resolved_page = _coerce_positive_int(page, fallback=DEFAULT_PAGE)
        resolved_size = min(_coerce_positive_int(page_size, fallback=default_page_size), MAX_PAGE_SIZE)
        resolved_search = search.strip() if isinstance(search, str) and search.strip() else None
        return cls(
            page=resolved_page,
            page_size=resolved_size,
            validation_statuses=tuple(_coerce_enum(ValidationStatus, value) for value in validation_statuses or () if value),
            match_types=tuple(_coerce_enum(MatchType, value) for value in match_types or () if value),
            has_errors=_coerce_bool(has_errors, default=None),
            search=resolved_search,
        )


@dataclass(slots=True)
class RowListResult:
    """Paginated result set for staging rows."""

    items: list[StagingSchoolRow]
    total: int
    page: int
    page_size: int
    total_pages: int


class ImportRunService:
    """Facade for querying import runs with consistent filtering semantics."""

    def __init__(self, session: Session | None = None) -> None:
        self._session = session

    @property
    def session(self) -> Session:
        return self._session or db.session

    # ---------------------------------------------------------------------
    # Public API
    # ---------------------------------------------------------------------

    def get_run(self, run_id: int) -> ImportRun:
        run = self.session.get(ImportRun, run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    def status_payload(self, run_id: int) -> dict[str, Any]:
        run = self.get_run(run_id)
        validation = self._count_by(run.id, StagingSchoolRow.validation_status)
        matches = self._count_by(run.id, StagingSchoolRow.match_type)
        excluded = (
            self.session.query(func.count(StagingSchoolRow.id))
            .filter(StagingSchoolRow.run_id == run.id, StagingSchoolRow.is_excluded.is_(True))
            .scalar()
            or 0
        )
        total = run.total_rows or 0
        processed = run.processed_rows or 0
        payload: dict[str, Any] = {
            "importRun": serialize_run(run, session=self.session),
            "progress": {
                "total": total,
                "processed": processed,
                "successful": run.successful_rows or 0,
                "errors": run.error_rows or 0,
                "percentage": round(processed * 100.0 / total, 1) if total else 0.0,
            },
            "validationSummary": {
                "validRows": validation.get(ValidationStatus.VALID, 0),
                "errorRows": validation.get(ValidationStatus.ERROR, 0),
                "reviewRequiredRows": validation.get(ValidationStatus.REQUIRES_REVIEW, 0),
                "pendingRows": validation.get(ValidationStatus.PENDING, 0),
                "excludedRows": excluded,
            },
            "councilMappingSummary": {
                "exactMatches": matches.get(MatchType.EXACT, 0),
                "aliasMatches": matches.get(MatchType.ALIAS, 0),
                "fuzzyMatches": matches.get(MatchType.FUZZY, 0),
                "manualMatches": matches.get(MatchType.MANUAL, 0),
                "unchecked": matches.get(MatchType.NONE, 0),
            },
        }
        if run.status in REVIEWABLE_STATUSES:
            payload["commitPlan"] = build_commit_plan(run, session=self.session).as_dict()
        return payload

    def list_rows(self, run_id: int, filters: RowFilters) -> RowListResult:
        self.get_run(run_id)
        query = self.session.query(StagingSchoolRow).filter(StagingSchoolRow.run_id == run_id)
        if filters.validation_statuses:
            query = query.filter(StagingSchoolRow.validation_status.in_(filters.validation_statuses))
        if filters.match_types:
            query = query.filter(StagingSchoolRow.match_type.in_(filters.match_types))
        if filters.has_errors is True:
            query = query.filter(StagingSchoolRow.validation_status == ValidationStatus.ERROR)
        elif filters.has_errors is False:
            query = query.filter(StagingSchoolRow.validation_status != ValidationStatus.ERROR)
        if filters.search:
            like_pattern = f"%{filters.search.lower()}%"
            query = query.filter(
                or_(
                    func.lower(StagingSchoolRow.school_name).like(like_pattern),
                    func.lower(StagingSchoolRow.emis_code).like(like_pattern),
                )
            )

        total = query.count()
        items = (
            query.order_by(StagingSchoolRow.file_row_number)
            .offset((filters.page - 1) * filters.page_size)
            .limit(filters.page_size)
            .all()
        )
        total_pages = (total + filters.page_size - 1) // filters.page_size
        return RowListResult(items=items, total=total, page=filters.page, page_size=filters.page_size, total_pages=total_pages)

    def recent_runs(self, *, limit: int | str | None = None, status: str | None = None) -> list[ImportRun]:
        resolved_limit = min(_coerce_positive_int(limit, fallback=DEFAULT_RECENT_LIMIT), MAX_RECENT_LIMIT)
        query = self.session.query(ImportRun)
        if status:
            query = query.filter(ImportRun.status == _coerce_enum(ImportRunStatus, status))
        return query.order_by(ImportRun.created_at.desc(), ImportRun.id.desc()).limit(resolved_limit).all()

    def council_hierarchy(self) -> list[dict[str, Any]]:
        regions = (
            self.session.query(Region)
            .options(selectinload(Region.districts).selectinload(District.councils).selectinload(Council.aliases))
            .filter(Region.is_active.is_(True))
            .order_by(Region.name)
            .all()
        )
        return [
            {
                "id": region.id,
                "name": region.name,
                "code": region.code,
                "districts": [
                    {
                        "id": district.id,
                        "name": district.name,
                        "code": district.code,
                        "councils": [
                            {
                                "id": council.id,
                                "name": council.name,
                                "code": council.code,
                                "aliases": sorted(alias.alias for alias in council.aliases),
                            }
                            for council in district.councils
                            if council.is_active
                        ],
                    }
                    for district in region.districts
                    if district.is_active
                ],
            }
            for region in regions
        ]

    # ---------------------------------------------------------------------
    # Internal helpers
    # ---------------------------------------------------------------------

    def _count_by(self, run_id: int, column) -> dict[Any, int]:
        rows = (
            self.session.query(column, func.count(StagingSchoolRow.id))
            .filter(StagingSchoolRow.run_id == run_id, StagingSchoolRow.is_excluded.is_(False))
            .group_by(column)
            .all()
        )
        return {key: count for key, count in rows}


# -------------------------------------------------------------------------
# Serialization
# -------------------------------------------------------------------------


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def serialize_run(run: ImportRun, *, session: Session | None = None) -> dict[str, Any]:
    session = session or db.session
    created_by = None
    if run.created_by_user_id:
        user: User | None = session.get(User, run.created_by_user_id)
        if user:
            created_by = {"id": user.id, "username": user.username, "displayName": user.display_name}
    return {
        "id": run.id,
        "fileName": run.file_name,
        "fileSize": run.file_size,
        "importType": run.import_type.value,
        "dryRun": run.dry_run,
        "authoritative": run.authoritative,
        "status": run.status.value,
        "startedAt": _iso(run.started_at),
        "completedAt": _iso(run.completed_at),
        "createdAt": _iso(run.created_at),
        "totalRows": run.total_rows or 0,
        "createdBy": created_by,
        "errorSummary": run.error_summary,
        "counts": run.counts_json or {},
    }


def serialize_row(row: StagingSchoolRow) -> dict[str, Any]:
    return {
        "id": row.id,
        "fileRowNumber": row.file_row_number,
        "schoolName": row.school_name,
        "emisCode": row.emis_code,
        "region": row.region,
        "district": row.district,
        "council": row.council,
        "schoolType": row.school_type,
        "chiefdom": row.chiefdom,
        "section": row.section,
        "town": row.town,
        "latitude": row.latitude,
        "longitude": row.longitude,
        "altitude": row.altitude,
        "validationStatus": row.validation_status.value,
        "validationErrors": list(row.validation_errors or []),
        "matchType": row.match_type.value,
        "matchedCouncilId": row.matched_council_id,
        "matchConfidence": row.match_confidence,
        "matchCandidates": list(row.match_candidates or []),
        "matchNotes": row.match_notes,
        "isDuplicate": row.is_duplicate,
        "isGeoOutlier": row.is_geo_outlier,
        "isExcluded": row.is_excluded,
        "reviewNotes": row.review_notes,
        "reviewedAt": _iso(row.reviewed_at),
        "actionTaken": row.action_taken.value,
        "schoolId": row.school_id,
    }


# -------------------------------------------------------------------------
# Helper functions
# -------------------------------------------------------------------------


def _coerce_positive_int(candidate: int | str | None, *, fallback: int) -> int:
    if candidate in (None, ""):
        return fallback
    if isinstance(candidate, int):
        return max(1, candidate)
    if isinstance(candidate, str) and candidate.isdigit():
        return max(1, int(candidate))
    raise InvalidImportRequestError(f"Expected positive integer, received '{candidate}'.")


def _coerce_enum(enum_cls, value):
    if isinstance(value, enum_cls):
        return value
    normalized = str(value).strip().upper()
    try:
        return enum_cls(normalized)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise InvalidImportRequestError(f"Unsupported filter value '{value}'; expected one of {allowed}.") from None


def _coerce_bool(candidate: str | bool | None, *, default: bool | None) -> bool | None:
    if candidate is None:
        return default
    if isinstance(candidate, bool):
        return candidate
    normalized = candidate.strip().lower()
    if normalized in ("1", "true", "yes", "y", "on"):
        return True
    if normalized in ("0", "false", "no", "n", "off"):
        return False
    return default
