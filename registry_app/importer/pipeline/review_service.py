"""
Operator review actions on staged rows: manual council mapping, exclusion
and audit notes.

Mapping and exclusion change what a commit would do, so they hold the run
lock and ask the run controller to re-evaluate readiness afterwards. Notes
are audit-only and allowed in any state.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable

from registry_app.importer.errors import AliasConflictError, InvalidImportRequestError, TransitionError
from registry_app.importer.pipeline.run_controller import REVIEWABLE_STATUSES, get_run, reevaluate, run_lock
from registry_app.models import Council, CouncilAlias, db, normalize_label
from registry_app.models.importer.schema import ImportRunStatus, MatchType, StagingSchoolRow, ValidationStatus


@dataclass(frozen=True)
class ReviewResult:
    run_id: int
    updated: int
    status: ImportRunStatus
    alias_id: int | None = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _load_rows(session, run_id: int, row_ids: Iterable[int]) -> list[StagingSchoolRow]:
    wanted = sorted({int(row_id) for row_id in row_ids})
    if not wanted:
        raise InvalidImportRequestError("stagingRowIds must list at least one row.")
    rows = (
        session.query(StagingSchoolRow)
        .filter(StagingSchoolRow.run_id == run_id, StagingSchoolRow.id.in_(wanted))
        .order_by(StagingSchoolRow.file_row_number)
        .all()
    )
    missing = sorted(set(wanted) - {row.id for row in rows})
    if missing:
        raise InvalidImportRequestError(
            f"Rows {', '.join(str(row_id) for row_id in missing)} do not belong to import run {run_id}.",
            details={"importRunId": run_id, "missingRowIds": missing},
        )
    return rows


def _ensure_reviewable(run, action: str) -> None:
    if run.status not in REVIEWABLE_STATUSES:
        raise TransitionError(
            run.id,
            run.status,
            ImportRunStatus.READY_TO_COMMIT,
            reason=f"Rows can only be {action} while the run is under review.",
        )


def resolve_council(
    run_id: int,
    row_ids: Iterable[int],
    council_id: int,
    *,
    create_alias: bool = False,
    alias_name: str | None = None,
    user_id: int | None = None,
    session=None,
) -> ReviewResult:
    """
    Map rows to ``council_id`` by hand (match type MANUAL).

    Rows without field errors become VALID. With ``create_alias`` the row's
    council text (or ``alias_name``) is registered so later imports resolve
    it as an ALIAS match.
    """

    session = session or db.session
    with run_lock(run_id, session=session):
        run = get_run(run_id, session=session, refresh=True)
        _ensure_reviewable(run, "mapped")
        council = session.get(Council, council_id)
        if council is None or not council.is_active:
            raise InvalidImportRequestError(
                f"Council {council_id} does not exist or is inactive.", details={"councilId": council_id}
            )
        rows = _load_rows(session, run_id, row_ids)

        alias_id = None
        if create_alias and run.dry_run:
            raise InvalidImportRequestError(
                "createAlias is not allowed on dry runs; they never change the council hierarchy.",
                details={"importRunId": run_id, "dryRun": True},
            )
        if create_alias:
            alias_text = alias_name or next((row.council for row in rows if row.council), None)
            if not alias_text:
                raise InvalidImportRequestError("createAlias needs aliasName or rows with council text.")
            alias_id = _register_alias(session, council, alias_text, user_id=user_id, run_id=run_id)

        now = _utcnow()
        for row in rows:
            row.match_type = MatchType.MANUAL
            row.matched_council_id = council.id
            row.match_confidence = None
            row.match_source_alias_id = None
            row.match_notes = f"Mapped manually to {council.name}."[:255]
            row.reviewed_by_user_id = user_id
            row.reviewed_at = now
            if not row.validation_errors:
                row.validation_status = ValidationStatus.VALID
        session.flush()

        status = reevaluate(run, user_id=user_id, session=session)
        session.commit()
    return ReviewResult(run_id=run_id, updated=len(rows), status=status, alias_id=alias_id)


def _register_alias(session, council: Council, alias_text: str, *, user_id: int | None, run_id: int) -> int:
    normalized = normalize_label(alias_text)
    if normalized == normalize_label(council.name):
        raise InvalidImportRequestError(f"'{alias_text}' is already the canonical name of {council.name}.")
    existing = session.query(CouncilAlias).filter(CouncilAlias.normalized_alias == normalized).one_or_none()
    if existing is not None:
        if existing.council_id != council.id:
            raise AliasConflictError(alias_text, existing.council_id)
        return existing.id
    alias = CouncilAlias(
        council_id=council.id,
        alias=" ".join(alias_text.split()),
        normalized_alias=normalized,
        created_by_user_id=user_id,
        source_run_id=run_id,
    )
    session.add(alias)
    session.flush()
    return alias.id


def exclude_rows(
    run_id: int,
    row_ids: Iterable[int],
    *,
    reason: str | None = None,
    user_id: int | None = None,
    session=None,
) -> ReviewResult:
    """Drop rows from the import; they are ignored for readiness and skipped at commit."""

    session = session or db.session
    with run_lock(run_id, session=session):
        run = get_run(run_id, session=session, refresh=True)
        _ensure_reviewable(run, "excluded")
        rows = _load_rows(session, run_id, row_ids)
        now = _utcnow()
        for row in rows:
            row.is_excluded = True
            row.reviewed_by_user_id = user_id
            row.reviewed_at = now
            if reason:
                row.review_notes = _append_note(row.review_notes, f"Excluded: {reason}")
        session.flush()

        status = reevaluate(run, user_id=user_id, session=session)
        session.commit()
    return ReviewResult(run_id=run_id, updated=len(rows), status=status)


def annotate_row(run_id: int, row_id: int, notes: str, *, user_id: int | None = None, session=None) -> StagingSchoolRow:
    session = session or db.session
    if not notes or not notes.strip():
        raise InvalidImportRequestError("notes must not be empty.")
    get_run(run_id, session=session)
    row = _load_rows(session, run_id, [row_id])[0]
    row.review_notes = _append_note(row.review_notes, notes.strip())
    row.reviewed_by_user_id = user_id
    row.reviewed_at = _utcnow()
    session.commit()
    return row


def _append_note(existing: str | None, note: str) -> str:
    return f"{existing}\n{note}" if existing else note
