"""
Apply a reviewed import run to the live school registry.

All writes happen in the caller's transaction; nothing here commits. Each
applied write is recorded as a ``ChangesetEntry`` so the rollback engine can
replay the run backwards.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Mapping

from registry_app.importer.errors import CommitTimeoutError, OverwriteConfirmationRequired
from registry_app.importer.pipeline.changeset import Change, apply, changed_fields
from registry_app.importer.pipeline.validation import parse_decimal, resolve_school_type
from registry_app.models.base import db
from registry_app.models.importer.schema import (
    ChangeOperation,
    Changeset,
    ChangesetEntry,
    ImportRun,
    RowAction,
    StagingSchoolRow,
    ValidationStatus,
)
from registry_app.models.school import School, SchoolType

ENTITY_TYPE_SCHOOL = "school"


@dataclass
class PlannedChange:
    row: StagingSchoolRow | None
    school: School | None
    operation: ChangeOperation | None
    values: dict[str, Any]
    fields: tuple[str, ...] = ()


@dataclass
class CommitPlan:
    """What a commit would do, computed without writing anything."""

    changes: list[PlannedChange] = field(default_factory=list)
    excluded_rows: list[StagingSchoolRow] = field(default_factory=list)

    @property
    def creates(self) -> int:
        return sum(1 for item in self.changes if item.operation == ChangeOperation.CREATE)

    @property
    def updates(self) -> int:
        return sum(1 for item in self.changes if item.operation == ChangeOperation.UPDATE and item.row is not None)

    @property
    def deactivations(self) -> int:
        return sum(1 for item in self.changes if item.row is None)

    @property
    def unchanged(self) -> int:
        return sum(1 for item in self.changes if item.operation is None)

    def as_dict(self) -> dict[str, int]:
        return {
            "creates": self.creates,
            "updates": self.updates,
            "unchanged": self.unchanged,
            "deactivations": self.deactivations,
            "excluded": len(self.excluded_rows),
        }


@dataclass(frozen=True)
class CommitResult:
    run_id: int
    inserted: int
    updated: int
    skipped: int
    deactivated: int
    changeset_id: int | None
    entry_count: int

    def as_dict(self) -> dict[str, int]:
        return {
            "inserted": self.inserted,
            "updated": self.updated,
            "skipped": self.skipped,
            "deactivated": self.deactivated,
        }


def row_to_school_values(row: StagingSchoolRow) -> dict[str, Any]:
    """Tracked school values for a VALID staging row, in snapshot form."""

    school_type = resolve_school_type(row.school_type)
    return {
        "emis_code": row.emis_code,
        "name": row.school_name,
        "council_id": row.matched_council_id,
        "school_type": school_type.value if school_type else None,
        "chiefdom": row.chiefdom,
        "section": row.section,
        "town": row.town,
        "latitude": parse_decimal(row.latitude),
        "longitude": parse_decimal(row.longitude),
        "altitude": parse_decimal(row.altitude),
        "is_active": True,
    }


def build_commit_plan(run: ImportRun, *, session=None) -> CommitPlan:
    session = session or db.session
    rows = (
        session.query(StagingSchoolRow)
        .filter(StagingSchoolRow.run_id == run.id)
        .order_by(StagingSchoolRow.file_row_number)
        .all()
    )
    plan = CommitPlan()
    included = []
    for row in rows:
        if row.is_excluded or row.validation_status != ValidationStatus.VALID:
            plan.excluded_rows.append(row)
        else:
            included.append(row)

    codes = [row.emis_code for row in included]
    existing = {
        school.emis_code: school
        for school in (session.query(School).filter(School.emis_code.in_(codes)).all() if codes else [])
    }

    for row in included:
        values = row_to_school_values(row)
        school = existing.get(row.emis_code)
        if school is None:
            plan.changes.append(PlannedChange(row, None, ChangeOperation.CREATE, values, tuple(values)))
            continue
        diff = tuple(changed_fields(school.snapshot(), values))
        operation = ChangeOperation.UPDATE if diff else None
        plan.changes.append(PlannedChange(row, school, operation, values, diff))

    if run.authoritative and included:
        scope = {row.matched_council_id for row in included}
        # excluded and ERROR rows are still part of the batch
        listed = sorted({row.emis_code for row in rows if row.emis_code})
        absent = (
            session.query(School)
            .filter(
                School.council_id.in_(scope),
                School.is_active.is_(True),
                School.emis_code.notin_(listed),
            )
            .order_by(School.emis_code)
            .all()
        )
        for school in absent:
            values = {**school.snapshot(), "is_active": False}
            values.pop("version_id", None)
            plan.changes.append(PlannedChange(None, school, ChangeOperation.UPDATE, values, ("is_active",)))
    return plan


def write_school(session, school: School | None, values: Mapping[str, Any], *, run_id: int) -> School:
    """Create or update one live school and flush so ids and versions are assigned."""

    column_values = dict(values)
    if column_values.get("school_type") is not None:
        column_values["school_type"] = SchoolType(column_values["school_type"])
    if school is None:
        school = School(**column_values)
        session.add(school)
    else:
        for key, value in column_values.items():
            setattr(school, key, value)
    school.last_import_run_id = run_id
    session.flush()
    return school


def apply_commit(
    run: ImportRun,
    *,
    confirm_overwrites: bool = False,
    deadline: float | None = None,
    user_id: int | None = None,
    session=None,
) -> CommitResult:
    """
    Write every planned change and its changeset entry.

    Raises :class:`OverwriteConfirmationRequired` before any write when the
    plan touches existing schools and ``confirm_overwrites`` is false.
    """

    session = session or db.session
    plan = build_commit_plan(run, session=session)
    overwrites = plan.updates + plan.deactivations
    if overwrites and not confirm_overwrites:
        raise OverwriteConfirmationRequired(run.id, updates=plan.updates, deactivations=plan.deactivations)

    # Changesets are immutable once flushed, so it is only added to the session
    # after every entry is collected.
    changeset = Changeset(run_id=run.id, entry_count=0)

    sequence = 0
    inserted = updated = skipped = deactivated = 0
    for item in plan.changes:
        if deadline is not None and time.monotonic() > deadline:
            raise CommitTimeoutError(
                f"Import run {run.id} commit exceeded its time limit.",
                details={"importRunId": run.id, "entriesWritten": sequence},
            )

        if item.operation is None:
            item.row.action_taken = RowAction.SKIPPED
            item.row.school_id = item.school.id
            skipped += 1
            continue

        before = item.school.snapshot() if item.school is not None else None
        change = Change(
            entity_type=ENTITY_TYPE_SCHOOL,
            entity_id=item.school.id if item.school is not None else None,
            operation=item.operation,
            previous_snapshot=before,
            new_snapshot=item.values,
        )
        school = write_school(session, item.school, apply(before, change), run_id=run.id)

        sequence += 1
        changeset.entries.append(
            ChangesetEntry(
                sequence=sequence,
                entity_type=ENTITY_TYPE_SCHOOL,
                entity_id=school.id,
                operation=item.operation,
                previous_snapshot=before,
                new_snapshot=school.snapshot(),
            )
        )

        if item.row is None:
            deactivated += 1
            continue
        item.row.school_id = school.id
        if item.operation == ChangeOperation.CREATE:
            item.row.action_taken = RowAction.INSERTED
            inserted += 1
        else:
            item.row.action_taken = RowAction.UPDATED
            updated += 1

    for row in plan.excluded_rows:
        row.action_taken = RowAction.SKIPPED
        skipped += 1

    changeset.entry_count = sequence
    session.add(changeset)
    session.flush()
    result = CommitResult(
        run_id=run.id,
        inserted=inserted,
        updated=updated,
        skipped=skipped,
        deactivated=deactivated,
        changeset_id=changeset.id,
        entry_count=sequence,
    )
    counts = dict(run.counts_json or {})
    counts["commit"] = {**result.as_dict(), "changeset_entries": sequence, "committed_by_user_id": user_id}
    run.counts_json = counts
    session.flush()
    return result
