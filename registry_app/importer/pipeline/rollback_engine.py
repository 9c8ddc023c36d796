"""Reverse a committed changeset against the live school registry."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

from registry_app.importer.errors import RollbackConflictError
from registry_app.importer.pipeline.changeset import Change, StaleSnapshotError, reverse
from registry_app.models.base import db
from registry_app.models.importer.schema import Changeset, ImportRun, StagingSchoolRow
from registry_app.models.school import School, SchoolType


@dataclass(frozen=True)
class RollbackResult:
    run_id: int
    reverted: int
    deleted: int
    restored: int

    def as_dict(self) -> dict[str, int]:
        return {"reverted": self.reverted, "deleted": self.deleted, "restored": self.restored}


def _restore_school(school: School, values: dict) -> None:
    for key, value in values.items():
        if key == "school_type" and value is not None:
            value = SchoolType(value)
        setattr(school, key, value)


def reverse_changeset(
    run: ImportRun,
    changeset: Changeset,
    *,
    user_id: int | None = None,
    session=None,
) -> RollbackResult:
    """
    Restore every entity touched by ``changeset`` inside the caller's transaction.

    Staleness is checked for all entries before anything is written, so a
    conflict reports every changed school at once and leaves the registry
    untouched.
    """

    session = session or db.session
    entries = sorted(changeset.entries, key=lambda entry: entry.sequence, reverse=True)

    planned: list[tuple[Change, School | None, dict | None]] = []
    conflicts: list[dict] = []
    for entry in entries:
        change = Change.from_entry(entry)
        school = session.get(School, entry.entity_id, populate_existing=True)
        current = school.snapshot() if school is not None else None
        try:
            restored = reverse(current, change)
        except StaleSnapshotError as exc:
            conflicts.append(
                {
                    "entityType": entry.entity_type,
                    "entityId": entry.entity_id,
                    "emisCode": (entry.new_snapshot or {}).get("emis_code"),
                    "changedFields": exc.changed_fields() if current is not None else [],
                    "deleted": current is None,
                }
            )
            continue
        planned.append((change, school, restored))

    if conflicts:
        raise RollbackConflictError(run.id, conflicts)

    deleted = restored_count = 0
    for change, school, restored in planned:
        if restored is None:
            session.query(StagingSchoolRow).filter(StagingSchoolRow.school_id == school.id).update(
                {StagingSchoolRow.school_id: None}, synchronize_session=False
            )
            session.delete(school)
            deleted += 1
        else:
            _restore_school(school, restored)
            restored_count += 1
        session.flush()

    changeset.consumed_at = datetime.now(timezone.utc)
    changeset.consumed_by_user_id = user_id
    counts = dict(run.counts_json or {})
    counts["rollback"] = {"reverted": len(planned), "deleted": deleted, "restored": restored_count}
    run.counts_json = counts
    session.flush()
    return RollbackResult(run_id=run.id, reverted=len(planned), deleted=deleted, restored=restored_count)
