"""
Pure functions over entity snapshots for reversible registry writes.

A ``Change`` describes one mutation as a pair of snapshots. ``apply`` moves an
entity forward along a change, ``reverse`` moves it back; both refuse to act
when the entity no longer looks the way the change expects.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from registry_app.models.importer.schema import ChangeOperation, ChangesetEntry
from registry_app.models.school import SCHOOL_TRACKED_FIELDS

VERSION_FIELD = "version_id"


class StaleSnapshotError(ValueError):
    """The live entity does not match the snapshot a change was built from."""

    def __init__(self, entity_id: int | None, expected: Mapping[str, Any] | None, actual: Mapping[str, Any] | None):
        super().__init__(f"Entity {entity_id} no longer matches its recorded snapshot.")
        self.entity_id = entity_id
        self.expected = dict(expected) if expected is not None else None
        self.actual = dict(actual) if actual is not None else None

    def changed_fields(self) -> list[str]:
        if self.expected is None or self.actual is None:
            return []
        keys = (*SCHOOL_TRACKED_FIELDS, VERSION_FIELD)
        return [key for key in keys if self.expected.get(key) != self.actual.get(key)]


@dataclass(frozen=True)
class Change:
    entity_type: str
    entity_id: int | None
    operation: ChangeOperation
    previous_snapshot: Mapping[str, Any] | None
    new_snapshot: Mapping[str, Any]

    @classmethod
    def from_entry(cls, entry: ChangesetEntry) -> "Change":
        return cls(
            entity_type=entry.entity_type,
            entity_id=entry.entity_id,
            operation=entry.operation,
            previous_snapshot=entry.previous_snapshot,
            new_snapshot=entry.new_snapshot,
        )


def tracked_values(snapshot: Mapping[str, Any] | None) -> dict[str, Any] | None:
    if snapshot is None:
        return None
    return {field: snapshot.get(field) for field in SCHOOL_TRACKED_FIELDS}


def changed_fields(before: Mapping[str, Any] | None, after: Mapping[str, Any]) -> list[str]:
    """Tracked fields whose values differ; every field counts as changed on create."""

    if before is None:
        return list(SCHOOL_TRACKED_FIELDS)
    return [field for field in SCHOOL_TRACKED_FIELDS if before.get(field) != after.get(field)]


def _matches(current: Mapping[str, Any] | None, expected: Mapping[str, Any] | None, *, with_version: bool) -> bool:
    if current is None or expected is None:
        return current is None and expected is None
    if tracked_values(current) != tracked_values(expected):
        return False
    if with_version and VERSION_FIELD in expected:
        return current.get(VERSION_FIELD) == expected.get(VERSION_FIELD)
    return True


def apply(current: Mapping[str, Any] | None, change: Change) -> dict[str, Any]:
    """Return the tracked values the entity should hold after ``change``."""

    expected = None if change.operation == ChangeOperation.CREATE else change.previous_snapshot
    if not _matches(current, expected, with_version=True):
        raise StaleSnapshotError(change.entity_id, expected, current)
    return tracked_values(change.new_snapshot)


def reverse(current: Mapping[str, Any] | None, change: Change) -> dict[str, Any] | None:
    """
    Return the tracked values to restore, or ``None`` when the entity should
    be deleted (a reversed CREATE).
    """

    if not _matches(current, change.new_snapshot, with_version=True):
        raise StaleSnapshotError(change.entity_id, change.new_snapshot, current)
    if change.operation == ChangeOperation.CREATE:
        return None
    return tracked_values(change.previous_snapshot)
