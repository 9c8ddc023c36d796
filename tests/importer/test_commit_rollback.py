from __future__ import annotations

import pytest

from registry_app.importer.errors import (
    CommitConflictError,
    OverwriteConfirmationRequired,
    RollbackConflictError,
    TransitionError,
)
from registry_app.importer.pipeline import commit_engine, commit_run, exclude_rows, rollback_run
from registry_app.models import School, SchoolType, db
from registry_app.models.importer.schema import (
    ChangeOperation,
    Changeset,
    ImmutableChangesetError,
    ImportRun,
    ImportRunStatus,
    RowAction,
    StagingSchoolRow,
)


def _schools():
    return {school.emis_code: school for school in db.session.query(School).order_by(School.emis_code).all()}


def _registry_state():
    return {code: school.snapshot() for code, school in _schools().items()}


def _run(run_id):
    return db.session.get(ImportRun, run_id, populate_existing=True)


@pytest.fixture
def committed_run(processed_run, make_row):
    """Commit a first import so later runs have live schools to update."""
    run = processed_run([make_row("BO1001"), make_row("BO1002"), make_row("BO1003")], name="baseline.csv")
    commit_run(run.id)
    return _run(run.id)


def test_commit_inserts_schools_and_records_changeset(processed_run, make_row, hierarchy):
    run = processed_run([make_row("BO1001"), make_row("BO1002", **{"School Type": "JSS"})])

    result = commit_run(run.id, user_id=None)

    assert (result.inserted, result.updated, result.skipped, result.deactivated) == (2, 0, 0, 0)
    assert _run(run.id).status == ImportRunStatus.COMMITTED
    schools = _schools()
    assert schools["BO1002"].school_type == SchoolType.SECONDARY
    assert schools["BO1001"].council_id == hierarchy["Bo City Council"]
    assert schools["BO1001"].latitude == pytest.approx(7.9647)
    assert schools["BO1001"].last_import_run_id == run.id

    changeset = db.session.query(Changeset).filter_by(run_id=run.id).one()
    assert changeset.entry_count == result.entry_count == 2
    assert [entry.operation for entry in changeset.entries] == [ChangeOperation.CREATE, ChangeOperation.CREATE]
    assert changeset.entries[0].previous_snapshot is None
    assert changeset.entries[0].new_snapshot["emis_code"] == "BO1001"

    actions = [row.action_taken for row in db.session.query(StagingSchoolRow).filter_by(run_id=run.id)]
    assert actions == [RowAction.INSERTED, RowAction.INSERTED]


def test_commit_requires_confirmation_before_overwriting(committed_run, processed_run, make_row):
    before = _registry_state()
    run = processed_run([make_row("BO1001", **{"School Name": "Renamed School"}), make_row("BO1004")], name="update.csv")

    with pytest.raises(OverwriteConfirmationRequired) as excinfo:
        commit_run(run.id)

    assert excinfo.value.details["updates"] == 1
    assert _run(run.id).status == ImportRunStatus.READY_TO_COMMIT
    assert _registry_state() == before

    result = commit_run(run.id, confirm_overwrites=True)

    assert (result.inserted, result.updated) == (1, 1)
    assert _schools()["BO1001"].name == "Renamed School"


def test_unchanged_rows_are_skipped_without_changeset_entries(committed_run, processed_run, make_row):
    run = processed_run([make_row("BO1001"), make_row("BO1002")], name="same.csv")

    result = commit_run(run.id)

    assert (result.inserted, result.updated, result.skipped) == (0, 0, 2)
    assert result.entry_count == 0


def test_excluded_rows_are_skipped(processed_run, make_row):
    run = processed_run([make_row("BO1001"), make_row("BO1002", Latitude="north")])
    error_row = db.session.query(StagingSchoolRow).filter_by(run_id=run.id, emis_code="BO1002").one()
    exclude_rows(run.id, [error_row.id], reason="bad coordinates")

    result = commit_run(run.id)

    assert (result.inserted, result.skipped) == (1, 1)
    assert set(_schools()) == {"BO1001"}


def test_authoritative_commit_deactivates_absent_schools(committed_run, processed_run, make_row):
    run = processed_run([make_row("BO1001"), make_row("BO1004")], name="authoritative.csv", authoritative=True)

    with pytest.raises(OverwriteConfirmationRequired) as excinfo:
        commit_run(run.id)
    assert excinfo.value.details["deactivations"] == 2

    result = commit_run(run.id, confirm_overwrites=True)

    assert (result.inserted, result.deactivated, result.skipped) == (1, 2, 1)
    schools = _schools()
    assert schools["BO1001"].is_active and schools["BO1004"].is_active
    assert not schools["BO1002"].is_active
    assert not schools["BO1003"].is_active


def test_authoritative_commit_keeps_schools_listed_in_excluded_rows(committed_run, processed_run, make_row):
    run = processed_run(
        [make_row("BO1001"), make_row("BO1002", Latitude="north"), make_row("BO1003")],
        name="authoritative.csv",
        authoritative=True,
    )
    error_row = db.session.query(StagingSchoolRow).filter_by(run_id=run.id, emis_code="BO1002").one()
    exclude_rows(run.id, [error_row.id], reason="coordinates pending")

    assert commit_engine.build_commit_plan(_run(run.id)).deactivations == 0
    result = commit_run(run.id)

    assert result.as_dict() == {"inserted": 0, "updated": 0, "skipped": 3, "deactivated": 0}
    assert all(school.is_active for school in _schools().values())


def test_write_failure_rolls_back_every_change(processed_run, make_row, monkeypatch):
    run = processed_run([make_row("BO1001"), make_row("BO1002"), make_row("BO1003")])
    real_write = commit_engine.write_school
    calls = {"count": 0}

    def _flaky_write(session, school, values, *, run_id):
        calls["count"] += 1
        if calls["count"] == 3:
            raise RuntimeError("disk full")
        return real_write(session, school, values, run_id=run_id)

    monkeypatch.setattr(commit_engine, "write_school", _flaky_write)

    with pytest.raises(CommitConflictError) as excinfo:
        commit_run(run.id)

    assert "disk full" in excinfo.value.message
    failed = _run(run.id)
    assert failed.status == ImportRunStatus.FAILED
    assert "disk full" in failed.error_summary
    assert _schools() == {}
    assert db.session.query(Changeset).count() == 0
    actions = {row.action_taken for row in db.session.query(StagingSchoolRow).filter_by(run_id=run.id)}
    assert actions == {RowAction.NONE}


def test_commit_timeout_is_reported(processed_run, make_row, importer_app, monkeypatch):
    monkeypatch.setitem(importer_app.config, "IMPORTER_COMMIT_TIMEOUT_SECONDS", -1)
    run = processed_run([make_row("BO1001")])

    with pytest.raises(CommitConflictError) as excinfo:
        commit_run(run.id)

    assert excinfo.value.code == "COMMIT_TIMEOUT"
    assert _run(run.id).status == ImportRunStatus.FAILED
    assert _schools() == {}


def test_commit_rejects_runs_that_are_not_ready(processed_run, make_row):
    run = processed_run([make_row("BO1001", Council="Nowhere Council")])
    assert run.status == ImportRunStatus.READY_FOR_REVIEW

    with pytest.raises(TransitionError):
        commit_run(run.id)


def test_dry_run_can_never_be_committed(processed_run, make_row):
    run = processed_run([make_row("BO1001")], dry_run=True)
    assert run.status == ImportRunStatus.READY_TO_COMMIT

    with pytest.raises(TransitionError, match="preview only"):
        commit_run(run.id)

    assert _run(run.id).status == ImportRunStatus.READY_TO_COMMIT
    assert _schools() == {}


def test_rollback_restores_the_exact_prior_state(committed_run, processed_run, make_row):
    before = _registry_state()
    run = processed_run(
        [make_row("BO1001", **{"School Name": "Renamed School", "Altitude": "95"}), make_row("BO1004")],
        name="update.csv",
        authoritative=True,
    )
    commit_run(run.id, confirm_overwrites=True)
    assert _registry_state() != before

    result = rollback_run(run.id)

    assert (result.reverted, result.deleted, result.restored) == (4, 1, 3)
    assert _run(run.id).status == ImportRunStatus.ROLLED_BACK
    after = _registry_state()
    assert set(after) == set(before)
    for code, snapshot in before.items():
        restored = {key: value for key, value in after[code].items() if key != "version_id"}
        expected = {key: value for key, value in snapshot.items() if key != "version_id"}
        assert restored == expected
    assert db.session.query(Changeset).filter_by(run_id=run.id).one().is_consumed


def test_rollback_conflicts_when_a_school_changed_after_commit(committed_run):
    school = _schools()["BO1002"]
    school.name = "Edited by hand"
    db.session.commit()

    with pytest.raises(RollbackConflictError) as excinfo:
        rollback_run(committed_run.id)

    conflicts = excinfo.value.details["conflicts"]
    assert [conflict["emisCode"] for conflict in conflicts] == ["BO1002"]
    assert "name" in conflicts[0]["changedFields"]
    assert _run(committed_run.id).status == ImportRunStatus.COMMITTED
    assert set(_schools()) == {"BO1001", "BO1002", "BO1003"}


def test_second_rollback_is_rejected(committed_run):
    rollback_run(committed_run.id)

    with pytest.raises(TransitionError):
        rollback_run(committed_run.id)

    assert _schools() == {}


def test_changeset_entries_are_immutable(committed_run):
    changeset = db.session.query(Changeset).filter_by(run_id=committed_run.id).one()
    changeset.entries[0].new_snapshot = {"emis_code": "HACKED"}

    with pytest.raises(ImmutableChangesetError):
        db.session.flush()
    db.session.rollback()
