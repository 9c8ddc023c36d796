from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from registry_app.importer.errors import InvalidImportRequestError, RunLockedError, RunNotFoundError, TransitionError
from registry_app.importer.pipeline import ALLOWED_TRANSITIONS, cancel_run, create_run, get_run, run_lock, transition
from registry_app.importer.pipeline.run_controller import fail_run
from registry_app.models import db
from registry_app.models.importer.schema import ImportRun, ImportRunEvent, ImportRunStatus


@pytest.fixture
def uploaded_run(importer_app):
    return create_run(file_name="schools.csv", file_size=120, file_path="/tmp/schools.csv")


def _events(run_id):
    return db.session.query(ImportRunEvent).filter_by(run_id=run_id).order_by(ImportRunEvent.id).all()


def test_create_run_records_the_upload_event(uploaded_run):
    assert uploaded_run.status == ImportRunStatus.UPLOADED
    events = _events(uploaded_run.id)
    assert [(event.from_status, event.to_status) for event in events] == [(None, ImportRunStatus.UPLOADED)]


def test_dry_run_and_authoritative_are_mutually_exclusive(importer_app):
    with pytest.raises(InvalidImportRequestError):
        create_run(file_name="x.csv", file_size=1, file_path=None, dry_run=True, authoritative=True)
    assert db.session.query(ImportRun).count() == 0


def test_terminal_states_have_no_exits():
    for status in (ImportRunStatus.CANCELLED, ImportRunStatus.FAILED, ImportRunStatus.ROLLED_BACK):
        assert ALLOWED_TRANSITIONS[status] == frozenset()
    assert ALLOWED_TRANSITIONS[ImportRunStatus.COMMITTED] == frozenset({ImportRunStatus.ROLLED_BACK})


def test_illegal_transition_leaves_run_untouched(uploaded_run):
    with pytest.raises(TransitionError) as excinfo:
        transition(uploaded_run, ImportRunStatus.COMMITTED)

    assert excinfo.value.details == {
        "importRunId": uploaded_run.id,
        "currentStatus": "UPLOADED",
        "requestedStatus": "COMMITTED",
    }
    db.session.rollback()
    assert get_run(uploaded_run.id, refresh=True).status == ImportRunStatus.UPLOADED
    assert len(_events(uploaded_run.id)) == 1


def test_transition_stamps_timestamps_and_events(uploaded_run):
    with run_lock(uploaded_run.id):
        run = get_run(uploaded_run.id, refresh=True)
        transition(run, ImportRunStatus.PROCESSING, reason="start")
        transition(run, ImportRunStatus.FAILED, reason="boom")
        db.session.commit()

    run = get_run(uploaded_run.id, refresh=True)
    assert run.started_at is not None
    assert run.completed_at is not None
    assert [event.reason for event in _events(run.id)] == ["Upload accepted.", "start", "boom"]


def test_cancel_is_rejected_once_the_run_finished(uploaded_run):
    cancelled = cancel_run(uploaded_run.id, reason="duplicate upload")
    assert cancelled.status == ImportRunStatus.CANCELLED

    with pytest.raises(TransitionError, match="already finished"):
        cancel_run(uploaded_run.id)


def test_concurrent_operator_requests_are_rejected(uploaded_run):
    with run_lock(uploaded_run.id):
        with pytest.raises(RunLockedError) as excinfo:
            cancel_run(uploaded_run.id)

    assert excinfo.value.http_status == 409
    assert get_run(uploaded_run.id, refresh=True).status == ImportRunStatus.UPLOADED


def test_lease_held_by_another_process_blocks_transitions(uploaded_run):
    run = get_run(uploaded_run.id)
    run.lock_owner = "worker-1:42:abc"
    run.lock_expires_at = datetime.now(timezone.utc) + timedelta(minutes=5)
    db.session.commit()

    with pytest.raises(RunLockedError) as excinfo:
        cancel_run(uploaded_run.id)

    assert excinfo.value.details["holder"] == "worker-1:42:abc"


def test_expired_lease_is_taken_over(uploaded_run):
    run = get_run(uploaded_run.id)
    run.lock_owner = "worker-1:42:abc"
    run.lock_expires_at = datetime.now(timezone.utc) - timedelta(minutes=5)
    db.session.commit()

    assert cancel_run(uploaded_run.id).status == ImportRunStatus.CANCELLED
    run = get_run(uploaded_run.id, refresh=True)
    assert run.lock_owner is None


def test_lock_on_unknown_run_reports_not_found(importer_app):
    with pytest.raises(RunNotFoundError):
        with run_lock(999):
            pass


def test_fail_run_ignores_runs_that_already_finished(uploaded_run):
    cancel_run(uploaded_run.id)

    run = fail_run(uploaded_run.id, "late failure")

    assert run.status == ImportRunStatus.CANCELLED
    assert run.error_summary is None
