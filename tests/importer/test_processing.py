from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import IntegrityError

from registry_app.importer.errors import ParseError, ProcessingTimeoutError, TransitionError
from registry_app.importer.pipeline import ImportRunService, ProcessingSettings, cancel_run, create_run, process_run
from registry_app.importer.pipeline import processing
from registry_app.models import db
from registry_app.models.importer.schema import (
    ImportRun,
    ImportRunEvent,
    ImportRunStatus,
    MatchType,
    StagingSchoolRow,
    ValidationStatus,
)


def _rows(run_id):
    return (
        db.session.query(StagingSchoolRow)
        .filter(StagingSchoolRow.run_id == run_id)
        .order_by(StagingSchoolRow.file_row_number)
        .all()
    )


@pytest.fixture
def matched_rows(make_row):
    return [
        make_row("BO1001"),
        make_row(
            "FT2001",
            Region="Western Area",
            District="Western Area Urban",
            Council="FCC",
            Town="Freetown",
            Latitude="8.4844",
            Longitude="-13.2344",
        ),
        make_row(
            "KD3001",
            Region="Northern",
            District="Koinadugu",
            Council="Koinadugu Distrct",
            Town="Kabala",
            Latitude="9.5892",
            Longitude="-11.5528",
        ),
    ]


@pytest.mark.slow
def test_clean_file_becomes_ready_to_commit(processed_run, hierarchy, matched_rows):
    run = processed_run(matched_rows)

    assert run.status == ImportRunStatus.READY_TO_COMMIT
    assert (run.total_rows, run.processed_rows, run.successful_rows, run.error_rows) == (3, 3, 3, 0)
    rows = _rows(run.id)
    assert [row.match_type for row in rows] == [MatchType.EXACT, MatchType.ALIAS, MatchType.FUZZY]
    assert rows[0].matched_council_id == hierarchy["Bo City Council"]
    assert rows[1].matched_council_id == hierarchy["Freetown City Council"]
    assert rows[1].match_source_alias_id is not None
    assert rows[2].matched_council_id == hierarchy["Koinadugu District Council"]
    assert rows[2].match_confidence == pytest.approx(0.995, abs=0.002)
    assert all(row.validation_status == ValidationStatus.VALID for row in rows)
    assert rows[0].raw_payload["EMIS Code"] == "BO1001"

    statuses = [event.to_status for event in db.session.query(ImportRunEvent).filter_by(run_id=run.id).order_by(ImportRunEvent.id)]
    assert statuses == [ImportRunStatus.UPLOADED, ImportRunStatus.PROCESSING, ImportRunStatus.READY_TO_COMMIT]
    assert run.started_at is not None


def test_problem_rows_send_the_run_to_review(processed_run, make_row):
    run = processed_run(
        [
            make_row("BO1001"),
            make_row("BO1001", **{"School Name": "Copy"}),
            make_row("KN4001", Region="Eastern", District="Kenema", Council="Kenema Councl"),
            make_row("BO1002", Latitude="north"),
            make_row("BO1003", Latitude="51.5", Longitude="-0.12"),
        ]
    )

    assert run.status == ImportRunStatus.READY_FOR_REVIEW
    rows = _rows(run.id)
    assert [row.validation_status for row in rows] == [
        ValidationStatus.VALID,
        ValidationStatus.ERROR,
        ValidationStatus.REQUIRES_REVIEW,
        ValidationStatus.ERROR,
        ValidationStatus.VALID,
    ]
    assert rows[1].is_duplicate
    assert rows[1].validation_errors == [{"field": "emis_code", "message": "EMIS Code 'BO1001' already appears on row 2."}]
    assert len(rows[2].match_candidates) == 2
    assert rows[4].is_geo_outlier
    assert (run.processed_rows, run.successful_rows, run.error_rows) == (5, 2, 2)
    assert run.metrics_json["processing"] == {"rows": 5, "duplicates": 1, "geo_outliers": 1}

    payload = ImportRunService().status_payload(run.id)
    assert payload["validationSummary"]["reviewRequiredRows"] == 1
    assert payload["councilMappingSummary"]["unchecked"] == 1
    assert payload["commitPlan"]["creates"] == 2


def test_processing_is_stable_across_pool_and_batch_sizes(processed_run, matched_rows, make_row):
    rows = [*matched_rows, make_row("KN4001", Region="Eastern", District="Kenema", Council="Kenema Councl")]

    serial = processed_run(rows, name="serial.csv", pool_size=1, batch_size=500)
    parallel = processed_run(rows, name="parallel.csv", pool_size=4, batch_size=1)

    def _outcomes(run_id):
        return [
            (row.file_row_number, row.validation_status, row.match_type, row.matched_council_id)
            for row in _rows(run_id)
        ]

    assert _outcomes(serial.id) == _outcomes(parallel.id)
    assert serial.status == parallel.status == ImportRunStatus.READY_FOR_REVIEW


def test_header_errors_fail_the_run(importer_app, hierarchy, write_csv, make_row, canonical_headers):
    path = write_csv([make_row("BO1001")], headers=canonical_headers[:-1])
    run = create_run(file_name=path.name, file_size=path.stat().st_size, file_path=str(path))

    with pytest.raises(ParseError):
        process_run(run.id)

    failed = db.session.get(ImportRun, run.id, populate_existing=True)
    assert failed.status == ImportRunStatus.FAILED
    assert "Missing required columns: altitude" in failed.error_summary
    assert _rows(run.id) == []


def test_missing_upload_fails_the_run(importer_app, hierarchy, tmp_path):
    run = create_run(file_name="gone.csv", file_size=10, file_path=str(tmp_path / "gone.csv"))

    with pytest.raises(FileNotFoundError):
        process_run(run.id)

    assert db.session.get(ImportRun, run.id, populate_existing=True).status == ImportRunStatus.FAILED


def test_processing_timeout_fails_the_run(importer_app, hierarchy, write_csv, make_row):
    path = write_csv([make_row("BO1001")])
    run = create_run(file_name=path.name, file_size=path.stat().st_size, file_path=str(path))

    with pytest.raises(ProcessingTimeoutError):
        process_run(run.id, settings=ProcessingSettings(timeout_seconds=-1.0))

    failed = db.session.get(ImportRun, run.id, populate_existing=True)
    assert failed.status == ImportRunStatus.FAILED
    assert "time limit" in failed.error_summary


def test_cancel_stops_processing_between_batches(importer_app, hierarchy, write_csv, make_row):
    path = write_csv([make_row("BO1001"), make_row("BO1002"), make_row("BO1003")])
    run = create_run(file_name=path.name, file_size=path.stat().st_size, file_path=str(path))
    seen = []

    def _cancel_after_first_batch(current_run, processed, total):
        seen.append((processed, total))
        if processed == 1:
            cancel_run(current_run.id, reason="Wrong file")

    result = process_run(
        run.id,
        settings=ProcessingSettings(pool_size=1, batch_size=1),
        progress_callback=_cancel_after_first_batch,
    )

    assert result.status == ImportRunStatus.CANCELLED
    assert seen == [(1, 3)]
    rows = _rows(run.id)
    assert len(rows) == 3
    assert [row.validation_status for row in rows] == [
        ValidationStatus.VALID,
        ValidationStatus.PENDING,
        ValidationStatus.PENDING,
    ]


def test_only_uploaded_runs_can_be_processed(processed_run, matched_rows):
    run = processed_run(matched_rows)

    with pytest.raises(TransitionError):
        process_run(run.id)


def test_match_type_and_council_are_set_together(processed_run, matched_rows, make_row):
    run = processed_run(
        [
            *matched_rows,
            make_row("KN4001", Region="Eastern", District="Kenema", Council="Kenema Councl"),
            make_row("MK5001", Council="Makeni City Council"),
            make_row("BO1002", Council=""),
        ]
    )

    rows = _rows(run.id)
    assert {row.match_type for row in rows} == {MatchType.EXACT, MatchType.ALIAS, MatchType.FUZZY, MatchType.NONE}
    for row in rows:
        assert (row.match_type == MatchType.NONE) == (row.matched_council_id is None), row.file_row_number


def test_database_rejects_a_match_without_a_council(processed_run, make_row):
    run = processed_run([make_row("BO1001")])

    db.session.add(
        StagingSchoolRow(
            run_id=run.id,
            file_row_number=99,
            raw_payload={},
            match_type=MatchType.EXACT,
            matched_council_id=None,
        )
    )
    with pytest.raises(IntegrityError, match="ck_staging_school_rows_match_council"):
        db.session.flush()
    db.session.rollback()


def test_failure_is_recorded_while_another_owner_holds_the_lease(importer_app, hierarchy, write_csv, make_row, monkeypatch):
    path = write_csv([make_row("BO1001")])
    run = create_run(file_name=path.name, file_size=path.stat().st_size, file_path=str(path))
    monkeypatch.setitem(importer_app.config, "IMPORTER_LOCK_WAIT_SECONDS", 0.1)

    def _crash_with_stuck_lease(run_id, **kwargs):
        held = db.session.get(ImportRun, run_id)
        held.lock_owner = "worker-9:77:stuck"
        held.lock_expires_at = datetime.now(timezone.utc) + timedelta(hours=1)
        db.session.commit()
        raise RuntimeError("disk unplugged")

    monkeypatch.setattr(processing, "_process", _crash_with_stuck_lease)

    with pytest.raises(RuntimeError, match="disk unplugged"):
        process_run(run.id)

    failed = db.session.get(ImportRun, run.id, populate_existing=True)
    assert failed.status == ImportRunStatus.FAILED
    assert failed.error_summary == "RuntimeError: disk unplugged"
