from __future__ import annotations

import pytest

from registry_app.importer import get_celery_app
from registry_app.importer.errors import ImportPipelineError
from registry_app.importer.pipeline import create_run
from registry_app.importer.tasks import HEALTHCHECK_TASK_NAME, start_processing
from registry_app.models import db
from registry_app.models.importer.schema import ImportRun, ImportRunStatus


@pytest.fixture
def uploaded_run(importer_app, hierarchy, write_csv, make_row):
    path = write_csv([make_row("BO1001"), make_row("BO1002")])
    return create_run(file_name=path.name, file_size=path.stat().st_size, file_path=str(path))


@pytest.fixture
def missing_file_run(importer_app, tmp_path):
    return create_run(file_name="gone.csv", file_size=1, file_path=str(tmp_path / "gone.csv"))


def _run(run_id):
    return db.session.get(ImportRun, run_id, populate_existing=True)


def test_inline_processing_when_worker_disabled(importer_app, uploaded_run):
    outcome = start_processing(importer_app, uploaded_run.id)

    assert outcome == {"mode": "inline", "status": "READY_TO_COMMIT"}
    assert _run(uploaded_run.id).processed_rows == 2


def test_worker_mode_queues_the_processing_task(importer_app, uploaded_run, monkeypatch):
    monkeypatch.setitem(importer_app.config, "IMPORTER_WORKER_ENABLED", True)
    outcome = start_processing(importer_app, uploaded_run.id)

    assert outcome["mode"] == "worker"
    assert outcome["taskId"]
    run = _run(uploaded_run.id)
    assert run.status == ImportRunStatus.READY_TO_COMMIT
    assert run.successful_rows == 2


def test_worker_mode_without_registered_task_is_an_error(importer_app, uploaded_run, monkeypatch):
    monkeypatch.setitem(importer_app.config, "IMPORTER_WORKER_ENABLED", True)
    monkeypatch.setattr("registry_app.importer.tasks.get_celery_app", lambda app: None)

    with pytest.raises(ImportPipelineError, match="processing task is not registered"):
        start_processing(importer_app, uploaded_run.id)

    assert _run(uploaded_run.id).status == ImportRunStatus.UPLOADED


def test_failed_worker_task_leaves_the_run_failed(importer_app, missing_file_run, monkeypatch):
    monkeypatch.setitem(importer_app.config, "IMPORTER_WORKER_ENABLED", True)
    outcome = start_processing(importer_app, missing_file_run.id)

    assert outcome["mode"] == "worker"
    run = _run(missing_file_run.id)
    assert run.status == ImportRunStatus.FAILED
    assert "is missing" in run.error_summary


def test_healthcheck_task_reports_ok(importer_app):
    celery_app = get_celery_app(importer_app)

    payload = celery_app.tasks[HEALTHCHECK_TASK_NAME].apply().get()

    assert payload["status"] == "ok"
    assert "timestamp" in payload
