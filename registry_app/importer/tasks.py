"""
School import Celery tasks and the processing dispatcher.

``start_processing`` decides whether a run is processed in the calling
process (worker flag off) or handed to the Celery worker.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from celery import shared_task
from flask import Flask, current_app

from registry_app.importer.celery_app import get_celery_app
from registry_app.importer.errors import ImportPipelineError
from registry_app.importer.pipeline import process_run
from registry_app.models.base import db
from registry_app.models.importer.schema import ImportRun, ImportRunStatus
from registry_app.utils.importer import is_worker_enabled

PROCESS_TASK_NAME = "importer.process_import_run"
HEALTHCHECK_TASK_NAME = "importer.healthcheck"


@shared_task(name=HEALTHCHECK_TASK_NAME, bind=True)
def importer_healthcheck(self) -> dict[str, Any]:
    """
    Simple heartbeat task used by worker health checks.
    """
    now = datetime.now(timezone.utc)
    return {
        "status": "ok",
        "timestamp": now.isoformat(),
        "worker_hostname": self.request.hostname,
    }


@shared_task(name=PROCESS_TASK_NAME, bind=True)
def process_import_run(self, *, run_id: int) -> dict[str, Any]:
    """
    Parse, validate and match an UPLOADED run on the worker.

    ``process_run`` records failures on the run itself; this task only logs
    and re-raises so the Celery result reflects the outcome.
    """

    try:
        run = process_run(run_id)
    except Exception as exc:
        db.session.rollback()
        recovery_run = db.session.get(ImportRun, run_id)
        current_app.logger.exception(
            "School import processing task failed",
            extra={
                "importer_run_id": run_id,
                "importer_status": recovery_run.status.value if recovery_run else None,
                "importer_error": str(exc),
                "importer_task_id": self.request.id,
            },
        )
        raise

    current_app.logger.info(
        "School import processing task finished",
        extra={
            "importer_run_id": run_id,
            "importer_status": run.status.value,
            "importer_total_rows": run.total_rows,
            "importer_error_rows": run.error_rows,
            "importer_task_id": self.request.id,
        },
    )
    return {
        "run_id": run_id,
        "status": run.status.value,
        "total_rows": run.total_rows,
        "processed_rows": run.processed_rows,
        "successful_rows": run.successful_rows,
        "error_rows": run.error_rows,
    }


def start_processing(app: Flask, run_id: int) -> dict[str, Any]:
    """
    Kick off processing for ``run_id``.

    Returns ``{"mode": "worker", "taskId": ...}`` when the run was queued and
    ``{"mode": "inline", "status": ...}`` when it was processed in-process.
    Inline pipeline errors propagate after the run has been marked FAILED.
    """

    if is_worker_enabled(app):
        celery_app = get_celery_app(app)
        task = celery_app.tasks.get(PROCESS_TASK_NAME) if celery_app is not None else None
        if task is None:
            raise ImportPipelineError(
                "Import worker is enabled but the processing task is not registered.",
                details={"importRunId": run_id},
            )
        async_result = task.apply_async(kwargs={"run_id": run_id})
        app.logger.info(
            "School import run queued for processing",
            extra={"importer_run_id": run_id, "importer_task_id": async_result.id},
        )
        return {"mode": "worker", "taskId": async_result.id}

    run = process_run(run_id)
    status = run.status.value if isinstance(run.status, ImportRunStatus) else run.status
    return {"mode": "inline", "status": status}
