"""
Celery wiring for the school import worker.

Celery stays dormant until the importer is enabled. The broker and result
backend default to a SQLite file in the instance folder so a single machine
can run the web process and the worker without Redis.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Mapping

from celery import Celery
from flask import Flask
from kombu import Queue

DEFAULT_QUEUE_NAME = "school_imports"
DEFAULT_SQLITE_FILENAME = "celery.sqlite"
# Grace period on top of the processing timeout before Celery kills the task.
TIME_LIMIT_GRACE_SECONDS = 60


def _quiet_worker_loggers(app: Flask) -> None:
    """Keep SQL echo and per-message worker chatter out of the task logs."""
    if not app.config.get("SQLALCHEMY_ECHO", False):
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("celery.worker.strategy").setLevel(logging.WARNING)


def _sqlite_transport_path(app: Flask) -> Path:
    """
    Locate the SQLite file shared by the default broker and result backend.

    ``CELERY_SQLITE_PATH`` overrides the location; relative values resolve
    against the Flask instance folder.
    """
    configured = app.config.get("CELERY_SQLITE_PATH")
    if configured:
        sqlite_path = Path(configured)
        if not sqlite_path.is_absolute():
            sqlite_path = Path(app.instance_path) / sqlite_path
    else:
        sqlite_path = Path(app.instance_path) / DEFAULT_SQLITE_FILENAME

    sqlite_path.parent.mkdir(parents=True, exist_ok=True)
    return sqlite_path


def _connection_urls(app: Flask) -> tuple[str, str]:
    """Return ``(broker_url, result_backend)`` with SQLite fallbacks."""
    broker_url = app.config.get("CELERY_BROKER_URL")
    result_backend = app.config.get("CELERY_RESULT_BACKEND")
    if broker_url and result_backend:
        return broker_url, result_backend

    # Celery expects forward slashes even on Windows.
    normalized = _sqlite_transport_path(app).as_posix()
    return (
        broker_url or f"sqla+sqlite:///{normalized}",
        result_backend or f"db+sqlite:///{normalized}",
    )


def _extra_conf(app: Flask) -> Mapping[str, Any] | None:
    extra_conf: Mapping[str, Any] | str | None = app.config.get("CELERY_CONFIG")
    if isinstance(extra_conf, str):
        try:
            return json.loads(extra_conf)
        except json.JSONDecodeError:
            app.logger.warning("CELERY_CONFIG is not valid JSON; ignoring value.", exc_info=True)
            return None
    return extra_conf


def create_celery_app(app: Flask) -> Celery:
    """
    Build a Celery instance bound to ``app``.

    Task time limits follow ``IMPORTER_PROCESSING_TIMEOUT_SECONDS`` so the
    worker never outlives the pipeline's own deadline by much. Setting
    ``CELERY_TASK_ALWAYS_EAGER`` runs tasks in-process (used by the tests).
    """
    broker_url, result_backend = _connection_urls(app)
    celery_app = Celery(
        app.import_name,
        broker=broker_url,
        backend=result_backend,
        include=("registry_app.importer.tasks",),
    )

    processing_timeout = int(app.config.get("IMPORTER_PROCESSING_TIMEOUT_SECONDS", 600))
    celery_app.conf.update(
        task_default_queue=DEFAULT_QUEUE_NAME,
        task_queues=[Queue(DEFAULT_QUEUE_NAME)],
        task_default_exchange=DEFAULT_QUEUE_NAME,
        task_default_routing_key=DEFAULT_QUEUE_NAME,
        task_acks_late=True,
        worker_prefetch_multiplier=1,
        task_track_started=True,
        result_extended=True,
        broker_connection_retry_on_startup=True,
        task_soft_time_limit=processing_timeout + TIME_LIMIT_GRACE_SECONDS,
        task_time_limit=processing_timeout + 2 * TIME_LIMIT_GRACE_SECONDS,
        task_always_eager=bool(app.config.get("CELERY_TASK_ALWAYS_EAGER", False)),
        task_eager_propagates=bool(app.config.get("CELERY_TASK_EAGER_PROPAGATES", False)),
        worker_log_format="[%(asctime)s: %(levelname)s/%(processName)s] %(message)s",
        worker_task_log_format="[%(asctime)s: %(levelname)s/%(processName)s][%(task_name)s(%(task_id)s)] %(message)s",
        worker_hijack_root_logger=False,
    )

    extra_conf = _extra_conf(app)
    if extra_conf:
        celery_app.conf.update(extra_conf)

    app.logger.info(
        "School import Celery app configured",
        extra={
            "importer_celery_broker_url": broker_url,
            "importer_celery_result_backend": result_backend,
            "importer_celery_always_eager": celery_app.conf.task_always_eager,
            "importer_worker_enabled": app.config.get("IMPORTER_WORKER_ENABLED"),
        },
    )

    _quiet_worker_loggers(app)

    class FlaskContextTask(celery_app.Task):  # type: ignore[misc]
        """Run every task body inside the Flask application context."""

        def __call__(self, *args, **kwargs):
            with app.app_context():
                return super().__call__(*args, **kwargs)

    celery_app.Task = FlaskContextTask  # type: ignore[assignment]
    celery_app.loader.import_default_modules()
    return celery_app


def ensure_celery_app(app: Flask, state: dict[str, Any]) -> Celery:
    """Return the Celery instance cached in the importer extension state, creating it once."""
    celery_app: Celery | None = state.get("celery_app")
    if celery_app is None:
        celery_app = create_celery_app(app)
        state["celery_app"] = celery_app
    return celery_app


def get_celery_app(app: Flask) -> Celery | None:
    """
    Fetch the Celery instance from the importer extension.

    Returns ``None`` when the importer was never initialised on ``app``.
    """
    state: dict[str, Any] | None = app.extensions.get("importer")  # type: ignore[arg-type]
    if not state:
        return None
    celery_app: Celery | None = state.get("celery_app")
    if celery_app is None and state.get("enabled"):
        celery_app = ensure_celery_app(app, state)
    return celery_app
