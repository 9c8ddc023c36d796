import json
from typing import Any, Dict

from flask import Flask

from registry_app.importer import get_celery_app, init_importer
from registry_app.importer.celery_app import DEFAULT_QUEUE_NAME, TIME_LIMIT_GRACE_SECONDS
from registry_app.importer.tasks import HEALTHCHECK_TASK_NAME, PROCESS_TASK_NAME


def build_importer_app(**overrides) -> Flask:
    """
    Construct a minimal Flask app with the importer enabled for worker tests.
    """
    instance_path_override = overrides.pop("INSTANCE_PATH", None)
    if instance_path_override:
        app = Flask(__name__, instance_path=instance_path_override)
    else:
        app = Flask(__name__)
    app.config.update(
        SECRET_KEY="test-secret",
        TESTING=True,
        IMPORTER_ENABLED=True,
        IMPORTER_FORMATS=("csv",),
    )
    app.config.update(overrides)
    init_importer(app)
    return app


def test_celery_defaults_to_sqlite_transport(tmp_path):
    instance_dir = tmp_path / "instance"
    instance_dir.mkdir()
    sqlite_path = instance_dir / "custom.sqlite"

    app = build_importer_app(
        CELERY_SQLITE_PATH=str(sqlite_path),
        CELERY_CONFIG={"task_always_eager": True, "task_eager_propagates": True},
        INSTANCE_PATH=str(instance_dir),
        IMPORTER_PROCESSING_TIMEOUT_SECONDS=120,
    )

    celery_app = get_celery_app(app)
    assert celery_app is not None
    assert celery_app.conf.broker_url.startswith("sqla+sqlite:///")
    assert sqlite_path.name in celery_app.conf.broker_url
    assert celery_app.conf.result_backend.startswith("db+sqlite:///")
    assert celery_app.conf.task_default_queue == DEFAULT_QUEUE_NAME
    assert celery_app.conf.worker_prefetch_multiplier == 1
    assert celery_app.conf.task_soft_time_limit == 120 + TIME_LIMIT_GRACE_SECONDS
    assert PROCESS_TASK_NAME in celery_app.tasks
    assert HEALTHCHECK_TASK_NAME in celery_app.tasks


def test_celery_config_json_string_is_applied(tmp_path):
    app = build_importer_app(
        CELERY_CONFIG=json.dumps({"worker_prefetch_multiplier": 4}),
        INSTANCE_PATH=str(tmp_path),
    )

    assert get_celery_app(app).conf.worker_prefetch_multiplier == 4


def test_worker_ping_cli(tmp_path):
    app = build_importer_app(
        IMPORTER_WORKER_ENABLED=True,
        CELERY_CONFIG={"task_always_eager": True, "task_eager_propagates": True},
        INSTANCE_PATH=str(tmp_path),
    )

    runner = app.test_cli_runner()
    result = runner.invoke(args=["importer", "worker", "ping"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["status"] == "ok"
    assert "timestamp" in payload
    assert "worker_hostname" in payload


def test_worker_run_invokes_celery(monkeypatch, tmp_path):
    app = build_importer_app(
        IMPORTER_WORKER_ENABLED=True,
        CELERY_CONFIG={"task_always_eager": True, "task_eager_propagates": True},
        INSTANCE_PATH=str(tmp_path),
    )
    celery_app = get_celery_app(app)
    assert celery_app is not None

    calls: Dict[str, Any] = {}

    def fake_worker_main(argv=None):
        calls["argv"] = argv

    monkeypatch.setattr(celery_app, "worker_main", fake_worker_main)

    runner = app.test_cli_runner()
    result = runner.invoke(
        args=[
            "importer",
            "worker",
            "run",
            "--loglevel",
            "debug",
            "--concurrency",
            "2",
            "--pool",
            "solo",
            "--queues",
            "imports",
        ]
    )

    assert result.exit_code == 0, result.output
    assert calls["argv"] == [
        "worker",
        "--loglevel",
        "debug",
        "-Q",
        "imports",
        "--concurrency",
        "2",
        "--pool",
        "solo",
    ]


def test_worker_group_warns_when_worker_disabled(monkeypatch, tmp_path):
    app = build_importer_app(INSTANCE_PATH=str(tmp_path))
    monkeypatch.setattr(get_celery_app(app), "worker_main", lambda argv=None: None)

    runner = app.test_cli_runner()
    result = runner.invoke(args=["importer", "worker", "run"])

    assert result.exit_code == 0
    assert "IMPORTER_WORKER_ENABLED is false" in result.output
