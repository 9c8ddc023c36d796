import json

import pytest
from flask import Flask

from registry_app.importer import IMPORTER_EXTENSION_KEY, get_format_readiness, init_importer
from registry_app.importer.registry import FormatDescriptor, get_format_registry, resolve_formats


def build_app(enabled=False, formats=()):
    app = Flask(__name__)
    app.config.update(
        SECRET_KEY="test-secret",
        TESTING=True,
        IMPORTER_ENABLED=enabled,
        IMPORTER_FORMATS=tuple(formats),
    )

    init_importer(app)
    return app


def test_importer_disabled_registers_stub_cli(monkeypatch):
    called = {"flag": False}

    def record_call(*args, **kwargs):
        called["flag"] = True
        return ()

    monkeypatch.setattr("registry_app.importer.resolve_formats", record_call)

    app = build_app(enabled=False)

    assert called["flag"] is False, "resolve_formats should not run when importer disabled"
    assert "school_imports" not in app.blueprints
    assert get_format_readiness(app) == {}

    runner = app.test_cli_runner()
    result = runner.invoke(args=["importer"])
    assert result.exit_code != 0
    assert "Importer commands are unavailable" in result.output


def test_importer_enabled_registers_blueprint_and_cli():
    app = build_app(enabled=True, formats=("csv",))

    assert "school_imports" in app.blueprints
    assert "school_imports.school_imports_health" in app.view_functions

    client = app.test_client()
    response = client.get("/school-imports/health")
    assert response.status_code == 200
    payload = json.loads(response.data)
    assert payload["enabled"] is True
    assert payload["queue"] == "school_imports"
    assert payload["formats"][0]["name"] == "csv"

    runner = app.test_cli_runner()
    result = runner.invoke(args=["importer"])
    assert result.exit_code == 0
    assert "- csv" in result.output

    importer_state = app.extensions[IMPORTER_EXTENSION_KEY]
    assert importer_state["enabled"] is True
    assert importer_state["active_formats"][0].name == "csv"
    assert get_format_readiness(app)["csv"]["status"] == "ready"


def test_formats_with_missing_readers_are_not_activated(monkeypatch):
    registry = dict(get_format_registry())
    registry["xlsx"] = FormatDescriptor(
        name="xlsx",
        title="Excel Workbook",
        optional_dependencies=("registry_app_missing_reader",),
    )
    monkeypatch.setattr("registry_app.importer.get_format_registry", lambda: registry)

    app = build_app(enabled=True, formats=("csv", "xlsx"))

    readiness = get_format_readiness(app)
    assert readiness["xlsx"]["status"] == "missing_dependencies"
    assert readiness["xlsx"]["missing_dependencies"] == ("registry_app_missing_reader",)
    assert [descriptor.name for descriptor in app.extensions[IMPORTER_EXTENSION_KEY]["active_formats"]] == ["csv"]


def test_unknown_formats_are_rejected():
    with pytest.raises(ValueError, match="Unknown importer formats configured: ods"):
        resolve_formats(("csv", "ods"))
