"""
School import feature package.

Provides conditional blueprint and CLI registration along with upload format
validation while remaining lightweight when the importer is disabled.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, Mapping, Tuple

from flask import Flask

from registry_app.utils.importer import get_importer_formats, is_importer_enabled

from .celery_app import ensure_celery_app, get_celery_app
from .cli import get_disabled_importer_group, importer_cli
from .pipeline.run_service import ImportRunService, RowFilters
from .registry import FormatDescriptor, get_format_registry, resolve_formats
from .views import school_imports_blueprint

IMPORTER_EXTENSION_KEY = "importer"

__all__ = [
    "init_importer",
    "IMPORTER_EXTENSION_KEY",
    "get_celery_app",
    "ImportRunService",
    "RowFilters",
    "get_format_readiness",
]


def _ensure_extension_state(app: Flask) -> dict:
    state = app.extensions.setdefault(
        IMPORTER_EXTENSION_KEY,
        {
            "enabled": False,
            "configured_formats": (),
            "active_formats": (),
            "worker_enabled": False,
            "celery_app": None,
            "format_readiness": {},
        },
    )
    return state


def _compute_format_readiness(descriptors: Iterable[FormatDescriptor]) -> Dict[str, Dict[str, Any]]:
    readiness: Dict[str, Dict[str, Any]] = {}
    for descriptor in descriptors:
        missing = descriptor.missing_dependencies()
        readiness[descriptor.name] = {
            "name": descriptor.name,
            "title": descriptor.title,
            "optional_dependencies": descriptor.optional_dependencies,
            "status": "ready" if not missing else "missing_dependencies",
            "missing_dependencies": missing,
        }
    return readiness


def _set_cli(app: Flask, enabled: bool) -> None:
    """Register the appropriate CLI group based on flag state."""
    # Avoid duplicate registrations when running tests
    command_name = importer_cli.name
    if command_name in app.cli.commands:
        app.cli.commands.pop(command_name)

    if enabled:
        app.cli.add_command(importer_cli)
    else:
        app.cli.add_command(get_disabled_importer_group())


def init_importer(app: Flask) -> None:
    """
    Conditionally mount the school import blueprint and CLI based on configuration.

    Records importer state inside ``app.extensions['importer']`` for reuse by
    the health endpoint, the CLI and the processing dispatcher.
    """
    enabled = is_importer_enabled(app)
    configured_formats: Tuple[str, ...] = get_importer_formats(app)

    state = _ensure_extension_state(app)
    worker_enabled = bool(app.config.get("IMPORTER_WORKER_ENABLED", False))
    state.update(
        {
            "enabled": enabled,
            "configured_formats": configured_formats,
            "worker_enabled": worker_enabled,
        }
    )

    if not enabled:
        state["active_formats"] = ()
        state["format_readiness"] = {}
        _set_cli(app, enabled=False)
        app.logger.info("Importer disabled via IMPORTER_ENABLED flag; skipping registration.")
        return

    descriptors = tuple(resolve_formats(configured_formats, get_format_registry()))
    readiness_map = _compute_format_readiness(descriptors)
    state["format_readiness"] = readiness_map
    state["active_formats"] = tuple(
        descriptor for descriptor in descriptors if readiness_map[descriptor.name]["status"] == "ready"
    )
    for descriptor in descriptors:
        payload = readiness_map[descriptor.name]
        if payload["status"] != "ready":
            app.logger.warning(
                "Upload format '%s' disabled; missing reader dependencies: %s",
                descriptor.name,
                ", ".join(payload["missing_dependencies"]),
                extra={
                    "importer_format": descriptor.name,
                    "importer_format_missing": list(payload["missing_dependencies"]),
                },
            )

    ensure_celery_app(app, state)

    if school_imports_blueprint.name not in app.blueprints and not getattr(app, "_got_first_request", False):
        app.register_blueprint(school_imports_blueprint)
    elif school_imports_blueprint.name not in app.blueprints:
        app.logger.warning(
            "Importer blueprint registration skipped because the app has already handled its first request."
        )
    _set_cli(app, enabled=True)

    format_names = ", ".join(descriptor.name for descriptor in state["active_formats"]) or "none"
    app.logger.info("Importer enabled with formats: %s", format_names)


def get_format_readiness(app: Flask) -> Mapping[str, Dict[str, Any]]:
    """
    Return cached upload format readiness for the importer extension.
    """
    state = _ensure_extension_state(app)
    return dict(state.get("format_readiness", {}))
