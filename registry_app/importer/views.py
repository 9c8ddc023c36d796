"""
School import blueprint: upload, status, review, commit and rollback APIs.
"""

from __future__ import annotations

import time
from http import HTTPStatus
from typing import Any, Callable

from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user
from werkzeug.exceptions import RequestEntityTooLarge

from config.monitoring import ImporterMonitoring
from registry_app.importer.errors import ImportPipelineError, InvalidImportRequestError, UploadTooLargeError
from registry_app.importer.pipeline import (
    ImportRunService,
    RowFilters,
    annotate_row,
    cancel_run,
    commit_run,
    create_run,
    exclude_rows,
    resolve_council,
    rollback_run,
    serialize_row,
    serialize_run,
)
from registry_app.importer.tasks import start_processing
from registry_app.importer.utils import cleanup_upload, file_sha256, persist_upload
from registry_app.models.base import db
from registry_app.models.importer.schema import ImportType
from registry_app.utils.importer import is_importer_enabled
from registry_app.utils.permissions import MANAGE_SCHOOL_IMPORTS, VIEW_SCHOOL_IMPORTS, has_permission

from .celery_app import DEFAULT_QUEUE_NAME
from .registry import FormatDescriptor

school_imports_blueprint = Blueprint("school_imports", __name__, url_prefix="/school-imports")

_run_service = ImportRunService()


def _json_error(message: str, status: HTTPStatus, *, code: str, details: dict | None = None):
    return jsonify({"error": message, "code": code, "details": details or {}}), status


def _ensure_importer_enabled_api():
    if not is_importer_enabled(current_app):
        return _json_error("Importer is disabled.", HTTPStatus.NOT_FOUND, code="IMPORTER_DISABLED")
    return None


def _ensure_authenticated_api():
    if not current_user.is_authenticated:
        return _json_error("Authentication required.", HTTPStatus.UNAUTHORIZED, code="UNAUTHENTICATED")
    return None


def _ensure_permission(permission_name: str):
    if not has_permission(current_user, permission_name):
        return _json_error(
            f"Missing {permission_name} permission.",
            HTTPStatus.FORBIDDEN,
            code="FORBIDDEN",
            details={"permission": permission_name},
        )
    return None


def _guard(permission_name: str):
    return (
        _ensure_importer_enabled_api()
        or _ensure_authenticated_api()
        or _ensure_permission(permission_name)
    )


def _current_user_id() -> int | None:
    return current_user.id if current_user.is_authenticated else None


def _execute(endpoint: str, action: Callable[[], tuple[Any, int]], *, run_id: int | None = None):
    """
    Run ``action`` and translate pipeline errors into the JSON error envelope.

    Every call is timed and counted per endpoint and outcome code.
    """
    start_time = time.perf_counter()
    log_extra = {"importer_endpoint": endpoint, "importer_run_id": run_id, "importer_user_id": _current_user_id()}
    try:
        body, status = action()
    except ImportPipelineError as exc:
        db.session.rollback()
        ImporterMonitoring.record_api_request(
            endpoint=endpoint, status=exc.code.lower(), duration_seconds=time.perf_counter() - start_time
        )
        current_app.logger.warning(
            "School import request rejected: %s",
            exc.message,
            extra={**log_extra, "importer_error_code": exc.code, "importer_error_details": exc.details},
        )
        return jsonify(exc.as_dict()), exc.http_status
    except Exception as exc:
        db.session.rollback()
        current_app.logger.exception("School import request failed.", exc_info=exc, extra=log_extra)
        ImporterMonitoring.record_api_request(
            endpoint=endpoint, status="error", duration_seconds=time.perf_counter() - start_time
        )
        return _json_error("Unexpected importer error.", HTTPStatus.INTERNAL_SERVER_ERROR, code="INTERNAL_ERROR")

    duration = time.perf_counter() - start_time
    ImporterMonitoring.record_api_request(endpoint=endpoint, status="ok", duration_seconds=duration)
    current_app.logger.info(
        "School import request handled",
        extra={**log_extra, "importer_duration_ms": round(duration * 1000, 2), "importer_http_status": int(status)},
    )
    return jsonify(body), status


def _json_body() -> dict[str, Any]:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise InvalidImportRequestError("Request body must be a JSON object.")
    return payload


def _flag(value: Any, *, name: str) -> bool:
    if value in (None, ""):
        return False
    if isinstance(value, bool):
        return value
    normalized = str(value).strip().lower()
    if normalized in ("1", "true", "yes", "y", "on"):
        return True
    if normalized in ("0", "false", "no", "n", "off"):
        return False
    raise InvalidImportRequestError(f"'{name}' must be a boolean.", details={name: value})


def _row_ids(payload: dict[str, Any]) -> list[int]:
    raw = payload.get("stagingRowIds")
    if not isinstance(raw, list) or not raw:
        raise InvalidImportRequestError("stagingRowIds must be a non-empty list of row ids.")
    try:
        return [int(value) for value in raw]
    except (TypeError, ValueError):
        raise InvalidImportRequestError("stagingRowIds must contain integers only.", details={"stagingRowIds": raw}) from None


def _import_type(value: str | None) -> ImportType:
    if not value:
        return ImportType.SCHOOLS_BULK
    try:
        return ImportType(value.strip().upper())
    except ValueError:
        allowed = ", ".join(member.value for member in ImportType)
        raise InvalidImportRequestError(
            f"Unsupported importType '{value}'; expected one of {allowed}.", details={"importType": value}
        ) from None


def _serialize_format(descriptor: FormatDescriptor) -> dict:
    return {
        "name": descriptor.name,
        "title": descriptor.title,
        "summary": descriptor.summary,
        "optional_dependencies": list(descriptor.optional_dependencies),
    }


@school_imports_blueprint.get("/health")
def school_imports_health():
    """
    Lightweight health endpoint proving the importer blueprint mounted correctly.
    """
    importer_state = current_app.extensions.get("importer", {})
    formats = importer_state.get("active_formats", ())
    return (
        jsonify(
            {
                "status": "ok",
                "enabled": importer_state.get("enabled", False),
                "worker_enabled": importer_state.get("worker_enabled", False),
                "queue": DEFAULT_QUEUE_NAME,
                "formats": [_serialize_format(descriptor) for descriptor in formats],
            }
        ),
        200,
    )


@school_imports_blueprint.post("/upload")
def school_imports_upload():
    guard_response = _guard(MANAGE_SCHOOL_IMPORTS)
    if guard_response:
        return guard_response

    def action():
        try:
            file_storage = request.files.get("file")
        except RequestEntityTooLarge:
            raise UploadTooLargeError("Uploaded file exceeds the request size limit.") from None
        if file_storage is None or not file_storage.filename:
            raise InvalidImportRequestError("A spreadsheet must be provided in the 'file' field.")

        dry_run = _flag(request.form.get("dryRun"), name="dryRun")
        authoritative = _flag(request.form.get("authoritative"), name="authoritative")
        import_type = _import_type(request.form.get("importType"))
        if dry_run and authoritative:
            raise InvalidImportRequestError(
                "dryRun and authoritative are mutually exclusive.",
                details={"dryRun": True, "authoritative": True},
            )

        stored_path = persist_upload(file_storage, current_app)
        try:
            run = create_run(
                file_name=file_storage.filename,
                file_size=stored_path.stat().st_size,
                file_path=str(stored_path),
                file_hash=file_sha256(stored_path),
                mime_type=file_storage.mimetype,
                import_type=import_type,
                dry_run=dry_run,
                authoritative=authoritative,
                user_id=_current_user_id(),
            )
        except Exception:
            cleanup_upload(stored_path)
            raise

        run_id = run.id
        try:
            start_processing(current_app, run_id)
        except ImportPipelineError as exc:
            exc.details.setdefault("importRunId", run_id)
            raise

        run = _run_service.get_run(run_id)
        db.session.refresh(run)
        return (
            {
                "importRunId": run.id,
                "status": run.status.value,
                "fileName": run.file_name,
                "fileSize": run.file_size,
            },
            HTTPStatus.ACCEPTED,
        )

    return _execute("upload", action)


@school_imports_blueprint.get("/<int:run_id>/status")
def school_imports_status(run_id: int):
    guard_response = _guard(VIEW_SCHOOL_IMPORTS)
    if guard_response:
        return guard_response
    return _execute("status", lambda: (_run_service.status_payload(run_id), HTTPStatus.OK), run_id=run_id)


@school_imports_blueprint.get("/<int:run_id>/rows")
def school_imports_rows(run_id: int):
    guard_response = _guard(VIEW_SCHOOL_IMPORTS)
    if guard_response:
        return guard_response

    def action():
        raw = request.args
        filters = RowFilters.coerce(
            page=raw.get("page"),
            page_size=raw.get("pageSize"),
            validation_statuses=_split_csv(raw.get("validationStatus")),
            match_types=_split_csv(raw.get("matchType")),
            has_errors=raw.get("hasErrors"),
            search=raw.get("search"),
            default_page_size=int(current_app.config.get("IMPORTER_ROWS_PAGE_SIZE_DEFAULT", 50)),
        )
        result = _run_service.list_rows(run_id, filters)
        return (
            {
                "rows": [serialize_row(row) for row in result.items],
                "total": result.total,
                "page": result.page,
                "pageSize": result.page_size,
                "totalPages": result.total_pages,
            },
            HTTPStatus.OK,
        )

    return _execute("rows", action, run_id=run_id)


@school_imports_blueprint.post("/<int:run_id>/resolve-council")
def school_imports_resolve_council(run_id: int):
    guard_response = _guard(MANAGE_SCHOOL_IMPORTS)
    if guard_response:
        return guard_response

    def action():
        payload = _json_body()
        row_ids = _row_ids(payload)
        try:
            council_id = int(payload.get("councilId"))
        except (TypeError, ValueError):
            raise InvalidImportRequestError("councilId must be an integer.", details={"councilId": payload.get("councilId")}) from None
        alias_name = payload.get("aliasName")
        result = resolve_council(
            run_id,
            row_ids,
            council_id,
            create_alias=_flag(payload.get("createAlias"), name="createAlias"),
            alias_name=alias_name.strip() if isinstance(alias_name, str) and alias_name.strip() else None,
            user_id=_current_user_id(),
        )
        body = {"updated": result.updated, "status": result.status.value}
        if result.alias_id is not None:
            body["aliasId"] = result.alias_id
        return body, HTTPStatus.OK

    return _execute("resolve_council", action, run_id=run_id)


@school_imports_blueprint.post("/<int:run_id>/exclude-rows")
def school_imports_exclude_rows(run_id: int):
    guard_response = _guard(MANAGE_SCHOOL_IMPORTS)
    if guard_response:
        return guard_response

    def action():
        payload = _json_body()
        result = exclude_rows(
            run_id,
            _row_ids(payload),
            reason=payload.get("reason"),
            user_id=_current_user_id(),
        )
        return {"updated": result.updated, "status": result.status.value}, HTTPStatus.OK

    return _execute("exclude_rows", action, run_id=run_id)


@school_imports_blueprint.post("/<int:run_id>/rows/<int:row_id>/notes")
def school_imports_annotate_row(run_id: int, row_id: int):
    guard_response = _guard(MANAGE_SCHOOL_IMPORTS)
    if guard_response:
        return guard_response

    def action():
        notes = _json_body().get("notes")
        if not isinstance(notes, str):
            raise InvalidImportRequestError("notes must be a string.")
        row = annotate_row(run_id, row_id, notes, user_id=_current_user_id())
        return {"row": serialize_row(row)}, HTTPStatus.OK

    return _execute("annotate_row", action, run_id=run_id)


@school_imports_blueprint.post("/<int:run_id>/commit")
def school_imports_commit(run_id: int):
    guard_response = _guard(MANAGE_SCHOOL_IMPORTS)
    if guard_response:
        return guard_response

    def action():
        payload = _json_body()
        result = commit_run(
            run_id,
            confirm_overwrites=_flag(payload.get("confirmOverwrites"), name="confirmOverwrites"),
            user_id=_current_user_id(),
        )
        run = _run_service.get_run(run_id)
        return {"status": run.status.value, **result.as_dict()}, HTTPStatus.OK

    return _execute("commit", action, run_id=run_id)


@school_imports_blueprint.post("/<int:run_id>/cancel")
def school_imports_cancel(run_id: int):
    guard_response = _guard(MANAGE_SCHOOL_IMPORTS)
    if guard_response:
        return guard_response

    def action():
        reason = _json_body().get("reason")
        run = cancel_run(run_id, user_id=_current_user_id(), reason=reason)
        return {"status": run.status.value}, HTTPStatus.OK

    return _execute("cancel", action, run_id=run_id)


@school_imports_blueprint.post("/<int:run_id>/rollback")
def school_imports_rollback(run_id: int):
    guard_response = _guard(MANAGE_SCHOOL_IMPORTS)
    if guard_response:
        return guard_response

    def action():
        result = rollback_run(run_id, user_id=_current_user_id())
        run = _run_service.get_run(run_id)
        return {"status": run.status.value, **result.as_dict()}, HTTPStatus.OK

    return _execute("rollback", action, run_id=run_id)


@school_imports_blueprint.get("/recent")
def school_imports_recent():
    guard_response = _guard(VIEW_SCHOOL_IMPORTS)
    if guard_response:
        return guard_response

    def action():
        runs = _run_service.recent_runs(limit=request.args.get("limit"), status=request.args.get("status"))
        return {"runs": [serialize_run(run) for run in runs]}, HTTPStatus.OK

    return _execute("recent", action)


@school_imports_blueprint.get("/council-hierarchy")
def school_imports_council_hierarchy():
    guard_response = _guard(VIEW_SCHOOL_IMPORTS)
    if guard_response:
        return guard_response
    return _execute("council_hierarchy", lambda: ({"regions": _run_service.council_hierarchy()}, HTTPStatus.OK))


def _split_csv(value: str | None):
    if value in (None, "", ()):
        return ()
    return tuple(token.strip() for token in value.split(",") if token.strip())
