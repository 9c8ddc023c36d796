"""
Importer-specific utilities for handling uploaded files and cleanup.
"""

from __future__ import annotations

import hashlib
import shutil
import time
from pathlib import Path
from typing import Iterable
from uuid import uuid4

from flask import current_app
from werkzeug.datastructures import FileStorage
from werkzeug.utils import secure_filename

from .adapters import SUPPORTED_FORMATS
from .errors import ParseError, UploadTooLargeError

DEFAULT_UPLOAD_SUBDIR = "import_uploads"
DEFAULT_MAX_UPLOAD_MB = 50
_HASH_CHUNK_SIZE = 1024 * 1024


def _normalize_upload_dir(configured_path: str | None, instance_path: str, *, default_subdir: str) -> Path:
    if not configured_path:
        return Path(instance_path) / default_subdir

    candidate = Path(configured_path)
    if candidate.is_absolute():
        return candidate

    return Path(instance_path) / candidate


def resolve_upload_directory(app) -> Path:
    """
    Determine and create (if necessary) the importer upload directory.
    """

    upload_dir = _normalize_upload_dir(
        app.config.get("IMPORTER_UPLOAD_DIR"),
        app.instance_path,
        default_subdir=DEFAULT_UPLOAD_SUBDIR,
    )
    upload_dir.mkdir(parents=True, exist_ok=True)
    return upload_dir


def max_upload_bytes(app) -> int:
    return int(float(app.config.get("IMPORTER_MAX_UPLOAD_MB", DEFAULT_MAX_UPLOAD_MB)) * 1024 * 1024)


def allowed_file(filename: str, allowed_extensions: Iterable[str] = SUPPORTED_FORMATS) -> bool:
    """
    Validate the uploaded filename extension against the allowed set.
    """

    if not filename or "." not in filename:
        return False
    extension = filename.rsplit(".", 1)[1].lower()
    return extension in {ext.lower() for ext in allowed_extensions}


def persist_upload(file_storage: FileStorage, app) -> Path:
    """
    Persist the uploaded file to disk and return the fully-qualified path.

    Files are stored under ``resolve_upload_directory(app)`` using a UUID-based
    filename to avoid collisions. The original extension is preserved so the
    spreadsheet adapter can pick a reader. Oversized files are removed and
    rejected.
    """

    original_name = secure_filename(file_storage.filename or "")
    if not allowed_file(original_name, app.config.get("IMPORTER_FORMATS", SUPPORTED_FORMATS)):
        raise ParseError(
            f"Unsupported file '{file_storage.filename}'. Upload one of: "
            + ", ".join(f".{ext}" for ext in app.config.get("IMPORTER_FORMATS", SUPPORTED_FORMATS))
        )

    upload_dir = resolve_upload_directory(app)
    target_path = upload_dir / f"{uuid4().hex}{Path(original_name).suffix.lower()}"
    file_storage.save(target_path)

    limit = max_upload_bytes(app)
    size = target_path.stat().st_size
    if size > limit:
        cleanup_upload(target_path)
        raise UploadTooLargeError(
            f"'{file_storage.filename}' is {size} bytes; the limit is {limit} bytes.",
            details={"fileSize": size, "maxBytes": limit},
        )
    current_app.logger.debug("Importer upload persisted to %s", target_path)
    return target_path


def file_sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(_HASH_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def cleanup_upload(path: Path) -> None:
    """
    Remove a stored upload, logging but ignoring filesystem errors.
    """

    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        current_app.logger.warning("Failed to remove importer upload %s: %s", path, exc)


def cleanup_stale_uploads(app, *, max_age_hours: float) -> list[Path]:
    """Delete uploads older than ``max_age_hours`` and return what was removed."""

    upload_dir = resolve_upload_directory(app)
    cutoff = time.time() - max_age_hours * 3600
    removed: list[Path] = []
    for candidate in sorted(upload_dir.iterdir()):
        if candidate.is_file() and candidate.stat().st_mtime < cutoff:
            cleanup_upload(candidate)
            removed.append(candidate)
    return removed


def persist_local_file(source: Path, app) -> Path:
    """
    Copy a file from the local filesystem into the upload directory.

    Used by the CLI so command-line uploads follow the same extension and
    size rules as HTTP uploads.
    """

    source = Path(source)
    allowed = app.config.get("IMPORTER_FORMATS", SUPPORTED_FORMATS)
    if not allowed_file(source.name, allowed):
        raise ParseError(
            f"Unsupported file '{source.name}'. Upload one of: " + ", ".join(f".{ext}" for ext in allowed)
        )
    size = source.stat().st_size
    limit = max_upload_bytes(app)
    if size > limit:
        raise UploadTooLargeError(
            f"'{source.name}' is {size} bytes; the limit is {limit} bytes.",
            details={"fileSize": size, "maxBytes": limit},
        )
    target_path = resolve_upload_directory(app) / f"{uuid4().hex}{source.suffix.lower()}"
    shutil.copyfile(source, target_path)
    return target_path
