from __future__ import annotations

from pathlib import Path

import pytest

from registry_app.importer.errors import ParseError, UploadTooLargeError
from registry_app.importer.utils import (
    allowed_file,
    file_sha256,
    max_upload_bytes,
    persist_local_file,
    resolve_upload_directory,
)


@pytest.mark.parametrize(
    "filename, expected",
    [("schools.csv", True), ("Schools.XLSX", True), ("legacy.xls", True), ("schools.ods", False), ("csv", False), ("", False)],
)
def test_allowed_file(filename, expected):
    assert allowed_file(filename) is expected


def test_relative_upload_dir_resolves_under_instance_path(importer_app, monkeypatch):
    monkeypatch.setitem(importer_app.config, "IMPORTER_UPLOAD_DIR", "school_uploads")

    upload_dir = resolve_upload_directory(importer_app)

    assert upload_dir == Path(importer_app.instance_path) / "school_uploads"
    assert upload_dir.is_dir()
    upload_dir.rmdir()


def test_persist_local_file_copies_with_a_unique_name(importer_app, tmp_path):
    source = tmp_path / "Schools.CSV"
    source.write_text("School Name\n", encoding="utf-8")

    first = persist_local_file(source, importer_app)
    second = persist_local_file(source, importer_app)

    assert first != second
    assert first.suffix == ".csv"
    assert first.read_text(encoding="utf-8") == "School Name\n"
    assert file_sha256(first) == file_sha256(second)


def test_persist_local_file_rejects_unsupported_extensions(importer_app, tmp_path):
    source = tmp_path / "schools.json"
    source.write_text("{}", encoding="utf-8")

    with pytest.raises(ParseError, match="Upload one of: .csv, .xlsx, .xls"):
        persist_local_file(source, importer_app)


def test_persist_local_file_enforces_the_size_limit(importer_app, tmp_path, monkeypatch):
    monkeypatch.setitem(importer_app.config, "IMPORTER_MAX_UPLOAD_MB", 0.001)
    source = tmp_path / "big.csv"
    source.write_bytes(b"x" * (max_upload_bytes(importer_app) + 1))

    with pytest.raises(UploadTooLargeError) as excinfo:
        persist_local_file(source, importer_app)

    assert excinfo.value.details["maxBytes"] == 1048
    assert list(resolve_upload_directory(importer_app).iterdir()) == []
