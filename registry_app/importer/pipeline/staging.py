"""Helpers for staging spreadsheet rows into ``staging_school_rows``."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from flask import current_app, has_app_context

from registry_app.importer.adapters import SpreadsheetAdapter
from registry_app.importer.contracts import get_school_field_specs
from registry_app.models.base import db
from registry_app.models.importer.schema import ImportRun, StagingSchoolRow

BATCH_SIZE = 500

STAGED_FIELDS = tuple(spec.name for spec in get_school_field_specs())


def _commit_staging_batch(session=None) -> None:
    session = session or db.session
    if has_app_context() and current_app.config.get("TESTING"):
        session.flush()
    else:
        session.commit()


@dataclass
class StagingSummary:
    """Outcome statistics for a staging operation."""

    rows_processed: int
    rows_staged: int
    rows_skipped_blank: int
    ignored_headers: tuple[str, ...] = ()


def build_staging_row(import_run: ImportRun, file_row_number: int, raw: dict, normalized: dict) -> StagingSchoolRow:
    values = {field: _as_text(normalized.get(field)) for field in STAGED_FIELDS}
    return StagingSchoolRow(
        run_id=import_run.id,
        file_row_number=file_row_number,
        raw_payload=dict(raw),
        normalized_payload=dict(normalized),
        **values,
    )


def _as_text(value: object | None) -> str | None:
    if value is None:
        return None
    return str(value)


def stage_rows_from_file(
    import_run: ImportRun,
    path: Path | str,
    *,
    batch_size: int = BATCH_SIZE,
    checkpoint: Callable[[int], None] | None = None,
    session=None,
) -> StagingSummary:
    """
    Parse ``path`` and stage every non-blank row for ``import_run``.

    ``checkpoint`` is called with the running staged count after each batch;
    it may raise to abort (cancellation or timeout). Rows already flushed are
    kept.
    """

    session = session or db.session
    adapter = SpreadsheetAdapter(path)
    pending: list[StagingSchoolRow] = []
    rows_staged = 0

    for parsed in adapter.iter_rows():
        pending.append(build_staging_row(import_run, parsed.file_row_number, parsed.raw, parsed.normalized))
        rows_staged += 1

        if len(pending) >= batch_size:
            session.add_all(pending)
            _commit_staging_batch(session)
            pending.clear()
            if checkpoint is not None:
                checkpoint(rows_staged)

    if pending:
        session.add_all(pending)
        _commit_staging_batch(session)

    return StagingSummary(
        rows_processed=adapter.statistics.rows_processed,
        rows_staged=rows_staged,
        rows_skipped_blank=adapter.statistics.rows_skipped_blank,
        ignored_headers=adapter.statistics.ignored_headers,
    )


def update_staging_counts(import_run: ImportRun, summary: StagingSummary) -> None:
    counts = dict(import_run.counts_json or {})
    counts["staging"] = {
        "rows_processed": summary.rows_processed,
        "rows_staged": summary.rows_staged,
        "rows_skipped_blank": summary.rows_skipped_blank,
    }
    import_run.counts_json = counts

    metrics = dict(import_run.metrics_json or {})
    metrics["staging"] = {
        "rows_skipped_blank": summary.rows_skipped_blank,
        "ignored_headers": list(summary.ignored_headers),
    }
    import_run.metrics_json = metrics
    import_run.total_rows = summary.rows_staged
