"""
Drive an UPLOADED run through parsing, validation and council matching.

Row evaluation is pure (validator + matcher over an immutable hierarchy
snapshot) and fans out over a thread pool. Only the coordinating thread
touches the database: it writes one batch of outcomes at a time under the
run lock and re-reads the run status between batches so a cancel request
stops further work without disturbing rows already staged.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Mapping

from flask import current_app, has_app_context

from config.monitoring import ImporterMonitoring
from registry_app.importer.errors import ImportPipelineError, ProcessingTimeoutError, RunLockedError, TransitionError
from registry_app.importer.pipeline.council_matcher import (
    DEFAULT_FUZZY_THRESHOLD,
    DEFAULT_TIE_MARGIN,
    CouncilMatcher,
    MatchResult,
)
from registry_app.importer.pipeline.hierarchy import load_hierarchy_index
from registry_app.importer.pipeline.run_controller import complete_processing, fail_run, get_run, run_lock, transition
from registry_app.importer.pipeline.staging import BATCH_SIZE, stage_rows_from_file, update_staging_counts
from registry_app.importer.pipeline.validation import (
    GeoBounds,
    RowValidation,
    ValidationContext,
    decide_validation_status,
    find_duplicate_emis_codes,
    validate_fields,
)
from registry_app.models.base import db
from registry_app.models.importer.schema import ImportRun, ImportRunStatus, StagingSchoolRow, ValidationStatus

logger = logging.getLogger(__name__)

DEFAULT_POOL_SIZE = 4
DEFAULT_PROCESSING_TIMEOUT_SECONDS = 600

ProgressCallback = Callable[[ImportRun, int, int], None]


class ProcessingCancelled(Exception):
    """Internal signal: the run left PROCESSING while rows were in flight."""


@dataclass(frozen=True)
class RowInput:
    row_id: int
    file_row_number: int
    payload: Mapping[str, Any]
    duplicate_of: int | None


@dataclass(frozen=True)
class RowOutcome:
    row_id: int
    validation: RowValidation
    match: MatchResult
    status: ValidationStatus


@dataclass(frozen=True)
class ProcessingSettings:
    pool_size: int = DEFAULT_POOL_SIZE
    batch_size: int = BATCH_SIZE
    timeout_seconds: float = DEFAULT_PROCESSING_TIMEOUT_SECONDS
    fuzzy_threshold: float = DEFAULT_FUZZY_THRESHOLD
    tie_margin: float = DEFAULT_TIE_MARGIN
    geo_bounds: GeoBounds | None = None

    @classmethod
    def from_config(cls, config: Mapping[str, Any] | None = None) -> "ProcessingSettings":
        if config is None:
            config = current_app.config if has_app_context() else {}
        return cls(
            pool_size=max(1, int(config.get("IMPORTER_WORKER_POOL_SIZE", DEFAULT_POOL_SIZE))),
            batch_size=max(1, int(config.get("IMPORTER_BATCH_SIZE", BATCH_SIZE))),
            timeout_seconds=float(config.get("IMPORTER_PROCESSING_TIMEOUT_SECONDS", DEFAULT_PROCESSING_TIMEOUT_SECONDS)),
            fuzzy_threshold=float(config.get("IMPORTER_FUZZY_THRESHOLD", DEFAULT_FUZZY_THRESHOLD)),
            tie_margin=float(config.get("IMPORTER_FUZZY_TIE_MARGIN", DEFAULT_TIE_MARGIN)),
            geo_bounds=GeoBounds.parse(config.get("IMPORTER_GEO_BOUNDS")),
        )


def evaluate_row(item: RowInput, matcher: CouncilMatcher, geo_bounds: GeoBounds | None) -> RowOutcome:
    """Validate and match one row; safe to call from worker threads."""

    payload = item.payload
    validation = validate_fields(
        payload,
        ValidationContext(row_number=item.file_row_number, duplicate_of=item.duplicate_of, geo_bounds=geo_bounds),
    )
    match = matcher.match(
        payload.get("council"),
        district_hint=payload.get("district"),
        region_hint=payload.get("region"),
    )
    return RowOutcome(
        row_id=item.row_id,
        validation=validation,
        match=match,
        status=decide_validation_status(validation.has_errors, match.match_type),
    )


def apply_outcome(row: StagingSchoolRow, outcome: RowOutcome) -> None:
    match = outcome.match
    row.validation_status = outcome.status
    row.validation_errors = outcome.validation.error_records()
    row.match_type = match.match_type
    row.matched_council_id = match.council_id
    row.match_confidence = match.confidence
    row.match_source_alias_id = match.alias_id
    row.match_candidates = [dict(candidate) for candidate in match.candidates]
    row.match_notes = (match.notes or "")[:255] or None
    row.is_duplicate = outcome.validation.is_duplicate
    row.is_geo_outlier = outcome.validation.is_geo_outlier


def _current_status(session, run_id: int) -> ImportRunStatus | None:
    return session.query(ImportRun.status).filter(ImportRun.id == run_id).scalar()


def _check(session, run_id: int, deadline: float) -> None:
    if time.monotonic() > deadline:
        raise ProcessingTimeoutError(
            f"Import run {run_id} exceeded its processing time limit.", details={"importRunId": run_id}
        )
    if _current_status(session, run_id) != ImportRunStatus.PROCESSING:
        raise ProcessingCancelled()


def process_run(
    run_id: int,
    *,
    settings: ProcessingSettings | None = None,
    progress_callback: ProgressCallback | None = None,
    session=None,
) -> ImportRun:
    """
    Parse, validate and match every row of an UPLOADED run.

    Returns the run in READY_FOR_REVIEW, READY_TO_COMMIT or CANCELLED. Parse
    errors, timeouts and infrastructure failures leave it FAILED and are
    re-raised.
    """

    session = session or db.session
    settings = settings or ProcessingSettings.from_config()
    started = time.perf_counter()
    deadline = time.monotonic() + settings.timeout_seconds

    with run_lock(run_id, wait=True, session=session):
        run = get_run(run_id, session=session, refresh=True)
        if run.status != ImportRunStatus.UPLOADED:
            raise TransitionError(run.id, run.status, ImportRunStatus.PROCESSING)
        transition(run, ImportRunStatus.PROCESSING, reason="Processing started.", session=session)
        session.commit()

    try:
        _process(run_id, settings=settings, deadline=deadline, progress_callback=progress_callback, session=session)
    except ProcessingCancelled:
        # rows staged before the cancel stay for audit
        session.commit()
        logger.info("Import run %s processing stopped after cancel", run_id, extra={"importer_run_id": run_id})
    except Exception as exc:
        session.rollback()
        summary = exc.message if isinstance(exc, ImportPipelineError) else f"{type(exc).__name__}: {exc}"
        try:
            with run_lock(run_id, wait=True, session=session):
                fail_run(run_id, summary, session=session)
        except RunLockedError as lock_exc:
            # a stuck lease must not leave the run in PROCESSING
            logger.warning(
                "Import run %s lock unavailable while recording failure; writing it without the lock",
                run_id,
                extra={"importer_run_id": run_id, "importer_lock_holder": lock_exc.details.get("holder")},
            )
            session.rollback()
            fail_run(run_id, summary, session=session)
        ImporterMonitoring.record_processing(status="failed", duration_seconds=time.perf_counter() - started)
        logger.error(
            "Import run %s processing failed", run_id, extra={"importer_run_id": run_id, "importer_error": summary}
        )
        raise

    run = get_run(run_id, session=session, refresh=True)
    ImporterMonitoring.record_processing(
        status=run.status.value.lower(), duration_seconds=time.perf_counter() - started
    )
    return run


def _process(
    run_id: int,
    *,
    settings: ProcessingSettings,
    deadline: float,
    progress_callback: ProgressCallback | None,
    session,
) -> None:
    run = get_run(run_id, session=session)
    if not run.file_path or not Path(run.file_path).exists():
        raise FileNotFoundError(f"Upload for import run {run_id} is missing: {run.file_path}")

    staging_summary = stage_rows_from_file(
        run,
        run.file_path,
        batch_size=settings.batch_size,
        checkpoint=lambda _staged: _check(session, run_id, deadline),
        session=session,
    )
    with run_lock(run_id, wait=True, session=session):
        update_staging_counts(get_run(run_id, session=session), staging_summary)
        session.commit()
    logger.info(
        "Import run %s staged %s rows",
        run_id,
        staging_summary.rows_staged,
        extra={"importer_run_id": run_id, "importer_rows_staged": staging_summary.rows_staged},
    )

    rows = (
        session.query(StagingSchoolRow)
        .filter(StagingSchoolRow.run_id == run_id)
        .order_by(StagingSchoolRow.file_row_number)
        .all()
    )
    duplicates = find_duplicate_emis_codes((row.file_row_number, row.emis_code) for row in rows)
    inputs = [
        RowInput(
            row_id=row.id,
            file_row_number=row.file_row_number,
            payload=dict(row.normalized_payload or {}),
            duplicate_of=duplicates.get(row.file_row_number),
        )
        for row in rows
    ]
    row_ids = [row.id for row in rows]
    total = len(inputs)
    matcher = CouncilMatcher(
        load_hierarchy_index(session),
        threshold=settings.fuzzy_threshold,
        tie_margin=settings.tie_margin,
    )

    processed = 0
    with ThreadPoolExecutor(max_workers=settings.pool_size, thread_name_prefix=f"import-run-{run_id}") as executor:
        for start in range(0, total, settings.batch_size):
            _check(session, run_id, deadline)
            batch = inputs[start : start + settings.batch_size]
            futures = [executor.submit(evaluate_row, item, matcher, settings.geo_bounds) for item in batch]
            try:
                outcomes = [future.result(timeout=max(0.0, deadline - time.monotonic())) for future in futures]
            except FutureTimeoutError as exc:
                for future in futures:
                    future.cancel()
                raise ProcessingTimeoutError(
                    f"Import run {run_id} exceeded its processing time limit.", details={"importRunId": run_id}
                ) from exc

            with run_lock(run_id, wait=True, session=session):
                if _current_status(session, run_id) != ImportRunStatus.PROCESSING:
                    raise ProcessingCancelled()
                _write_batch(session, run_id, outcomes)
                processed += len(outcomes)
                session.commit()

            ImporterMonitoring.record_rows(outcomes)
            if progress_callback is not None:
                progress_callback(get_run(run_id, session=session), processed, total)

    with run_lock(run_id, wait=True, session=session):
        run = get_run(run_id, session=session, refresh=True)
        if run.status != ImportRunStatus.PROCESSING:
            raise ProcessingCancelled()
        _refresh_counters(session, run, row_ids)
        complete_processing(run, session=session)
        session.commit()


def _write_batch(session, run_id: int, outcomes: list[RowOutcome]) -> None:
    by_id = {
        row.id: row
        for row in session.query(StagingSchoolRow).filter(
            StagingSchoolRow.id.in_([outcome.row_id for outcome in outcomes])
        )
    }
    for outcome in outcomes:
        apply_outcome(by_id[outcome.row_id], outcome)
    session.flush()
    run = session.get(ImportRun, run_id)
    run.processed_rows = (run.processed_rows or 0) + len(outcomes)
    run.successful_rows = (run.successful_rows or 0) + sum(
        1 for outcome in outcomes if outcome.status == ValidationStatus.VALID
    )
    run.error_rows = (run.error_rows or 0) + sum(1 for outcome in outcomes if outcome.status == ValidationStatus.ERROR)


def _refresh_counters(session, run: ImportRun, row_ids: list[int]) -> None:
    run.total_rows = len(row_ids)
    metrics = dict(run.metrics_json or {})
    metrics["processing"] = {
        "rows": len(row_ids),
        "duplicates": session.query(StagingSchoolRow)
        .filter(StagingSchoolRow.run_id == run.id, StagingSchoolRow.is_duplicate.is_(True))
        .count(),
        "geo_outliers": session.query(StagingSchoolRow)
        .filter(StagingSchoolRow.run_id == run.id, StagingSchoolRow.is_geo_outlier.is_(True))
        .count(),
    }
    run.metrics_json = metrics
