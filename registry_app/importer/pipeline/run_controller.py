"""
Lifecycle authority for import runs.

Every status change goes through :func:`transition`, which checks the
allowed-transitions table, stamps timestamps, appends an ``ImportRunEvent``
and counts the move in Prometheus. Callers hold :func:`run_lock` while they
transition; the lock is an in-process mutex plus a database lease so a web
process and a Celery worker exclude each other too.

Operator entry points (commit, cancel, rollback) live here as well so the
engines never write ``status`` themselves.
"""

from __future__ import annotations

import logging
import os
import socket
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Iterator
from uuid import uuid4

from flask import current_app, has_app_context
from sqlalchemy import func, or_, update

from config.monitoring import ImporterMonitoring
from registry_app.importer.errors import (
    CommitConflictError,
    ImportPipelineError,
    InvalidImportRequestError,
    OverwriteConfirmationRequired,
    RollbackConflictError,
    RunLockedError,
    RunNotFoundError,
    TransitionError,
)
from registry_app.importer.pipeline.commit_engine import apply_commit
from registry_app.importer.pipeline.rollback_engine import reverse_changeset
from registry_app.models.base import db
from registry_app.models.importer.schema import (
    ImportRun,
    ImportRunEvent,
    ImportRunStatus,
    ImportType,
    MatchType,
    StagingSchoolRow,
    ValidationStatus,
)

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TTL_SECONDS = 900
DEFAULT_LOCK_WAIT_SECONDS = 5.0
DEFAULT_COMMIT_TIMEOUT_SECONDS = 300

ALLOWED_TRANSITIONS: dict[ImportRunStatus, frozenset[ImportRunStatus]] = {
    ImportRunStatus.UPLOADED: frozenset(
        {ImportRunStatus.PROCESSING, ImportRunStatus.CANCELLED, ImportRunStatus.FAILED}
    ),
    ImportRunStatus.PROCESSING: frozenset(
        {
            ImportRunStatus.READY_FOR_REVIEW,
            ImportRunStatus.READY_TO_COMMIT,
            ImportRunStatus.CANCELLED,
            ImportRunStatus.FAILED,
        }
    ),
    ImportRunStatus.READY_FOR_REVIEW: frozenset({ImportRunStatus.READY_TO_COMMIT, ImportRunStatus.CANCELLED}),
    ImportRunStatus.READY_TO_COMMIT: frozenset(
        {ImportRunStatus.COMMITTED, ImportRunStatus.CANCELLED, ImportRunStatus.FAILED}
    ),
    ImportRunStatus.COMMITTED: frozenset({ImportRunStatus.ROLLED_BACK}),
    ImportRunStatus.CANCELLED: frozenset(),
    ImportRunStatus.FAILED: frozenset(),
    ImportRunStatus.ROLLED_BACK: frozenset(),
}

CANCELLABLE_STATUSES = frozenset(
    {
        ImportRunStatus.UPLOADED,
        ImportRunStatus.PROCESSING,
        ImportRunStatus.READY_FOR_REVIEW,
        ImportRunStatus.READY_TO_COMMIT,
    }
)
REVIEWABLE_STATUSES = frozenset({ImportRunStatus.READY_FOR_REVIEW, ImportRunStatus.READY_TO_COMMIT})
_FINISHED_STATUSES = frozenset(
    {
        ImportRunStatus.COMMITTED,
        ImportRunStatus.CANCELLED,
        ImportRunStatus.FAILED,
        ImportRunStatus.ROLLED_BACK,
    }
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _config_value(key: str, default):
    if has_app_context():
        return current_app.config.get(key, default)
    return default


# ---------------------------------------------------------------------------
# Locking
# ---------------------------------------------------------------------------


class RunLockRegistry:
    """Process-wide map of run id -> mutex."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[int, threading.Lock] = {}

    def lock_for(self, run_id: int) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(run_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[run_id] = lock
            return lock


_registry = RunLockRegistry()


def _lease_owner() -> str:
    return f"{socket.gethostname()[:32]}:{os.getpid()}:{uuid4().hex[:12]}"


def _acquire_lease(session, run_id: int, owner: str, ttl_seconds: float) -> bool:
    now = _utcnow()
    result = session.execute(
        update(ImportRun)
        .where(ImportRun.id == run_id)
        .where(or_(ImportRun.lock_owner.is_(None), ImportRun.lock_expires_at < now))
        .values(lock_owner=owner, lock_expires_at=now + timedelta(seconds=ttl_seconds))
        .execution_options(synchronize_session=False)
    )
    session.commit()
    return result.rowcount == 1


def _release_lease(session, run_id: int, owner: str) -> None:
    session.execute(
        update(ImportRun)
        .where(ImportRun.id == run_id, ImportRun.lock_owner == owner)
        .values(lock_owner=None, lock_expires_at=None)
        .execution_options(synchronize_session=False)
    )
    session.commit()


@contextmanager
def run_lock(run_id: int, *, wait: bool = False, session=None) -> Iterator[str]:
    """
    Hold exclusive transition rights for ``run_id``.

    With ``wait=False`` (operator requests) a busy run raises
    :class:`RunLockedError` immediately. With ``wait=True`` (internal
    progress writes) the caller waits up to ``IMPORTER_LOCK_WAIT_SECONDS``.
    Any pending work in ``session`` is committed when the lease is taken and
    uncommitted work is discarded on exit, so commit inside the block.
    """

    session = session or db.session
    wait_seconds = float(_config_value("IMPORTER_LOCK_WAIT_SECONDS", DEFAULT_LOCK_WAIT_SECONDS))
    ttl_seconds = float(_config_value("IMPORTER_LOCK_TTL_SECONDS", DEFAULT_LOCK_TTL_SECONDS))

    local_lock = _registry.lock_for(run_id)
    acquired = local_lock.acquire(timeout=wait_seconds) if wait else local_lock.acquire(blocking=False)
    if not acquired:
        ImporterMonitoring.record_lock_contention(scope="process")
        raise RunLockedError(run_id)

    owner = _lease_owner()
    try:
        deadline = time.monotonic() + (wait_seconds if wait else 0.0)
        while not _acquire_lease(session, run_id, owner, ttl_seconds):
            if session.get(ImportRun, run_id) is None:
                raise RunNotFoundError(run_id)
            if time.monotonic() >= deadline:
                holder = session.query(ImportRun.lock_owner).filter(ImportRun.id == run_id).scalar()
                ImporterMonitoring.record_lock_contention(scope="lease")
                raise RunLockedError(run_id, holder=holder)
            time.sleep(0.05)
        try:
            yield owner
        finally:
            session.rollback()
            _release_lease(session, run_id, owner)
    finally:
        local_lock.release()


# ---------------------------------------------------------------------------
# Lookups and transitions
# ---------------------------------------------------------------------------


def get_run(run_id: int, *, session=None, refresh: bool = False) -> ImportRun:
    session = session or db.session
    run = session.get(ImportRun, run_id, populate_existing=refresh)
    if run is None:
        raise RunNotFoundError(run_id)
    return run


def create_run(
    *,
    file_name: str,
    file_size: int,
    file_path: str | None,
    file_hash: str | None = None,
    mime_type: str | None = None,
    import_type=None,
    dry_run: bool = False,
    authoritative: bool = False,
    user_id: int | None = None,
    session=None,
) -> ImportRun:
    """Record an accepted upload as an UPLOADED run."""

    if dry_run and authoritative:
        raise InvalidImportRequestError(
            "dryRun and authoritative are mutually exclusive.",
            details={"dryRun": True, "authoritative": True},
        )
    session = session or db.session
    run = ImportRun(
        file_name=file_name,
        file_size=file_size,
        file_path=file_path,
        file_hash=file_hash,
        mime_type=mime_type,
        import_type=import_type or ImportType.SCHOOLS_BULK,
        dry_run=dry_run,
        authoritative=authoritative,
        status=ImportRunStatus.UPLOADED,
        created_by_user_id=user_id,
    )
    session.add(run)
    session.flush()
    session.add(
        ImportRunEvent(
            run_id=run.id,
            from_status=None,
            to_status=ImportRunStatus.UPLOADED,
            actor_user_id=user_id,
            reason="Upload accepted.",
        )
    )
    session.commit()
    ImporterMonitoring.record_transition(None, ImportRunStatus.UPLOADED)
    return run


def transition(
    run: ImportRun,
    target: ImportRunStatus,
    *,
    user_id: int | None = None,
    reason: str | None = None,
    session=None,
) -> None:
    """
    Move ``run`` to ``target`` inside the caller's transaction.

    Raises :class:`TransitionError` without touching the run when the move is
    not in :data:`ALLOWED_TRANSITIONS`. The caller commits.
    """

    session = session or db.session
    current = run.status
    if target not in ALLOWED_TRANSITIONS.get(current, frozenset()):
        raise TransitionError(run.id, current, target)

    now = _utcnow()
    run.status = target
    if target == ImportRunStatus.PROCESSING:
        run.started_at = now
    if target in _FINISHED_STATUSES:
        run.completed_at = now
    session.add(
        ImportRunEvent(
            run_id=run.id,
            from_status=current,
            to_status=target,
            actor_user_id=user_id,
            reason=reason,
        )
    )
    ImporterMonitoring.record_transition(current, target)
    logger.info(
        "Import run %s moved %s -> %s",
        run.id,
        current.value,
        target.value,
        extra={"importer_run_id": run.id, "importer_status": target.value, "user_id": user_id},
    )


def _included_rows(run_id: int, session):
    return session.query(StagingSchoolRow).filter(
        StagingSchoolRow.run_id == run_id,
        StagingSchoolRow.is_excluded.is_(False),
    )


def is_ready_to_commit(run: ImportRun, *, session=None) -> bool:
    """
    True when at least one row remains and every non-excluded row is VALID
    with a resolved council.
    """

    session = session or db.session
    query = _included_rows(run.id, session)
    included = query.with_entities(func.count(StagingSchoolRow.id)).scalar() or 0
    if included == 0:
        return False
    outstanding = (
        query.filter(
            or_(
                StagingSchoolRow.validation_status != ValidationStatus.VALID,
                StagingSchoolRow.match_type == MatchType.NONE,
            )
        )
        .with_entities(func.count(StagingSchoolRow.id))
        .scalar()
        or 0
    )
    return outstanding == 0


def complete_processing(run: ImportRun, *, session=None) -> ImportRunStatus:
    """PROCESSING -> READY_TO_COMMIT or READY_FOR_REVIEW depending on row state."""

    session = session or db.session
    target = ImportRunStatus.READY_TO_COMMIT if is_ready_to_commit(run, session=session) else ImportRunStatus.READY_FOR_REVIEW
    transition(run, target, reason="Processing finished.", session=session)
    return target


def reevaluate(run: ImportRun, *, user_id: int | None = None, session=None) -> ImportRunStatus:
    """Promote a READY_FOR_REVIEW run once its last outstanding row is resolved."""

    session = session or db.session
    if run.status == ImportRunStatus.READY_FOR_REVIEW and is_ready_to_commit(run, session=session):
        transition(
            run,
            ImportRunStatus.READY_TO_COMMIT,
            user_id=user_id,
            reason="All rows resolved.",
            session=session,
        )
    return run.status


def fail_run(run_id: int, error_summary: str, *, session=None) -> ImportRun | None:
    """
    Record an unrecoverable failure after the caller rolled back its work.

    Runs that already left a failable state (for example a concurrent
    cancel) are returned untouched.
    """

    session = session or db.session
    run = session.get(ImportRun, run_id, populate_existing=True)
    if run is None:
        return None
    if ImportRunStatus.FAILED in ALLOWED_TRANSITIONS.get(run.status, frozenset()):
        run.error_summary = error_summary[:2000]
        transition(run, ImportRunStatus.FAILED, reason=error_summary[:500], session=session)
        session.commit()
    return run


# ---------------------------------------------------------------------------
# Operator operations
# ---------------------------------------------------------------------------


def cancel_run(run_id: int, *, user_id: int | None = None, reason: str | None = None, session=None) -> ImportRun:
    session = session or db.session
    with run_lock(run_id, session=session):
        run = get_run(run_id, session=session, refresh=True)
        if run.status not in CANCELLABLE_STATUSES:
            raise TransitionError(run.id, run.status, ImportRunStatus.CANCELLED, reason="The run already finished.")
        transition(run, ImportRunStatus.CANCELLED, user_id=user_id, reason=reason or "Cancelled by operator.", session=session)
        session.commit()
    return get_run(run_id, session=session)


def commit_run(
    run_id: int,
    *,
    confirm_overwrites: bool = False,
    user_id: int | None = None,
    session=None,
):
    """
    Apply a READY_TO_COMMIT run to the live registry.

    The registry writes, the changeset and the COMMITTED transition land in
    one transaction. A write failure rolls all of it back and leaves the run
    FAILED.
    """

    session = session or db.session
    started = time.perf_counter()
    with run_lock(run_id, session=session):
        run = get_run(run_id, session=session, refresh=True)
        if run.status != ImportRunStatus.READY_TO_COMMIT:
            raise TransitionError(run.id, run.status, ImportRunStatus.COMMITTED)
        if run.dry_run:
            raise TransitionError(
                run.id, run.status, ImportRunStatus.COMMITTED, reason="Dry runs are preview only."
            )
        if not is_ready_to_commit(run, session=session):
            raise TransitionError(
                run.id, run.status, ImportRunStatus.COMMITTED, reason="Some rows still need review."
            )

        timeout = float(_config_value("IMPORTER_COMMIT_TIMEOUT_SECONDS", DEFAULT_COMMIT_TIMEOUT_SECONDS))
        try:
            result = apply_commit(
                run,
                confirm_overwrites=confirm_overwrites,
                deadline=time.monotonic() + timeout,
                user_id=user_id,
                session=session,
            )
            transition(run, ImportRunStatus.COMMITTED, user_id=user_id, reason="Committed to registry.", session=session)
            session.commit()
        except OverwriteConfirmationRequired:
            session.rollback()
            ImporterMonitoring.record_commit(status="confirmation_required", duration_seconds=time.perf_counter() - started)
            raise
        except Exception as exc:
            session.rollback()
            summary = exc.message if isinstance(exc, ImportPipelineError) else f"{type(exc).__name__}: {exc}"
            fail_run(run_id, f"Commit failed: {summary}", session=session)
            ImporterMonitoring.record_commit(status="failed", duration_seconds=time.perf_counter() - started)
            logger.error(
                "Import run %s commit failed", run_id, extra={"importer_run_id": run_id, "importer_error": summary}
            )
            if isinstance(exc, CommitConflictError):
                raise
            raise CommitConflictError(
                f"Import run {run_id} commit failed and was rolled back: {summary}",
                details={"importRunId": run_id, "reason": summary},
            ) from exc

    ImporterMonitoring.record_commit(status="success", duration_seconds=time.perf_counter() - started)
    return result


def rollback_run(run_id: int, *, user_id: int | None = None, session=None):
    """Reverse a COMMITTED run's changeset; conflicts leave it COMMITTED."""

    session = session or db.session
    started = time.perf_counter()
    with run_lock(run_id, session=session):
        run = get_run(run_id, session=session, refresh=True)
        if run.status != ImportRunStatus.COMMITTED:
            raise TransitionError(run.id, run.status, ImportRunStatus.ROLLED_BACK)
        changeset = run.changeset
        if changeset is None or changeset.is_consumed:
            raise TransitionError(
                run.id, run.status, ImportRunStatus.ROLLED_BACK, reason="The changeset was already consumed."
            )
        try:
            result = reverse_changeset(run, changeset, user_id=user_id, session=session)
            transition(run, ImportRunStatus.ROLLED_BACK, user_id=user_id, reason="Rolled back by operator.", session=session)
            session.commit()
        except RollbackConflictError:
            session.rollback()
            ImporterMonitoring.record_rollback(status="conflict", duration_seconds=time.perf_counter() - started)
            raise
        except Exception:
            session.rollback()
            ImporterMonitoring.record_rollback(status="failed", duration_seconds=time.perf_counter() - started)
            raise

    ImporterMonitoring.record_rollback(status="success", duration_seconds=time.perf_counter() - started)
    return result


__all__ = [
    "ALLOWED_TRANSITIONS",
    "CANCELLABLE_STATUSES",
    "REVIEWABLE_STATUSES",
    "RunLockRegistry",
    "cancel_run",
    "commit_run",
    "complete_processing",
    "create_run",
    "fail_run",
    "get_run",
    "is_ready_to_commit",
    "reevaluate",
    "rollback_run",
    "run_lock",
    "transition",
]
