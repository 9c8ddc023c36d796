"""
Exception taxonomy for the school import pipeline.

Every member carries a stable ``code``, the HTTP status the blueprint should
answer with, and a ``details`` mapping with enough context (row number,
field, reason) for a client to drive remediation.
"""

from __future__ import annotations

from http import HTTPStatus
from typing import Any, Iterable, Mapping, Sequence


class ImportPipelineError(Exception):
    """Base class for errors surfaced by the import pipeline."""

    code = "IMPORT_ERROR"
    http_status = HTTPStatus.BAD_REQUEST

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = dict(details or {})

    def as_dict(self) -> dict[str, Any]:
        return {"error": self.message, "code": self.code, "details": self.details}


class ParseError(ImportPipelineError):
    """Malformed file, unsupported format, or a header that breaks the schema."""

    code = "PARSE_ERROR"

    def __init__(
        self,
        message: str,
        *,
        missing: Sequence[str] | None = None,
        duplicates: Sequence[str] | None = None,
        row_number: int | None = None,
    ) -> None:
        details: dict[str, Any] = {}
        if missing:
            details["missingColumns"] = sorted(missing)
        if duplicates:
            details["duplicateColumns"] = sorted(duplicates)
        if row_number is not None:
            details["rowNumber"] = row_number
        super().__init__(message, details=details)
        self.missing = tuple(missing or ())
        self.duplicates = tuple(duplicates or ())
        self.row_number = row_number


class UploadTooLargeError(ImportPipelineError):
    code = "UPLOAD_TOO_LARGE"
    http_status = HTTPStatus.REQUEST_ENTITY_TOO_LARGE


class FieldValidationError(ImportPipelineError):
    """
    Per-field validation failure.

    These are recorded on the staging row rather than raised out of the
    pipeline; a row may carry several of them.
    """

    code = "FIELD_VALIDATION_ERROR"

    def __init__(self, field: str, message: str, *, row_number: int | None = None) -> None:
        super().__init__(message, details={"field": field, "rowNumber": row_number})
        self.field = field
        self.row_number = row_number

    def as_record(self) -> dict[str, str]:
        return {"field": self.field, "message": self.message}


class MatchAmbiguityError(ImportPipelineError):
    """Two or more councils scored too closely to pick one."""

    code = "MATCH_AMBIGUOUS"

    def __init__(self, text: str, candidates: Iterable[Mapping[str, Any]]) -> None:
        candidate_list = [dict(candidate) for candidate in candidates]
        names = ", ".join(str(candidate.get("name")) for candidate in candidate_list)
        super().__init__(
            f"Council text '{text}' is ambiguous between: {names}.",
            details={"text": text, "candidates": candidate_list},
        )
        self.candidates = candidate_list


class RunNotFoundError(ImportPipelineError):
    code = "RUN_NOT_FOUND"
    http_status = HTTPStatus.NOT_FOUND

    def __init__(self, run_id: int) -> None:
        super().__init__(f"Import run {run_id} not found.", details={"importRunId": run_id})
        self.run_id = run_id


class TransitionError(ImportPipelineError):
    """Illegal state transition; the run is left unchanged."""

    code = "INVALID_TRANSITION"
    http_status = HTTPStatus.CONFLICT

    def __init__(self, run_id: int, current: Any, target: Any, *, reason: str | None = None) -> None:
        current_value = getattr(current, "value", current)
        target_value = getattr(target, "value", target)
        message = f"Import run {run_id} cannot move from {current_value} to {target_value}."
        if reason:
            message = f"{message} {reason}"
        super().__init__(
            message,
            details={"importRunId": run_id, "currentStatus": current_value, "requestedStatus": target_value},
        )
        self.current = current
        self.target = target


class RunLockedError(ImportPipelineError):
    """Another transition for the same run is in flight."""

    code = "RUN_LOCKED"
    http_status = HTTPStatus.CONFLICT

    def __init__(self, run_id: int, *, holder: str | None = None) -> None:
        super().__init__(
            f"Import run {run_id} is busy with another operation; retry once it completes.",
            details={"importRunId": run_id, "holder": holder},
        )
        self.run_id = run_id


class OverwriteConfirmationRequired(ImportPipelineError):
    code = "OVERWRITE_CONFIRMATION_REQUIRED"
    http_status = HTTPStatus.CONFLICT

    def __init__(self, run_id: int, *, updates: int, deactivations: int = 0) -> None:
        super().__init__(
            f"Import run {run_id} would overwrite {updates} existing school(s) and deactivate "
            f"{deactivations}; resubmit with confirmOverwrites=true.",
            details={"importRunId": run_id, "updates": updates, "deactivations": deactivations},
        )


class AliasConflictError(ImportPipelineError):
    code = "ALIAS_CONFLICT"
    http_status = HTTPStatus.CONFLICT

    def __init__(self, alias: str, council_id: int) -> None:
        super().__init__(
            f"Alias '{alias}' is already registered for council {council_id}.",
            details={"alias": alias, "councilId": council_id},
        )


class CommitConflictError(ImportPipelineError):
    """Write failure during commit; the transaction was rolled back and the run FAILED."""

    code = "COMMIT_FAILED"
    http_status = HTTPStatus.INTERNAL_SERVER_ERROR


class CommitTimeoutError(CommitConflictError):
    code = "COMMIT_TIMEOUT"
    http_status = HTTPStatus.GATEWAY_TIMEOUT


class ProcessingTimeoutError(ImportPipelineError):
    code = "PROCESSING_TIMEOUT"
    http_status = HTTPStatus.GATEWAY_TIMEOUT


class RollbackConflictError(ImportPipelineError):
    """A live entity changed after commit; the run stays COMMITTED."""

    code = "ROLLBACK_CONFLICT"
    http_status = HTTPStatus.CONFLICT

    def __init__(self, run_id: int, conflicts: Sequence[Mapping[str, Any]]) -> None:
        conflict_list = [dict(item) for item in conflicts]
        super().__init__(
            f"Import run {run_id} cannot be rolled back: {len(conflict_list)} school(s) changed since commit.",
            details={"importRunId": run_id, "conflicts": conflict_list},
        )
        self.conflicts = conflict_list


class InvalidImportRequestError(ImportPipelineError):
    """Rejected request options (conflicting flags, unknown ids, bad filters)."""

    code = "INVALID_REQUEST"
