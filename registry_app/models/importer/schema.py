"""
SQLAlchemy models backing the school import pipeline.

An ``ImportRun`` owns its staged rows, its transition history, and (once
committed) exactly one ``Changeset`` describing every live-registry write.
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import CheckConstraint, Enum, ForeignKey, Index, UniqueConstraint, event, inspect
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..base import BaseModel, db


class ImportRunStatus(str, enum.Enum):
    """Lifecycle states for an import run."""

    UPLOADED = "UPLOADED"
    PROCESSING = "PROCESSING"
    READY_FOR_REVIEW = "READY_FOR_REVIEW"
    READY_TO_COMMIT = "READY_TO_COMMIT"
    COMMITTED = "COMMITTED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"
    ROLLED_BACK = "ROLLED_BACK"


class ImportType(str, enum.Enum):
    SCHOOLS_BULK = "SCHOOLS_BULK"
    SCHOOLS_UPDATE = "SCHOOLS_UPDATE"


class ValidationStatus(str, enum.Enum):
    PENDING = "PENDING"
    VALID = "VALID"
    ERROR = "ERROR"
    REQUIRES_REVIEW = "REQUIRES_REVIEW"


class MatchType(str, enum.Enum):
    NONE = "NONE"
    EXACT = "EXACT"
    ALIAS = "ALIAS"
    FUZZY = "FUZZY"
    MANUAL = "MANUAL"


class RowAction(str, enum.Enum):
    NONE = "NONE"
    INSERTED = "INSERTED"
    UPDATED = "UPDATED"
    SKIPPED = "SKIPPED"


class ChangeOperation(str, enum.Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"


class ImportRun(BaseModel):
    """Metadata describing a single uploaded spreadsheet and its lifecycle."""

    __tablename__ = "import_runs"

    id: Mapped[int] = mapped_column(primary_key=True)
    file_name: Mapped[str] = mapped_column(db.String(255), nullable=False)
    file_size: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    file_hash: Mapped[str | None] = mapped_column(db.String(64), nullable=True, index=True)
    mime_type: Mapped[str | None] = mapped_column(db.String(120), nullable=True)
    file_path: Mapped[str | None] = mapped_column(db.String(500), nullable=True)
    import_type: Mapped[ImportType] = mapped_column(
        Enum(ImportType, name="import_type_enum"),
        nullable=False,
        default=ImportType.SCHOOLS_BULK,
    )
    dry_run: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    authoritative: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    status: Mapped[ImportRunStatus] = mapped_column(
        Enum(ImportRunStatus, name="import_run_status_enum"),
        nullable=False,
        default=ImportRunStatus.UPLOADED,
        index=True,
    )
    started_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    total_rows: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    processed_rows: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    successful_rows: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    error_rows: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    error_summary: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    counts_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    metrics_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    lock_owner: Mapped[str | None] = mapped_column(
        db.String(64),
        nullable=True,
        comment="Holder of the cross-process transition lease.",
    )
    lock_expires_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)

    created_by_user = relationship("User", foreign_keys=[created_by_user_id])
    staging_rows = relationship(
        "StagingSchoolRow",
        back_populates="import_run",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="StagingSchoolRow.file_row_number",
    )
    events = relationship(
        "ImportRunEvent",
        back_populates="import_run",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ImportRunEvent.id",
    )
    changeset = relationship("Changeset", back_populates="import_run", uselist=False)

    __table_args__ = (
        CheckConstraint("NOT (dry_run AND authoritative)", name="ck_import_runs_dry_run_xor_authoritative"),
        Index("idx_import_runs_status_created", "status", "created_at"),
    )


class StagingSchoolRow(BaseModel):
    """
    One spreadsheet row staged for an import run.

    Raw text values are kept verbatim; the validator and council matcher
    annotate the row in place until the owning run is committed.
    """

    __tablename__ = "staging_school_rows"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[int] = mapped_column(
        ForeignKey("import_runs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    file_row_number: Mapped[int] = mapped_column(db.Integer, nullable=False)
    raw_payload: Mapped[dict] = mapped_column(db.JSON, nullable=False)
    normalized_payload: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)

    school_name: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    emis_code: Mapped[str | None] = mapped_column(db.String(64), nullable=True, index=True)
    region: Mapped[str | None] = mapped_column(db.String(120), nullable=True)
    district: Mapped[str | None] = mapped_column(db.String(120), nullable=True)
    council: Mapped[str | None] = mapped_column(db.String(200), nullable=True)
    school_type: Mapped[str | None] = mapped_column(db.String(64), nullable=True)
    chiefdom: Mapped[str | None] = mapped_column(db.String(120), nullable=True)
    section: Mapped[str | None] = mapped_column(db.String(120), nullable=True)
    town: Mapped[str | None] = mapped_column(db.String(120), nullable=True)
    latitude: Mapped[str | None] = mapped_column(db.String(64), nullable=True)
    longitude: Mapped[str | None] = mapped_column(db.String(64), nullable=True)
    altitude: Mapped[str | None] = mapped_column(db.String(64), nullable=True)

    validation_status: Mapped[ValidationStatus] = mapped_column(
        Enum(ValidationStatus, name="staging_validation_status_enum"),
        nullable=False,
        default=ValidationStatus.PENDING,
        index=True,
    )
    validation_errors: Mapped[list | None] = mapped_column(db.JSON, nullable=True)
    match_type: Mapped[MatchType] = mapped_column(
        Enum(MatchType, name="staging_match_type_enum"),
        nullable=False,
        default=MatchType.NONE,
        index=True,
    )
    matched_council_id: Mapped[int | None] = mapped_column(ForeignKey("councils.id"), nullable=True)
    match_confidence: Mapped[float | None] = mapped_column(db.Float, nullable=True)
    match_source_alias_id: Mapped[int | None] = mapped_column(
        ForeignKey("council_aliases.id", ondelete="SET NULL"),
        nullable=True,
    )
    match_candidates: Mapped[list | None] = mapped_column(db.JSON, nullable=True)
    match_notes: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    is_duplicate: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    is_geo_outlier: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    is_excluded: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    review_notes: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    reviewed_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    action_taken: Mapped[RowAction] = mapped_column(
        Enum(RowAction, name="staging_row_action_enum"),
        nullable=False,
        default=RowAction.NONE,
    )
    school_id: Mapped[int | None] = mapped_column(
        ForeignKey("schools.id", ondelete="SET NULL"),
        nullable=True,
    )

    import_run = relationship("ImportRun", back_populates="staging_rows")
    matched_council = relationship("Council", foreign_keys=[matched_council_id])

    __table_args__ = (
        UniqueConstraint("run_id", "file_row_number", name="uq_staging_school_rows_run_row"),
        CheckConstraint(
            "(match_type = 'NONE') = (matched_council_id IS NULL)",
            name="ck_staging_school_rows_match_council",
        ),
        Index("idx_staging_school_rows_run_status", "run_id", "validation_status"),
    )


class ImportRunEvent(BaseModel):
    """Append-only record of every status transition applied to a run."""

    __tablename__ = "import_run_events"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[int] = mapped_column(
        ForeignKey("import_runs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    from_status: Mapped[ImportRunStatus | None] = mapped_column(
        Enum(ImportRunStatus, name="import_run_event_from_enum"),
        nullable=True,
    )
    to_status: Mapped[ImportRunStatus] = mapped_column(
        Enum(ImportRunStatus, name="import_run_event_to_enum"),
        nullable=False,
    )
    actor_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    reason: Mapped[str | None] = mapped_column(db.Text, nullable=True)

    import_run = relationship("ImportRun", back_populates="events")


class Changeset(BaseModel):
    """Immutable record of the live-registry writes produced by one commit."""

    __tablename__ = "import_changesets"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[int] = mapped_column(ForeignKey("import_runs.id"), nullable=False, unique=True)
    entry_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    consumed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    consumed_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)

    import_run = relationship("ImportRun", back_populates="changeset")
    entries = relationship(
        "ChangesetEntry",
        back_populates="changeset",
        order_by="ChangesetEntry.sequence",
        cascade="all, delete-orphan",
    )

    @property
    def is_consumed(self) -> bool:
        return self.consumed_at is not None


class ChangesetEntry(BaseModel):
    """Single entity mutation with before/after snapshots."""

    __tablename__ = "import_changeset_entries"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    changeset_id: Mapped[int] = mapped_column(
        ForeignKey("import_changesets.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    sequence: Mapped[int] = mapped_column(db.Integer, nullable=False)
    entity_type: Mapped[str] = mapped_column(db.String(50), nullable=False)
    entity_id: Mapped[int] = mapped_column(db.Integer, nullable=False)
    operation: Mapped[ChangeOperation] = mapped_column(
        Enum(ChangeOperation, name="changeset_operation_enum"),
        nullable=False,
    )
    previous_snapshot: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    new_snapshot: Mapped[dict] = mapped_column(db.JSON, nullable=False)

    changeset = relationship("Changeset", back_populates="entries")

    __table_args__ = (
        UniqueConstraint("changeset_id", "sequence", name="uq_changeset_entries_sequence"),
        Index("idx_changeset_entries_entity", "entity_type", "entity_id"),
    )


class ImmutableChangesetError(RuntimeError):
    """Raised when code attempts to rewrite a persisted changeset."""


_CHANGESET_MUTABLE_FIELDS = frozenset({"consumed_at", "consumed_by_user_id", "updated_at"})


@event.listens_for(ChangesetEntry, "before_update")
def _reject_entry_update(mapper, connection, target):
    state = inspect(target)
    if any(attr.history.has_changes() for attr in state.attrs if attr.key != "changeset"):
        raise ImmutableChangesetError(f"Changeset entry {target.id} is immutable.")


@event.listens_for(Changeset, "before_update")
def _reject_changeset_rewrite(mapper, connection, target):
    state = inspect(target)
    changed = {attr.key for attr in state.attrs if attr.history.has_changes()}
    illegal = changed - _CHANGESET_MUTABLE_FIELDS
    if illegal:
        raise ImmutableChangesetError(
            f"Changeset {target.id} is immutable; attempted to change {', '.join(sorted(illegal))}."
        )
