# registry_app/models/school.py

import enum

from sqlalchemy import Enum, Index

from .base import BaseModel, db


class SchoolType(str, enum.Enum):
    """Closed set of school levels accepted by the registry."""

    PRIMARY = "PRIMARY"
    SECONDARY = "SECONDARY"
    COMBINED = "COMBINED"


# Fields captured in changeset snapshots, in a stable order.
SCHOOL_TRACKED_FIELDS = (
    "emis_code",
    "name",
    "council_id",
    "school_type",
    "chiefdom",
    "section",
    "town",
    "latitude",
    "longitude",
    "altitude",
    "is_active",
)


class School(BaseModel):
    """Live school registry entry keyed by EMIS code"""

    __tablename__ = "schools"

    id = db.Column(db.Integer, primary_key=True)
    emis_code = db.Column(db.String(20), unique=True, nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False, index=True)
    council_id = db.Column(db.Integer, db.ForeignKey("councils.id"), nullable=False, index=True)
    school_type = db.Column(Enum(SchoolType, name="school_type_enum"), nullable=False)
    chiefdom = db.Column(db.String(120), nullable=True)
    section = db.Column(db.String(120), nullable=True)
    town = db.Column(db.String(120), nullable=True)
    latitude = db.Column(db.Float, nullable=True)
    longitude = db.Column(db.Float, nullable=True)
    altitude = db.Column(db.Float, nullable=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False, index=True)
    version_id = db.Column(db.Integer, nullable=False)
    last_import_run_id = db.Column(
        db.Integer, db.ForeignKey("import_runs.id", ondelete="SET NULL"), nullable=True
    )

    council = db.relationship("Council")

    __mapper_args__ = {"version_id_col": version_id}
    __table_args__ = (Index("idx_schools_council_active", "council_id", "is_active"),)

    def __repr__(self):
        return f"<School {self.emis_code} {self.name}>"

    def snapshot(self):
        """Return the tracked fields plus the concurrency version as plain JSON values."""
        payload = {}
        for field in SCHOOL_TRACKED_FIELDS:
            value = getattr(self, field)
            if isinstance(value, enum.Enum):
                value = value.value
            payload[field] = value
        payload["version_id"] = self.version_id
        return payload
