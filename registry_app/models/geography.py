# registry_app/models/geography.py
"""
Canonical administrative hierarchy: region -> district -> council.

Aliases live in their own table keyed by a normalized string so matching
never has to walk the tree to find them.
"""

from sqlalchemy import Index, UniqueConstraint

from .base import BaseModel, db


def normalize_label(value):
    """Casefold and collapse whitespace for exact/alias comparisons."""
    if value is None:
        return ""
    return " ".join(str(value).split()).casefold()


class Region(BaseModel):
    """Top level administrative area"""

    __tablename__ = "regions"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), unique=True, nullable=False)
    code = db.Column(db.String(20), unique=True, nullable=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    districts = db.relationship("District", back_populates="region", order_by="District.name")

    def __repr__(self):
        return f"<Region {self.name}>"


class District(BaseModel):
    """District belonging to exactly one region"""

    __tablename__ = "districts"

    id = db.Column(db.Integer, primary_key=True)
    region_id = db.Column(db.Integer, db.ForeignKey("regions.id"), nullable=False, index=True)
    name = db.Column(db.String(120), nullable=False)
    code = db.Column(db.String(20), unique=True, nullable=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    region = db.relationship("Region", back_populates="districts")
    councils = db.relationship("Council", back_populates="district", order_by="Council.name")

    __table_args__ = (UniqueConstraint("region_id", "name", name="uq_district_region_name"),)

    def __repr__(self):
        return f"<District {self.name}>"


class Council(BaseModel):
    """Local council, the node school rows are matched against"""

    __tablename__ = "councils"

    id = db.Column(db.Integer, primary_key=True)
    district_id = db.Column(db.Integer, db.ForeignKey("districts.id"), nullable=False, index=True)
    name = db.Column(db.String(200), nullable=False)
    code = db.Column(db.String(20), unique=True, nullable=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False, index=True)

    district = db.relationship("District", back_populates="councils")
    aliases = db.relationship("CouncilAlias", back_populates="council", cascade="all, delete-orphan")

    __table_args__ = (Index("idx_councils_district_name", "district_id", "name"),)

    def __repr__(self):
        return f"<Council {self.name}>"


class CouncilAlias(BaseModel):
    """Known alternative spelling or abbreviation for a council"""

    __tablename__ = "council_aliases"

    id = db.Column(db.Integer, primary_key=True)
    council_id = db.Column(
        db.Integer, db.ForeignKey("councils.id", ondelete="CASCADE"), nullable=False, index=True
    )
    alias = db.Column(db.String(200), nullable=False)
    normalized_alias = db.Column(db.String(200), unique=True, nullable=False)
    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    source_run_id = db.Column(
        db.Integer, db.ForeignKey("import_runs.id", ondelete="SET NULL"), nullable=True
    )

    council = db.relationship("Council", back_populates="aliases")

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        if self.alias and not self.normalized_alias:
            self.normalized_alias = normalize_label(self.alias)

    def __repr__(self):
        return f"<CouncilAlias {self.alias} -> {self.council_id}>"
