# registry_app/models/user.py

import enum

from flask_login import UserMixin
from sqlalchemy import Enum

from .base import BaseModel, db


class UserRole(str, enum.Enum):
    """Coarse roles used to derive importer permissions."""

    ADMIN = "ADMIN"
    DATA_MANAGER = "DATA_MANAGER"
    VIEWER = "VIEWER"


class User(UserMixin, BaseModel):
    """Operator account that uploads, reviews and commits school imports"""

    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False, index=True)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    first_name = db.Column(db.String(100), nullable=True)
    last_name = db.Column(db.String(100), nullable=True)
    role = db.Column(
        Enum(UserRole, name="user_role_enum"),
        default=UserRole.VIEWER,
        nullable=False,
    )
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    def __repr__(self):
        return f"<User {self.username}>"

    @property
    def display_name(self):
        full_name = f"{self.first_name or ''} {self.last_name or ''}".strip()
        return full_name or self.username
