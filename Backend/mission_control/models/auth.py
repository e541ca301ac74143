"""
SQLAlchemy ORM models for dashboard users.

- Role stored as a string enum (admin / operator / viewer)
- Password stored as password_hash only
"""

import uuid

from sqlalchemy import Column, String, Boolean, DateTime, Enum as SAEnum, func, Index

from mission_control.database import Base


UserRoleEnum = SAEnum(
    "admin",
    "operator",
    "viewer",
    name="user_role",
    native_enum=False,
)


def _new_id() -> str:
    return str(uuid.uuid4())


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_new_id)
    username = Column(String(50), nullable=False, unique=True, index=True)
    email = Column(String(320), nullable=False, unique=True, index=True)  # 320 is RFC max
    password_hash = Column(String(255), nullable=False)
    role = Column(UserRoleEnum, nullable=False, server_default="viewer")
    is_active = Column(Boolean, nullable=False, server_default="1")
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("ix_users_role", "role"),
    )
