# app/infrastructure/database/models.py

import uuid

from sqlalchemy import Boolean, Column, DateTime, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func

from app.infrastructure.database.session import Base


def _uuid() -> str:
    return str(uuid.uuid4())


class BaseModel(Base):
    __abstract__ = True

    id = Column(String, primary_key=True, default=_uuid)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    created_by = Column(String, nullable=True, index=True)
    updated_by = Column(String, nullable=True)

    is_deleted = Column(Boolean, default=False)


class User(BaseModel):
    __tablename__ = "users"

    email = Column(String, nullable=False, unique=True)
    name = Column(String, nullable=True)
    role = Column(String, nullable=False, default="VIEWER")
    is_active = Column(Boolean, default=True)


class Product(BaseModel):
    __tablename__ = "products"

    name = Column(String, nullable=False)
    slug = Column(String, nullable=False, unique=True)
    status = Column(String, nullable=False, default="draft")


class Page(BaseModel):
    __tablename__ = "pages"

    title = Column(String, nullable=False)
    slug = Column(String, nullable=False, unique=True)
    status = Column(String, nullable=False, default="draft")


class Media(BaseModel):
    __tablename__ = "media"

    filename = Column(String, nullable=False)
    mime_type = Column(String, nullable=False)


class Notification(BaseModel):
    __tablename__ = "notifications"

    user_id = Column(String, nullable=False, index=True)
    title = Column(String, nullable=False)
    message = Column(String, nullable=True)
    is_read = Column(Boolean, default=False)


class AuditLog(Base):
    """Append-only audit record. No soft delete; rows are only removed by retention."""

    __tablename__ = "audit_logs"

    id = Column(String, primary_key=True, default=_uuid)
    user_id = Column(String, nullable=False, index=True)
    action = Column(String(100), nullable=False, index=True)
    resource = Column(String(100), nullable=False, index=True)
    resource_id = Column(String, nullable=True)
    details = Column(JSONB, nullable=False, default=dict)
    ip_address = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), index=True)
