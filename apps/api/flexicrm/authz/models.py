from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from flexicrm.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Permission(Base):
    __tablename__ = "authz_permission"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    category: Mapped[str] = mapped_column(String(16), nullable=False)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)


class RolePermission(Base):
    __tablename__ = "authz_role_permission"

    role: Mapped[str] = mapped_column(String(32), primary_key=True)
    permission_id: Mapped[str] = mapped_column(
        String(128),
        ForeignKey("authz_permission.id", ondelete="CASCADE"),
        primary_key=True,
    )


class PermissionOverride(Base):
    __tablename__ = "authz_permission_override"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("org_organization.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("org_user_profile.id", ondelete="CASCADE"),
        nullable=False,
    )
    permission_id: Mapped[str] = mapped_column(
        String(128),
        ForeignKey("authz_permission.id", ondelete="CASCADE"),
        nullable=False,
    )
    granted: Mapped[bool] = mapped_column(Boolean, nullable=False)
    granted_by: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (UniqueConstraint("user_id", "permission_id", name="uq_authz_permission_override_user_permission"),)


Index("ix_authz_permission_override_user", PermissionOverride.user_id)
