from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from flexicrm.core.database import Base


FIELD_TYPES = ("text", "number", "select", "date", "currency", "email")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_field_id() -> str:
    return f"f_{uuid.uuid4().hex[:12]}"


def new_option_id() -> str:
    return f"opt_{uuid.uuid4().hex[:12]}"


class FieldDefinition(Base):
    __tablename__ = "crm_field_definition"

    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("org_organization.id", ondelete="CASCADE"),
        primary_key=True,
    )
    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_field_id)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    field_type: Mapped[str] = mapped_column(String(16), nullable=False, default="text", server_default="text")
    is_visible: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    is_system: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    column_width: Mapped[int] = mapped_column(Integer, nullable=False, default=200, server_default="200")
    layout: Mapped[dict[str, int] | None] = mapped_column(JSON, nullable=True)
    options: Mapped[list[dict[str, str]] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )


class CustomerRecord(Base):
    __tablename__ = "crm_customer"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("org_organization.id", ondelete="CASCADE"),
        nullable=False,
    )
    data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_by: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    assigned_to: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    team_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("org_team.id", ondelete="SET NULL"),
        nullable=True,
    )
    source_landing_page_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("landing_page.id", ondelete="SET NULL"),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    row_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")


class AutomationRule(Base):
    __tablename__ = "crm_automation_rule"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("org_organization.id", ondelete="CASCADE"),
        nullable=False,
    )
    name: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    trigger_field_id: Mapped[str] = mapped_column(String(64), nullable=False)
    trigger_value: Mapped[Any] = mapped_column(JSON, nullable=True)
    target_field_id: Mapped[str] = mapped_column(String(64), nullable=False)
    target_value: Mapped[Any] = mapped_column(JSON, nullable=True)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )


Index("ix_crm_field_definition_org_order", FieldDefinition.organization_id, FieldDefinition.sort_order)
Index("ix_crm_customer_org_deleted_created", CustomerRecord.organization_id, CustomerRecord.deleted_at, CustomerRecord.created_at)
Index("ix_crm_customer_assigned_to", CustomerRecord.assigned_to)
Index("ix_crm_customer_team", CustomerRecord.team_id)
Index("ix_crm_automation_rule_org_active_order", AutomationRule.organization_id, AutomationRule.is_active, AutomationRule.sort_order)
