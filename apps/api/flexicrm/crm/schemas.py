from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

FieldType = Literal["text", "number", "select", "date", "currency", "email"]


class FieldLayout(BaseModel):
    x: int = 0
    y: int = 0
    w: int = 6
    h: int = 1


class FieldLayoutUpdate(BaseModel):
    x: int | None = None
    y: int | None = None
    w: int | None = None
    h: int | None = None


class FieldOption(BaseModel):
    id: str
    label: str
    color: str


class FieldOptionCreate(BaseModel):
    label: str = Field(default="New Option", min_length=1)
    color: str = "bg-gray-100 text-gray-800"


class FieldOptionUpdate(BaseModel):
    label: str | None = Field(default=None, min_length=1)
    color: str | None = None


class FieldDefinitionCreate(BaseModel):
    name: str = Field(default="New Field", min_length=1)
    type: FieldType = "text"


class FieldDefinitionUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    type: FieldType | None = None
    visible: bool | None = None
    width: int | None = Field(default=None, ge=40, le=1200)


class FieldMoveRequest(BaseModel):
    direction: Literal["up", "down"]


class FieldDefinitionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    type: FieldType = Field(validation_alias="field_type")
    visible: bool = Field(validation_alias="is_visible")
    order: int = Field(validation_alias="sort_order")
    is_system: bool
    width: int = Field(validation_alias="column_width")
    layout: FieldLayout | None
    options: list[FieldOption] | None


class OptionUsageRead(BaseModel):
    field_id: str
    option_id: str
    record_count: int


class CustomerCreate(BaseModel):
    data: dict[str, Any] = Field(default_factory=dict)
    assigned_to: UUID | None = None
    team_id: UUID | None = None


class CustomerUpdate(BaseModel):
    data: dict[str, Any]
    row_version: int
    assigned_to: UUID | None = None
    team_id: UUID | None = None


class CustomerRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    data: dict[str, Any]
    created_by: UUID | None
    assigned_to: UUID | None
    team_id: UUID | None
    source_landing_page_id: UUID | None
    created_at: datetime
    updated_at: datetime
    row_version: int


class BulkDeleteRequest(BaseModel):
    ids: list[UUID] = Field(min_length=1)


class BulkDeleteResponse(BaseModel):
    deleted_count: int


class ColumnFilterIn(BaseModel):
    field_id: str
    operator: Literal["contains", "equals", "startsWith", "endsWith"] = "contains"
    value: str = ""


class SortIn(BaseModel):
    field_id: str
    direction: Literal["asc", "desc"] = "asc"


class CustomerQuery(BaseModel):
    search: str | None = None
    filters: list[ColumnFilterIn] = Field(default_factory=list)
    sort: SortIn | None = None
    offset: int = Field(default=0, ge=0)
    limit: int | None = Field(default=None, ge=1, le=1000)


class CustomerPage(BaseModel):
    items: list[CustomerRead]
    total: int
    offset: int


class AutomationRuleCreate(BaseModel):
    name: str | None = None
    is_active: bool = True
    trigger_field_id: str = Field(min_length=1)
    trigger_value: Any = None
    target_field_id: str = Field(min_length=1)
    target_value: Any = None


class AutomationRuleUpsert(AutomationRuleCreate):
    id: UUID | None = None


class AutomationRuleRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str | None
    is_active: bool
    trigger_field_id: str
    trigger_value: Any
    target_field_id: str
    target_value: Any
    order: int = Field(validation_alias="sort_order")


class ReplaceRulesRequest(BaseModel):
    rules: list[AutomationRuleUpsert]


class ApplyChangeRequest(BaseModel):
    field_id: str = Field(min_length=1)
    value: Any = None
    form_state: dict[str, Any] = Field(default_factory=dict)


class ApplyChangeResponse(BaseModel):
    form_state: dict[str, Any]
    changed_field_ids: list[str]
