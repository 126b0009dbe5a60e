from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class LandingContent(BaseModel):
    title: str
    description: str
    input_label: str
    input_placeholder: str
    button_text: str
    success_title: str
    success_message: str
    primary_color: str


class LandingContentUpdate(BaseModel):
    model_config = ConfigDict(extra="ignore")

    title: str | None = None
    description: str | None = None
    input_label: str | None = None
    input_placeholder: str | None = None
    button_text: str | None = None
    success_title: str | None = None
    success_message: str | None = None
    primary_color: str | None = Field(default=None, pattern=r"^#[0-9A-Fa-f]{3,8}$")


class LandingPageCreate(BaseModel):
    name: str = Field(min_length=1)


class LandingPageUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    is_active: bool | None = None
    content: LandingContentUpdate | None = None


class LandingPageRead(BaseModel):
    id: UUID
    name: str
    slug: str
    is_active: bool
    content: LandingContent
    created_at: datetime
    updated_at: datetime


class PublicLandingPageRead(BaseModel):
    id: UUID
    slug: str
    content: LandingContent


class LeadSubmission(BaseModel):
    # Anything else the browser sends, an organization id included, is dropped.
    model_config = ConfigDict(extra="ignore")

    phone: str = ""


class LeadAccepted(BaseModel):
    customer_id: UUID
    success_title: str
    success_message: str
