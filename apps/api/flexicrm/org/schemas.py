from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["ceo", "team_lead", "staff"]


class LoginRequest(BaseModel):
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user_id: UUID
    organization_id: UUID


class RegisterOrganizationRequest(BaseModel):
    organization_name: str = Field(min_length=1)
    username: str = Field(min_length=1, pattern=r"^[A-Za-z0-9._-]+$")
    full_name: str = Field(min_length=1)
    password: str = Field(min_length=6)


class MemberCreate(BaseModel):
    username: str = Field(min_length=1, pattern=r"^[A-Za-z0-9._-]+$")
    full_name: str = Field(min_length=1)
    password: str = Field(min_length=6)
    role: Role = "staff"
    team_id: UUID | None = None


class MemberUpdate(BaseModel):
    full_name: str | None = Field(default=None, min_length=1)
    role: Role | None = None
    team_id: UUID | None = None


class MemberRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    username: str
    email: str
    full_name: str
    role: Role
    team_id: UUID | None
    is_active: bool
    created_at: datetime


class TeamCreate(BaseModel):
    name: str = Field(min_length=1)
    lead_id: UUID | None = None


class TeamUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    lead_id: UUID | None = None


class TeamRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    lead_id: UUID | None
    created_at: datetime
