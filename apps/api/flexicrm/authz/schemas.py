from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict


PermissionState = Literal["granted", "denied", "default"]


class PermissionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    category: str
    name: str
    description: str | None


class PermissionStateRead(BaseModel):
    permission_id: str
    category: str
    name: str
    description: str | None
    role_default: bool
    override: bool | None
    effective: bool
    state: PermissionState


class SetOverrideRequest(BaseModel):
    granted: bool


class PermissionCheckRead(BaseModel):
    permission_id: str
    granted: bool


class SessionContextRead(BaseModel):
    user_id: str
    organization_id: str
    role: str
    team_id: str | None
    full_name: str | None
    permissions: list[str]
