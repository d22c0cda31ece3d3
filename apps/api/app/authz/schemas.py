from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class RoleCreate(BaseModel):
    name: str = Field(min_length=1)
    description: str | None = None


class RoleRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    name: str
    description: str | None
    created_at: datetime


class AssignUserRoleRequest(BaseModel):
    user_id: str = Field(min_length=1)


class UserRoleRead(BaseModel):
    user_id: str
    role_id: UUID
    role_name: str


class GroupCreate(BaseModel):
    name: str = Field(min_length=1)
    description: str | None = None


class GroupRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    name: str
    description: str | None
    created_at: datetime


class GroupMemberRequest(BaseModel):
    user_id: str = Field(min_length=1)


class ReportingLineUpsert(BaseModel):
    user_id: str = Field(min_length=1)
    manager_user_id: str = Field(min_length=1)


class ReportingLineRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    tenant_id: str
    user_id: str
    manager_user_id: str
