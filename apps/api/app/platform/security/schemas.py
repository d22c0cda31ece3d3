from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


PolicyEffect = Literal["allow", "deny"]


class PolicyRuleCreate(BaseModel):
    code: str = Field(min_length=1, max_length=128)
    resource: str = Field(min_length=1, max_length=128)
    action: str = Field(min_length=1, max_length=128)
    effect: PolicyEffect = "allow"
    priority: int = 100
    roles: list[str] = Field(default_factory=list)
    condition: dict[str, Any] | None = None
    allowed_fields: list[str] | None = None
    description: str | None = None
    is_active: bool = True


class PolicyRuleUpdate(BaseModel):
    effect: PolicyEffect | None = None
    priority: int | None = None
    roles: list[str] | None = None
    condition: dict[str, Any] | None = None
    allowed_fields: list[str] | None = None
    description: str | None = None
    is_active: bool | None = None


class PolicyRuleRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    code: str
    resource: str
    action: str
    effect: str
    priority: int
    roles_json: list[str]
    condition_json: dict[str, Any] | None
    fields_json: list[str] | None
    description: str | None
    is_active: bool
    created_at: datetime


class PolicyTraceEntry(BaseModel):
    rule: str
    effect: PolicyEffect
    outcome: Literal["matched", "condition_false", "role_mismatch", "malformed"]


class PolicyDecision(BaseModel):
    allowed: bool
    effect: PolicyEffect
    matched_rule: str | None = None
    matched_rule_id: UUID | None = None
    reason: str
    field_restrictions: list[str] | None = None
    action: str
    resource: str
    policy_version: int = 0
    trace: list[PolicyTraceEntry] = Field(default_factory=list)


class PolicyCheck(BaseModel):
    action: str = Field(min_length=1)
    resource: str = Field(min_length=1)


class AuthorizeRequest(PolicyCheck):
    record: dict[str, Any] | None = None


class AuthorizeManyRequest(BaseModel):
    checks: list[PolicyCheck] = Field(min_length=1)
    record: dict[str, Any] | None = None


class AllowedFieldsResponse(BaseModel):
    action: str
    resource: str
    allowed_fields: list[str] | None
