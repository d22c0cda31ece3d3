from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator

from app.platform.lifecycle.schemas import TransitionResult


Quorum = Literal["all", "any", "count"]
RejectPolicy = Literal["stop_all", "continue"]
Decision = Literal["approve", "reject", "delegate"]


class RoleAssignee(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["role"] = "role"
    role: str = Field(min_length=1)


class UserAssignee(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["user"] = "user"
    user_ids: list[str] = Field(min_length=1)


class GroupAssignee(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["group"] = "group"
    group: str = Field(min_length=1)


class HierarchyAssignee(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["hierarchy"] = "hierarchy"
    levels: int = Field(default=1, ge=1, le=10)


class ExpressionAssignee(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["expression"] = "expression"
    path: str = Field(min_length=1)


Assignee = Annotated[
    RoleAssignee | UserAssignee | GroupAssignee | HierarchyAssignee | ExpressionAssignee,
    Field(discriminator="type"),
]

ASSIGNEE_ADAPTER: TypeAdapter[Assignee] = TypeAdapter(Assignee)


class AssigneeRuleCreate(BaseModel):
    stage_no: int = Field(ge=1)
    priority: int = 100
    condition: dict[str, Any] | None = None
    assign_to: Assignee


class ApprovalStageCreate(BaseModel):
    stage_no: int = Field(ge=1)
    name: str | None = None
    quorum: Quorum = "all"
    quorum_count: int | None = None
    required: bool = True
    sla_hours: int | None = Field(default=None, ge=1)

    @model_validator(mode="after")
    def _check_count(self) -> ApprovalStageCreate:
        if self.quorum == "count" and (self.quorum_count is None or self.quorum_count < 1):
            raise ValueError("quorum 'count' needs quorum_count >= 1")
        return self


class EscalationSettings(BaseModel):
    kind: str = "sla_breach"
    notify: Literal["manager", "users"] = "manager"
    user_ids: list[str] = Field(default_factory=list)


class ApprovalTemplateCreate(BaseModel):
    code: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    reject_policy: RejectPolicy = "stop_all"
    sla_hours: int | None = Field(default=None, ge=1)
    reminder_hours: int | None = Field(default=None, ge=1)
    escalation: EscalationSettings = Field(default_factory=EscalationSettings)
    stages: list[ApprovalStageCreate] = Field(min_length=1)
    rules: list[AssigneeRuleCreate] = Field(min_length=1)


class ApprovalTemplateStageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    stage_no: int
    name: str | None
    quorum: str
    quorum_count: int | None
    required: bool
    sla_hours: int | None


class ApprovalTemplateRuleRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    stage_no: int
    priority: int
    condition_json: dict[str, Any] | None
    assign_to_json: dict[str, Any]


class ApprovalTemplateRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    code: str
    name: str
    description: str | None
    reject_policy: str
    sla_hours: int | None
    reminder_hours: int | None
    escalation_json: dict[str, Any] | None
    is_active: bool
    created_at: datetime
    stages: list[ApprovalTemplateStageRead]
    rules: list[ApprovalTemplateRuleRead]


class ApprovalRequest(BaseModel):
    approval_instance_id: UUID | None = None
    entity_name: str
    entity_id: str
    template_id: UUID
    lifecycle_instance_id: UUID | None = None
    transition_id: UUID | None = None
    operation_code: str | None = None
    record: dict[str, Any] | None = None


class DecisionRequest(BaseModel):
    decision: Decision
    comment: str | None = Field(default=None, max_length=4000)
    delegate_to: str | None = None

    @model_validator(mode="after")
    def _check_delegate(self) -> DecisionRequest:
        if self.decision == "delegate" and not self.delegate_to:
            raise ValueError("delegate_to is required when delegating")
        return self


class ApprovalTaskRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    instance_id: UUID
    stage_no: int
    assignee_user_id: str
    status: str
    decided_by: str | None
    decided_at: datetime | None
    comment: str | None
    delegated_from_task_id: UUID | None
    due_at: datetime | None
    reminder_at: datetime | None
    escalation_count: int
    created_at: datetime


class ApprovalSnapshotRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    stage_no: int
    task_id: UUID
    strategy: str
    rule_json: dict[str, Any] | None
    resolved_user_id: str
    detail_json: dict[str, Any] | None
    created_at: datetime


class ApprovalStageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    stage_no: int
    name: str | None
    quorum: str
    quorum_count: int | None
    required: bool
    status: str
    activated_at: datetime | None
    completed_at: datetime | None


class ApprovalInstanceRead(BaseModel):
    id: UUID
    tenant_id: str
    template_id: UUID
    entity_name: str
    entity_id: str
    lifecycle_instance_id: UUID | None
    transition_id: UUID | None
    operation_code: str | None
    status: str
    current_stage_no: int | None
    version: int
    requested_by: str
    created_at: datetime
    completed_at: datetime | None
    stages: list[ApprovalStageRead]
    tasks: list[ApprovalTaskRead]
    snapshots: list[ApprovalSnapshotRead]


class DecisionResult(BaseModel):
    task: ApprovalTaskRead
    instance_status: str
    stage_status: str
    delegated_task: ApprovalTaskRead | None = None
    lifecycle: TransitionResult | None = None


class RehydrateSummary(BaseModel):
    reminders: int = 0
    escalations: int = 0
