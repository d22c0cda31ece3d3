from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from app.platform.errors import ErrorCode
from app.platform.security.schemas import PolicyDecision


TransitionStatus = Literal["applied", "pending", "denied"]
TimerType = Literal["auto_close", "auto_cancel", "auto_transition"]


class StateTimerDefinition(BaseModel):
    """Fires ``operation_code`` once the record has sat in the state long enough.

    The delay is either fixed (``delay_minutes``) or anchored on a record
    date field (``delay_from_field`` plus ``offset_minutes``). ``condition``
    is checked against the record when the timer fires.
    """

    timer_type: TimerType = "auto_transition"
    operation_code: str = Field(min_length=1, max_length=64)
    delay_minutes: int | None = Field(default=None, ge=1)
    delay_from_field: str | None = Field(default=None, min_length=1)
    offset_minutes: int = 0
    condition: dict[str, Any] | None = None

    @model_validator(mode="after")
    def _one_delay(self) -> StateTimerDefinition:
        if (self.delay_minutes is None) == (self.delay_from_field is None):
            raise ValueError("set exactly one of delay_minutes or delay_from_field")
        return self


class StateDefinition(BaseModel):
    code: str = Field(min_length=1, max_length=64)
    name: str | None = None
    is_terminal: bool = False
    sort_order: int | None = None
    timer: StateTimerDefinition | None = None


class TransitionDefinition(BaseModel):
    from_state: str = Field(min_length=1)
    to_state: str = Field(min_length=1)
    operation_code: str = Field(min_length=1, max_length=64)
    name: str | None = None
    required_policy_action: str | None = None
    approval_template_code: str | None = None
    is_active: bool = True


class LifecycleDefinitionCreate(BaseModel):
    code: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    states: list[StateDefinition] = Field(min_length=1)
    transitions: list[TransitionDefinition] = Field(default_factory=list)


class LifecycleStateRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    code: str
    name: str
    is_terminal: bool
    sort_order: int
    timer_json: dict[str, Any] | None = None


class LifecycleTransitionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    from_state_id: UUID
    to_state_id: UUID
    operation_code: str
    name: str | None
    required_policy_action: str | None
    approval_template_id: UUID | None
    is_active: bool


class LifecycleDefinitionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    code: str
    name: str
    description: str | None
    is_active: bool
    created_at: datetime
    states: list[LifecycleStateRead]
    transitions: list[LifecycleTransitionRead]


class LifecycleRouteCreate(BaseModel):
    entity_name: str = Field(min_length=1, max_length=128)
    lifecycle_code: str = Field(min_length=1)
    priority: int = 100
    condition: dict[str, Any] | None = None
    is_active: bool = True


class LifecycleRouteRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    entity_name: str
    lifecycle_id: UUID
    priority: int
    condition_json: dict[str, Any] | None
    is_active: bool
    created_at: datetime


class PrecompileResult(BaseModel):
    compiled: int


class TimerRehydrateResult(BaseModel):
    rehydrated: int = 0


class CreateInstanceRequest(BaseModel):
    record: dict[str, Any] | None = None


class TransitionBody(BaseModel):
    expected_version: int | None = Field(default=None, ge=1)
    record: dict[str, Any] | None = None
    payload: dict[str, Any] | None = None
    comment: str | None = None


class TransitionRequest(TransitionBody):
    entity_name: str = Field(min_length=1)
    entity_id: str = Field(min_length=1)
    operation_code: str = Field(min_length=1)


class LifecycleInstanceRead(BaseModel):
    id: UUID
    tenant_id: str
    entity_name: str
    entity_id: str
    lifecycle_id: UUID
    lifecycle_code: str
    state_id: UUID
    state_code: str
    is_terminal: bool
    version: int
    created_at: datetime
    updated_at: datetime


class TransitionResult(BaseModel):
    status: TransitionStatus
    allowed: bool
    code: ErrorCode | None = None
    reason: str | None = None
    dry_run: bool = False
    entity_name: str
    entity_id: str
    operation_code: str
    instance_id: UUID | None = None
    from_state: str | None = None
    to_state: str | None = None
    current_state: str | None = None
    version: int | None = None
    event_id: UUID | None = None
    approval_instance_id: UUID | None = None
    decision: PolicyDecision | None = None


class AvailableTransition(BaseModel):
    operation_code: str
    name: str | None
    to_state: str
    required_policy_action: str | None
    requires_approval: bool
    allowed: bool
    reason: str | None = None


class LifecycleEventRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    instance_id: UUID
    transition_id: UUID | None
    from_state_id: UUID | None
    to_state_id: UUID | None
    from_state: str | None = None
    to_state: str | None = None
    operation_code: str | None
    outcome: str
    reason: str | None
    actor_id: str
    instance_version: int
    approval_instance_id: UUID | None
    payload_json: dict[str, Any] | None
    correlation_id: str | None
    occurred_at: datetime


class LifecycleHistoryPage(BaseModel):
    items: list[LifecycleEventRead]
    page: int
    page_size: int
    total: int
