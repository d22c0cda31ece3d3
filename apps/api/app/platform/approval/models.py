from __future__ import annotations

import uuid
from datetime import datetime
from enum import StrEnum
from typing import Any

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, JSON, String, Text, UniqueConstraint, Uuid, event
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database import Base
from app.platform.clock import utcnow
from app.platform.errors import InvalidStateError


class ApprovalStatus(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class StageStatus(StrEnum):
    WAITING = "waiting"
    ACTIVE = "active"
    APPROVED = "approved"
    REJECTED = "rejected"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class TaskStatus(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    DELEGATED = "delegated"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class ApprovalTemplate(Base):
    __tablename__ = "approval_template"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    code: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    reject_policy: Mapped[str] = mapped_column(String(16), nullable=False, default="stop_all", server_default="stop_all")
    sla_hours: Mapped[int | None] = mapped_column(Integer, nullable=True)
    reminder_hours: Mapped[int | None] = mapped_column(Integer, nullable=True)
    escalation_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    stages: Mapped[list[ApprovalTemplateStage]] = relationship(
        "ApprovalTemplateStage",
        back_populates="template",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ApprovalTemplateStage.stage_no",
    )
    rules: Mapped[list[ApprovalTemplateRule]] = relationship(
        "ApprovalTemplateRule",
        back_populates="template",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ApprovalTemplateRule.priority",
    )

    __table_args__ = (UniqueConstraint("tenant_id", "code", name="uq_approval_template_code"),)


class ApprovalTemplateStage(Base):
    __tablename__ = "approval_template_stage"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    template_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("approval_template.id", ondelete="CASCADE"),
        nullable=False,
    )
    stage_no: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    quorum: Mapped[str] = mapped_column(String(16), nullable=False, default="all", server_default="all")
    quorum_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    sla_hours: Mapped[int | None] = mapped_column(Integer, nullable=True)

    template: Mapped[ApprovalTemplate] = relationship("ApprovalTemplate", back_populates="stages")

    __table_args__ = (UniqueConstraint("template_id", "stage_no", name="uq_approval_template_stage_no"),)


class ApprovalTemplateRule(Base):
    __tablename__ = "approval_template_rule"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    template_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("approval_template.id", ondelete="CASCADE"),
        nullable=False,
    )
    stage_no: Mapped[int] = mapped_column(Integer, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=100, server_default="100")
    condition_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    assign_to_json: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)

    template: Mapped[ApprovalTemplate] = relationship("ApprovalTemplate", back_populates="rules")


class ApprovalInstance(Base):
    __tablename__ = "approval_instance"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    template_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("approval_template.id"), nullable=False)
    entity_name: Mapped[str] = mapped_column(String(128), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(128), nullable=False)
    lifecycle_instance_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    transition_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    operation_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=ApprovalStatus.PENDING.value)
    # "<tenant>:<entity>:<id>" while pending, NULL once resolved; one open approval per record
    active_key: Mapped[str | None] = mapped_column(String(400), nullable=True, unique=True)
    current_stage_no: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # bumped by every decision; deciders on the same instance serialize on it
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    requested_by: Mapped[str] = mapped_column(String(255), nullable=False)
    context_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    stages: Mapped[list[ApprovalStage]] = relationship(
        "ApprovalStage",
        back_populates="instance",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ApprovalStage.stage_no",
    )

    __table_args__ = (Index("ix_approval_instance_record", "tenant_id", "entity_name", "entity_id"),)


class ApprovalStage(Base):
    __tablename__ = "approval_stage"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    instance_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("approval_instance.id", ondelete="CASCADE"),
        nullable=False,
    )
    stage_no: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    quorum: Mapped[str] = mapped_column(String(16), nullable=False)
    quorum_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    sla_hours: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=StageStatus.WAITING.value)
    activated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    instance: Mapped[ApprovalInstance] = relationship("ApprovalInstance", back_populates="stages")
    tasks: Mapped[list[ApprovalTask]] = relationship(
        "ApprovalTask",
        back_populates="stage",
        order_by="ApprovalTask.created_at",
    )

    __table_args__ = (UniqueConstraint("instance_id", "stage_no", name="uq_approval_stage_no"),)


class ApprovalTask(Base):
    __tablename__ = "approval_task"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    instance_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("approval_instance.id", ondelete="CASCADE"),
        nullable=False,
    )
    stage_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("approval_stage.id", ondelete="CASCADE"),
        nullable=False,
    )
    stage_no: Mapped[int] = mapped_column(Integer, nullable=False)
    assignee_user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=TaskStatus.PENDING.value)
    decided_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    decided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    delegated_from_task_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    due_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reminder_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reminder_job_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    escalation_job_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    escalation_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    stage: Mapped[ApprovalStage] = relationship("ApprovalStage", back_populates="tasks")

    __table_args__ = (
        Index("ix_approval_task_assignee", "tenant_id", "assignee_user_id", "status"),
        Index("ix_approval_task_instance", "instance_id", "stage_no"),
    )


class ApprovalAssignmentSnapshot(Base):
    __tablename__ = "approval_assignment_snapshot"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    instance_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("approval_instance.id", ondelete="CASCADE"),
        nullable=False,
    )
    stage_no: Mapped[int] = mapped_column(Integer, nullable=False)
    task_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("approval_task.id", ondelete="CASCADE"), nullable=False)
    strategy: Mapped[str] = mapped_column(String(32), nullable=False)
    rule_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    resolved_user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    detail_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


@event.listens_for(ApprovalAssignmentSnapshot, "before_update")
def _snapshot_is_write_once(mapper, connection, target) -> None:  # type: ignore[no-untyped-def]
    raise InvalidStateError("approval assignment snapshots are immutable")


class ApprovalEscalation(Base):
    __tablename__ = "approval_escalation"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    instance_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("approval_instance.id", ondelete="CASCADE"),
        nullable=False,
    )
    task_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("approval_task.id", ondelete="CASCADE"), nullable=False)
    job_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    notify_user_ids: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    escalated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class ApprovalEvent(Base):
    __tablename__ = "approval_event"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    instance_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("approval_instance.id", ondelete="CASCADE"),
        nullable=False,
    )
    task_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    actor_id: Mapped[str] = mapped_column(String(255), nullable=False)
    payload_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (Index("ix_approval_event_instance", "instance_id", "occurred_at"),)
