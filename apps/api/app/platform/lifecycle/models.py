from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, JSON, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database import Base
from app.platform.clock import utcnow


class Lifecycle(Base):
    __tablename__ = "lifecycle_definition"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    code: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    states: Mapped[list[LifecycleState]] = relationship(
        "LifecycleState",
        back_populates="lifecycle",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="LifecycleState.sort_order",
    )
    transitions: Mapped[list[LifecycleTransition]] = relationship(
        "LifecycleTransition",
        back_populates="lifecycle",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (UniqueConstraint("tenant_id", "code", name="uq_lifecycle_definition_code"),)


class LifecycleState(Base):
    __tablename__ = "lifecycle_state"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    lifecycle_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("lifecycle_definition.id", ondelete="CASCADE"),
        nullable=False,
    )
    code: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_terminal: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    timer_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    lifecycle: Mapped[Lifecycle] = relationship("Lifecycle", back_populates="states")

    __table_args__ = (UniqueConstraint("lifecycle_id", "code", name="uq_lifecycle_state_code"),)


class LifecycleTransition(Base):
    __tablename__ = "lifecycle_transition"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    lifecycle_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("lifecycle_definition.id", ondelete="CASCADE"),
        nullable=False,
    )
    from_state_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("lifecycle_state.id"), nullable=False)
    to_state_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("lifecycle_state.id"), nullable=False)
    operation_code: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    required_policy_action: Mapped[str | None] = mapped_column(String(128), nullable=True)
    approval_template_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("approval_template.id"),
        nullable=True,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")

    lifecycle: Mapped[Lifecycle] = relationship("Lifecycle", back_populates="transitions")

    __table_args__ = (
        UniqueConstraint("lifecycle_id", "from_state_id", "operation_code", name="uq_lifecycle_transition_edge"),
    )


class LifecycleRoute(Base):
    __tablename__ = "lifecycle_route"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    entity_name: Mapped[str] = mapped_column(String(128), nullable=False)
    lifecycle_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("lifecycle_definition.id", ondelete="CASCADE"),
        nullable=False,
    )
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=100, server_default="100")
    condition_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (Index("ix_lifecycle_route_entity", "tenant_id", "entity_name"),)


class EntityLifecycleInstance(Base):
    __tablename__ = "entity_lifecycle_instance"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    entity_name: Mapped[str] = mapped_column(String(128), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(128), nullable=False)
    lifecycle_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("lifecycle_definition.id"), nullable=False)
    state_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("lifecycle_state.id"), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    # queued state timer for the current state; replaced on every transition
    timer_job_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    timer_fire_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_by: Mapped[str] = mapped_column(String(255), nullable=False)
    updated_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "entity_name", "entity_id", name="uq_entity_lifecycle_instance_record"),
    )


class EntityLifecycleEvent(Base):
    __tablename__ = "entity_lifecycle_event"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    instance_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("entity_lifecycle_instance.id", ondelete="CASCADE"),
        nullable=False,
    )
    lifecycle_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    transition_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    from_state_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    to_state_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    operation_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    outcome: Mapped[str] = mapped_column(String(32), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    actor_id: Mapped[str] = mapped_column(String(255), nullable=False)
    instance_version: Mapped[int] = mapped_column(Integer, nullable=False)
    approval_instance_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    # set only when the event consumes an approval, so each approval applies at most once
    finalized_approval_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True, unique=True)
    payload_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    correlation_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (Index("ix_entity_lifecycle_event_instance", "instance_id", "occurred_at"),)
