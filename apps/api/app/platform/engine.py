from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache

from sqlalchemy.orm import Session, sessionmaker

from app import audit
from app.authz.service import SqlApproverDirectory
from app.core.config import Settings, get_settings
from app.core.database import SessionLocal
from app.core.events import InProcessEventBus, InternalEvent, event_bus
from app.platform.approval.resolver import ApproverDirectory, ApproverResolver
from app.platform.approval.service import ApprovalService
from app.platform.approval.templates import ApprovalTemplateService
from app.platform.clock import utcnow
from app.platform.collaborators import RecordModelProvider, RecordStore
from app.platform.jobs.queue import DbJobQueue
from app.platform.lifecycle.definitions import LifecycleDefinitionService
from app.platform.lifecycle.routing import RouteResolver
from app.platform.lifecycle.service import LifecycleManager
from app.platform.security.policies import DbPolicySource, PolicyGate, PolicySource
from app.platform.security.service import PolicyAdminService


AUDITED_EVENTS = (
    "lifecycle.instance_created",
    "lifecycle.transitioned",
    "lifecycle.transition_denied",
    "lifecycle.transition_pending",
    "approval.requested",
    "approval.decided",
    "approval.approved",
    "approval.rejected",
    "approval.cancelled",
    "approval.task.escalated",
)


@dataclass(slots=True)
class GovernanceEngine:
    session_factory: sessionmaker[Session]
    policy_gate: PolicyGate
    policy_admin: PolicyAdminService
    route_resolver: RouteResolver
    definitions: LifecycleDefinitionService
    lifecycle_manager: LifecycleManager
    approval_templates: ApprovalTemplateService
    approval_service: ApprovalService
    job_queue: DbJobQueue
    directory: ApproverDirectory


def forward_event_to_audit(event: InternalEvent) -> None:
    payload = event.payload
    entity_id = payload.get("entity_id") or payload.get("approval_instance_id") or payload.get("task_id") or ""
    audit.record(
        actor_user_id=str(payload.get("actor_user_id") or "system"),
        entity_type=str(payload.get("entity_name") or event.name.split(".", 1)[0]),
        entity_id=str(entity_id),
        action=event.name,
        before=None,
        after=dict(payload),
        correlation_id=payload.get("correlation_id"),
        tenant_id=payload.get("tenant_id"),
    )


def register_audit_forwarding(bus: InProcessEventBus = event_bus) -> None:
    for event_name in AUDITED_EVENTS:
        bus.subscribe(event_name, forward_event_to_audit)


def build_engine(
    session_factory: sessionmaker[Session],
    settings: Settings | None = None,
    *,
    policy_source: PolicySource | None = None,
    directory: ApproverDirectory | None = None,
    record_models: RecordModelProvider | None = None,
    record_store: RecordStore | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> GovernanceEngine:
    settings = settings or get_settings()

    policy_gate = PolicyGate(
        policy_source or DbPolicySource(session_factory),
        cache_ttl_seconds=settings.policy_cache_ttl_seconds,
    )
    job_queue = DbJobQueue(
        session_factory,
        max_attempts=settings.job_max_attempts,
        backoff_base_seconds=settings.job_backoff_base_seconds,
        batch_size=settings.job_batch_size,
        clock=clock,
    )
    directory = directory or SqlApproverDirectory()
    route_resolver = RouteResolver()
    approval_templates = ApprovalTemplateService()
    approval_service = ApprovalService(
        resolver=ApproverResolver(directory),
        directory=directory,
        job_queue=job_queue,
        default_sla_hours=settings.approval_sla_hours,
        default_reminder_hours=settings.approval_reminder_after_hours,
        reminder_ratio=settings.approval_reminder_ratio,
        clock=clock,
    )
    lifecycle_manager = LifecycleManager(
        policy_gate=policy_gate,
        route_resolver=route_resolver,
        approval_service=approval_service,
        record_models=record_models,
        record_store=record_store,
        state_field=settings.lifecycle_state_field,
        job_queue=job_queue,
        clock=clock,
    )
    approval_service.lifecycle_manager = lifecycle_manager
    approval_service.register_job_handlers()
    lifecycle_manager.register_job_handlers()
    register_audit_forwarding()

    return GovernanceEngine(
        session_factory=session_factory,
        policy_gate=policy_gate,
        policy_admin=PolicyAdminService(policy_gate),
        route_resolver=route_resolver,
        definitions=LifecycleDefinitionService(route_resolver=route_resolver, templates=approval_templates),
        lifecycle_manager=lifecycle_manager,
        approval_templates=approval_templates,
        approval_service=approval_service,
        job_queue=job_queue,
        directory=directory,
    )


@lru_cache
def get_engine() -> GovernanceEngine:
    return build_engine(SessionLocal, get_settings())
