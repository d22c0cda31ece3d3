from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from app.core.auth import AuthUser
from app.core.database import get_db
from app.core.rbac import require_roles
from app.platform.approval.schemas import (
    ApprovalInstanceRead,
    ApprovalTaskRead,
    ApprovalTemplateCreate,
    ApprovalTemplateRead,
    DecisionRequest,
    DecisionResult,
    RehydrateSummary,
)
from app.platform.engine import GovernanceEngine, get_engine
from app.platform.security.api import get_auth_context
from app.platform.security.context import AuthContext


router = APIRouter(prefix="/approvals", tags=["approvals"])


@router.post("/tasks/{task_id}/decision", response_model=DecisionResult)
def decide(
    task_id: uuid.UUID,
    payload: DecisionRequest,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
    engine: GovernanceEngine = Depends(get_engine),
) -> DecisionResult:
    return engine.approval_service.make_decision(db, ctx, task_id, payload)


@router.get("/tasks", response_model=list[ApprovalTaskRead])
def list_tasks(
    user_id: str | None = Query(default=None),
    task_status: str | None = Query(default="pending", alias="status"),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
    engine: GovernanceEngine = Depends(get_engine),
) -> list[ApprovalTaskRead]:
    return engine.approval_service.get_tasks_for_user(db, ctx, user_id, status=task_status)


@router.get("/instances/{instance_id}", response_model=ApprovalInstanceRead)
def get_instance(
    instance_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
    engine: GovernanceEngine = Depends(get_engine),
) -> ApprovalInstanceRead:
    return engine.approval_service.get_instance(db, ctx, instance_id)


@router.post("/templates", response_model=ApprovalTemplateRead, status_code=status.HTTP_201_CREATED)
def create_template(
    payload: ApprovalTemplateCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
    engine: GovernanceEngine = Depends(get_engine),
    _user: AuthUser = Depends(require_roles("approval.admin")),
) -> ApprovalTemplateRead:
    return engine.approval_templates.create_template(db, ctx, payload)


@router.get("/templates/{code}", response_model=ApprovalTemplateRead)
def get_template(
    code: str,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
    engine: GovernanceEngine = Depends(get_engine),
) -> ApprovalTemplateRead:
    return engine.approval_templates.get_template(db, ctx, code)


@router.post("/timers/rehydrate", response_model=RehydrateSummary)
def rehydrate_timers(
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
    engine: GovernanceEngine = Depends(get_engine),
    _user: AuthUser = Depends(require_roles("approval.admin", "jobs.admin")),
) -> RehydrateSummary:
    return engine.approval_service.rehydrate_timers(db, tenant_id=ctx.require_tenant())
