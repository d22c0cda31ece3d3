from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Header, Query, Request, status
from sqlalchemy.orm import Session

from app.context import get_correlation_id, get_tenant_id, set_tenant_id
from app.core.auth import AuthUser, get_current_user
from app.core.database import get_db
from app.core.rbac import ADMIN_ROLES, require_roles
from app.platform.engine import GovernanceEngine, get_engine
from app.platform.security.context import AuthContext
from app.platform.security.schemas import (
    AllowedFieldsResponse,
    AuthorizeManyRequest,
    AuthorizeRequest,
    PolicyDecision,
    PolicyRuleCreate,
    PolicyRuleRead,
    PolicyRuleUpdate,
)


router = APIRouter(prefix="/policies", tags=["policies"])


async def get_auth_context(
    request: Request,
    auth_user: AuthUser = Depends(get_current_user),
    tenant_id_header: str | None = Header(default=None, alias="x-tenant-id"),
) -> AuthContext:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    tenant_id = tenant_id_header or auth_user.tenant_id
    roles = [str(item) for item in auth_user.roles]
    ctx = AuthContext(
        user_id=auth_user.sub,
        tenant_id=tenant_id,
        correlation_id=correlation_id,
        is_super_admin=bool(ADMIN_ROLES.intersection(role.lower() for role in roles)),
        roles=roles,
        permissions=list(auth_user.permissions),
        attributes=dict(auth_user.attributes),
    )
    # async so the binding lands in the request task context, where the endpoint runs from
    if tenant_id != get_tenant_id():
        set_tenant_id(tenant_id)
    return ctx


@router.get("/rules", response_model=list[PolicyRuleRead])
def list_rules(
    resource: str | None = Query(default=None),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
    engine: GovernanceEngine = Depends(get_engine),
    _user: AuthUser = Depends(require_roles("policy.admin")),
) -> list[PolicyRuleRead]:
    return engine.policy_admin.list_rules(db, ctx, resource=resource)


@router.post("/rules", response_model=PolicyRuleRead, status_code=status.HTTP_201_CREATED)
def create_rule(
    payload: PolicyRuleCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
    engine: GovernanceEngine = Depends(get_engine),
    _user: AuthUser = Depends(require_roles("policy.admin")),
) -> PolicyRuleRead:
    return engine.policy_admin.create_rule(db, ctx, payload)


@router.patch("/rules/{rule_id}", response_model=PolicyRuleRead)
def update_rule(
    rule_id: uuid.UUID,
    payload: PolicyRuleUpdate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
    engine: GovernanceEngine = Depends(get_engine),
    _user: AuthUser = Depends(require_roles("policy.admin")),
) -> PolicyRuleRead:
    return engine.policy_admin.update_rule(db, ctx, rule_id, payload)


@router.delete("/rules/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_rule(
    rule_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
    engine: GovernanceEngine = Depends(get_engine),
    _user: AuthUser = Depends(require_roles("policy.admin")),
) -> None:
    engine.policy_admin.delete_rule(db, ctx, rule_id)


@router.post("/authorize", response_model=PolicyDecision)
def authorize(
    payload: AuthorizeRequest,
    ctx: AuthContext = Depends(get_auth_context),
    engine: GovernanceEngine = Depends(get_engine),
) -> PolicyDecision:
    return engine.policy_gate.authorize(payload.action, payload.resource, ctx, payload.record)


@router.post("/authorize-many", response_model=dict[str, PolicyDecision])
def authorize_many(
    payload: AuthorizeManyRequest,
    ctx: AuthContext = Depends(get_auth_context),
    engine: GovernanceEngine = Depends(get_engine),
) -> dict[str, PolicyDecision]:
    return engine.policy_gate.authorize_many(payload.checks, ctx, payload.record)


@router.post("/allowed-fields", response_model=AllowedFieldsResponse)
def allowed_fields(
    payload: AuthorizeRequest,
    ctx: AuthContext = Depends(get_auth_context),
    engine: GovernanceEngine = Depends(get_engine),
) -> AllowedFieldsResponse:
    fields = engine.policy_gate.get_allowed_fields(payload.action, payload.resource, ctx, payload.record)
    return AllowedFieldsResponse(action=payload.action, resource=payload.resource, allowed_fields=fields)
