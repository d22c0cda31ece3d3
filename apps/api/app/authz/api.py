from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from app.authz.schemas import (
    AssignUserRoleRequest,
    GroupCreate,
    GroupMemberRequest,
    GroupRead,
    ReportingLineRead,
    ReportingLineUpsert,
    RoleCreate,
    RoleRead,
    UserRoleRead,
)
from app.authz.service import directory_admin_service
from app.core.auth import AuthUser
from app.core.database import get_db
from app.core.rbac import require_roles
from app.platform.security.api import get_auth_context
from app.platform.security.context import AuthContext


admin_router = APIRouter(prefix="/admin/directory", tags=["admin.directory"])


@admin_router.post("/roles", response_model=RoleRead, status_code=status.HTTP_201_CREATED)
def create_role(
    dto: RoleCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
    _user: AuthUser = Depends(require_roles()),
) -> RoleRead:
    return directory_admin_service.create_role(db, ctx.require_tenant(), dto)


@admin_router.get("/roles", response_model=list[RoleRead])
def list_roles(
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
    _user: AuthUser = Depends(require_roles()),
) -> list[RoleRead]:
    return directory_admin_service.list_roles(db, ctx.require_tenant())


@admin_router.post("/roles/{role_id}/users", response_model=UserRoleRead, status_code=status.HTTP_201_CREATED)
def assign_user_role(
    role_id: uuid.UUID,
    dto: AssignUserRoleRequest,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
    _user: AuthUser = Depends(require_roles()),
) -> UserRoleRead:
    return directory_admin_service.assign_user_role(db, ctx.require_tenant(), role_id, dto.user_id)


@admin_router.delete("/roles/{role_id}/users/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_user_role(
    role_id: uuid.UUID,
    user_id: str,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
    _user: AuthUser = Depends(require_roles()),
) -> None:
    directory_admin_service.remove_user_role(db, ctx.require_tenant(), role_id, user_id)


@admin_router.post("/groups", response_model=GroupRead, status_code=status.HTTP_201_CREATED)
def create_group(
    dto: GroupCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
    _user: AuthUser = Depends(require_roles()),
) -> GroupRead:
    return directory_admin_service.create_group(db, ctx.require_tenant(), dto)


@admin_router.post("/groups/{group_id}/members", status_code=status.HTTP_204_NO_CONTENT)
def add_group_member(
    group_id: uuid.UUID,
    dto: GroupMemberRequest,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
    _user: AuthUser = Depends(require_roles()),
) -> None:
    directory_admin_service.add_group_member(db, ctx.require_tenant(), group_id, dto.user_id)


@admin_router.delete("/groups/{group_id}/members/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_group_member(
    group_id: uuid.UUID,
    user_id: str,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
    _user: AuthUser = Depends(require_roles()),
) -> None:
    directory_admin_service.remove_group_member(db, ctx.require_tenant(), group_id, user_id)


@admin_router.put("/reporting-lines", response_model=ReportingLineRead)
def upsert_reporting_line(
    dto: ReportingLineUpsert,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
    _user: AuthUser = Depends(require_roles()),
) -> ReportingLineRead:
    return directory_admin_service.upsert_reporting_line(db, ctx.require_tenant(), dto)
