from __future__ import annotations

import uuid

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.authz.models import Group, GroupMember, ReportingLine, Role, UserRole
from app.authz.schemas import (
    GroupCreate,
    GroupRead,
    ReportingLineRead,
    ReportingLineUpsert,
    RoleCreate,
    RoleRead,
    UserRoleRead,
)


class DirectoryAdminService:
    """Maintains the role, group and reporting-line data used to resolve approvers."""

    def create_role(self, session: Session, tenant_id: str, dto: RoleCreate) -> RoleRead:
        role = Role(tenant_id=tenant_id, name=dto.name.strip(), description=dto.description)
        session.add(role)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="role already exists")
        session.refresh(role)
        return RoleRead.model_validate(role)

    def list_roles(self, session: Session, tenant_id: str) -> list[RoleRead]:
        rows = session.scalars(select(Role).where(Role.tenant_id == tenant_id).order_by(Role.name.asc())).all()
        return [RoleRead.model_validate(row) for row in rows]

    def assign_user_role(self, session: Session, tenant_id: str, role_id: uuid.UUID, user_id: str) -> UserRoleRead:
        role = self._role(session, tenant_id, role_id)
        mapping = session.get(UserRole, (user_id, role_id))
        if mapping is None:
            session.add(UserRole(user_id=user_id, role_id=role_id))
            session.commit()
        return UserRoleRead(user_id=user_id, role_id=role.id, role_name=role.name)

    def remove_user_role(self, session: Session, tenant_id: str, role_id: uuid.UUID, user_id: str) -> None:
        self._role(session, tenant_id, role_id)
        mapping = session.get(UserRole, (user_id, role_id))
        if mapping is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="user role not found")
        session.delete(mapping)
        session.commit()

    def create_group(self, session: Session, tenant_id: str, dto: GroupCreate) -> GroupRead:
        group = Group(tenant_id=tenant_id, name=dto.name.strip(), description=dto.description)
        session.add(group)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="group already exists")
        session.refresh(group)
        return GroupRead.model_validate(group)

    def add_group_member(self, session: Session, tenant_id: str, group_id: uuid.UUID, user_id: str) -> None:
        self._group(session, tenant_id, group_id)
        if session.get(GroupMember, (group_id, user_id)) is None:
            session.add(GroupMember(group_id=group_id, user_id=user_id))
            session.commit()

    def remove_group_member(self, session: Session, tenant_id: str, group_id: uuid.UUID, user_id: str) -> None:
        self._group(session, tenant_id, group_id)
        member = session.get(GroupMember, (group_id, user_id))
        if member is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="group member not found")
        session.delete(member)
        session.commit()

    def upsert_reporting_line(self, session: Session, tenant_id: str, dto: ReportingLineUpsert) -> ReportingLineRead:
        if dto.user_id == dto.manager_user_id:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="user cannot report to self")
        line = session.get(ReportingLine, (tenant_id, dto.user_id))
        if line is None:
            line = ReportingLine(tenant_id=tenant_id, user_id=dto.user_id, manager_user_id=dto.manager_user_id)
            session.add(line)
        else:
            line.manager_user_id = dto.manager_user_id
        session.commit()
        session.refresh(line)
        return ReportingLineRead.model_validate(line)

    def _role(self, session: Session, tenant_id: str, role_id: uuid.UUID) -> Role:
        role = session.scalar(select(Role).where(Role.id == role_id, Role.tenant_id == tenant_id))
        if role is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="role not found")
        return role

    def _group(self, session: Session, tenant_id: str, group_id: uuid.UUID) -> Group:
        group = session.scalar(select(Group).where(Group.id == group_id, Group.tenant_id == tenant_id))
        if group is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="group not found")
        return group


class SqlApproverDirectory:
    """Read-only lookups over the directory tables."""

    def users_with_role(self, session: Session, tenant_id: str, role_name: str) -> list[str]:
        rows = session.scalars(
            select(UserRole.user_id)
            .join(Role, UserRole.role_id == Role.id)
            .where(Role.tenant_id == tenant_id, Role.name == role_name)
            .order_by(UserRole.user_id.asc())
        ).all()
        return list(rows)

    def group_members(self, session: Session, tenant_id: str, group_name: str) -> list[str]:
        rows = session.scalars(
            select(GroupMember.user_id)
            .join(Group, GroupMember.group_id == Group.id)
            .where(Group.tenant_id == tenant_id, Group.name == group_name)
            .order_by(GroupMember.user_id.asc())
        ).all()
        return list(rows)

    def manager_of(self, session: Session, tenant_id: str, user_id: str) -> str | None:
        return session.scalar(
            select(ReportingLine.manager_user_id).where(
                ReportingLine.tenant_id == tenant_id,
                ReportingLine.user_id == user_id,
            )
        )


directory_admin_service = DirectoryAdminService()
