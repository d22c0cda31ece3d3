from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app import audit
from app.events import emit
from app.platform.conditions import condition_to_dict, parse_condition
from app.platform.errors import DuplicateCodeError, NotFoundError
from app.platform.security.context import AuthContext
from app.platform.security.models import PolicyRule, PolicySetVersion
from app.platform.security.policies import PolicyGate
from app.platform.security.schemas import PolicyRuleCreate, PolicyRuleRead, PolicyRuleUpdate


@dataclass(slots=True)
class PolicyAdminService:
    """Rule maintenance; every edit bumps the policy-set version and invalidates the gate."""

    gate: PolicyGate

    def list_rules(self, session: Session, ctx: AuthContext, *, resource: str | None = None) -> list[PolicyRuleRead]:
        stmt = select(PolicyRule).where(PolicyRule.tenant_id == ctx.require_tenant())
        if resource is not None:
            stmt = stmt.where(PolicyRule.resource == resource)
        rows = session.scalars(stmt.order_by(PolicyRule.resource.asc(), PolicyRule.priority.asc(), PolicyRule.code.asc())).all()
        return [PolicyRuleRead.model_validate(row) for row in rows]

    def create_rule(self, session: Session, ctx: AuthContext, dto: PolicyRuleCreate) -> PolicyRuleRead:
        tenant_id = ctx.require_tenant()
        condition = parse_condition(dto.condition)
        rule = PolicyRule(
            tenant_id=tenant_id,
            code=dto.code.strip(),
            resource=dto.resource.strip(),
            action=dto.action.strip(),
            effect=dto.effect,
            priority=dto.priority,
            roles_json=sorted(set(dto.roles)),
            condition_json=condition_to_dict(condition),
            fields_json=dto.allowed_fields,
            description=dto.description,
            is_active=dto.is_active,
        )
        session.add(rule)
        self._bump_version(session, tenant_id, rule.resource)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise DuplicateCodeError(f"policy rule '{dto.code}' already exists")
        session.refresh(rule)
        read = PolicyRuleRead.model_validate(rule)
        self._after_change(ctx, read, "policy.rule.created", before=None, after=read.model_dump(mode="json"))
        return read

    def update_rule(self, session: Session, ctx: AuthContext, rule_id: uuid.UUID, dto: PolicyRuleUpdate) -> PolicyRuleRead:
        rule = self._load(session, ctx, rule_id)
        before = PolicyRuleRead.model_validate(rule).model_dump(mode="json")
        changes = dto.model_dump(exclude_unset=True)

        if "condition" in changes:
            rule.condition_json = condition_to_dict(parse_condition(dto.condition))
        if "roles" in changes:
            rule.roles_json = sorted(set(dto.roles or []))
        if "allowed_fields" in changes:
            rule.fields_json = dto.allowed_fields
        if dto.effect is not None:
            rule.effect = dto.effect
        if dto.priority is not None:
            rule.priority = dto.priority
        if "description" in changes:
            rule.description = dto.description
        if dto.is_active is not None:
            rule.is_active = dto.is_active

        self._bump_version(session, rule.tenant_id, rule.resource)
        session.commit()
        session.refresh(rule)
        read = PolicyRuleRead.model_validate(rule)
        self._after_change(ctx, read, "policy.rule.updated", before=before, after=read.model_dump(mode="json"))
        return read

    def delete_rule(self, session: Session, ctx: AuthContext, rule_id: uuid.UUID) -> None:
        rule = self._load(session, ctx, rule_id)
        read = PolicyRuleRead.model_validate(rule)
        self._bump_version(session, rule.tenant_id, rule.resource)
        session.delete(rule)
        session.commit()
        self._after_change(ctx, read, "policy.rule.deleted", before=read.model_dump(mode="json"), after=None)

    def _load(self, session: Session, ctx: AuthContext, rule_id: uuid.UUID) -> PolicyRule:
        rule = session.scalar(
            select(PolicyRule).where(PolicyRule.id == rule_id, PolicyRule.tenant_id == ctx.require_tenant())
        )
        if rule is None:
            raise NotFoundError("policy rule not found")
        return rule

    @staticmethod
    def _bump_version(session: Session, tenant_id: str, resource: str) -> None:
        row = session.get(PolicySetVersion, (tenant_id, resource))
        if row is None:
            session.add(PolicySetVersion(tenant_id=tenant_id, resource=resource, version=1))
        else:
            row.version = row.version + 1

    def _after_change(
        self,
        ctx: AuthContext,
        rule: PolicyRuleRead,
        action: str,
        *,
        before: dict[str, Any] | None,
        after: dict[str, Any] | None,
    ) -> None:
        self.gate.invalidate_policy_cache(rule.resource, tenant_id=rule.tenant_id)
        audit.record(
            actor_user_id=ctx.user_id,
            entity_type="policy_rule",
            entity_id=str(rule.id),
            action=action,
            before=before,
            after=after,
            correlation_id=ctx.correlation_id,
            tenant_id=rule.tenant_id,
        )
        emit("policy.invalidated", resource=rule.resource, rule_code=rule.code, tenant_id=rule.tenant_id)
