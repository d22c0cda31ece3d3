from __future__ import annotations

import uuid
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from app import audit
from app.platform.approval.models import ApprovalTemplate, ApprovalTemplateRule, ApprovalTemplateStage
from app.platform.approval.schemas import ApprovalTemplateCreate, ApprovalTemplateRead
from app.platform.conditions import condition_to_dict, parse_condition
from app.platform.errors import DuplicateCodeError, NotFoundError, ValidationError
from app.platform.security.context import AuthContext


def validate_template(dto: ApprovalTemplateCreate) -> None:
    stage_numbers = [stage.stage_no for stage in dto.stages]
    if sorted(stage_numbers) != list(range(1, len(stage_numbers) + 1)):
        raise ValidationError(
            "approval stages must be numbered sequentially from 1",
            details={"stage_numbers": stage_numbers},
        )

    covered = {rule.stage_no for rule in dto.rules}
    for stage in dto.stages:
        if stage.stage_no not in covered:
            raise ValidationError(f"approval stage {stage.stage_no} has no assignee rule")
    unknown = sorted(covered.difference(stage_numbers))
    if unknown:
        raise ValidationError("assignee rules reference unknown stages", details={"stage_numbers": unknown})

    if not any(stage.required for stage in dto.stages):
        raise ValidationError("at least one approval stage must be required")

    for rule in dto.rules:
        parse_condition(rule.condition)


@dataclass(slots=True)
class ApprovalTemplateService:
    def create_template(self, session: Session, ctx: AuthContext, dto: ApprovalTemplateCreate) -> ApprovalTemplateRead:
        tenant_id = ctx.require_tenant()
        validate_template(dto)
        code = dto.code.strip()
        existing = session.scalar(
            select(ApprovalTemplate.id).where(ApprovalTemplate.tenant_id == tenant_id, ApprovalTemplate.code == code)
        )
        if existing is not None:
            raise DuplicateCodeError(f"approval template '{code}' already exists")

        template = ApprovalTemplate(
            tenant_id=tenant_id,
            code=code,
            name=dto.name,
            description=dto.description,
            reject_policy=dto.reject_policy,
            sla_hours=dto.sla_hours,
            reminder_hours=dto.reminder_hours,
            escalation_json=dto.escalation.model_dump(mode="json"),
        )
        template.stages = [
            ApprovalTemplateStage(
                stage_no=stage.stage_no,
                name=stage.name,
                quorum=stage.quorum,
                quorum_count=stage.quorum_count if stage.quorum == "count" else None,
                required=stage.required,
                sla_hours=stage.sla_hours,
            )
            for stage in sorted(dto.stages, key=lambda item: item.stage_no)
        ]
        template.rules = [
            ApprovalTemplateRule(
                stage_no=rule.stage_no,
                priority=rule.priority,
                condition_json=condition_to_dict(parse_condition(rule.condition)),
                assign_to_json=rule.assign_to.model_dump(mode="json"),
            )
            for rule in dto.rules
        ]
        session.add(template)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise DuplicateCodeError(f"approval template '{code}' already exists")

        read = self._read(session, tenant_id, template.id)
        audit.record(
            actor_user_id=ctx.user_id,
            entity_type="approval_template",
            entity_id=str(read.id),
            action="approval.template.created",
            before=None,
            after=read.model_dump(mode="json"),
            correlation_id=ctx.correlation_id,
            tenant_id=tenant_id,
        )
        return read

    def get_template(self, session: Session, ctx: AuthContext, code: str) -> ApprovalTemplateRead:
        tenant_id = ctx.require_tenant()
        template = session.scalar(
            select(ApprovalTemplate)
            .options(selectinload(ApprovalTemplate.stages), selectinload(ApprovalTemplate.rules))
            .where(ApprovalTemplate.tenant_id == tenant_id, ApprovalTemplate.code == code)
        )
        if template is None:
            raise NotFoundError(f"approval template '{code}' not found")
        return ApprovalTemplateRead.model_validate(template)

    def resolve_code(self, session: Session, tenant_id: str, code: str) -> ApprovalTemplate:
        template = session.scalar(
            select(ApprovalTemplate).where(
                ApprovalTemplate.tenant_id == tenant_id,
                ApprovalTemplate.code == code,
                ApprovalTemplate.is_active.is_(True),
            )
        )
        if template is None:
            raise ValidationError(f"unknown approval template '{code}'")
        return template

    @staticmethod
    def _read(session: Session, tenant_id: str, template_id: uuid.UUID) -> ApprovalTemplateRead:
        template = session.scalar(
            select(ApprovalTemplate)
            .options(selectinload(ApprovalTemplate.stages), selectinload(ApprovalTemplate.rules))
            .where(ApprovalTemplate.tenant_id == tenant_id, ApprovalTemplate.id == template_id)
        )
        if template is None:
            raise NotFoundError("approval template not found")
        return ApprovalTemplateRead.model_validate(template)
