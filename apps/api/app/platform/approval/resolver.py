from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from app.platform.approval.models import ApprovalTemplateRule
from app.platform.approval.schemas import (
    ASSIGNEE_ADAPTER,
    Assignee,
    ExpressionAssignee,
    GroupAssignee,
    HierarchyAssignee,
    RoleAssignee,
    UserAssignee,
)
from app.platform.conditions import evaluate, parse_condition, resolve_path
from app.platform.errors import ValidationError


logger = logging.getLogger("app.approval.resolver")


class ApproverDirectory(Protocol):
    def users_with_role(self, session: Session, tenant_id: str, role_name: str) -> list[str]:
        ...

    def group_members(self, session: Session, tenant_id: str, group_name: str) -> list[str]:
        ...

    def manager_of(self, session: Session, tenant_id: str, user_id: str) -> str | None:
        ...


@dataclass(slots=True, frozen=True)
class ResolvedAssignment:
    user_id: str
    strategy: str
    rule: dict[str, Any]
    detail: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ResolutionRequest:
    session: Session
    tenant_id: str
    requested_by: str
    view: dict[str, Any]


class ApproverResolver:
    """Turns a stage's assignee rules into concrete users.

    Rules are tried in priority order; the first rule whose condition holds
    and which yields at least one user decides the stage.
    """

    def __init__(self, directory: ApproverDirectory) -> None:
        self._directory = directory
        self._handlers: dict[type, Callable[[Any, ResolutionRequest], list[ResolvedAssignment]]] = {
            RoleAssignee: self._by_role,
            UserAssignee: self._by_user,
            GroupAssignee: self._by_group,
            HierarchyAssignee: self._by_hierarchy,
            ExpressionAssignee: self._by_expression,
        }

    def resolve_stage(
        self,
        request: ResolutionRequest,
        stage_no: int,
        rules: list[ApprovalTemplateRule],
    ) -> list[ResolvedAssignment]:
        candidates = sorted((rule for rule in rules if rule.stage_no == stage_no), key=lambda rule: (rule.priority, str(rule.id)))
        for rule in candidates:
            try:
                condition = parse_condition(rule.condition_json)
                assignee = ASSIGNEE_ADAPTER.validate_python(rule.assign_to_json)
            except (ValidationError, PydanticValidationError) as exc:
                logger.warning("approval_rule_malformed", extra={"rule_id": str(rule.id), "error": str(exc)})
                continue
            if not evaluate(condition, request.view):
                continue
            resolved = self.resolve(assignee, request)
            if resolved:
                return resolved
        raise ValidationError(
            f"no approver could be resolved for stage {stage_no}",
            details={"stage_no": stage_no},
        )

    def resolve(self, assignee: Assignee, request: ResolutionRequest) -> list[ResolvedAssignment]:
        handler = self._handlers[type(assignee)]
        seen: set[str] = set()
        unique: list[ResolvedAssignment] = []
        for item in handler(assignee, request):
            if item.user_id and item.user_id not in seen:
                seen.add(item.user_id)
                unique.append(item)
        return unique

    def _by_role(self, assignee: RoleAssignee, request: ResolutionRequest) -> list[ResolvedAssignment]:
        users = self._directory.users_with_role(request.session, request.tenant_id, assignee.role)
        rule = assignee.model_dump(mode="json")
        return [ResolvedAssignment(user_id=user, strategy="role", rule=rule, detail={"role": assignee.role}) for user in users]

    def _by_user(self, assignee: UserAssignee, request: ResolutionRequest) -> list[ResolvedAssignment]:
        rule = assignee.model_dump(mode="json")
        return [ResolvedAssignment(user_id=user, strategy="user", rule=rule) for user in assignee.user_ids]

    def _by_group(self, assignee: GroupAssignee, request: ResolutionRequest) -> list[ResolvedAssignment]:
        users = self._directory.group_members(request.session, request.tenant_id, assignee.group)
        rule = assignee.model_dump(mode="json")
        return [ResolvedAssignment(user_id=user, strategy="group", rule=rule, detail={"group": assignee.group}) for user in users]

    def _by_hierarchy(self, assignee: HierarchyAssignee, request: ResolutionRequest) -> list[ResolvedAssignment]:
        chain: list[str] = []
        current = request.requested_by
        for _ in range(assignee.levels):
            manager = self._directory.manager_of(request.session, request.tenant_id, current)
            if manager is None or manager in chain or manager == request.requested_by:
                break
            chain.append(manager)
            current = manager
        if len(chain) < assignee.levels:
            return []
        return [
            ResolvedAssignment(
                user_id=chain[-1],
                strategy="hierarchy",
                rule=assignee.model_dump(mode="json"),
                detail={"requester": request.requested_by, "chain": chain},
            )
        ]

    def _by_expression(self, assignee: ExpressionAssignee, request: ResolutionRequest) -> list[ResolvedAssignment]:
        found, value = resolve_path(request.view, assignee.path)
        if not found or value is None:
            return []
        values = value if isinstance(value, (list, tuple)) else [value]
        rule = assignee.model_dump(mode="json")
        return [
            ResolvedAssignment(user_id=str(item), strategy="expression", rule=rule, detail={"path": assignee.path})
            for item in values
            if item not in (None, "")
        ]
