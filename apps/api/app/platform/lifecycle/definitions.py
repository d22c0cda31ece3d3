from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from sqlalchemy import ColumnElement, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from app import audit
from app.platform.approval.templates import ApprovalTemplateService
from app.platform.conditions import condition_to_dict, parse_condition
from app.platform.errors import DuplicateCodeError, InvalidStateError, NotFoundError
from app.platform.lifecycle.models import Lifecycle, LifecycleRoute, LifecycleState, LifecycleTransition
from app.platform.lifecycle.routing import RouteResolver
from app.platform.lifecycle.schemas import (
    LifecycleDefinitionCreate,
    LifecycleDefinitionRead,
    LifecycleRouteCreate,
    LifecycleRouteRead,
    StateTimerDefinition,
)
from app.platform.security.context import AuthContext


def validate_definition(dto: LifecycleDefinitionCreate) -> None:
    codes = [state.code for state in dto.states]
    duplicates = sorted({code for code in codes if codes.count(code) > 1})
    if duplicates:
        raise InvalidStateError("duplicate state codes", details={"states": duplicates})

    terminal = {state.code for state in dto.states if state.is_terminal}
    if len(terminal) == len(codes):
        raise InvalidStateError("a lifecycle needs at least one non-terminal state")

    known = set(codes)
    edges: set[tuple[str, str]] = set()
    for transition in dto.transitions:
        for code in (transition.from_state, transition.to_state):
            if code not in known:
                raise InvalidStateError(f"transition '{transition.operation_code}' references unknown state '{code}'")
        if transition.from_state in terminal:
            raise InvalidStateError(
                f"terminal state '{transition.from_state}' cannot have outgoing transitions",
                details={"operation_code": transition.operation_code},
            )
        edge = (transition.from_state, transition.operation_code)
        if edge in edges:
            raise InvalidStateError(
                f"duplicate transition '{transition.operation_code}' from state '{transition.from_state}'"
            )
        edges.add(edge)

    for state in dto.states:
        if state.timer is None:
            continue
        if state.is_terminal:
            raise InvalidStateError(f"terminal state '{state.code}' cannot carry a timer")
        if (state.code, state.timer.operation_code) not in edges:
            raise InvalidStateError(
                f"timer on state '{state.code}' fires unknown transition '{state.timer.operation_code}'"
            )
        parse_condition(state.timer.condition)


def _timer_json(timer: StateTimerDefinition | None) -> dict[str, Any] | None:
    if timer is None:
        return None
    payload = timer.model_dump(mode="json")
    payload["condition"] = condition_to_dict(parse_condition(timer.condition))
    return payload


@dataclass(slots=True)
class LifecycleDefinitionService:
    route_resolver: RouteResolver
    templates: ApprovalTemplateService

    def create_lifecycle(self, session: Session, ctx: AuthContext, dto: LifecycleDefinitionCreate) -> LifecycleDefinitionRead:
        tenant_id = ctx.require_tenant()
        validate_definition(dto)
        code = dto.code.strip()
        existing = session.scalar(select(Lifecycle.id).where(Lifecycle.tenant_id == tenant_id, Lifecycle.code == code))
        if existing is not None:
            raise DuplicateCodeError(f"lifecycle '{code}' already exists")

        template_ids: dict[str, uuid.UUID] = {}
        for transition in dto.transitions:
            template_code = transition.approval_template_code
            if template_code and template_code not in template_ids:
                template_ids[template_code] = self.templates.resolve_code(session, tenant_id, template_code).id

        lifecycle = Lifecycle(id=uuid.uuid4(), tenant_id=tenant_id, code=code, name=dto.name, description=dto.description)
        states: dict[str, LifecycleState] = {}
        for index, state in enumerate(dto.states):
            states[state.code] = LifecycleState(
                id=uuid.uuid4(),
                code=state.code,
                name=state.name or state.code,
                is_terminal=state.is_terminal,
                sort_order=state.sort_order if state.sort_order is not None else index,
                timer_json=_timer_json(state.timer),
            )
        lifecycle.states = list(states.values())
        lifecycle.transitions = [
            LifecycleTransition(
                from_state_id=states[transition.from_state].id,
                to_state_id=states[transition.to_state].id,
                operation_code=transition.operation_code,
                name=transition.name,
                required_policy_action=transition.required_policy_action,
                approval_template_id=template_ids.get(transition.approval_template_code or ""),
                is_active=transition.is_active,
            )
            for transition in dto.transitions
        ]
        session.add(lifecycle)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise DuplicateCodeError(f"lifecycle '{code}' already exists")

        read = self._read(session, tenant_id, Lifecycle.id == lifecycle.id)
        audit.record(
            actor_user_id=ctx.user_id,
            entity_type="lifecycle_definition",
            entity_id=str(read.id),
            action="lifecycle.definition.created",
            before=None,
            after=read.model_dump(mode="json"),
            correlation_id=ctx.correlation_id,
            tenant_id=tenant_id,
        )
        return read

    def get_lifecycle(self, session: Session, ctx: AuthContext, code: str) -> LifecycleDefinitionRead:
        return self._read(session, ctx.require_tenant(), Lifecycle.code == code)

    def add_route(self, session: Session, ctx: AuthContext, dto: LifecycleRouteCreate) -> LifecycleRouteRead:
        tenant_id = ctx.require_tenant()
        lifecycle = session.scalar(
            select(Lifecycle).where(Lifecycle.tenant_id == tenant_id, Lifecycle.code == dto.lifecycle_code)
        )
        if lifecycle is None:
            raise NotFoundError(f"lifecycle '{dto.lifecycle_code}' not found")
        route = LifecycleRoute(
            tenant_id=tenant_id,
            entity_name=dto.entity_name,
            lifecycle_id=lifecycle.id,
            priority=dto.priority,
            condition_json=condition_to_dict(parse_condition(dto.condition)),
            is_active=dto.is_active,
        )
        session.add(route)
        session.commit()
        session.refresh(route)
        self.route_resolver.invalidate(entity_name=route.entity_name, tenant_id=tenant_id)

        read = LifecycleRouteRead.model_validate(route)
        audit.record(
            actor_user_id=ctx.user_id,
            entity_type="lifecycle_route",
            entity_id=str(read.id),
            action="lifecycle.route.created",
            before=None,
            after=read.model_dump(mode="json"),
            correlation_id=ctx.correlation_id,
            tenant_id=tenant_id,
        )
        return read

    def list_routes(self, session: Session, ctx: AuthContext, entity_name: str | None = None) -> list[LifecycleRouteRead]:
        stmt = select(LifecycleRoute).where(LifecycleRoute.tenant_id == ctx.require_tenant())
        if entity_name is not None:
            stmt = stmt.where(LifecycleRoute.entity_name == entity_name)
        rows = session.scalars(stmt.order_by(LifecycleRoute.entity_name.asc(), LifecycleRoute.priority.asc())).all()
        return [LifecycleRouteRead.model_validate(row) for row in rows]

    def delete_route(self, session: Session, ctx: AuthContext, route_id: uuid.UUID) -> None:
        tenant_id = ctx.require_tenant()
        route = session.scalar(select(LifecycleRoute).where(LifecycleRoute.id == route_id, LifecycleRoute.tenant_id == tenant_id))
        if route is None:
            raise NotFoundError("lifecycle route not found")
        before = LifecycleRouteRead.model_validate(route).model_dump(mode="json")
        entity_name = route.entity_name
        session.delete(route)
        session.commit()
        self.route_resolver.invalidate(entity_name=entity_name, tenant_id=tenant_id)
        audit.record(
            actor_user_id=ctx.user_id,
            entity_type="lifecycle_route",
            entity_id=str(route_id),
            action="lifecycle.route.deleted",
            before=before,
            after=None,
            correlation_id=ctx.correlation_id,
            tenant_id=tenant_id,
        )

    def precompile(self, session: Session, ctx: AuthContext) -> int:
        return self.route_resolver.precompile_all(session, tenant_id=ctx.require_tenant())

    @staticmethod
    def _read(session: Session, tenant_id: str, criterion: ColumnElement[bool]) -> LifecycleDefinitionRead:
        lifecycle = session.scalar(
            select(Lifecycle)
            .options(selectinload(Lifecycle.states), selectinload(Lifecycle.transitions))
            .where(Lifecycle.tenant_id == tenant_id, criterion)
        )
        if lifecycle is None:
            raise NotFoundError("lifecycle not found")
        return LifecycleDefinitionRead.model_validate(lifecycle)
