from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.orm import Session

from app.core.auth import AuthUser
from app.core.database import get_db
from app.core.rbac import require_roles
from app.platform.engine import GovernanceEngine, get_engine
from app.platform.http import status_for_code
from app.platform.lifecycle.schemas import (
    AvailableTransition,
    CreateInstanceRequest,
    LifecycleDefinitionCreate,
    LifecycleDefinitionRead,
    LifecycleHistoryPage,
    LifecycleInstanceRead,
    LifecycleRouteCreate,
    LifecycleRouteRead,
    PrecompileResult,
    TimerRehydrateResult,
    TransitionBody,
    TransitionRequest,
    TransitionResult,
)
from app.platform.security.api import get_auth_context
from app.platform.security.context import AuthContext


router = APIRouter(prefix="/lifecycle", tags=["lifecycle"])


def _respond(response: Response, result: TransitionResult) -> TransitionResult:
    default = status.HTTP_202_ACCEPTED if result.status == "pending" else status.HTTP_200_OK
    response.status_code = status_for_code(result.code, default=default)
    return result


@router.post("/records/{entity_name}/{entity_id}", response_model=LifecycleInstanceRead)
def create_instance(
    entity_name: str,
    entity_id: str,
    response: Response,
    payload: CreateInstanceRequest | None = None,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
    engine: GovernanceEngine = Depends(get_engine),
) -> LifecycleInstanceRead | Response:
    record = payload.record if payload is not None else None
    instance = engine.lifecycle_manager.create_instance(db, ctx, entity_name, entity_id, record)
    if instance is None:
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    response.status_code = status.HTTP_201_CREATED
    return instance


@router.get("/records/{entity_name}/{entity_id}", response_model=LifecycleInstanceRead)
def get_instance(
    entity_name: str,
    entity_id: str,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
    engine: GovernanceEngine = Depends(get_engine),
) -> LifecycleInstanceRead:
    return engine.lifecycle_manager.get_instance(db, ctx, entity_name, entity_id)


@router.post("/records/{entity_name}/{entity_id}/transition/{operation_code}", response_model=TransitionResult)
def transition(
    entity_name: str,
    entity_id: str,
    operation_code: str,
    response: Response,
    payload: TransitionBody | None = None,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
    engine: GovernanceEngine = Depends(get_engine),
) -> TransitionResult:
    request = TransitionRequest(
        entity_name=entity_name,
        entity_id=entity_id,
        operation_code=operation_code,
        **(payload or TransitionBody()).model_dump(),
    )
    return _respond(response, engine.lifecycle_manager.transition(db, ctx, request))


@router.post("/records/{entity_name}/{entity_id}/can-transition/{operation_code}", response_model=TransitionResult)
def can_transition(
    entity_name: str,
    entity_id: str,
    operation_code: str,
    payload: TransitionBody | None = None,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
    engine: GovernanceEngine = Depends(get_engine),
) -> TransitionResult:
    request = TransitionRequest(
        entity_name=entity_name,
        entity_id=entity_id,
        operation_code=operation_code,
        **(payload or TransitionBody()).model_dump(),
    )
    return engine.lifecycle_manager.can_transition(db, ctx, request)


@router.get("/records/{entity_name}/{entity_id}/available-transitions", response_model=list[AvailableTransition])
def available_transitions(
    entity_name: str,
    entity_id: str,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
    engine: GovernanceEngine = Depends(get_engine),
) -> list[AvailableTransition]:
    return engine.lifecycle_manager.get_available_transitions(db, ctx, entity_name, entity_id)


@router.get("/records/{entity_name}/{entity_id}/history", response_model=LifecycleHistoryPage)
def history(
    entity_name: str,
    entity_id: str,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
    engine: GovernanceEngine = Depends(get_engine),
) -> LifecycleHistoryPage:
    return engine.lifecycle_manager.get_history(db, ctx, entity_name, entity_id, page=page, page_size=page_size)


@router.post("/definitions", response_model=LifecycleDefinitionRead, status_code=status.HTTP_201_CREATED)
def create_definition(
    payload: LifecycleDefinitionCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
    engine: GovernanceEngine = Depends(get_engine),
    _user: AuthUser = Depends(require_roles("lifecycle.admin")),
) -> LifecycleDefinitionRead:
    return engine.definitions.create_lifecycle(db, ctx, payload)


@router.get("/definitions/{code}", response_model=LifecycleDefinitionRead)
def get_definition(
    code: str,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
    engine: GovernanceEngine = Depends(get_engine),
) -> LifecycleDefinitionRead:
    return engine.definitions.get_lifecycle(db, ctx, code)


@router.get("/routes", response_model=list[LifecycleRouteRead])
def list_routes(
    entity_name: str | None = Query(default=None),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
    engine: GovernanceEngine = Depends(get_engine),
    _user: AuthUser = Depends(require_roles("lifecycle.admin")),
) -> list[LifecycleRouteRead]:
    return engine.definitions.list_routes(db, ctx, entity_name)


@router.post("/routes", response_model=LifecycleRouteRead, status_code=status.HTTP_201_CREATED)
def create_route(
    payload: LifecycleRouteCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
    engine: GovernanceEngine = Depends(get_engine),
    _user: AuthUser = Depends(require_roles("lifecycle.admin")),
) -> LifecycleRouteRead:
    return engine.definitions.add_route(db, ctx, payload)


@router.delete("/routes/{route_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_route(
    route_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
    engine: GovernanceEngine = Depends(get_engine),
    _user: AuthUser = Depends(require_roles("lifecycle.admin")),
) -> None:
    engine.definitions.delete_route(db, ctx, route_id)


@router.post("/routes/precompile", response_model=PrecompileResult)
def precompile_routes(
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
    engine: GovernanceEngine = Depends(get_engine),
    _user: AuthUser = Depends(require_roles("lifecycle.admin")),
) -> PrecompileResult:
    return PrecompileResult(compiled=engine.definitions.precompile(db, ctx))


@router.post("/timers/rehydrate", response_model=TimerRehydrateResult)
def rehydrate_state_timers(
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
    engine: GovernanceEngine = Depends(get_engine),
    _user: AuthUser = Depends(require_roles("lifecycle.admin", "jobs.admin")),
) -> TimerRehydrateResult:
    return TimerRehydrateResult(rehydrated=engine.lifecycle_manager.rehydrate_timers(db, tenant_id=ctx.require_tenant()))
