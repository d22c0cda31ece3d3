from __future__ import annotations

import hashlib
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from threading import RLock
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.metrics import observe_route_cache
from app.platform.conditions import Condition, build_evaluation_view, canonical_json, evaluate, parse_condition
from app.platform.errors import ValidationError
from app.platform.lifecycle.models import Lifecycle, LifecycleRoute
from app.platform.security.context import AuthContext


logger = logging.getLogger("app.lifecycle.routing")


@dataclass(slots=True, frozen=True)
class CompiledRoute:
    route_id: uuid.UUID
    lifecycle_id: uuid.UUID
    priority: int
    condition: Condition | None


@dataclass(slots=True)
class CompiledRouteTable:
    tenant_id: str
    entity_name: str
    routes: list[CompiledRoute] = field(default_factory=list)
    digest: str = ""
    compiled_at: float = 0.0

    def match(self, view: dict[str, Any]) -> uuid.UUID | None:
        for route in self.routes:
            if evaluate(route.condition, view):
                return route.lifecycle_id
        return None


def compile_route_table(session: Session, tenant_id: str, entity_name: str, *, now: float = 0.0) -> CompiledRouteTable:
    """Load active routes for one entity and order them by priority.

    A route whose stored condition no longer parses is dropped from the
    table rather than treated as unconditional.
    """

    rows = session.scalars(
        select(LifecycleRoute)
        .join(Lifecycle, Lifecycle.id == LifecycleRoute.lifecycle_id)
        .where(
            LifecycleRoute.tenant_id == tenant_id,
            LifecycleRoute.entity_name == entity_name,
            LifecycleRoute.is_active.is_(True),
            Lifecycle.is_active.is_(True),
        )
        .order_by(LifecycleRoute.priority.asc(), LifecycleRoute.created_at.asc(), LifecycleRoute.id.asc())
    ).all()

    compiled: list[CompiledRoute] = []
    fingerprint: list[dict[str, Any]] = []
    for row in rows:
        try:
            condition = parse_condition(row.condition_json)
        except ValidationError as exc:
            logger.warning(
                "lifecycle_route_malformed",
                extra={"entity_name": entity_name, "rule_id": str(row.id), "error": exc.message},
            )
            continue
        compiled.append(
            CompiledRoute(route_id=row.id, lifecycle_id=row.lifecycle_id, priority=row.priority, condition=condition)
        )
        fingerprint.append(
            {
                "id": str(row.id),
                "lifecycle_id": str(row.lifecycle_id),
                "priority": row.priority,
                "condition": row.condition_json,
            }
        )

    digest = hashlib.sha256(canonical_json(fingerprint).encode("utf-8")).hexdigest()
    return CompiledRouteTable(
        tenant_id=tenant_id,
        entity_name=entity_name,
        routes=compiled,
        digest=digest,
        compiled_at=now,
    )


class RouteResolver:
    """Picks the lifecycle that governs a record, one compiled table per (tenant, entity)."""

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = RLock()
        self._tables: dict[tuple[str, str], CompiledRouteTable] = {}
        self._generations: dict[tuple[str, str], int] = {}

    def resolve_lifecycle(
        self,
        session: Session,
        entity_name: str,
        ctx: AuthContext,
        record: dict[str, Any] | None = None,
    ) -> uuid.UUID | None:
        tenant_id = ctx.require_tenant()
        table = self._table(session, tenant_id, entity_name)
        view = build_evaluation_view(ctx.as_view(), record, entity_name=entity_name)
        return table.match(view)

    def compiled_table(self, session: Session, tenant_id: str, entity_name: str) -> CompiledRouteTable:
        return self._table(session, tenant_id, entity_name)

    def invalidate(self, entity_name: str | None = None, tenant_id: str | None = None) -> int:
        with self._lock:
            doomed = [
                key
                for key in self._tables
                if (tenant_id is None or key[0] == tenant_id) and (entity_name is None or key[1] == entity_name)
            ]
            for key in doomed:
                del self._tables[key]
            if tenant_id is not None and entity_name is not None:
                key = (tenant_id, entity_name)
                self._generations[key] = self._generations.get(key, 0) + 1
            else:
                for key in list(self._generations):
                    if (tenant_id is None or key[0] == tenant_id) and (entity_name is None or key[1] == entity_name):
                        self._generations[key] += 1
                self._generations[("*", "*")] = self._generations.get(("*", "*"), 0) + 1
        logger.info(
            "lifecycle_routes_invalidated",
            extra={"entity_name": entity_name or "*"},
        )
        return len(doomed)

    def precompile_all(self, session: Session, tenant_id: str | None = None) -> int:
        stmt = select(LifecycleRoute.tenant_id, LifecycleRoute.entity_name).where(LifecycleRoute.is_active.is_(True)).distinct()
        if tenant_id is not None:
            stmt = stmt.where(LifecycleRoute.tenant_id == tenant_id)
        pairs = session.execute(stmt).all()
        for pair_tenant, entity_name in pairs:
            table = compile_route_table(session, pair_tenant, entity_name, now=self._clock())
            with self._lock:
                self._tables[(pair_tenant, entity_name)] = table
        return len(pairs)

    def _generation(self, key: tuple[str, str]) -> tuple[int, int]:
        return self._generations.get(key, 0), self._generations.get(("*", "*"), 0)

    def _table(self, session: Session, tenant_id: str, entity_name: str) -> CompiledRouteTable:
        key = (tenant_id, entity_name)
        with self._lock:
            cached = self._tables.get(key)
            generation = self._generation(key)
        if cached is not None:
            observe_route_cache(True)
            return cached

        observe_route_cache(False)
        table = compile_route_table(session, tenant_id, entity_name, now=self._clock())
        with self._lock:
            # an invalidation that raced with compilation wins; the stale table is not stored
            if self._generation(key) == generation:
                self._tables[key] = table
        return table
