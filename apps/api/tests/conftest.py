from __future__ import annotations

from collections.abc import Generator
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.authz.schemas import GroupCreate, ReportingLineUpsert, RoleCreate, RoleRead
from app.authz.service import directory_admin_service
from app.core.auth import AuthUser, get_current_user
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.main import app as api_app
from app.platform.approval.schemas import ApprovalTemplateCreate, ApprovalTemplateRead
from app.platform.engine import GovernanceEngine, build_engine, get_engine
from app.platform.lifecycle.schemas import (
    LifecycleDefinitionCreate,
    LifecycleDefinitionRead,
    LifecycleInstanceRead,
    LifecycleRouteCreate,
)
from app.platform.security.context import AuthContext
from app.platform.security.policies import StaticPolicySource

import app.authz.models  # noqa: F401
import app.platform.approval.models  # noqa: F401
import app.platform.jobs.models  # noqa: F401
import app.platform.lifecycle.models  # noqa: F401
import app.platform.security.models  # noqa: F401


TENANT = "tenant-a"

INVOICE_RULES: list[dict[str, Any]] = [
    {"code": "clerk-submit", "resource": "invoice", "action": "invoice.submit", "effect": "allow", "priority": 10, "roles": ["clerk"]},
    {"code": "clerk-void", "resource": "invoice", "action": "invoice.void", "effect": "allow", "priority": 10, "roles": ["clerk"]},
    {"code": "manager-pay", "resource": "invoice", "action": "invoice.pay", "effect": "allow", "priority": 10, "roles": ["manager"]},
]


class FrozenClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


def make_ctx(user_id: str = "clerk-1", roles: list[str] | None = None, **extra: Any) -> AuthContext:
    return AuthContext(
        user_id=user_id,
        tenant_id=extra.pop("tenant_id", TENANT),
        correlation_id=extra.pop("correlation_id", None),
        roles=list(roles if roles is not None else ["clerk"]),
        **extra,
    )


@dataclass
class Seeder:
    session: Session
    engine: GovernanceEngine
    admin: AuthContext

    def role(self, name: str, *users: str) -> RoleRead:
        role = directory_admin_service.create_role(self.session, TENANT, RoleCreate(name=name))
        for user in users:
            directory_admin_service.assign_user_role(self.session, TENANT, role.id, user)
        return role

    def group(self, name: str, *users: str) -> None:
        group = directory_admin_service.create_group(self.session, TENANT, GroupCreate(name=name))
        for user in users:
            directory_admin_service.add_group_member(self.session, TENANT, group.id, user)

    def manager(self, user_id: str, manager_user_id: str) -> None:
        directory_admin_service.upsert_reporting_line(
            self.session, TENANT, ReportingLineUpsert(user_id=user_id, manager_user_id=manager_user_id)
        )

    def template(self, code: str = "T1", **overrides: Any) -> ApprovalTemplateRead:
        payload: dict[str, Any] = {
            "code": code,
            "name": f"Template {code}",
            "stages": [{"stage_no": 1, "quorum": "any"}],
            "rules": [{"stage_no": 1, "assign_to": {"type": "user", "user_ids": ["approver-1", "approver-2"]}}],
        }
        payload.update(overrides)
        return self.engine.approval_templates.create_template(
            self.session, self.admin, ApprovalTemplateCreate.model_validate(payload)
        )

    def invoice_lifecycle(self, *, submit_template: str | None = None, code: str = "invoice-standard") -> LifecycleDefinitionRead:
        definition = self.engine.definitions.create_lifecycle(
            self.session,
            self.admin,
            LifecycleDefinitionCreate.model_validate(
                {
                    "code": code,
                    "name": "Invoice",
                    "states": [
                        {"code": "DRAFT", "sort_order": 0},
                        {"code": "SUBMITTED", "sort_order": 1},
                        {"code": "PAID", "sort_order": 2, "is_terminal": True},
                        {"code": "VOID", "sort_order": 3, "is_terminal": True},
                    ],
                    "transitions": [
                        {
                            "from_state": "DRAFT",
                            "to_state": "SUBMITTED",
                            "operation_code": "submit",
                            "required_policy_action": "invoice.submit",
                            "approval_template_code": submit_template,
                        },
                        {
                            "from_state": "DRAFT",
                            "to_state": "VOID",
                            "operation_code": "void",
                            "required_policy_action": "invoice.void",
                        },
                        {
                            "from_state": "SUBMITTED",
                            "to_state": "PAID",
                            "operation_code": "pay",
                            "required_policy_action": "invoice.pay",
                        },
                        {"from_state": "SUBMITTED", "to_state": "DRAFT", "operation_code": "reopen"},
                    ],
                }
            ),
        )
        self.engine.definitions.add_route(
            self.session,
            self.admin,
            LifecycleRouteCreate(entity_name="invoice", lifecycle_code=code),
        )
        return definition

    def instance(self, entity_id: str = "inv-1", *, ctx: AuthContext | None = None, record: dict[str, Any] | None = None) -> LifecycleInstanceRead:
        created = self.engine.lifecycle_manager.create_instance(
            self.session, ctx or make_ctx(), "invoice", entity_id, record or {"amount": 500}
        )
        assert created is not None
        return created


@pytest.fixture(autouse=True)
def clear_stubs() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()


@pytest.fixture()
def sql_engine() -> Generator[Engine, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def session_factory(sql_engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=sql_engine, autocommit=False, autoflush=False)


@pytest.fixture()
def db_session(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def clock() -> FrozenClock:
    return FrozenClock(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))


@pytest.fixture()
def policy_source() -> StaticPolicySource:
    return StaticPolicySource(INVOICE_RULES)


@pytest.fixture()
def governance(
    session_factory: sessionmaker[Session],
    policy_source: StaticPolicySource,
    clock: FrozenClock,
) -> GovernanceEngine:
    return build_engine(session_factory, get_settings(), policy_source=policy_source, clock=clock)


@pytest.fixture()
def admin_ctx() -> AuthContext:
    return make_ctx("admin-1", roles=["admin"], is_super_admin=True)


@pytest.fixture()
def seed(db_session: Session, governance: GovernanceEngine, admin_ctx: AuthContext) -> Seeder:
    return Seeder(session=db_session, engine=governance, admin=admin_ctx)


def published(event_type: str) -> list[dict[str, Any]]:
    return [item for item in events.published_events if item.get("event_type") == event_type]


@dataclass
class ActingUser:
    user: AuthUser

    def act_as(self, sub: str, roles: list[str], **attributes: Any) -> None:
        self.user = AuthUser(sub=sub, roles=roles, tenant_id=TENANT, attributes=attributes)


@pytest.fixture()
def acting() -> ActingUser:
    return ActingUser(AuthUser(sub="clerk-1", roles=["clerk"], tenant_id=TENANT))


@pytest.fixture()
def client(db_session: Session, governance: GovernanceEngine, acting: ActingUser) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    api_app.dependency_overrides[get_db] = override_get_db
    api_app.dependency_overrides[get_engine] = lambda: governance
    api_app.dependency_overrides[get_current_user] = lambda: acting.user
    with TestClient(api_app) as test_client:
        yield test_client
    api_app.dependency_overrides.clear()
