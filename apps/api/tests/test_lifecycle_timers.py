from __future__ import annotations

from typing import Any

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError
from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from app.platform.clock import ensure_utc
from app.platform.engine import GovernanceEngine
from app.platform.errors import InvalidStateError
from app.platform.jobs.models import Job, JobStatus
from app.platform.lifecycle.models import EntityLifecycleEvent, EntityLifecycleInstance
from app.platform.lifecycle.schemas import LifecycleDefinitionCreate, LifecycleRouteCreate, TransitionRequest
from app.platform.lifecycle.service import TIMER_ACTOR, TIMER_JOB

from conftest import FrozenClock, Seeder, make_ctx, published


def _definition(draft_timer: dict[str, Any] | None, **overrides: Any) -> LifecycleDefinitionCreate:
    payload: dict[str, Any] = {
        "code": "invoice-timed",
        "name": "Invoice",
        "states": [
            {"code": "DRAFT", "sort_order": 0, "timer": draft_timer},
            {"code": "SUBMITTED", "sort_order": 1},
            {"code": "VOID", "sort_order": 2, "is_terminal": True},
        ],
        "transitions": [
            {"from_state": "DRAFT", "to_state": "SUBMITTED", "operation_code": "submit", "required_policy_action": "invoice.submit"},
            {"from_state": "DRAFT", "to_state": "VOID", "operation_code": "void", "required_policy_action": "invoice.void"},
            {"from_state": "SUBMITTED", "to_state": "DRAFT", "operation_code": "reopen"},
        ],
    }
    payload.update(overrides)
    return LifecycleDefinitionCreate.model_validate(payload)


def _timed_lifecycle(seed: Seeder, draft_timer: dict[str, Any]) -> None:
    seed.engine.definitions.create_lifecycle(seed.session, seed.admin, _definition(draft_timer))
    seed.engine.definitions.add_route(
        seed.session, seed.admin, LifecycleRouteCreate(entity_name="invoice", lifecycle_code="invoice-timed")
    )


def _instance_row(session: Session, entity_id: str = "inv-1") -> EntityLifecycleInstance:
    session.expire_all()
    row = session.scalar(select(EntityLifecycleInstance).where(EntityLifecycleInstance.entity_id == entity_id))
    assert row is not None
    return row


def _state(governance: GovernanceEngine, session: Session, entity_id: str = "inv-1") -> str:
    session.expire_all()
    instance = governance.lifecycle_manager.get_instance(session, make_ctx(), "invoice", entity_id)
    assert instance is not None
    return instance.state_code


def test_auto_cancel_fires_after_the_delay(
    seed: Seeder,
    governance: GovernanceEngine,
    db_session: Session,
    clock: FrozenClock,
) -> None:
    _timed_lifecycle(seed, {"timer_type": "auto_cancel", "operation_code": "void", "delay_minutes": 60})
    seed.instance()

    row = _instance_row(db_session)
    assert row.timer_job_id is not None
    assert ensure_utc(row.timer_fire_at) == ensure_utc(clock.now.replace(hour=10))

    clock.advance(minutes=30)
    assert governance.job_queue.run_due().claimed == 0
    assert _state(governance, db_session) == "DRAFT"

    clock.advance(minutes=31)
    summary = governance.job_queue.run_due()

    assert summary.succeeded == 1
    assert _state(governance, db_session) == "VOID"
    assert _instance_row(db_session).timer_job_id is None
    event = db_session.scalar(select(EntityLifecycleEvent).where(EntityLifecycleEvent.operation_code == "void"))
    assert event is not None
    assert event.actor_id == TIMER_ACTOR
    assert event.payload_json["triggered_by"] == "lifecycle_timer"
    assert event.payload_json["timer_type"] == "auto_cancel"
    assert [item["to_state"] for item in published("lifecycle.transitioned")] == ["VOID"]


def test_manual_transition_cancels_the_pending_timer(
    seed: Seeder,
    governance: GovernanceEngine,
    db_session: Session,
    clock: FrozenClock,
) -> None:
    _timed_lifecycle(seed, {"timer_type": "auto_cancel", "operation_code": "void", "delay_minutes": 60})
    seed.instance()
    handle = _instance_row(db_session).timer_job_id

    result = governance.lifecycle_manager.transition(
        db_session, make_ctx(), TransitionRequest(entity_name="invoice", entity_id="inv-1", operation_code="submit")
    )
    assert result.status == "applied"

    db_session.expire_all()
    job = db_session.scalar(select(Job).where(Job.job_type == TIMER_JOB))
    assert job is not None
    assert str(job.id) == handle
    assert job.status == JobStatus.CANCELLED.value

    clock.advance(hours=2)
    governance.job_queue.run_due()
    assert _state(governance, db_session) == "SUBMITTED"


def test_reentering_the_state_rearms_a_fresh_timer(
    seed: Seeder,
    governance: GovernanceEngine,
    db_session: Session,
    clock: FrozenClock,
) -> None:
    _timed_lifecycle(seed, {"timer_type": "auto_cancel", "operation_code": "void", "delay_minutes": 60})
    seed.instance()
    first = _instance_row(db_session).timer_job_id

    manager = governance.lifecycle_manager
    manager.transition(db_session, make_ctx(), TransitionRequest(entity_name="invoice", entity_id="inv-1", operation_code="submit"))
    clock.advance(minutes=45)
    manager.transition(db_session, make_ctx(), TransitionRequest(entity_name="invoice", entity_id="inv-1", operation_code="reopen"))

    row = _instance_row(db_session)
    assert row.timer_job_id is not None
    assert row.timer_job_id != first

    clock.advance(minutes=30)
    governance.job_queue.run_due()
    assert _state(governance, db_session) == "DRAFT"

    clock.advance(minutes=31)
    governance.job_queue.run_due()
    assert _state(governance, db_session) == "VOID"


def test_false_condition_skips_the_transition(
    seed: Seeder,
    governance: GovernanceEngine,
    db_session: Session,
    clock: FrozenClock,
) -> None:
    _timed_lifecycle(
        seed,
        {
            "timer_type": "auto_close",
            "operation_code": "void",
            "delay_minutes": 15,
            "condition": {"path": "amount", "op": "lt", "value": 100},
        },
    )
    seed.instance("inv-1", record={"amount": 500})
    seed.instance("inv-2", record={"amount": 50})

    clock.advance(minutes=20)
    summary = governance.job_queue.run_due()

    assert summary.succeeded == 2
    assert _state(governance, db_session, "inv-1") == "DRAFT"
    assert _instance_row(db_session, "inv-1").timer_job_id is None
    assert _state(governance, db_session, "inv-2") == "VOID"


def test_field_relative_delay_uses_the_record_date(
    seed: Seeder,
    governance: GovernanceEngine,
    db_session: Session,
    clock: FrozenClock,
) -> None:
    _timed_lifecycle(
        seed,
        {"operation_code": "void", "delay_from_field": "due_date", "offset_minutes": 30},
    )
    seed.instance("inv-1", record={"due_date": "2026-03-02T12:00:00+00:00"})
    seed.instance("inv-2", record={"due_date": "2026-03-01T12:00:00+00:00"})
    seed.instance("inv-3", record={"amount": 5})

    scheduled = _instance_row(db_session, "inv-1")
    assert ensure_utc(scheduled.timer_fire_at) == ensure_utc(clock.now.replace(hour=12, minute=30))
    assert _instance_row(db_session, "inv-2").timer_job_id is None
    assert _instance_row(db_session, "inv-3").timer_job_id is None

    clock.advance(hours=3, minutes=31)
    governance.job_queue.run_due()
    assert _state(governance, db_session, "inv-1") == "VOID"
    assert _state(governance, db_session, "inv-2") == "DRAFT"


def test_rehydrate_requeues_timers_lost_with_the_queue(
    seed: Seeder,
    governance: GovernanceEngine,
    db_session: Session,
    clock: FrozenClock,
) -> None:
    _timed_lifecycle(seed, {"timer_type": "auto_cancel", "operation_code": "void", "delay_minutes": 60})
    seed.instance()
    before = _instance_row(db_session).timer_job_id

    db_session.execute(delete(Job).where(Job.job_type == TIMER_JOB))
    db_session.commit()

    assert governance.lifecycle_manager.rehydrate_timers(db_session) == 1
    assert governance.lifecycle_manager.rehydrate_timers(db_session) == 0
    after = _instance_row(db_session).timer_job_id
    assert after is not None
    assert after != before

    clock.advance(minutes=61)
    governance.job_queue.run_due()
    assert _state(governance, db_session) == "VOID"


def test_timer_definitions_are_validated(seed: Seeder) -> None:
    create = seed.engine.definitions.create_lifecycle

    with pytest.raises(InvalidStateError):
        create(seed.session, seed.admin, _definition({"operation_code": "archive", "delay_minutes": 5}))

    terminal_timer = _definition(
        None,
        states=[
            {"code": "DRAFT", "sort_order": 0},
            {"code": "SUBMITTED", "sort_order": 1},
            {"code": "VOID", "sort_order": 2, "is_terminal": True, "timer": {"operation_code": "void", "delay_minutes": 5}},
        ],
    )
    with pytest.raises(InvalidStateError):
        create(seed.session, seed.admin, terminal_timer)

    with pytest.raises(ValidationError):
        _definition({"operation_code": "void", "delay_minutes": 5, "delay_from_field": "due_date"})
    with pytest.raises(ValidationError):
        _definition({"operation_code": "void"})


def test_timer_definition_round_trips_through_the_api(client: TestClient, seed: Seeder) -> None:
    _timed_lifecycle(seed, {"timer_type": "auto_cancel", "operation_code": "void", "delay_minutes": 60})

    body = client.get("/lifecycle/definitions/invoice-timed").json()

    timers = {state["code"]: state["timer_json"] for state in body["states"]}
    assert timers["SUBMITTED"] is None
    assert timers["DRAFT"]["operation_code"] == "void"
    assert timers["DRAFT"]["delay_minutes"] == 60
    assert timers["DRAFT"]["timer_type"] == "auto_cancel"
