from __future__ import annotations

import json
import logging
import uuid
from typing import Any

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, sessionmaker

from app import audit
from app.authz.service import directory_admin_service
from app.logging import JsonLogFormatter
from app.platform.approval.models import (
    ApprovalAssignmentSnapshot,
    ApprovalEscalation,
    ApprovalEvent,
    ApprovalInstance,
    ApprovalTask,
)
from app.platform.approval.schemas import ApprovalInstanceRead, DecisionRequest
from app.platform.approval.service import evaluate_quorum
from app.platform.engine import GovernanceEngine
from app.platform.errors import (
    AuthorizationDeniedError,
    ConcurrentModificationError,
    ErrorCode,
    InvalidStateError,
    ValidationError,
)
from app.platform.jobs.models import Job, JobStatus
from app.platform.lifecycle.models import EntityLifecycleEvent
from app.platform.lifecycle.schemas import LifecycleDefinitionCreate, LifecycleRouteCreate, TransitionRequest, TransitionResult

from conftest import TENANT, FrozenClock, Seeder, make_ctx, published


def _submit(governance: GovernanceEngine, session: Session, *, record: dict[str, Any] | None = None) -> TransitionResult:
    return governance.lifecycle_manager.transition(
        session,
        make_ctx(),
        TransitionRequest(entity_name="invoice", entity_id="inv-1", operation_code="submit", record=record),
    )


def _approval(governance: GovernanceEngine, session: Session, approval_id: uuid.UUID | None) -> ApprovalInstanceRead:
    assert approval_id is not None
    return governance.approval_service.get_instance(session, make_ctx(), approval_id)


def _task_for(approval: ApprovalInstanceRead, user_id: str, status: str = "pending") -> uuid.UUID:
    return next(task.id for task in approval.tasks if task.assignee_user_id == user_id and task.status == status)


def _decide(governance: GovernanceEngine, session: Session, user_id: str, task_id: uuid.UUID, decision: str = "approve", **extra: Any):
    return governance.approval_service.make_decision(
        session, make_ctx(user_id, roles=[]), task_id, DecisionRequest(decision=decision, **extra)
    )


def _lifecycle_events(session: Session) -> list[str]:
    return sorted(session.scalars(select(EntityLifecycleEvent.outcome)).all())


def test_evaluate_quorum() -> None:
    assert evaluate_quorum("all", None, ["approved", "approved"]) == "approved"
    assert evaluate_quorum("all", None, ["approved", "pending"]) is None
    assert evaluate_quorum("all", None, ["approved", "rejected", "pending"]) == "rejected"
    assert evaluate_quorum("any", None, ["rejected", "approved"]) == "approved"
    assert evaluate_quorum("any", None, ["rejected", "pending"]) is None
    assert evaluate_quorum("any", None, ["rejected", "rejected", "delegated"]) == "rejected"
    assert evaluate_quorum("count", 2, ["approved", "pending", "pending"]) is None
    assert evaluate_quorum("count", 2, ["approved", "approved", "pending"]) == "approved"
    assert evaluate_quorum("count", 2, ["approved", "rejected", "rejected"]) == "rejected"


def test_transition_with_template_waits_for_approval(seed: Seeder, governance: GovernanceEngine, db_session: Session) -> None:
    seed.template()
    seed.invoice_lifecycle(submit_template="T1")
    seed.instance()

    result = _submit(governance, db_session)

    assert result.status == "pending"
    assert result.allowed is False
    assert result.current_state == "DRAFT"
    approval = _approval(governance, db_session, result.approval_instance_id)
    assert approval.status == "pending"
    assert sorted(task.assignee_user_id for task in approval.tasks) == ["approver-1", "approver-2"]
    assert {snapshot.strategy for snapshot in approval.snapshots} == {"user"}
    assert _lifecycle_events(db_session) == ["created", "pending"]
    assert len(published("approval.requested")) == 1

    again = _submit(governance, db_session)
    assert again.status == "pending"
    assert again.approval_instance_id == result.approval_instance_id
    assert _lifecycle_events(db_session) == ["created", "pending"]


def test_approval_finalizes_the_transition_exactly_once(seed: Seeder, governance: GovernanceEngine, db_session: Session) -> None:
    seed.template()
    seed.invoice_lifecycle(submit_template="T1")
    seed.instance()
    pending = _submit(governance, db_session)
    approval = _approval(governance, db_session, pending.approval_instance_id)

    decided = _decide(governance, db_session, "approver-1", _task_for(approval, "approver-1"), comment="looks right")

    assert decided.instance_status == "approved"
    assert decided.stage_status == "approved"
    assert decided.lifecycle is not None
    assert decided.lifecycle.status == "applied"
    assert decided.lifecycle.to_state == "SUBMITTED"
    assert decided.lifecycle.approval_instance_id == pending.approval_instance_id
    instance = governance.lifecycle_manager.get_instance(db_session, make_ctx(), "invoice", "inv-1")
    assert instance.state_code == "SUBMITTED"
    assert instance.version == 2

    # the other approver's task closed with the stage
    with pytest.raises(InvalidStateError):
        _decide(governance, db_session, "approver-2", _task_for(approval, "approver-2"))

    stored = governance.approval_service.load_instance(db_session, pending.approval_instance_id)
    replay = governance.lifecycle_manager.finalize_approved_transition(db_session, stored, actor_id="approver-1")

    assert replay.event_id == decided.lifecycle.event_id
    assert len(published("lifecycle.transitioned")) == 1
    assert _lifecycle_events(db_session) == ["applied", "created", "pending"]
    assert any(entry["action"] == "approval.approved" for entry in audit.audit_entries)


def test_only_the_assignee_may_decide(seed: Seeder, governance: GovernanceEngine, db_session: Session) -> None:
    seed.template()
    seed.invoice_lifecycle(submit_template="T1")
    seed.instance()
    approval = _approval(governance, db_session, _submit(governance, db_session).approval_instance_id)

    with pytest.raises(AuthorizationDeniedError):
        _decide(governance, db_session, "approver-2", _task_for(approval, "approver-1"))
    with pytest.raises(AuthorizationDeniedError):
        governance.approval_service.get_tasks_for_user(db_session, make_ctx("approver-2", roles=[]), "approver-1")

    mine = governance.approval_service.get_tasks_for_user(db_session, make_ctx("approver-1", roles=[]))
    assert [task.id for task in mine] == [_task_for(approval, "approver-1")]


def test_rejection_with_stop_all_cancels_later_stages(seed: Seeder, governance: GovernanceEngine, db_session: Session) -> None:
    seed.template(
        stages=[{"stage_no": 1, "quorum": "all"}, {"stage_no": 2, "quorum": "all"}],
        rules=[
            {"stage_no": 1, "assign_to": {"type": "user", "user_ids": ["approver-1"]}},
            {"stage_no": 2, "assign_to": {"type": "user", "user_ids": ["approver-2"]}},
        ],
    )
    seed.invoice_lifecycle(submit_template="T1")
    seed.instance()
    pending = _submit(governance, db_session)
    approval = _approval(governance, db_session, pending.approval_instance_id)

    decided = _decide(governance, db_session, "approver-1", _task_for(approval, "approver-1"), "reject")

    assert decided.instance_status == "rejected"
    assert decided.lifecycle is None
    after = _approval(governance, db_session, pending.approval_instance_id)
    assert [stage.status for stage in after.stages] == ["rejected", "cancelled"]
    assert governance.lifecycle_manager.get_instance(db_session, make_ctx(), "invoice", "inv-1").state_code == "DRAFT"
    assert len(published("approval.rejected")) == 1

    # a rejected approval frees the record for a fresh request
    retry = _submit(governance, db_session)
    assert retry.status == "pending"
    assert retry.approval_instance_id != pending.approval_instance_id


def test_rejection_with_continue_runs_remaining_stages(seed: Seeder, governance: GovernanceEngine, db_session: Session) -> None:
    seed.template(
        reject_policy="continue",
        stages=[{"stage_no": 1, "quorum": "all"}, {"stage_no": 2, "quorum": "all"}],
        rules=[
            {"stage_no": 1, "assign_to": {"type": "user", "user_ids": ["approver-1"]}},
            {"stage_no": 2, "assign_to": {"type": "user", "user_ids": ["approver-2"]}},
        ],
    )
    seed.invoice_lifecycle(submit_template="T1")
    seed.instance()
    pending = _submit(governance, db_session)
    approval = _approval(governance, db_session, pending.approval_instance_id)

    first = _decide(governance, db_session, "approver-1", _task_for(approval, "approver-1"), "reject")
    assert first.instance_status == "pending"
    assert _approval(governance, db_session, pending.approval_instance_id).current_stage_no == 2

    second = _decide(governance, db_session, "approver-2", _task_for(approval, "approver-2"))
    assert second.instance_status == "rejected"
    assert second.lifecycle is None


def test_optional_stage_rejection_does_not_fail_the_approval(seed: Seeder, governance: GovernanceEngine, db_session: Session) -> None:
    seed.template(
        stages=[{"stage_no": 1, "quorum": "all", "required": False}, {"stage_no": 2, "quorum": "all"}],
        rules=[
            {"stage_no": 1, "assign_to": {"type": "user", "user_ids": ["approver-1"]}},
            {"stage_no": 2, "assign_to": {"type": "user", "user_ids": ["approver-2"]}},
        ],
    )
    seed.invoice_lifecycle(submit_template="T1")
    seed.instance()
    pending = _submit(governance, db_session)
    approval = _approval(governance, db_session, pending.approval_instance_id)

    assert _decide(governance, db_session, "approver-1", _task_for(approval, "approver-1"), "reject").instance_status == "pending"
    final = _decide(governance, db_session, "approver-2", _task_for(approval, "approver-2"))

    assert final.instance_status == "approved"
    assert final.lifecycle is not None and final.lifecycle.status == "applied"


def test_required_stages_done_skips_optional_leftovers(seed: Seeder, governance: GovernanceEngine, db_session: Session) -> None:
    seed.template(
        stages=[{"stage_no": 1, "quorum": "all"}, {"stage_no": 2, "quorum": "all", "required": False}],
        rules=[
            {"stage_no": 1, "assign_to": {"type": "user", "user_ids": ["approver-1"]}},
            {"stage_no": 2, "assign_to": {"type": "user", "user_ids": ["approver-2"]}},
        ],
    )
    seed.invoice_lifecycle(submit_template="T1")
    seed.instance()
    pending = _submit(governance, db_session)
    approval = _approval(governance, db_session, pending.approval_instance_id)

    decided = _decide(governance, db_session, "approver-1", _task_for(approval, "approver-1"))

    assert decided.instance_status == "approved"
    after = _approval(governance, db_session, pending.approval_instance_id)
    assert [stage.status for stage in after.stages] == ["approved", "skipped"]
    assert _task_for(after, "approver-2", status="cancelled")


def test_count_quorum_larger_than_resolved_approvers_is_rejected_up_front(
    seed: Seeder, governance: GovernanceEngine, db_session: Session
) -> None:
    seed.template(stages=[{"stage_no": 1, "quorum": "count", "quorum_count": 3}])
    seed.invoice_lifecycle(submit_template="T1")
    seed.instance()

    with pytest.raises(ValidationError):
        _submit(governance, db_session)

    assert _lifecycle_events(db_session) == ["created"]
    assert governance.approval_service.find_pending(db_session, "tenant-a", "invoice", "inv-1") is None


def test_delegation_moves_the_task(seed: Seeder, governance: GovernanceEngine, db_session: Session) -> None:
    seed.template(rules=[{"stage_no": 1, "assign_to": {"type": "user", "user_ids": ["approver-1"]}}])
    seed.invoice_lifecycle(submit_template="T1")
    seed.instance()
    pending = _submit(governance, db_session)
    approval = _approval(governance, db_session, pending.approval_instance_id)

    delegated = _decide(governance, db_session, "approver-1", _task_for(approval, "approver-1"), "delegate", delegate_to="deputy-1")

    assert delegated.task.status == "delegated"
    assert delegated.delegated_task is not None
    assert delegated.delegated_task.assignee_user_id == "deputy-1"
    assert delegated.delegated_task.delegated_from_task_id == delegated.task.id
    snapshots = _approval(governance, db_session, pending.approval_instance_id).snapshots
    assert sorted(snapshot.strategy for snapshot in snapshots) == ["delegation", "user"]

    with pytest.raises(ValidationError):
        _decide(governance, db_session, "deputy-1", delegated.delegated_task.id, "delegate", delegate_to="deputy-1")

    final = _decide(governance, db_session, "deputy-1", delegated.delegated_task.id)
    assert final.instance_status == "approved"


def test_assignments_are_snapshotted(seed: Seeder, governance: GovernanceEngine, db_session: Session) -> None:
    role = seed.role("ap-approvers", "approver-1")
    seed.template(rules=[{"stage_no": 1, "assign_to": {"type": "role", "role": "ap-approvers"}}])
    seed.invoice_lifecycle(submit_template="T1")
    seed.instance()
    pending = _submit(governance, db_session)

    # later directory changes do not touch the open approval
    directory_admin_service.assign_user_role(db_session, TENANT, role.id, "approver-9")
    approval = _approval(governance, db_session, pending.approval_instance_id)
    assert [task.assignee_user_id for task in approval.tasks] == ["approver-1"]
    assert approval.snapshots[0].detail_json == {"role": "ap-approvers"}

    snapshot = db_session.scalar(select(ApprovalAssignmentSnapshot))
    assert snapshot is not None
    snapshot.resolved_user_id = "someone-else"
    with pytest.raises(InvalidStateError):
        db_session.commit()
    db_session.rollback()


@pytest.mark.parametrize(
    ("assign_to", "expected"),
    [
        ({"type": "group", "group": "ap-team"}, ["approver-3", "approver-4"]),
        ({"type": "hierarchy", "levels": 2}, ["director-1"]),
        ({"type": "expression", "path": "record.approver"}, ["cfo-1"]),
    ],
)
def test_assignee_strategies(
    seed: Seeder,
    governance: GovernanceEngine,
    db_session: Session,
    assign_to: dict[str, Any],
    expected: list[str],
) -> None:
    seed.group("ap-team", "approver-4", "approver-3")
    seed.manager("clerk-1", "lead-1")
    seed.manager("lead-1", "director-1")
    seed.template(rules=[{"stage_no": 1, "assign_to": assign_to}])
    seed.invoice_lifecycle(submit_template="T1")
    seed.instance()

    pending = _submit(governance, db_session, record={"amount": 500, "approver": "cfo-1"})

    approval = _approval(governance, db_session, pending.approval_instance_id)
    assert sorted(task.assignee_user_id for task in approval.tasks) == expected


def test_conditional_rules_pick_the_first_match(seed: Seeder, governance: GovernanceEngine, db_session: Session) -> None:
    seed.template(
        rules=[
            {"stage_no": 1, "priority": 10, "condition": {"path": "amount", "op": "gte", "value": 10000}, "assign_to": {"type": "user", "user_ids": ["cfo-1"]}},
            {"stage_no": 1, "priority": 100, "assign_to": {"type": "user", "user_ids": ["approver-1"]}},
        ]
    )
    seed.invoice_lifecycle(submit_template="T1")
    seed.instance()

    pending = _submit(governance, db_session, record={"amount": 25000})

    approval = _approval(governance, db_session, pending.approval_instance_id)
    assert [task.assignee_user_id for task in approval.tasks] == ["cfo-1"]


def test_second_approval_transition_is_blocked_while_one_is_pending(
    seed: Seeder, governance: GovernanceEngine, db_session: Session
) -> None:
    seed.template()
    governance.definitions.create_lifecycle(
        db_session,
        seed.admin,
        LifecycleDefinitionCreate.model_validate(
            {
                "code": "invoice-dual",
                "name": "Invoice",
                "states": [
                    {"code": "DRAFT"},
                    {"code": "SUBMITTED"},
                    {"code": "ARCHIVED", "is_terminal": True},
                ],
                "transitions": [
                    {"from_state": "DRAFT", "to_state": "SUBMITTED", "operation_code": "submit", "approval_template_code": "T1"},
                    {"from_state": "DRAFT", "to_state": "ARCHIVED", "operation_code": "archive", "approval_template_code": "T1"},
                ],
            }
        ),
    )
    governance.definitions.add_route(db_session, seed.admin, LifecycleRouteCreate(entity_name="invoice", lifecycle_code="invoice-dual"))
    seed.instance()
    pending = _submit(governance, db_session)

    blocked = governance.lifecycle_manager.transition(
        db_session, make_ctx(), TransitionRequest(entity_name="invoice", entity_id="inv-1", operation_code="archive")
    )

    assert blocked.status == "denied"
    assert blocked.code == ErrorCode.GATE_NOT_MET
    assert str(pending.approval_instance_id) in (blocked.reason or "")
    available = {
        item.operation_code: item
        for item in governance.lifecycle_manager.get_available_transitions(db_session, make_ctx(), "invoice", "inv-1")
    }
    assert available["submit"].allowed is True
    assert available["archive"].allowed is False


def test_moving_the_record_cancels_the_pending_approval(seed: Seeder, governance: GovernanceEngine, db_session: Session) -> None:
    seed.template()
    seed.invoice_lifecycle(submit_template="T1")
    seed.instance()
    pending = _submit(governance, db_session)
    approval = _approval(governance, db_session, pending.approval_instance_id)

    voided = governance.lifecycle_manager.transition(
        db_session, make_ctx(), TransitionRequest(entity_name="invoice", entity_id="inv-1", operation_code="void")
    )

    assert voided.status == "applied"
    cancelled = _approval(governance, db_session, pending.approval_instance_id)
    assert cancelled.status == "cancelled"
    assert {task.status for task in cancelled.tasks} == {"cancelled"}
    assert len(published("approval.cancelled")) == 1
    with pytest.raises(InvalidStateError):
        _decide(governance, db_session, "approver-1", _task_for(approval, "approver-1"))


def test_late_escalation_for_a_decided_task_is_a_no_op(seed: Seeder, governance: GovernanceEngine, db_session: Session) -> None:
    seed.template()
    seed.invoice_lifecycle(submit_template="T1")
    seed.instance()
    approval = _approval(governance, db_session, _submit(governance, db_session).approval_instance_id)
    task_id = _task_for(approval, "approver-1")
    escalation_job_id = db_session.get(ApprovalTask, task_id).escalation_job_id
    assert escalation_job_id is not None

    _decide(governance, db_session, "approver-1", task_id)
    governance.approval_service.process_escalation(db_session, {"task_id": str(task_id), "job_id": escalation_job_id})

    assert db_session.scalar(select(func.count()).select_from(ApprovalEscalation)) == 0
    assert published("approval.task.escalated") == []
    assert db_session.get(Job, uuid.UUID(escalation_job_id)).status == JobStatus.CANCELLED.value


def test_sla_breach_escalates_to_the_manager_once(
    seed: Seeder, governance: GovernanceEngine, db_session: Session, clock: FrozenClock
) -> None:
    seed.manager("approver-1", "boss-1")
    seed.template(rules=[{"stage_no": 1, "assign_to": {"type": "user", "user_ids": ["approver-1"]}}])
    seed.invoice_lifecycle(submit_template="T1")
    seed.instance()
    approval = _approval(governance, db_session, _submit(governance, db_session).approval_instance_id)
    task_id = _task_for(approval, "approver-1")
    task = approval.tasks[0]
    assert task.due_at is not None and task.reminder_at is not None

    clock.advance(hours=49)
    summary = governance.job_queue.run_due()
    db_session.expire_all()

    assert summary.succeeded == 2
    escalations = db_session.scalars(select(ApprovalEscalation)).all()
    assert len(escalations) == 1
    assert escalations[0].notify_user_ids == ["boss-1"]
    assert escalations[0].kind == "sla_breach"
    stored = db_session.get(ApprovalTask, task_id)
    assert stored.status == "pending"
    assert stored.escalation_count == 1
    assert stored.escalation_job_id is None
    escalated = published("approval.task.escalated")
    assert len(escalated) == 1
    assert escalated[0]["notify_user_ids"] == ["boss-1"]
    assert len(published("approval.task.reminder")) == 1
    event_types = sorted(db_session.scalars(select(ApprovalEvent.event_type)).all())
    assert event_types == ["escalated", "reminder_sent", "requested"]

    clock.advance(hours=49)
    assert governance.job_queue.run_due().claimed == 0
    assert db_session.scalar(select(func.count()).select_from(ApprovalEscalation)) == 1


def test_escalation_can_notify_configured_users(
    seed: Seeder, governance: GovernanceEngine, db_session: Session, clock: FrozenClock
) -> None:
    seed.template(
        sla_hours=8,
        escalation={"kind": "finance_overdue", "notify": "users", "user_ids": ["controller-1"]},
        rules=[{"stage_no": 1, "assign_to": {"type": "user", "user_ids": ["approver-1"]}}],
    )
    seed.invoice_lifecycle(submit_template="T1")
    seed.instance()
    _submit(governance, db_session)

    clock.advance(hours=9)
    summary = governance.job_queue.run_due()

    # the 24h reminder falls after the 8h SLA, so only the escalation was scheduled
    assert summary.succeeded == 1
    escalated = published("approval.task.escalated")
    assert escalated[0]["kind"] == "finance_overdue"
    assert escalated[0]["notify_user_ids"] == ["controller-1"]


def test_failed_finalize_is_retried_by_a_job(
    seed: Seeder,
    governance: GovernanceEngine,
    db_session: Session,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    seed.template()
    seed.invoice_lifecycle(submit_template="T1")
    seed.instance()
    approval = _approval(governance, db_session, _submit(governance, db_session).approval_instance_id)

    manager = governance.lifecycle_manager
    original = manager.finalize_approved_transition
    calls: list[str] = []

    def flaky(session: Session, approval_row: Any, *, actor_id: str) -> TransitionResult:
        calls.append(actor_id)
        if len(calls) == 1:
            raise RuntimeError("record store unavailable")
        return original(session, approval_row, actor_id=actor_id)

    monkeypatch.setattr(manager, "finalize_approved_transition", flaky)

    decided = _decide(governance, db_session, "approver-1", _task_for(approval, "approver-1"))
    assert decided.instance_status == "approved"
    assert decided.lifecycle is None
    assert manager.get_instance(db_session, make_ctx(), "invoice", "inv-1").state_code == "DRAFT"

    summary = governance.job_queue.run_due()
    db_session.expire_all()

    assert summary.succeeded == 1
    assert calls == ["approver-1", "approver-1"]
    assert manager.get_instance(db_session, make_ctx(), "invoice", "inv-1").state_code == "SUBMITTED"


def test_rehydrate_recreates_missing_timers(seed: Seeder, governance: GovernanceEngine, db_session: Session) -> None:
    seed.template()
    seed.invoice_lifecycle(submit_template="T1")
    seed.instance()
    _submit(governance, db_session)

    db_session.execute(update(Job).values(status=JobStatus.CANCELLED.value))
    db_session.commit()

    summary = governance.approval_service.rehydrate_timers(db_session, tenant_id="tenant-a")
    assert (summary.reminders, summary.escalations) == (2, 2)

    again = governance.approval_service.rehydrate_timers(db_session)
    assert (again.reminders, again.escalations) == (0, 0)
    live = db_session.scalar(select(func.count()).select_from(Job).where(Job.status == JobStatus.QUEUED.value))
    assert live == 4


@pytest.mark.parametrize("quorum", ["any", "all"])
def test_overlapping_decisions_finalize_the_transition_once(
    quorum: str,
    seed: Seeder,
    governance: GovernanceEngine,
    db_session: Session,
    session_factory: sessionmaker[Session],
) -> None:
    seed.template(stages=[{"stage_no": 1, "quorum": quorum}])
    seed.invoice_lifecycle(submit_template="T1")
    seed.instance()
    pending = _submit(governance, db_session)
    approval = _approval(governance, db_session, pending.approval_instance_id)
    first_task = _task_for(approval, "approver-1")
    second_task = _task_for(approval, "approver-2")
    db_session.commit()

    first, second = session_factory(), session_factory()
    try:
        # the second approver has the approval loaded before the first decision commits
        loaded = second.get(ApprovalInstance, pending.approval_instance_id)
        assert loaded is not None
        assert [task.status for task in loaded.stages[0].tasks] == ["pending", "pending"]

        decided = _decide(governance, first, "approver-1", first_task)
        assert decided.instance_status == ("approved" if quorum == "any" else "pending")

        with pytest.raises(ConcurrentModificationError) as conflict:
            _decide(governance, second, "approver-2", second_task)
        assert conflict.value.code == ErrorCode.CONCURRENT_MODIFICATION

        if quorum == "all":
            retried = _decide(governance, second, "approver-2", second_task)
            assert retried.instance_status == "approved"
            assert retried.lifecycle is not None
            assert retried.lifecycle.status == "applied"
        else:
            with pytest.raises(InvalidStateError):
                _decide(governance, second, "approver-2", second_task)
    finally:
        first.close()
        second.close()

    db_session.expire_all()
    assert _approval(governance, db_session, pending.approval_instance_id).status == "approved"
    assert governance.lifecycle_manager.get_instance(db_session, make_ctx(), "invoice", "inv-1").state_code == "SUBMITTED"
    assert _lifecycle_events(db_session) == ["applied", "created", "pending"]
    assert len(published("lifecycle.transitioned")) == 1
    assert len(published("approval.approved")) == 1


def test_stage_activation_and_rehydrate_logs_use_their_own_fields(
    seed: Seeder,
    governance: GovernanceEngine,
    db_session: Session,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO, logger="app.approval")
    seed.template(
        stages=[{"stage_no": 1, "quorum": "all"}, {"stage_no": 2, "quorum": "all"}],
        rules=[
            {"stage_no": 1, "assign_to": {"type": "user", "user_ids": ["approver-1"]}},
            {"stage_no": 2, "assign_to": {"type": "user", "user_ids": ["approver-2"]}},
        ],
    )
    seed.invoice_lifecycle(submit_template="T1")
    seed.instance()
    pending = _submit(governance, db_session)
    approval = _approval(governance, db_session, pending.approval_instance_id)

    _decide(governance, db_session, "approver-1", _task_for(approval, "approver-1"))
    db_session.execute(update(Job).values(status=JobStatus.CANCELLED.value))
    db_session.commit()
    governance.approval_service.rehydrate_timers(db_session)

    formatter = JsonLogFormatter()
    activated = [record for record in caplog.records if record.getMessage() == "approval_stage_activated"]
    assert len(activated) == 1
    fields = json.loads(formatter.format(activated[0]))["fields"]
    assert fields["stage_no"] == 2
    assert "status" not in fields

    rehydrated = [record for record in caplog.records if record.getMessage() == "approval_timers_rehydrated"]
    assert len(rehydrated) == 1
    fields = json.loads(formatter.format(rehydrated[0]))["fields"]
    assert (fields["reminders"], fields["escalations"]) == (1, 1)
    assert "status" not in fields
