from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from app.events import emit
from app.metrics import observe_approval_completed, observe_approval_decision, observe_timer_firing
from app.otel import get_tracer, traced
from app.platform.approval.models import (
    ApprovalAssignmentSnapshot,
    ApprovalEscalation,
    ApprovalEvent,
    ApprovalInstance,
    ApprovalStage,
    ApprovalStatus,
    ApprovalTask,
    ApprovalTemplate,
    StageStatus,
    TaskStatus,
)
from app.platform.approval.resolver import ApproverDirectory, ApproverResolver, ResolutionRequest, ResolvedAssignment
from app.platform.approval.schemas import (
    ApprovalInstanceRead,
    ApprovalRequest,
    ApprovalSnapshotRead,
    ApprovalStageRead,
    ApprovalTaskRead,
    DecisionRequest,
    DecisionResult,
    RehydrateSummary,
)
from app.platform.clock import ensure_utc, utcnow
from app.platform.conditions import build_evaluation_view
from app.platform.errors import (
    AuthorizationDeniedError,
    ConcurrentModificationError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from app.platform.jobs.queue import JobQueue
from app.platform.security.context import AuthContext

if TYPE_CHECKING:
    from app.platform.lifecycle.service import LifecycleManager


logger = logging.getLogger("app.approval")
tracer = get_tracer("app.approval")

REMINDER_JOB = "approval.reminder"
ESCALATION_JOB = "approval.escalation"
FINALIZE_JOB = "lifecycle.finalize"

_OPEN_STAGE_STATUSES = {StageStatus.WAITING.value, StageStatus.ACTIVE.value}
_COUNTED_TASK_STATUSES = {TaskStatus.PENDING.value, TaskStatus.APPROVED.value, TaskStatus.REJECTED.value}


def active_key(tenant_id: str, entity_name: str, entity_id: str) -> str:
    return f"{tenant_id}:{entity_name}:{entity_id}"


def evaluate_quorum(quorum: str, quorum_count: int | None, statuses: Iterable[str]) -> str | None:
    """Return ``approved``/``rejected`` once a stage is decided, else ``None``."""

    counted = [status for status in statuses if status in _COUNTED_TASK_STATUSES]
    approved = counted.count(TaskStatus.APPROVED.value)
    rejected = counted.count(TaskStatus.REJECTED.value)
    pending = counted.count(TaskStatus.PENDING.value)

    if quorum == "any":
        if approved >= 1:
            return StageStatus.APPROVED.value
        if counted and rejected == len(counted):
            return StageStatus.REJECTED.value
        return None
    if quorum == "count":
        needed = max(1, quorum_count or 1)
        if approved >= needed:
            return StageStatus.APPROVED.value
        if approved + pending < needed:
            return StageStatus.REJECTED.value
        return None
    if rejected:
        return StageStatus.REJECTED.value
    if counted and pending == 0:
        return StageStatus.APPROVED.value
    return None


@dataclass(slots=True)
class _Completion:
    status: str
    stage_status: str


@dataclass
class ApprovalService:
    """Multi-stage approvals with snapshotted assignees and SLA timers."""

    resolver: ApproverResolver
    directory: ApproverDirectory
    job_queue: JobQueue
    default_sla_hours: int = 48
    default_reminder_hours: int = 24
    reminder_ratio: float = 0.75
    clock: Callable[[], datetime] = utcnow
    lifecycle_manager: LifecycleManager | None = field(default=None, repr=False)

    def register_job_handlers(self, concurrency: int = 1) -> None:
        self.job_queue.process(REMINDER_JOB, concurrency, self.process_reminder)
        self.job_queue.process(ESCALATION_JOB, concurrency, self.process_escalation)

    # creation

    def create_approval_instance(self, session: Session, ctx: AuthContext, request: ApprovalRequest) -> ApprovalInstanceRead:
        """Open an approval for a record and commit it.

        Anything the caller already staged on ``session`` is committed in the
        same transaction. On failure the session is rolled back.
        """

        tenant_id = ctx.require_tenant()
        try:
            instance, stages_by_no = self._build_instance(session, ctx, tenant_id, request)
        except Exception:
            session.rollback()
            raise

        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise ConcurrentModificationError(
                f"another approval was opened for {request.entity_name}/{request.entity_id}",
                details={"entity_name": request.entity_name, "entity_id": request.entity_id},
            )

        read = self.get_instance(session, ctx, instance.id)
        logger.info(
            "approval_requested",
            extra={
                "approval_instance_id": str(read.id),
                "entity_name": read.entity_name,
                "entity_id": read.entity_id,
                "operation_code": read.operation_code,
            },
        )
        emit(
            "approval.requested",
            tenant_id=tenant_id,
            actor_user_id=ctx.user_id,
            approval_instance_id=str(read.id),
            entity_name=read.entity_name,
            entity_id=read.entity_id,
            operation_code=read.operation_code,
            stage_count=len(stages_by_no),
            assignees=sorted({task.assignee_user_id for task in read.tasks}),
        )
        return read

    def _build_instance(
        self,
        session: Session,
        ctx: AuthContext,
        tenant_id: str,
        request: ApprovalRequest,
    ) -> tuple[ApprovalInstance, dict[int, ApprovalStage]]:
        template = session.scalar(
            select(ApprovalTemplate)
            .options(selectinload(ApprovalTemplate.stages), selectinload(ApprovalTemplate.rules))
            .where(ApprovalTemplate.id == request.template_id, ApprovalTemplate.tenant_id == tenant_id)
        )
        if template is None or not template.is_active:
            raise ValidationError("approval template is not available")
        if not template.stages:
            raise ValidationError(f"approval template '{template.code}' has no stages")

        key = active_key(tenant_id, request.entity_name, request.entity_id)
        open_instance = session.scalar(select(ApprovalInstance).where(ApprovalInstance.active_key == key))
        if open_instance is not None:
            raise InvalidStateError(
                "an approval is already pending for this record",
                details={"approval_instance_id": str(open_instance.id)},
            )

        view = build_evaluation_view(
            ctx.as_view(),
            request.record,
            entity_name=request.entity_name,
            entity_id=request.entity_id,
            requester=ctx.user_id,
        )
        resolution = ResolutionRequest(session=session, tenant_id=tenant_id, requested_by=ctx.user_id, view=view)
        resolved: dict[int, list[ResolvedAssignment]] = {}
        for stage in template.stages:
            assignments = self.resolver.resolve_stage(resolution, stage.stage_no, list(template.rules))
            if stage.quorum == "count" and (stage.quorum_count or 1) > len(assignments):
                raise ValidationError(
                    f"stage {stage.stage_no} needs {stage.quorum_count} approvals but only {len(assignments)} approvers resolved",
                    details={"stage_no": stage.stage_no},
                )
            resolved[stage.stage_no] = assignments

        now = self.clock()
        first_stage_no = template.stages[0].stage_no
        instance = ApprovalInstance(
            id=request.approval_instance_id or uuid.uuid4(),
            tenant_id=tenant_id,
            template_id=template.id,
            entity_name=request.entity_name,
            entity_id=request.entity_id,
            lifecycle_instance_id=request.lifecycle_instance_id,
            transition_id=request.transition_id,
            operation_code=request.operation_code,
            status=ApprovalStatus.PENDING.value,
            active_key=key,
            current_stage_no=first_stage_no,
            requested_by=ctx.user_id,
            context_json={"record": request.record},
            created_at=now,
        )
        session.add(instance)

        stages_by_no: dict[int, ApprovalStage] = {}
        for template_stage in template.stages:
            is_first = template_stage.stage_no == first_stage_no
            stage = ApprovalStage(
                id=uuid.uuid4(),
                instance_id=instance.id,
                stage_no=template_stage.stage_no,
                name=template_stage.name,
                quorum=template_stage.quorum,
                quorum_count=template_stage.quorum_count,
                required=template_stage.required,
                sla_hours=template_stage.sla_hours,
                status=StageStatus.ACTIVE.value if is_first else StageStatus.WAITING.value,
                activated_at=now if is_first else None,
            )
            session.add(stage)
            stages_by_no[stage.stage_no] = stage
            for assignment in resolved[stage.stage_no]:
                task = self._add_task(session, instance, stage, assignment, now=now)
                if is_first:
                    self._schedule_timers(session, template, stage, task, now)

        session.add(
            ApprovalEvent(
                tenant_id=tenant_id,
                instance_id=instance.id,
                event_type="requested",
                actor_id=ctx.user_id,
                payload_json={"template": template.code, "operation_code": request.operation_code},
                occurred_at=now,
            )
        )
        session.flush()
        return instance, stages_by_no

    def _add_task(
        self,
        session: Session,
        instance: ApprovalInstance,
        stage: ApprovalStage,
        assignment: ResolvedAssignment,
        *,
        now: datetime,
        delegated_from: uuid.UUID | None = None,
    ) -> ApprovalTask:
        task = ApprovalTask(
            id=uuid.uuid4(),
            tenant_id=instance.tenant_id,
            instance_id=instance.id,
            stage=stage,
            stage_id=stage.id,
            stage_no=stage.stage_no,
            assignee_user_id=assignment.user_id,
            status=TaskStatus.PENDING.value,
            delegated_from_task_id=delegated_from,
            created_at=now,
        )
        session.add(task)
        session.add(
            ApprovalAssignmentSnapshot(
                tenant_id=instance.tenant_id,
                instance_id=instance.id,
                stage_no=stage.stage_no,
                task_id=task.id,
                strategy=assignment.strategy,
                rule_json=assignment.rule,
                resolved_user_id=assignment.user_id,
                detail_json=assignment.detail or None,
                created_at=now,
            )
        )
        return task

    def _schedule_timers(
        self,
        session: Session,
        template: ApprovalTemplate,
        stage: ApprovalStage,
        task: ApprovalTask,
        now: datetime,
    ) -> None:
        sla_hours = stage.sla_hours or template.sla_hours or self.default_sla_hours
        reminder_hours = template.reminder_hours or self.default_reminder_hours
        task.due_at = now + timedelta(hours=sla_hours)
        reminder_at = now + timedelta(hours=reminder_hours)
        payload = {"task_id": str(task.id), "instance_id": str(task.instance_id)}
        if reminder_at < task.due_at:
            task.reminder_at = reminder_at
            task.reminder_job_id = self.job_queue.enqueue(
                session, REMINDER_JOB, payload, reminder_at, tenant_id=task.tenant_id
            )
        task.escalation_job_id = self.job_queue.enqueue(
            session, ESCALATION_JOB, payload, task.due_at, tenant_id=task.tenant_id
        )

    def _cancel_timers(self, session: Session, task: ApprovalTask) -> None:
        for handle in (task.reminder_job_id, task.escalation_job_id):
            if handle:
                self.job_queue.cancel(session, handle)
        task.reminder_job_id = None
        task.escalation_job_id = None

    # decisions

    def make_decision(
        self,
        session: Session,
        ctx: AuthContext,
        task_id: uuid.UUID,
        dto: DecisionRequest,
    ) -> DecisionResult:
        tenant_id = ctx.require_tenant()
        task = session.scalar(select(ApprovalTask).where(ApprovalTask.id == task_id, ApprovalTask.tenant_id == tenant_id))
        if task is None:
            raise NotFoundError("approval task not found")
        if ctx.user_id != task.assignee_user_id and not ctx.is_super_admin:
            raise AuthorizationDeniedError(
                "only the assignee may decide this task",
                details={"task_id": str(task.id)},
            )
        if task.status != TaskStatus.PENDING.value:
            raise InvalidStateError(f"approval task is already {task.status}")
        instance = session.get(ApprovalInstance, task.instance_id)
        if instance is None or instance.status != ApprovalStatus.PENDING.value:
            raise InvalidStateError("approval is no longer pending")
        stage = task.stage
        if stage.status != StageStatus.ACTIVE.value:
            raise InvalidStateError(f"approval stage {stage.stage_no} is not active")

        with traced(
            tracer,
            "approval.decision",
            approval_instance_id=str(instance.id),
            task_id=str(task.id),
            decision=dto.decision,
        ):
            if dto.decision == "delegate":
                return self._delegate(session, ctx, instance, stage, task, dto)
            return self._decide(session, ctx, instance, stage, task, dto)

    def _claim_instance(self, session: Session, instance: ApprovalInstance) -> None:
        session.flush()
        instance_id, expected = instance.id, instance.version
        result = session.execute(
            update(ApprovalInstance)
            .where(
                ApprovalInstance.id == instance_id,
                ApprovalInstance.version == expected,
                ApprovalInstance.status == ApprovalStatus.PENDING.value,
            )
            .values(version=ApprovalInstance.version + 1)
        )
        if result.rowcount != 1:
            session.rollback()
            raise ConcurrentModificationError(
                "approval was modified concurrently",
                details={"approval_instance_id": str(instance_id), "version": expected},
            )
        # stages and tasks loaded before the claim may predate another decision
        session.expire_all()

    def _claim_task(self, session: Session, task: ApprovalTask, status: TaskStatus, ctx: AuthContext, comment: str | None) -> datetime:
        now = self.clock()
        result = session.execute(
            update(ApprovalTask)
            .where(ApprovalTask.id == task.id, ApprovalTask.status == TaskStatus.PENDING.value)
            .values(status=status.value, decided_by=ctx.user_id, decided_at=now, comment=comment)
        )
        if result.rowcount != 1:
            session.rollback()
            raise ConcurrentModificationError("approval task was decided concurrently", details={"task_id": str(task.id)})
        session.refresh(task)
        return now

    def _delegate(
        self,
        session: Session,
        ctx: AuthContext,
        instance: ApprovalInstance,
        stage: ApprovalStage,
        task: ApprovalTask,
        dto: DecisionRequest,
    ) -> DecisionResult:
        delegate_to = str(dto.delegate_to)
        if delegate_to == task.assignee_user_id:
            raise ValidationError("cannot delegate a task to its current assignee")
        open_for_delegate = session.scalar(
            select(ApprovalTask.id).where(
                ApprovalTask.stage_id == stage.id,
                ApprovalTask.assignee_user_id == delegate_to,
                ApprovalTask.status == TaskStatus.PENDING.value,
            )
        )
        if open_for_delegate is not None:
            raise ValidationError(f"'{delegate_to}' already has a pending task in this stage")

        self._claim_instance(session, instance)
        now = self._claim_task(session, task, TaskStatus.DELEGATED, ctx, dto.comment)
        self._cancel_timers(session, task)
        template = session.get(ApprovalTemplate, instance.template_id)
        assignment = ResolvedAssignment(
            user_id=delegate_to,
            strategy="delegation",
            rule={"type": "delegation", "from_task_id": str(task.id)},
            detail={"delegated_by": ctx.user_id, "original_assignee": task.assignee_user_id},
        )
        new_task = self._add_task(session, instance, stage, assignment, now=now, delegated_from=task.id)
        if template is not None:
            self._schedule_timers(session, template, stage, new_task, now)
        session.add(
            ApprovalEvent(
                tenant_id=instance.tenant_id,
                instance_id=instance.id,
                task_id=task.id,
                event_type="delegated",
                actor_id=ctx.user_id,
                payload_json={"to": delegate_to, "new_task_id": str(new_task.id), "comment": dto.comment},
                occurred_at=now,
            )
        )
        session.commit()
        session.refresh(task)
        session.refresh(new_task)

        observe_approval_decision("delegate")
        logger.info(
            "approval_task_delegated",
            extra={"approval_instance_id": str(instance.id), "task_id": str(task.id), "outcome": "delegated"},
        )
        emit(
            "approval.decided",
            tenant_id=instance.tenant_id,
            actor_user_id=ctx.user_id,
            approval_instance_id=str(instance.id),
            task_id=str(task.id),
            decision="delegate",
            delegate_to=delegate_to,
            new_task_id=str(new_task.id),
        )
        return DecisionResult(
            task=ApprovalTaskRead.model_validate(task),
            instance_status=instance.status,
            stage_status=stage.status,
            delegated_task=ApprovalTaskRead.model_validate(new_task),
        )

    def _decide(
        self,
        session: Session,
        ctx: AuthContext,
        instance: ApprovalInstance,
        stage: ApprovalStage,
        task: ApprovalTask,
        dto: DecisionRequest,
    ) -> DecisionResult:
        status = TaskStatus.APPROVED if dto.decision == "approve" else TaskStatus.REJECTED
        self._claim_instance(session, instance)
        now = self._claim_task(session, task, status, ctx, dto.comment)
        self._cancel_timers(session, task)
        session.add(
            ApprovalEvent(
                tenant_id=instance.tenant_id,
                instance_id=instance.id,
                task_id=task.id,
                event_type=status.value,
                actor_id=ctx.user_id,
                payload_json={"comment": dto.comment} if dto.comment else None,
                occurred_at=now,
            )
        )
        session.flush()

        completion: _Completion | None = None
        stage_outcome = evaluate_quorum(stage.quorum, stage.quorum_count, [item.status for item in stage.tasks])
        if stage_outcome is not None:
            self._close_stage(session, stage, stage_outcome, now)
            completion = self._advance(session, instance, now)

        if completion is not None:
            result = session.execute(
                update(ApprovalInstance)
                .where(ApprovalInstance.id == instance.id, ApprovalInstance.status == ApprovalStatus.PENDING.value)
                .values(
                    status=completion.status,
                    active_key=None,
                    current_stage_no=None,
                    completed_at=now,
                    completed_by=ctx.user_id,
                )
            )
            if result.rowcount != 1:
                session.rollback()
                raise ConcurrentModificationError(
                    "approval was completed concurrently",
                    details={"approval_instance_id": str(instance.id)},
                )
            session.add(
                ApprovalEvent(
                    tenant_id=instance.tenant_id,
                    instance_id=instance.id,
                    event_type=completion.status,
                    actor_id=ctx.user_id,
                    occurred_at=now,
                )
            )
        session.commit()
        session.refresh(instance)
        session.refresh(task)

        observe_approval_decision(dto.decision)
        emit(
            "approval.decided",
            tenant_id=instance.tenant_id,
            actor_user_id=ctx.user_id,
            approval_instance_id=str(instance.id),
            task_id=str(task.id),
            decision=dto.decision,
            stage_no=stage.stage_no,
            stage_status=stage.status,
        )

        lifecycle_result = None
        if completion is not None:
            lifecycle_result = self._on_completed(session, ctx, instance)

        return DecisionResult(
            task=ApprovalTaskRead.model_validate(task),
            instance_status=instance.status,
            stage_status=stage.status,
            lifecycle=lifecycle_result,
        )

    def _close_stage(self, session: Session, stage: ApprovalStage, outcome: str, now: datetime) -> None:
        stage.status = outcome
        stage.completed_at = now
        for leftover in stage.tasks:
            if leftover.status == TaskStatus.PENDING.value:
                leftover.status = TaskStatus.EXPIRED.value
                self._cancel_timers(session, leftover)

    def _advance(self, session: Session, instance: ApprovalInstance, now: datetime) -> _Completion | None:
        template = session.get(ApprovalTemplate, instance.template_id)
        reject_policy = template.reject_policy if template is not None else "stop_all"
        stages = sorted(instance.stages, key=lambda item: item.stage_no)

        required_rejected = any(item.required and item.status == StageStatus.REJECTED.value for item in stages)
        required_done = all(item.status == StageStatus.APPROVED.value for item in stages if item.required)
        waiting = [item for item in stages if item.status == StageStatus.WAITING.value]

        if required_rejected and (reject_policy == "stop_all" or not waiting):
            self._retire_stages(session, waiting, StageStatus.CANCELLED, now)
            return _Completion(status=ApprovalStatus.REJECTED.value, stage_status=StageStatus.REJECTED.value)
        if not required_rejected and required_done:
            self._retire_stages(session, waiting, StageStatus.SKIPPED, now)
            return _Completion(status=ApprovalStatus.APPROVED.value, stage_status=StageStatus.APPROVED.value)
        if not waiting:
            status = ApprovalStatus.REJECTED if required_rejected else ApprovalStatus.APPROVED
            return _Completion(status=status.value, stage_status=status.value)

        next_stage = waiting[0]
        next_stage.status = StageStatus.ACTIVE.value
        next_stage.activated_at = now
        instance.current_stage_no = next_stage.stage_no
        if template is not None:
            for task in next_stage.tasks:
                if task.status == TaskStatus.PENDING.value:
                    self._schedule_timers(session, template, next_stage, task, now)
        logger.info(
            "approval_stage_activated",
            extra={"approval_instance_id": str(instance.id), "stage_no": next_stage.stage_no},
        )
        return None

    def _retire_stages(self, session: Session, stages: list[ApprovalStage], status: StageStatus, now: datetime) -> None:
        for stage in stages:
            stage.status = status.value
            stage.completed_at = now
            for task in stage.tasks:
                if task.status == TaskStatus.PENDING.value:
                    task.status = TaskStatus.CANCELLED.value
                    self._cancel_timers(session, task)

    def _on_completed(self, session: Session, ctx: AuthContext, instance: ApprovalInstance) -> Any:
        observe_approval_completed(instance.status)
        logger.info(
            "approval_completed",
            extra={
                "approval_instance_id": str(instance.id),
                "entity_name": instance.entity_name,
                "entity_id": instance.entity_id,
                "outcome": instance.status,
            },
        )
        emit(
            f"approval.{instance.status}",
            tenant_id=instance.tenant_id,
            actor_user_id=ctx.user_id,
            approval_instance_id=str(instance.id),
            entity_name=instance.entity_name,
            entity_id=instance.entity_id,
            operation_code=instance.operation_code,
        )
        if instance.status != ApprovalStatus.APPROVED.value or self.lifecycle_manager is None:
            return None
        if instance.lifecycle_instance_id is None or instance.transition_id is None:
            return None

        try:
            return self.lifecycle_manager.finalize_approved_transition(session, instance, actor_id=ctx.user_id)
        except Exception as exc:
            session.rollback()
            logger.exception(
                "approval_finalize_failed",
                extra={"approval_instance_id": str(instance.id), "error": str(exc)},
            )
            self.job_queue.enqueue(
                session,
                FINALIZE_JOB,
                {"approval_instance_id": str(instance.id), "actor_id": ctx.user_id},
                self.clock(),
                tenant_id=instance.tenant_id,
            )
            session.commit()
            return None

    # record-level coordination used by the lifecycle manager

    def find_pending(self, session: Session, tenant_id: str, entity_name: str, entity_id: str) -> ApprovalInstance | None:
        return session.scalar(
            select(ApprovalInstance).where(ApprovalInstance.active_key == active_key(tenant_id, entity_name, entity_id))
        )

    def find_approved(self, session: Session, lifecycle_instance_id: uuid.UUID, transition_id: uuid.UUID) -> list[ApprovalInstance]:
        return list(
            session.scalars(
                select(ApprovalInstance)
                .where(
                    ApprovalInstance.lifecycle_instance_id == lifecycle_instance_id,
                    ApprovalInstance.transition_id == transition_id,
                    ApprovalInstance.status == ApprovalStatus.APPROVED.value,
                )
                .order_by(ApprovalInstance.completed_at.asc())
            ).all()
        )

    def load_instance(self, session: Session, approval_instance_id: uuid.UUID) -> ApprovalInstance:
        instance = session.get(ApprovalInstance, approval_instance_id)
        if instance is None:
            raise NotFoundError("approval instance not found")
        return instance

    def cancel_pending_for_record(
        self,
        session: Session,
        ctx: AuthContext,
        entity_name: str,
        entity_id: str,
        *,
        reason: str,
    ) -> uuid.UUID | None:
        """Stage cancellation of the open approval on a record; the caller commits."""

        tenant_id = ctx.require_tenant()
        instance = self.find_pending(session, tenant_id, entity_name, entity_id)
        if instance is None:
            return None
        now = self.clock()
        instance.status = ApprovalStatus.CANCELLED.value
        instance.active_key = None
        instance.current_stage_no = None
        instance.completed_at = now
        instance.completed_by = ctx.user_id
        instance.version = ApprovalInstance.version + 1
        open_stages = [stage for stage in instance.stages if stage.status in _OPEN_STAGE_STATUSES]
        self._retire_stages(session, open_stages, StageStatus.CANCELLED, now)
        session.add(
            ApprovalEvent(
                tenant_id=tenant_id,
                instance_id=instance.id,
                event_type="cancelled",
                actor_id=ctx.user_id,
                payload_json={"reason": reason},
                occurred_at=now,
            )
        )
        return instance.id

    def announce_cancelled(self, ctx: AuthContext, approval_instance_id: uuid.UUID, entity_name: str, entity_id: str, reason: str) -> None:
        observe_approval_completed(ApprovalStatus.CANCELLED.value)
        emit(
            "approval.cancelled",
            tenant_id=ctx.tenant_id,
            actor_user_id=ctx.user_id,
            approval_instance_id=str(approval_instance_id),
            entity_name=entity_name,
            entity_id=entity_id,
            reason=reason,
        )

    # timers

    def _live_task(self, session: Session, payload: dict[str, Any], handle_attr: str) -> ApprovalTask | None:
        try:
            task_id = uuid.UUID(str(payload.get("task_id")))
        except ValueError:
            return None
        task = session.get(ApprovalTask, task_id)
        if task is None or task.status != TaskStatus.PENDING.value:
            return None
        if task.stage.status != StageStatus.ACTIVE.value:
            return None
        instance = session.get(ApprovalInstance, task.instance_id)
        if instance is None or instance.status != ApprovalStatus.PENDING.value:
            return None
        job_id = payload.get("job_id")
        if job_id is not None and getattr(task, handle_attr) != job_id:
            return None
        return task

    def process_reminder(self, session: Session, payload: dict[str, Any]) -> None:
        task = self._live_task(session, payload, "reminder_job_id")
        if task is None:
            observe_timer_firing("reminder", "stale")
            logger.info("approval_reminder_skipped", extra={"task_id": payload.get("task_id"), "reason": "not pending"})
            return

        now = self.clock()
        session.add(
            ApprovalEvent(
                tenant_id=task.tenant_id,
                instance_id=task.instance_id,
                task_id=task.id,
                event_type="reminder_sent",
                actor_id="system",
                payload_json={"assignee": task.assignee_user_id},
                occurred_at=now,
            )
        )
        task.reminder_at = None
        session.commit()

        observe_timer_firing("reminder", "fired")
        emit(
            "approval.task.reminder",
            tenant_id=task.tenant_id,
            approval_instance_id=str(task.instance_id),
            task_id=str(task.id),
            assignee_user_id=task.assignee_user_id,
            due_at=ensure_utc(task.due_at).isoformat() if task.due_at else None,
        )

    def process_escalation(self, session: Session, payload: dict[str, Any]) -> None:
        task = self._live_task(session, payload, "escalation_job_id")
        job_id = str(payload.get("job_id") or uuid.uuid4())
        if task is None:
            observe_timer_firing("escalation", "stale")
            logger.info("approval_escalation_skipped", extra={"task_id": payload.get("task_id"), "reason": "not pending"})
            return
        already = session.scalar(select(ApprovalEscalation.id).where(ApprovalEscalation.job_id == job_id))
        if already is not None:
            observe_timer_firing("escalation", "duplicate")
            return

        template = session.get(ApprovalTemplate, session.get(ApprovalInstance, task.instance_id).template_id)
        settings = dict((template.escalation_json if template is not None else None) or {})
        kind = str(settings.get("kind") or "sla_breach")
        if settings.get("notify", "manager") == "users":
            notify = [str(user) for user in settings.get("user_ids") or []]
        else:
            manager = self.directory.manager_of(session, task.tenant_id, task.assignee_user_id)
            notify = [manager] if manager else []

        now = self.clock()
        session.add(
            ApprovalEscalation(
                tenant_id=task.tenant_id,
                instance_id=task.instance_id,
                task_id=task.id,
                job_id=job_id,
                kind=kind,
                notify_user_ids=notify,
                escalated_at=now,
            )
        )
        session.add(
            ApprovalEvent(
                tenant_id=task.tenant_id,
                instance_id=task.instance_id,
                task_id=task.id,
                event_type="escalated",
                actor_id="system",
                payload_json={"kind": kind, "notify": notify},
                occurred_at=now,
            )
        )
        task.escalation_count += 1
        task.escalation_job_id = None
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            observe_timer_firing("escalation", "duplicate")
            return

        observe_timer_firing("escalation", "fired")
        logger.warning(
            "approval_task_escalated",
            extra={"approval_instance_id": str(task.instance_id), "task_id": str(task.id), "reason": kind},
        )
        emit(
            "approval.task.escalated",
            tenant_id=task.tenant_id,
            approval_instance_id=str(task.instance_id),
            task_id=str(task.id),
            assignee_user_id=task.assignee_user_id,
            kind=kind,
            notify_user_ids=notify,
            escalation_count=task.escalation_count,
        )

    def rehydrate_timers(self, session: Session, *, tenant_id: str | None = None) -> RehydrateSummary:
        """Re-enqueue timers for open tasks whose jobs are gone, e.g. after a queue wipe."""

        stmt = (
            select(ApprovalTask)
            .join(ApprovalStage, ApprovalStage.id == ApprovalTask.stage_id)
            .join(ApprovalInstance, ApprovalInstance.id == ApprovalTask.instance_id)
            .where(
                ApprovalTask.status == TaskStatus.PENDING.value,
                ApprovalStage.status == StageStatus.ACTIVE.value,
                ApprovalInstance.status == ApprovalStatus.PENDING.value,
            )
        )
        if tenant_id is not None:
            stmt = stmt.where(ApprovalTask.tenant_id == tenant_id)

        summary = RehydrateSummary()
        now = self.clock()
        for task in session.scalars(stmt).all():
            payload = {"task_id": str(task.id), "instance_id": str(task.instance_id)}
            due_at = ensure_utc(task.due_at) if task.due_at else now
            if task.reminder_at is not None and not self.job_queue.is_live(session, task.reminder_job_id):
                remaining = max(due_at - now, timedelta(0))
                fire_at = now + remaining * self.reminder_ratio
                task.reminder_at = fire_at
                task.reminder_job_id = self.job_queue.enqueue(session, REMINDER_JOB, payload, fire_at, tenant_id=task.tenant_id)
                summary.reminders += 1
            if task.escalation_count == 0 and not self.job_queue.is_live(session, task.escalation_job_id):
                task.escalation_job_id = self.job_queue.enqueue(
                    session, ESCALATION_JOB, payload, max(due_at, now), tenant_id=task.tenant_id
                )
                summary.escalations += 1
        session.commit()
        if summary.reminders or summary.escalations:
            logger.info(
                "approval_timers_rehydrated",
                extra={"reminders": summary.reminders, "escalations": summary.escalations},
            )
        return summary

    # reads

    def get_tasks_for_user(
        self,
        session: Session,
        ctx: AuthContext,
        user_id: str | None = None,
        *,
        status: str | None = TaskStatus.PENDING.value,
    ) -> list[ApprovalTaskRead]:
        tenant_id = ctx.require_tenant()
        target = user_id or ctx.user_id
        if target != ctx.user_id and not ctx.is_super_admin:
            raise AuthorizationDeniedError("cannot list another user's approval tasks")
        stmt = (
            select(ApprovalTask)
            .join(ApprovalStage, ApprovalStage.id == ApprovalTask.stage_id)
            .where(ApprovalTask.tenant_id == tenant_id, ApprovalTask.assignee_user_id == target)
        )
        if status is not None:
            stmt = stmt.where(ApprovalTask.status == status)
            if status == TaskStatus.PENDING.value:
                stmt = stmt.where(ApprovalStage.status == StageStatus.ACTIVE.value)
        rows = session.scalars(stmt.order_by(ApprovalTask.due_at.asc(), ApprovalTask.created_at.asc())).all()
        return [ApprovalTaskRead.model_validate(row) for row in rows]

    def get_instance(self, session: Session, ctx: AuthContext, instance_id: uuid.UUID) -> ApprovalInstanceRead:
        tenant_id = ctx.require_tenant()
        instance = session.scalar(
            select(ApprovalInstance)
            .options(selectinload(ApprovalInstance.stages))
            .where(ApprovalInstance.id == instance_id, ApprovalInstance.tenant_id == tenant_id)
        )
        if instance is None:
            raise NotFoundError("approval instance not found")
        tasks = session.scalars(
            select(ApprovalTask)
            .where(ApprovalTask.instance_id == instance.id)
            .order_by(ApprovalTask.stage_no.asc(), ApprovalTask.created_at.asc())
        ).all()
        snapshots = session.scalars(
            select(ApprovalAssignmentSnapshot)
            .where(ApprovalAssignmentSnapshot.instance_id == instance.id)
            .order_by(ApprovalAssignmentSnapshot.stage_no.asc(), ApprovalAssignmentSnapshot.created_at.asc())
        ).all()
        return ApprovalInstanceRead(
            id=instance.id,
            tenant_id=instance.tenant_id,
            template_id=instance.template_id,
            entity_name=instance.entity_name,
            entity_id=instance.entity_id,
            lifecycle_instance_id=instance.lifecycle_instance_id,
            transition_id=instance.transition_id,
            operation_code=instance.operation_code,
            status=instance.status,
            current_stage_no=instance.current_stage_no,
            version=instance.version,
            requested_by=instance.requested_by,
            created_at=instance.created_at,
            completed_at=instance.completed_at,
            stages=[ApprovalStageRead.model_validate(stage) for stage in instance.stages],
            tasks=[ApprovalTaskRead.model_validate(task) for task in tasks],
            snapshots=[ApprovalSnapshotRead.model_validate(item) for item in snapshots],
        )
