from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.events import emit
from app.metrics import observe_lifecycle_timer, observe_transition
from app.otel import get_tracer, traced
from app.platform.approval.schemas import ApprovalRequest
from app.platform.approval.service import FINALIZE_JOB
from app.platform.clock import ensure_utc, utcnow
from app.platform.collaborators import RecordModelProvider, RecordStore
from app.platform.conditions import as_datetime, build_evaluation_view, evaluate, parse_condition, resolve_path
from app.platform.errors import (
    ConcurrentModificationError,
    ErrorCode,
    InvalidStateError,
    NotFoundError,
    TerminalStateError,
)
from app.platform.jobs.queue import JobQueue
from app.platform.lifecycle.models import (
    EntityLifecycleEvent,
    EntityLifecycleInstance,
    Lifecycle,
    LifecycleState,
    LifecycleTransition,
)
from app.platform.lifecycle.routing import RouteResolver
from app.platform.lifecycle.schemas import (
    AvailableTransition,
    LifecycleEventRead,
    LifecycleHistoryPage,
    LifecycleInstanceRead,
    TransitionRequest,
    TransitionResult,
)
from app.platform.security.context import AuthContext
from app.platform.security.policies import PolicyGate
from app.platform.security.schemas import PolicyDecision

if TYPE_CHECKING:
    from app.platform.approval.models import ApprovalInstance
    from app.platform.approval.service import ApprovalService


logger = logging.getLogger("app.lifecycle")
tracer = get_tracer("app.lifecycle")

TIMER_JOB = "lifecycle.auto_transition"
TIMER_ACTOR = "system:lifecycle-timer"


@dataclass
class _Evaluation:
    instance: EntityLifecycleInstance
    state: LifecycleState
    transition: LifecycleTransition | None = None
    to_state: LifecycleState | None = None
    status: str = "applied"
    code: ErrorCode | None = None
    reason: str | None = None
    decision: PolicyDecision | None = None
    needs_approval: bool = False
    pending_approval_id: uuid.UUID | None = None
    satisfied_approval_id: uuid.UUID | None = None

    def deny(self, code: ErrorCode, reason: str) -> _Evaluation:
        self.status = "denied"
        self.code = code
        self.reason = reason
        return self


@dataclass
class LifecycleManager:
    """State machine over governed records.

    Denials (terminal state, missing edge, policy, outstanding approval) come
    back as ``TransitionResult`` data; missing instances, malformed requests
    and stale version tokens raise.
    """

    policy_gate: PolicyGate
    route_resolver: RouteResolver
    approval_service: ApprovalService | None = field(default=None, repr=False)
    record_models: RecordModelProvider | None = None
    record_store: RecordStore | None = None
    state_field: str | None = None
    job_queue: JobQueue | None = field(default=None, repr=False)
    clock: Callable[[], datetime] = utcnow

    def register_job_handlers(self, concurrency: int = 1) -> None:
        if self.approval_service is not None:
            self.approval_service.job_queue.process(FINALIZE_JOB, concurrency, self.process_finalize_job)
        if self.job_queue is not None:
            self.job_queue.process(TIMER_JOB, concurrency, self.process_timer_job)

    # instances

    def create_instance(
        self,
        session: Session,
        ctx: AuthContext,
        entity_name: str,
        entity_id: str,
        record: dict[str, Any] | None = None,
    ) -> LifecycleInstanceRead | None:
        """Attach the routed lifecycle to a record; ``None`` when nothing governs it."""

        tenant_id = ctx.require_tenant()
        if not self._feature_enabled(tenant_id, entity_name, "lifecycle"):
            logger.info("lifecycle_disabled_for_entity", extra={"entity_name": entity_name, "entity_id": entity_id})
            return None

        existing = self._find_instance(session, tenant_id, entity_name, entity_id)
        if existing is not None:
            raise InvalidStateError(
                f"lifecycle instance already exists for {entity_name}/{entity_id}",
                details={"instance_id": str(existing.id)},
            )

        lifecycle_id = self.route_resolver.resolve_lifecycle(session, entity_name, ctx, record)
        if lifecycle_id is None:
            logger.info("lifecycle_not_routed", extra={"entity_name": entity_name, "entity_id": entity_id})
            return None

        initial = session.scalar(
            select(LifecycleState)
            .where(LifecycleState.lifecycle_id == lifecycle_id)
            .order_by(LifecycleState.sort_order.asc(), LifecycleState.code.asc())
            .limit(1)
        )
        if initial is None:
            raise InvalidStateError("routed lifecycle has no states")

        now = self.clock()
        instance = EntityLifecycleInstance(
            id=uuid.uuid4(),
            tenant_id=tenant_id,
            entity_name=entity_name,
            entity_id=entity_id,
            lifecycle_id=lifecycle_id,
            state_id=initial.id,
            version=1,
            created_by=ctx.user_id,
            updated_by=ctx.user_id,
            created_at=now,
            updated_at=now,
        )
        instance.timer_job_id, instance.timer_fire_at = self._schedule_state_timer(
            session, instance, initial, version=1, record=record, now=now
        )
        session.add(instance)
        session.add(
            EntityLifecycleEvent(
                tenant_id=tenant_id,
                instance_id=instance.id,
                lifecycle_id=lifecycle_id,
                to_state_id=initial.id,
                outcome="created",
                actor_id=ctx.user_id,
                instance_version=1,
                correlation_id=ctx.correlation_id or get_correlation_id(),
                occurred_at=now,
            )
        )
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise InvalidStateError(f"lifecycle instance already exists for {entity_name}/{entity_id}")

        read = self._instance_read(session, instance)
        observe_transition(entity_name, "created")
        logger.info(
            "lifecycle_instance_created",
            extra={"entity_name": entity_name, "entity_id": entity_id, "state_code": read.state_code},
        )
        emit(
            "lifecycle.instance_created",
            tenant_id=tenant_id,
            actor_user_id=ctx.user_id,
            entity_name=entity_name,
            entity_id=entity_id,
            instance_id=str(read.id),
            lifecycle_code=read.lifecycle_code,
            state=read.state_code,
        )
        return read

    def get_instance(self, session: Session, ctx: AuthContext, entity_name: str, entity_id: str) -> LifecycleInstanceRead:
        return self._instance_read(session, self._require_instance(session, ctx.require_tenant(), entity_name, entity_id))

    def enforce_terminal_state(self, session: Session, ctx: AuthContext, entity_name: str, entity_id: str) -> None:
        """Raise ``TerminalStateError`` when a write targets a record in a terminal state."""

        instance = self._find_instance(session, ctx.require_tenant(), entity_name, entity_id)
        if instance is None:
            return
        state = session.get(LifecycleState, instance.state_id)
        if state is not None and state.is_terminal:
            raise TerminalStateError(
                f"{entity_name} {entity_id} is in terminal state '{state.code}'",
                details={"state": state.code},
            )

    # transitions

    def transition(self, session: Session, ctx: AuthContext, request: TransitionRequest) -> TransitionResult:
        started = time.perf_counter()
        with traced(
            tracer,
            "lifecycle.transition",
            entity_name=request.entity_name,
            entity_id=request.entity_id,
            operation_code=request.operation_code,
        ) as span:
            evaluation = self._evaluate(session, ctx, request)
            if evaluation.status == "denied":
                result = self._denied(ctx, request, evaluation)
            elif evaluation.needs_approval:
                result = self._request_approval(session, ctx, request, evaluation)
            elif evaluation.pending_approval_id is not None:
                result = self._result(request, evaluation, approval_instance_id=evaluation.pending_approval_id)
            else:
                result = self._apply(
                    session,
                    ctx,
                    evaluation,
                    entity_name=request.entity_name,
                    entity_id=request.entity_id,
                    approval_instance_id=evaluation.satisfied_approval_id,
                    payload=self._payload(request),
                    record=request.record,
                )
            span.set_attribute("outcome", result.status)
        observe_transition(request.entity_name, result.status, time.perf_counter() - started)
        return result

    def can_transition(self, session: Session, ctx: AuthContext, request: TransitionRequest) -> TransitionResult:
        evaluation = self._evaluate(session, ctx, request)
        result = self._result(request, evaluation, approval_instance_id=evaluation.pending_approval_id)
        result.dry_run = True
        return result

    def get_available_transitions(
        self,
        session: Session,
        ctx: AuthContext,
        entity_name: str,
        entity_id: str,
        record: dict[str, Any] | None = None,
    ) -> list[AvailableTransition]:
        tenant_id = ctx.require_tenant()
        instance = self._require_instance(session, tenant_id, entity_name, entity_id)
        state = session.get(LifecycleState, instance.state_id)
        if state is None or state.is_terminal:
            return []

        edges = session.scalars(
            select(LifecycleTransition)
            .where(
                LifecycleTransition.lifecycle_id == instance.lifecycle_id,
                LifecycleTransition.from_state_id == state.id,
                LifecycleTransition.is_active.is_(True),
            )
            .order_by(LifecycleTransition.operation_code.asc())
        ).all()
        if not edges:
            return []

        actions = sorted({edge.required_policy_action for edge in edges if edge.required_policy_action})
        decisions: dict[str, PolicyDecision] = {}
        if actions:
            policy_record = self._record_for(tenant_id, entity_name, entity_id, record)
            decisions = self.policy_gate.authorize_many(
                [(action, entity_name) for action in actions],
                ctx,
                policy_record,
            )
        approvals_apply = self.approval_service is not None and self._feature_enabled(tenant_id, entity_name, "approval")
        pending = (
            self.approval_service.find_pending(session, tenant_id, entity_name, entity_id)
            if approvals_apply and self.approval_service is not None
            else None
        )
        state_codes = self._state_codes(session, instance.lifecycle_id)

        available: list[AvailableTransition] = []
        for edge in edges:
            allowed = True
            reason = None
            if edge.required_policy_action:
                decision = decisions.get(f"{edge.required_policy_action}:{entity_name}")
                allowed = decision is not None and decision.allowed
                reason = decision.reason if decision is not None else None
            requires_approval = approvals_apply and edge.approval_template_id is not None
            if allowed and requires_approval and pending is not None and pending.transition_id != edge.id:
                allowed = False
                reason = f"Approval pending for operation '{pending.operation_code}'"
            available.append(
                AvailableTransition(
                    operation_code=edge.operation_code,
                    name=edge.name,
                    to_state=state_codes.get(edge.to_state_id, ""),
                    required_policy_action=edge.required_policy_action,
                    requires_approval=requires_approval,
                    allowed=allowed,
                    reason=reason,
                )
            )
        return available

    def get_history(
        self,
        session: Session,
        ctx: AuthContext,
        entity_name: str,
        entity_id: str,
        *,
        page: int = 1,
        page_size: int = 50,
    ) -> LifecycleHistoryPage:
        instance = self._require_instance(session, ctx.require_tenant(), entity_name, entity_id)
        page = max(1, page)
        page_size = min(max(1, page_size), 200)
        total = session.scalar(
            select(func.count()).select_from(EntityLifecycleEvent).where(EntityLifecycleEvent.instance_id == instance.id)
        ) or 0
        rows = session.scalars(
            select(EntityLifecycleEvent)
            .where(EntityLifecycleEvent.instance_id == instance.id)
            .order_by(EntityLifecycleEvent.occurred_at.desc(), EntityLifecycleEvent.instance_version.desc())
            .limit(page_size)
            .offset((page - 1) * page_size)
        ).all()
        state_codes = self._state_codes(session, instance.lifecycle_id)
        items = []
        for row in rows:
            item = LifecycleEventRead.model_validate(row)
            item.from_state = state_codes.get(row.from_state_id) if row.from_state_id else None
            item.to_state = state_codes.get(row.to_state_id) if row.to_state_id else None
            items.append(item)
        return LifecycleHistoryPage(items=items, page=page, page_size=page_size, total=total)

    def finalize_approved_transition(
        self,
        session: Session,
        approval: ApprovalInstance,
        *,
        actor_id: str,
    ) -> TransitionResult:
        """Apply the transition an approval was guarding. Safe to call more than once."""

        consumed = self._consuming_event(session, approval.id)
        if consumed is not None:
            return self._result_from_event(session, approval, consumed)

        instance = session.get(EntityLifecycleInstance, approval.lifecycle_instance_id)
        transition = session.get(LifecycleTransition, approval.transition_id)
        if instance is None or transition is None:
            raise NotFoundError("lifecycle instance or transition for approval not found")

        ctx = AuthContext(user_id=actor_id, tenant_id=approval.tenant_id, correlation_id=get_correlation_id())
        state = session.get(LifecycleState, instance.state_id)
        if state is None:
            raise InvalidStateError("lifecycle instance points at a missing state")
        evaluation = _Evaluation(
            instance=instance,
            state=state,
            transition=transition,
            to_state=session.get(LifecycleState, transition.to_state_id),
        )
        request = TransitionRequest(
            entity_name=instance.entity_name,
            entity_id=instance.entity_id,
            operation_code=transition.operation_code,
        )
        if state.is_terminal:
            evaluation.deny(ErrorCode.TERMINAL_STATE, f"record reached terminal state '{state.code}'")
        elif instance.state_id != transition.from_state_id:
            evaluation.deny(
                ErrorCode.INVALID_STATE,
                f"record left state required by '{transition.operation_code}' while approval was pending",
            )
        if evaluation.status == "denied":
            logger.warning(
                "lifecycle_finalize_skipped",
                extra={
                    "approval_instance_id": str(approval.id),
                    "entity_name": instance.entity_name,
                    "entity_id": instance.entity_id,
                    "reason": evaluation.reason,
                },
            )
            return self._denied(ctx, request, evaluation, approval_instance_id=approval.id)

        started = time.perf_counter()
        with traced(
            tracer,
            "lifecycle.finalize",
            entity_name=instance.entity_name,
            entity_id=instance.entity_id,
            operation_code=transition.operation_code,
            approval_instance_id=str(approval.id),
        ):
            try:
                result = self._apply(
                    session,
                    ctx,
                    evaluation,
                    entity_name=instance.entity_name,
                    entity_id=instance.entity_id,
                    approval_instance_id=approval.id,
                    payload={"requested_by": approval.requested_by},
                )
            except ConcurrentModificationError:
                consumed = self._consuming_event(session, approval.id)
                if consumed is None:
                    raise
                return self._result_from_event(session, approval, consumed)
        observe_transition(instance.entity_name, result.status, time.perf_counter() - started)
        return result

    def process_finalize_job(self, session: Session, payload: dict[str, Any]) -> None:
        if self.approval_service is None:
            return
        approval = self.approval_service.load_instance(session, uuid.UUID(str(payload["approval_instance_id"])))
        if approval.status != "approved":
            return
        self.finalize_approved_transition(session, approval, actor_id=str(payload.get("actor_id") or "system"))

    # state timers

    def process_timer_job(self, session: Session, payload: dict[str, Any]) -> None:
        timer_type = str(payload.get("timer_type") or "auto_transition")
        job_id = payload.get("job_id")
        instance = session.get(EntityLifecycleInstance, uuid.UUID(str(payload["instance_id"])))
        if (
            instance is None
            or str(instance.state_id) != str(payload.get("state_id"))
            or instance.version != payload.get("version")
            or (job_id is not None and instance.timer_job_id != job_id)
        ):
            observe_lifecycle_timer(timer_type, "stale")
            logger.info("lifecycle_timer_skipped", extra={"job_id": job_id, "reason": "record moved on"})
            return

        state = session.get(LifecycleState, instance.state_id)
        timer = (state.timer_json if state is not None else None) or {}
        condition = parse_condition(timer.get("condition"))
        if condition is not None:
            record = self._record_for(instance.tenant_id, instance.entity_name, instance.entity_id, None)
            if record is None:
                record = payload.get("record")
            if not evaluate(condition, build_evaluation_view(None, record)):
                self._clear_timer(session, instance)
                observe_lifecycle_timer(timer_type, "condition_false")
                logger.info(
                    "lifecycle_timer_skipped",
                    extra={
                        "entity_name": instance.entity_name,
                        "entity_id": instance.entity_id,
                        "job_id": job_id,
                        "reason": "condition not met",
                    },
                )
                return

        ctx = AuthContext(
            user_id=TIMER_ACTOR,
            tenant_id=instance.tenant_id,
            correlation_id=get_correlation_id(),
            is_super_admin=True,
            roles=["system"],
        )
        result = self.transition(
            session,
            ctx,
            TransitionRequest(
                entity_name=instance.entity_name,
                entity_id=instance.entity_id,
                operation_code=str(payload["operation_code"]),
                expected_version=instance.version,
                payload={"timer_type": timer_type, "triggered_by": "lifecycle_timer", "job_id": job_id},
            ),
        )
        if result.status != "applied":
            # spent either way; a pending approval finalizes through its own job
            self._clear_timer(session, instance)
        observe_lifecycle_timer(timer_type, result.status)
        logger.info(
            "lifecycle_timer_fired",
            extra={
                "entity_name": instance.entity_name,
                "entity_id": instance.entity_id,
                "operation_code": result.operation_code,
                "job_id": job_id,
                "outcome": result.status,
            },
        )

    def rehydrate_timers(self, session: Session, *, tenant_id: str | None = None) -> int:
        """Re-enqueue state timers whose jobs are gone, e.g. after a queue wipe."""

        if self.job_queue is None:
            return 0
        stmt = (
            select(EntityLifecycleInstance, LifecycleState)
            .join(LifecycleState, LifecycleState.id == EntityLifecycleInstance.state_id)
            .where(EntityLifecycleInstance.timer_job_id.is_not(None))
        )
        if tenant_id is not None:
            stmt = stmt.where(EntityLifecycleInstance.tenant_id == tenant_id)

        now = ensure_utc(self.clock())
        rehydrated = 0
        for instance, state in session.execute(stmt).all():
            if self.job_queue.is_live(session, instance.timer_job_id):
                continue
            if not state.timer_json or state.is_terminal:
                instance.timer_job_id = None
                instance.timer_fire_at = None
                continue
            fire_at = max(ensure_utc(instance.timer_fire_at), now) if instance.timer_fire_at else now
            instance.timer_job_id = self.job_queue.enqueue(
                session,
                TIMER_JOB,
                self._timer_payload(instance, state, instance.version, None),
                fire_at,
                tenant_id=instance.tenant_id,
            )
            instance.timer_fire_at = fire_at
            rehydrated += 1
        session.commit()
        if rehydrated:
            logger.info("lifecycle_timers_rehydrated", extra={"timers": rehydrated})
        return rehydrated

    def _schedule_state_timer(
        self,
        session: Session,
        instance: EntityLifecycleInstance,
        state: LifecycleState,
        *,
        version: int,
        record: dict[str, Any] | None,
        now: datetime,
    ) -> tuple[str | None, datetime | None]:
        """Queue the timer ``state`` declares; the caller stores the handle on the instance."""

        timer = state.timer_json
        if not timer or state.is_terminal or self.job_queue is None:
            return None, None
        if timer.get("delay_from_field") or timer.get("condition"):
            record = self._record_for(instance.tenant_id, instance.entity_name, instance.entity_id, record)
        fire_at = self._timer_fire_at(timer, record, ensure_utc(now))
        if fire_at is None:
            logger.info(
                "lifecycle_timer_skipped",
                extra={
                    "entity_name": instance.entity_name,
                    "entity_id": instance.entity_id,
                    "state_code": state.code,
                    "reason": "no future fire time",
                },
            )
            return None, None
        handle = self.job_queue.enqueue(
            session,
            TIMER_JOB,
            self._timer_payload(instance, state, version, record),
            fire_at,
            tenant_id=instance.tenant_id,
        )
        logger.info(
            "lifecycle_timer_scheduled",
            extra={
                "entity_name": instance.entity_name,
                "entity_id": instance.entity_id,
                "state_code": state.code,
                "operation_code": timer.get("operation_code"),
                "job_id": handle,
            },
        )
        return handle, fire_at

    @staticmethod
    def _timer_fire_at(timer: dict[str, Any], record: dict[str, Any] | None, now: datetime) -> datetime | None:
        if timer.get("delay_minutes"):
            return now + timedelta(minutes=int(timer["delay_minutes"]))
        field_path = timer.get("delay_from_field")
        if not field_path:
            return None
        found, value = resolve_path(build_evaluation_view(None, record), str(field_path))
        anchor = as_datetime(value) if found else None
        if anchor is None:
            return None
        fire_at = anchor + timedelta(minutes=int(timer.get("offset_minutes") or 0))
        return fire_at if fire_at > now else None

    @staticmethod
    def _timer_payload(
        instance: EntityLifecycleInstance,
        state: LifecycleState,
        version: int,
        record: dict[str, Any] | None,
    ) -> dict[str, Any]:
        timer = state.timer_json or {}
        payload: dict[str, Any] = {
            "instance_id": str(instance.id),
            "state_id": str(state.id),
            "version": version,
            "operation_code": timer.get("operation_code"),
            "timer_type": timer.get("timer_type") or "auto_transition",
        }
        # snapshot for fire-time conditions when no record store is wired
        if timer.get("condition") and record is not None:
            payload["record"] = record
        return payload

    @staticmethod
    def _clear_timer(session: Session, instance: EntityLifecycleInstance) -> None:
        instance.timer_job_id = None
        instance.timer_fire_at = None
        session.commit()

    # internals

    def _evaluate(self, session: Session, ctx: AuthContext, request: TransitionRequest) -> _Evaluation:
        tenant_id = ctx.require_tenant()
        instance = self._require_instance(session, tenant_id, request.entity_name, request.entity_id)
        state = session.get(LifecycleState, instance.state_id)
        if state is None:
            raise InvalidStateError("lifecycle instance points at a missing state")
        evaluation = _Evaluation(instance=instance, state=state)

        if state.is_terminal:
            return evaluation.deny(ErrorCode.TERMINAL_STATE, f"State '{state.code}' is terminal")

        transition = session.scalar(
            select(LifecycleTransition).where(
                LifecycleTransition.lifecycle_id == instance.lifecycle_id,
                LifecycleTransition.from_state_id == state.id,
                LifecycleTransition.operation_code == request.operation_code,
                LifecycleTransition.is_active.is_(True),
            )
        )
        if transition is None:
            return evaluation.deny(
                ErrorCode.TRANSITION_NOT_FOUND,
                f"No transition '{request.operation_code}' from state '{state.code}'",
            )
        evaluation.transition = transition
        evaluation.to_state = session.get(LifecycleState, transition.to_state_id)

        if request.expected_version is not None and request.expected_version != instance.version:
            raise ConcurrentModificationError(
                "lifecycle instance was modified",
                details={"expected_version": request.expected_version, "actual_version": instance.version},
            )

        if transition.required_policy_action:
            record = self._record_for(tenant_id, request.entity_name, request.entity_id, request.record)
            decision = self.policy_gate.authorize(transition.required_policy_action, request.entity_name, ctx, record)
            evaluation.decision = decision
            if not decision.allowed:
                return evaluation.deny(ErrorCode.AUTHORIZATION_DENIED, decision.reason)

        if transition.approval_template_id is None or not self._feature_enabled(tenant_id, request.entity_name, "approval"):
            return evaluation
        if self.approval_service is None:
            return evaluation.deny(ErrorCode.GATE_NOT_MET, "Approval required but no approval service is configured")

        pending = self.approval_service.find_pending(session, tenant_id, request.entity_name, request.entity_id)
        if pending is not None:
            if pending.transition_id == transition.id:
                evaluation.status = "pending"
                evaluation.pending_approval_id = pending.id
                evaluation.reason = "Approval pending"
                return evaluation
            return evaluation.deny(
                ErrorCode.GATE_NOT_MET,
                f"Approval {pending.id} is pending for operation '{pending.operation_code}'",
            )

        evaluation.satisfied_approval_id = self._satisfied_approval(session, instance, transition)
        if evaluation.satisfied_approval_id is None:
            evaluation.needs_approval = True
            evaluation.status = "pending"
            evaluation.reason = "Approval required"
        return evaluation

    def _satisfied_approval(
        self,
        session: Session,
        instance: EntityLifecycleInstance,
        transition: LifecycleTransition,
    ) -> uuid.UUID | None:
        assert self.approval_service is not None
        # an approval only counts if nothing moved the record after it was requested
        last_change = ensure_utc(instance.updated_at)
        for approval in self.approval_service.find_approved(session, instance.id, transition.id):
            if ensure_utc(approval.created_at) < last_change:
                continue
            if self._consuming_event(session, approval.id) is None:
                return approval.id
        return None

    def _request_approval(
        self,
        session: Session,
        ctx: AuthContext,
        request: TransitionRequest,
        evaluation: _Evaluation,
    ) -> TransitionResult:
        assert self.approval_service is not None and evaluation.transition is not None
        instance = evaluation.instance
        transition = evaluation.transition
        approval_id = uuid.uuid4()
        event = EntityLifecycleEvent(
            id=uuid.uuid4(),
            tenant_id=instance.tenant_id,
            instance_id=instance.id,
            lifecycle_id=instance.lifecycle_id,
            transition_id=transition.id,
            from_state_id=evaluation.state.id,
            to_state_id=transition.to_state_id,
            operation_code=transition.operation_code,
            outcome="pending",
            reason="Approval required",
            actor_id=ctx.user_id,
            instance_version=instance.version,
            approval_instance_id=approval_id,
            payload_json=self._payload(request),
            correlation_id=ctx.correlation_id or get_correlation_id(),
            occurred_at=self.clock(),
        )
        session.add(event)
        record = self._record_for(instance.tenant_id, request.entity_name, request.entity_id, request.record)
        approval = self.approval_service.create_approval_instance(
            session,
            ctx,
            ApprovalRequest(
                approval_instance_id=approval_id,
                entity_name=request.entity_name,
                entity_id=request.entity_id,
                template_id=transition.approval_template_id,
                lifecycle_instance_id=instance.id,
                transition_id=transition.id,
                operation_code=transition.operation_code,
                record=record,
            ),
        )
        logger.info(
            "lifecycle_transition_pending",
            extra={
                "entity_name": request.entity_name,
                "entity_id": request.entity_id,
                "operation_code": request.operation_code,
                "approval_instance_id": str(approval.id),
            },
        )
        emit(
            "lifecycle.transition_pending",
            tenant_id=instance.tenant_id,
            actor_user_id=ctx.user_id,
            entity_name=request.entity_name,
            entity_id=request.entity_id,
            operation_code=request.operation_code,
            approval_instance_id=str(approval.id),
        )
        result = self._result(request, evaluation, approval_instance_id=approval.id)
        result.event_id = event.id
        return result

    def _apply(
        self,
        session: Session,
        ctx: AuthContext,
        evaluation: _Evaluation,
        *,
        entity_name: str,
        entity_id: str,
        approval_instance_id: uuid.UUID | None,
        payload: dict[str, Any] | None,
        record: dict[str, Any] | None = None,
    ) -> TransitionResult:
        assert evaluation.transition is not None and evaluation.to_state is not None
        instance = evaluation.instance
        transition = evaluation.transition
        from_state = evaluation.state
        to_state = evaluation.to_state
        from_version = instance.version
        now = self.clock()

        if instance.timer_job_id and self.job_queue is not None:
            self.job_queue.cancel(session, instance.timer_job_id)
        timer_job_id, timer_fire_at = self._schedule_state_timer(
            session, instance, to_state, version=from_version + 1, record=record, now=now
        )
        updated = session.execute(
            update(EntityLifecycleInstance)
            .where(
                EntityLifecycleInstance.id == instance.id,
                EntityLifecycleInstance.version == from_version,
                EntityLifecycleInstance.state_id == from_state.id,
            )
            .values(
                state_id=to_state.id,
                version=from_version + 1,
                updated_at=now,
                updated_by=ctx.user_id,
                timer_job_id=timer_job_id,
                timer_fire_at=timer_fire_at,
            )
        )
        if updated.rowcount != 1:
            session.rollback()
            raise ConcurrentModificationError(
                "lifecycle instance was modified concurrently",
                details={"entity_name": entity_name, "entity_id": entity_id, "expected_version": from_version},
            )

        event = EntityLifecycleEvent(
            id=uuid.uuid4(),
            tenant_id=instance.tenant_id,
            instance_id=instance.id,
            lifecycle_id=instance.lifecycle_id,
            transition_id=transition.id,
            from_state_id=from_state.id,
            to_state_id=to_state.id,
            operation_code=transition.operation_code,
            outcome="applied",
            actor_id=ctx.user_id,
            instance_version=from_version + 1,
            approval_instance_id=approval_instance_id,
            finalized_approval_id=approval_instance_id,
            payload_json=payload,
            correlation_id=ctx.correlation_id or get_correlation_id(),
            occurred_at=now,
        )
        session.add(event)

        cancelled_id = None
        if self.approval_service is not None and approval_instance_id is None:
            cancelled_id = self.approval_service.cancel_pending_for_record(
                session,
                ctx,
                entity_name,
                entity_id,
                reason=f"record moved by '{transition.operation_code}'",
            )
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise ConcurrentModificationError(
                "approval was already applied",
                details={"approval_instance_id": str(approval_instance_id)},
            )
        session.refresh(instance)

        if cancelled_id is not None and self.approval_service is not None:
            self.approval_service.announce_cancelled(
                ctx, cancelled_id, entity_name, entity_id, f"record moved by '{transition.operation_code}'"
            )
        self._mirror_state(instance.tenant_id, entity_name, entity_id, to_state.code)

        logger.info(
            "lifecycle_transition_applied",
            extra={
                "entity_name": entity_name,
                "entity_id": entity_id,
                "operation_code": transition.operation_code,
                "approval_instance_id": str(approval_instance_id) if approval_instance_id else None,
                "outcome": "applied",
            },
        )
        emit(
            "lifecycle.transitioned",
            tenant_id=instance.tenant_id,
            actor_user_id=ctx.user_id,
            entity_name=entity_name,
            entity_id=entity_id,
            instance_id=str(instance.id),
            operation_code=transition.operation_code,
            from_state=from_state.code,
            to_state=to_state.code,
            version=instance.version,
            approval_instance_id=str(approval_instance_id) if approval_instance_id else None,
        )
        return TransitionResult(
            status="applied",
            allowed=True,
            entity_name=entity_name,
            entity_id=entity_id,
            operation_code=transition.operation_code,
            instance_id=instance.id,
            from_state=from_state.code,
            to_state=to_state.code,
            current_state=to_state.code,
            version=instance.version,
            event_id=event.id,
            approval_instance_id=approval_instance_id,
            decision=evaluation.decision,
        )

    def _denied(
        self,
        ctx: AuthContext,
        request: TransitionRequest,
        evaluation: _Evaluation,
        *,
        approval_instance_id: uuid.UUID | None = None,
    ) -> TransitionResult:
        logger.info(
            "lifecycle_transition_denied",
            extra={
                "entity_name": request.entity_name,
                "entity_id": request.entity_id,
                "operation_code": request.operation_code,
                "outcome": str(evaluation.code),
                "reason": evaluation.reason,
            },
        )
        emit(
            "lifecycle.transition_denied",
            tenant_id=ctx.tenant_id,
            actor_user_id=ctx.user_id,
            entity_name=request.entity_name,
            entity_id=request.entity_id,
            operation_code=request.operation_code,
            code=str(evaluation.code),
            reason=evaluation.reason,
        )
        return self._result(request, evaluation, approval_instance_id=approval_instance_id)

    def _result(
        self,
        request: TransitionRequest,
        evaluation: _Evaluation,
        *,
        approval_instance_id: uuid.UUID | None = None,
    ) -> TransitionResult:
        return TransitionResult(
            status=evaluation.status,  # type: ignore[arg-type]
            allowed=evaluation.status == "applied",
            code=evaluation.code,
            reason=evaluation.reason,
            entity_name=request.entity_name,
            entity_id=request.entity_id,
            operation_code=request.operation_code,
            instance_id=evaluation.instance.id,
            from_state=evaluation.state.code,
            to_state=evaluation.to_state.code if evaluation.to_state is not None else None,
            current_state=evaluation.state.code,
            version=evaluation.instance.version,
            approval_instance_id=approval_instance_id,
            decision=evaluation.decision,
        )

    def _result_from_event(self, session: Session, approval: ApprovalInstance, event: EntityLifecycleEvent) -> TransitionResult:
        codes = self._state_codes(session, event.lifecycle_id)
        instance = session.get(EntityLifecycleInstance, event.instance_id)
        return TransitionResult(
            status="applied",
            allowed=True,
            entity_name=approval.entity_name,
            entity_id=approval.entity_id,
            operation_code=event.operation_code or "",
            instance_id=event.instance_id,
            from_state=codes.get(event.from_state_id) if event.from_state_id else None,
            to_state=codes.get(event.to_state_id) if event.to_state_id else None,
            current_state=codes.get(instance.state_id) if instance is not None else None,
            version=event.instance_version,
            event_id=event.id,
            approval_instance_id=approval.id,
        )

    def _consuming_event(self, session: Session, approval_instance_id: uuid.UUID) -> EntityLifecycleEvent | None:
        return session.scalar(
            select(EntityLifecycleEvent).where(EntityLifecycleEvent.finalized_approval_id == approval_instance_id)
        )

    def _find_instance(self, session: Session, tenant_id: str, entity_name: str, entity_id: str) -> EntityLifecycleInstance | None:
        return session.scalar(
            select(EntityLifecycleInstance).where(
                EntityLifecycleInstance.tenant_id == tenant_id,
                EntityLifecycleInstance.entity_name == entity_name,
                EntityLifecycleInstance.entity_id == entity_id,
            )
        )

    def _require_instance(self, session: Session, tenant_id: str, entity_name: str, entity_id: str) -> EntityLifecycleInstance:
        instance = self._find_instance(session, tenant_id, entity_name, entity_id)
        if instance is None:
            raise NotFoundError(
                f"no lifecycle instance for {entity_name}/{entity_id}",
                details={"entity_name": entity_name, "entity_id": entity_id},
            )
        return instance

    def _instance_read(self, session: Session, instance: EntityLifecycleInstance) -> LifecycleInstanceRead:
        state = session.get(LifecycleState, instance.state_id)
        lifecycle = session.get(Lifecycle, instance.lifecycle_id)
        if state is None or lifecycle is None:
            raise InvalidStateError("lifecycle instance references a missing definition")
        return LifecycleInstanceRead(
            id=instance.id,
            tenant_id=instance.tenant_id,
            entity_name=instance.entity_name,
            entity_id=instance.entity_id,
            lifecycle_id=lifecycle.id,
            lifecycle_code=lifecycle.code,
            state_id=state.id,
            state_code=state.code,
            is_terminal=state.is_terminal,
            version=instance.version,
            created_at=instance.created_at,
            updated_at=instance.updated_at,
        )

    @staticmethod
    def _state_codes(session: Session, lifecycle_id: uuid.UUID) -> dict[uuid.UUID, str]:
        rows = session.execute(
            select(LifecycleState.id, LifecycleState.code).where(LifecycleState.lifecycle_id == lifecycle_id)
        ).all()
        return {state_id: code for state_id, code in rows}

    @staticmethod
    def _payload(request: TransitionRequest) -> dict[str, Any] | None:
        payload = dict(request.payload or {})
        if request.comment:
            payload["comment"] = request.comment
        return payload or None

    def _feature_enabled(self, tenant_id: str, entity_name: str, feature: str) -> bool:
        if self.record_models is None:
            return True
        model = self.record_models.get_model(tenant_id, entity_name)
        if model is None:
            return True
        return model.lifecycle_enabled if feature == "lifecycle" else model.approval_enabled

    def _record_for(
        self,
        tenant_id: str,
        entity_name: str,
        entity_id: str,
        record: dict[str, Any] | None,
    ) -> dict[str, Any] | None:
        if record is not None or self.record_store is None:
            return record
        return self.record_store.get_by_id(tenant_id, entity_name, entity_id)

    def _mirror_state(self, tenant_id: str, entity_name: str, entity_id: str, state_code: str) -> None:
        if self.record_store is None or not self.state_field:
            return
        try:
            self.record_store.update(tenant_id, entity_name, entity_id, {self.state_field: state_code})
        except Exception as exc:
            # the lifecycle row is authoritative; the mirrored field catches up on the next transition
            logger.warning(
                "lifecycle_state_mirror_failed",
                extra={"entity_name": entity_name, "entity_id": entity_id, "error": str(exc)},
            )
