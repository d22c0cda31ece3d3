from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Protocol

from sqlalchemy import select, update
from sqlalchemy.orm import Session, sessionmaker

from app.context import get_correlation_id, reset_correlation_id, reset_tenant_id, set_correlation_id, set_tenant_id
from app.metrics import observe_job
from app.otel import get_tracer, traced
from app.platform.clock import utcnow
from app.platform.errors import InvalidStateError, NotFoundError
from app.platform.jobs.models import Job, JobStatus
from app.platform.jobs.schemas import JobRead, JobRunSummary


logger = logging.getLogger("app.jobs")
tracer = get_tracer("app.jobs")

JobHandler = Callable[[Session, dict[str, Any]], None]


class JobQueue(Protocol):
    def enqueue(
        self,
        session: Session,
        job_type: str,
        payload: dict[str, Any],
        fire_at: datetime,
        *,
        tenant_id: str | None = None,
    ) -> str:
        ...

    def cancel(self, session: Session, handle: str | None) -> bool:
        ...

    def is_live(self, session: Session, handle: str | None) -> bool:
        ...

    def process(self, job_type: str, concurrency: int, handler: JobHandler) -> None:
        ...


@dataclass(slots=True)
class _Registration:
    handler: JobHandler
    concurrency: int


def _parse_handle(handle: str | uuid.UUID | None) -> uuid.UUID | None:
    if handle is None:
        return None
    if isinstance(handle, uuid.UUID):
        return handle
    try:
        return uuid.UUID(str(handle))
    except ValueError:
        return None


class DbJobQueue:
    """Job queue stored in ``core_job``.

    ``enqueue`` and ``cancel`` only stage changes on the caller's session so
    timers commit or roll back together with the business write. Delivery is
    at-least-once: a cancelled job that was already claimed still runs, and
    handlers are expected to re-check state before acting.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        max_attempts: int = 3,
        backoff_base_seconds: float = 2.0,
        batch_size: int = 50,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._max_attempts = max(1, max_attempts)
        self._backoff_base = backoff_base_seconds
        self._batch_size = batch_size
        self._clock = clock
        self._registrations: dict[str, _Registration] = {}

    def enqueue(
        self,
        session: Session,
        job_type: str,
        payload: dict[str, Any],
        fire_at: datetime,
        *,
        tenant_id: str | None = None,
    ) -> str:
        job = Job(
            id=uuid.uuid4(),
            tenant_id=tenant_id,
            job_type=job_type,
            status=JobStatus.QUEUED.value,
            payload_json=dict(payload),
            fire_at=fire_at,
            next_attempt_at=fire_at,
            attempts=0,
            max_attempts=self._max_attempts,
            correlation_id=get_correlation_id(),
        )
        session.add(job)
        return str(job.id)

    def cancel(self, session: Session, handle: str | None) -> bool:
        job_id = _parse_handle(handle)
        if job_id is None:
            return False
        session.flush()
        result = session.execute(
            update(Job)
            .where(Job.id == job_id, Job.status == JobStatus.QUEUED.value)
            .values(status=JobStatus.CANCELLED.value, finished_at=self._clock())
        )
        return result.rowcount == 1

    def is_live(self, session: Session, handle: str | None) -> bool:
        """True while the job can still fire (queued or currently running)."""

        job_id = _parse_handle(handle)
        if job_id is None:
            return False
        status = session.scalar(select(Job.status).where(Job.id == job_id))
        return status in {JobStatus.QUEUED.value, JobStatus.RUNNING.value}

    def process(self, job_type: str, concurrency: int, handler: JobHandler) -> None:
        self._registrations[job_type] = _Registration(handler=handler, concurrency=max(1, concurrency))

    def registered_job_types(self) -> list[str]:
        return sorted(self._registrations)

    def backoff_delay(self, attempts: int) -> timedelta:
        return timedelta(seconds=self._backoff_base * (2 ** max(0, attempts - 1)))

    def run_due(self, *, now: datetime | None = None, limit: int | None = None) -> JobRunSummary:
        """Claim and execute every due job of a registered type."""

        summary = JobRunSummary()
        if not self._registrations:
            return summary
        moment = now or self._clock()

        with self._session_factory() as session:
            due = session.execute(
                select(Job.id, Job.job_type)
                .where(
                    Job.status == JobStatus.QUEUED.value,
                    Job.next_attempt_at <= moment,
                    Job.job_type.in_(list(self._registrations)),
                )
                .order_by(Job.next_attempt_at.asc(), Job.created_at.asc())
                .limit(limit or self._batch_size)
            ).all()

        by_type: dict[str, list[uuid.UUID]] = {}
        for job_id, job_type in due:
            by_type.setdefault(job_type, []).append(job_id)

        for job_type, job_ids in by_type.items():
            registration = self._registrations[job_type]
            if registration.concurrency > 1 and len(job_ids) > 1:
                with ThreadPoolExecutor(max_workers=registration.concurrency, thread_name_prefix=f"job-{job_type}") as pool:
                    outcomes = list(pool.map(lambda job_id: self._run_one(job_id, registration, moment), job_ids))
            else:
                outcomes = [self._run_one(job_id, registration, moment) for job_id in job_ids]
            for outcome in outcomes:
                if outcome == "skipped":
                    summary.skipped += 1
                    continue
                summary.claimed += 1
                if outcome == JobStatus.SUCCEEDED.value:
                    summary.succeeded += 1
                elif outcome == JobStatus.DEAD_LETTERED.value:
                    summary.dead_lettered += 1
                else:
                    summary.retried += 1
        return summary

    def _claim(self, job_id: uuid.UUID, moment: datetime) -> Job | None:
        with self._session_factory() as session:
            result = session.execute(
                update(Job)
                .where(Job.id == job_id, Job.status == JobStatus.QUEUED.value)
                .values(status=JobStatus.RUNNING.value, attempts=Job.attempts + 1, started_at=moment)
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            session.commit()
            job = session.get(Job, job_id)
            if job is not None:
                session.expunge(job)
            return job

    def _run_one(self, job_id: uuid.UUID, registration: _Registration, moment: datetime) -> str:
        job = self._claim(job_id, moment)
        if job is None:
            return "skipped"

        correlation_token = set_correlation_id(job.correlation_id)
        tenant_token = set_tenant_id(job.tenant_id)
        started = time.perf_counter()
        final_status = JobStatus.RUNNING.value
        try:
            with traced(tracer, "job.execute", job_type=job.job_type, job_id=str(job.id), attempt=job.attempts):
                with self._session_factory() as session:
                    try:
                        payload = dict(job.payload_json or {})
                        payload.setdefault("job_id", str(job.id))
                        registration.handler(session, payload)
                        session.commit()
                    except Exception:
                        session.rollback()
                        raise
            final_status = self._finish(job.id, JobStatus.SUCCEEDED, error=None)
        except Exception as exc:
            dead = job.attempts >= job.max_attempts
            final_status = self._finish(
                job.id,
                JobStatus.DEAD_LETTERED if dead else JobStatus.QUEUED,
                error=f"{type(exc).__name__}: {exc}",
                retry_at=None if dead else moment + self.backoff_delay(job.attempts),
            )
            log = logger.error if dead else logger.warning
            log(
                "job_dead_lettered" if dead else "job_retry_scheduled",
                exc_info=dead,
                extra={
                    "job_id": str(job.id),
                    "job_type": job.job_type,
                    "attempts": job.attempts,
                    "error": str(exc)[:500],
                },
            )
        finally:
            observe_job(job.job_type, final_status, time.perf_counter() - started)
            reset_tenant_id(tenant_token)
            reset_correlation_id(correlation_token)
        return final_status

    def _finish(
        self,
        job_id: uuid.UUID,
        status: JobStatus,
        *,
        error: str | None,
        retry_at: datetime | None = None,
    ) -> str:
        values: dict[str, Any] = {"status": status.value}
        if status == JobStatus.QUEUED:
            values["next_attempt_at"] = retry_at
            values["last_error"] = error
        else:
            values["finished_at"] = self._clock()
            if error is not None:
                values["last_error"] = error
        with self._session_factory() as session:
            session.execute(update(Job).where(Job.id == job_id, Job.status == JobStatus.RUNNING.value).values(**values))
            session.commit()
        return status.value

    def list_dead_letters(self, session: Session, *, job_type: str | None = None, limit: int = 50, offset: int = 0) -> list[JobRead]:
        stmt = select(Job).where(Job.status == JobStatus.DEAD_LETTERED.value)
        if job_type is not None:
            stmt = stmt.where(Job.job_type == job_type)
        rows = session.scalars(stmt.order_by(Job.finished_at.desc(), Job.created_at.desc()).limit(limit).offset(offset)).all()
        return [JobRead.model_validate(row) for row in rows]

    def retry_dead_letter(self, session: Session, job_id: uuid.UUID) -> JobRead:
        job = self._dead_letter(session, job_id)
        job.status = JobStatus.QUEUED.value
        job.attempts = 0
        job.next_attempt_at = self._clock()
        job.finished_at = None
        session.commit()
        session.refresh(job)
        logger.info("job_requeued", extra={"job_id": str(job.id), "job_type": job.job_type})
        return JobRead.model_validate(job)

    def discard_dead_letter(self, session: Session, job_id: uuid.UUID) -> JobRead:
        job = self._dead_letter(session, job_id)
        job.status = JobStatus.DISCARDED.value
        session.commit()
        session.refresh(job)
        logger.info("job_discarded", extra={"job_id": str(job.id), "job_type": job.job_type})
        return JobRead.model_validate(job)

    def _dead_letter(self, session: Session, job_id: uuid.UUID) -> Job:
        job = session.get(Job, job_id)
        if job is None:
            raise NotFoundError("job not found")
        if job.status != JobStatus.DEAD_LETTERED.value:
            raise InvalidStateError(f"job is {job.status}, not dead-lettered")
        return job
