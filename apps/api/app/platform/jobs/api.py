from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.core.auth import AuthUser
from app.core.database import get_db
from app.core.rbac import require_roles
from app.platform.engine import GovernanceEngine, get_engine
from app.platform.jobs.schemas import JobRead, JobRunSummary


router = APIRouter(prefix="/admin/jobs", tags=["admin.jobs"])


@router.get("/dlq", response_model=list[JobRead])
def list_dead_letters(
    job_type: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    engine: GovernanceEngine = Depends(get_engine),
    _user: AuthUser = Depends(require_roles("jobs.admin")),
) -> list[JobRead]:
    return engine.job_queue.list_dead_letters(db, job_type=job_type, limit=limit, offset=offset)


@router.post("/dlq/{job_id}/retry", response_model=JobRead)
def retry_dead_letter(
    job_id: uuid.UUID,
    db: Session = Depends(get_db),
    engine: GovernanceEngine = Depends(get_engine),
    _user: AuthUser = Depends(require_roles("jobs.admin")),
) -> JobRead:
    return engine.job_queue.retry_dead_letter(db, job_id)


@router.post("/dlq/{job_id}/discard", response_model=JobRead)
def discard_dead_letter(
    job_id: uuid.UUID,
    db: Session = Depends(get_db),
    engine: GovernanceEngine = Depends(get_engine),
    _user: AuthUser = Depends(require_roles("jobs.admin")),
) -> JobRead:
    return engine.job_queue.discard_dead_letter(db, job_id)


@router.post("/run-due", response_model=JobRunSummary)
def run_due_jobs(
    engine: GovernanceEngine = Depends(get_engine),
    _user: AuthUser = Depends(require_roles("jobs.admin")),
) -> JobRunSummary:
    return engine.job_queue.run_due()
