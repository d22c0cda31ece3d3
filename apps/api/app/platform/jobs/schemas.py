from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class JobRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str | None
    job_type: str
    status: str
    payload_json: dict[str, Any]
    fire_at: datetime
    next_attempt_at: datetime
    attempts: int
    max_attempts: int
    last_error: str | None
    correlation_id: str | None
    created_at: datetime
    finished_at: datetime | None


class JobRunSummary(BaseModel):
    claimed: int = 0
    succeeded: int = 0
    retried: int = 0
    dead_lettered: int = 0
    skipped: int = 0
