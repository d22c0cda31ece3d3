from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.platform.engine import GovernanceEngine

from conftest import ActingUser, FrozenClock, Seeder


@pytest.fixture(autouse=True)
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_metrics_endpoint_exposes_http_lifecycle_and_job_metrics(
    client: TestClient,
    seed: Seeder,
    governance: GovernanceEngine,
    db_session: Session,
    clock: FrozenClock,
    acting: ActingUser,
) -> None:
    seed.invoice_lifecycle()
    assert client.get("/health").status_code == 200
    assert client.post("/lifecycle/records/invoice/inv-1", json={"record": {}}).status_code == 201
    assert client.post("/lifecycle/records/invoice/inv-1/transition/submit").status_code == 200

    governance.job_queue.process("demo", 1, lambda session, payload: None)
    governance.job_queue.enqueue(db_session, "demo", {}, clock.now, tenant_id="tenant-a")
    db_session.commit()
    governance.job_queue.run_due()

    acting.act_as("metrics-admin", ["system.metrics.read"])
    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "lifecycle_transitions_total" in body
    assert "policy_decisions_total" in body
    assert "jobs_total" in body
    assert "job_duration_seconds" in body

    assert 'path="/health"' in body
    assert 'path="/lifecycle/records/{id}/{id}/transition/{operation_code}"' in body
    assert 'entity_name="invoice",outcome="applied"' in body
    assert 'job_type="demo",status="Succeeded"' in body


def test_metrics_require_permission(client: TestClient) -> None:
    response = client.get("/metrics")

    assert response.status_code == 403
    assert response.json()["detail"] == "Missing permission: system.metrics.read"


def test_metrics_disabled_returns_not_found(client: TestClient, acting: ActingUser, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()
    acting.act_as("metrics-admin", ["system.metrics.read"])

    assert client.get("/metrics").status_code == 404
