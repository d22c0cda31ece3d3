from __future__ import annotations

from typing import Any

import pytest
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from sqlalchemy.orm import Session

from app.otel import setup_inmemory_otel
from app.platform.engine import GovernanceEngine

from conftest import FrozenClock, Seeder


@pytest.fixture()
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("api")
    exporter.clear()
    return exporter


def test_transition_span_carries_correlation_id(client: TestClient, seed: Seeder, span_exporter: InMemorySpanExporter) -> None:
    seed.invoice_lifecycle()
    headers = {"x-correlation-id": "corr-otel-1"}

    assert client.post("/lifecycle/records/invoice/inv-1", json={"record": {"amount": 5}}, headers=headers).status_code == 201
    assert client.post("/lifecycle/records/invoice/inv-1/transition/submit", headers=headers).status_code == 200

    spans = [span for span in span_exporter.get_finished_spans() if span.name == "lifecycle.transition"]
    assert len(spans) == 1
    attributes = spans[0].attributes or {}
    assert attributes.get("correlation_id") == "corr-otel-1"
    assert attributes.get("entity_name") == "invoice"
    assert attributes.get("operation_code") == "submit"
    assert attributes.get("outcome") == "applied"


def test_job_span_carries_job_identity(
    governance: GovernanceEngine,
    db_session: Session,
    clock: FrozenClock,
    span_exporter: InMemorySpanExporter,
) -> None:
    seen: list[dict[str, Any]] = []
    governance.job_queue.process("demo", 1, lambda session, payload: seen.append(payload))
    job_id = governance.job_queue.enqueue(db_session, "demo", {}, clock.now, tenant_id="tenant-a")
    db_session.commit()

    assert governance.job_queue.run_due().succeeded == 1

    spans = [span for span in span_exporter.get_finished_spans() if span.name == "job.execute"]
    assert len(spans) == 1
    attributes = spans[0].attributes or {}
    assert attributes.get("job_id") == job_id
    assert attributes.get("job_type") == "demo"
    assert attributes.get("tenant_id") == "tenant-a"
