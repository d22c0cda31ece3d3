from __future__ import annotations

import logging

import pytest

from app import audit
from app.core.events import InProcessEventBus, InternalEvent
from app.platform.engine import forward_event_to_audit, register_audit_forwarding


def test_failing_handler_does_not_block_other_subscribers(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.ERROR, logger="app.events")
    bus = InProcessEventBus()
    received: list[str] = []

    def broken(event: InternalEvent) -> None:
        raise RuntimeError("subscriber crashed")

    bus.subscribe("approval.approved", broken)
    bus.subscribe("approval.approved", lambda event: received.append(event.payload["approval_instance_id"]))

    delivered = bus.publish("approval.approved", {"approval_instance_id": "ap-1"})

    assert delivered == 1
    assert received == ["ap-1"]
    failures = [record for record in caplog.records if record.getMessage() == "event_handler_failed"]
    assert len(failures) == 1
    assert failures[0].event_name == "approval.approved"


def test_subscribe_is_idempotent_and_wildcard_sees_everything() -> None:
    bus = InProcessEventBus()
    named: list[str] = []
    everything: list[str] = []

    def on_named(event: InternalEvent) -> None:
        named.append(event.name)

    bus.subscribe("lifecycle.transitioned", on_named)
    bus.subscribe("lifecycle.transitioned", on_named)
    bus.subscribe("*", lambda event: everything.append(event.name))

    bus.publish("lifecycle.transitioned", {})
    bus.publish("lifecycle.instance_created", {})
    bus.unsubscribe("lifecycle.transitioned", on_named)
    bus.publish("lifecycle.transitioned", {})

    assert named == ["lifecycle.transitioned"]
    assert everything == ["lifecycle.transitioned", "lifecycle.instance_created", "lifecycle.transitioned"]


def test_audited_events_are_forwarded_once() -> None:
    bus = InProcessEventBus()
    register_audit_forwarding(bus)
    register_audit_forwarding(bus)

    bus.publish(
        "lifecycle.transitioned",
        {
            "entity_name": "invoice",
            "entity_id": "inv-1",
            "actor_user_id": "clerk-1",
            "tenant_id": "tenant-a",
            "correlation_id": "corr-9",
        },
    )
    bus.publish("lifecycle.unaudited", {"entity_id": "inv-1"})

    assert len(audit.audit_entries) == 1
    entry = audit.audit_entries[0]
    assert entry["action"] == "lifecycle.transitioned"
    assert entry["entity_type"] == "invoice"
    assert entry["entity_id"] == "inv-1"
    assert entry["actor_user_id"] == "clerk-1"
    assert entry["correlation_id"] == "corr-9"
    assert entry["tenant_id"] == "tenant-a"


def test_approval_events_fall_back_to_instance_id() -> None:
    forward_event_to_audit(InternalEvent(name="approval.requested", payload={"approval_instance_id": "ap-7"}))

    entry = audit.audit_entries[-1]
    assert entry["entity_type"] == "approval"
    assert entry["entity_id"] == "ap-7"
    assert entry["actor_user_id"] == "system"


def test_failing_audit_sink_is_logged_not_raised(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.WARNING, logger="app.audit")

    def offline_sink(entry: dict) -> None:
        raise ConnectionError("audit store offline")

    audit.add_sink(offline_sink)
    try:
        audit.record("clerk-1", "invoice", "inv-1", "lifecycle.transitioned", None, {"to_state": "SUBMITTED"})
    finally:
        audit.remove_sink(offline_sink)

    assert [entry["entity_id"] for entry in audit.audit_entries] == ["inv-1"]
    failures = [record for record in caplog.records if record.getMessage() == "audit_sink_failed"]
    assert len(failures) == 1
    assert failures[0].error == "audit store offline"
