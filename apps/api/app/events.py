from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from app.context import get_correlation_id, get_tenant_id
from app.core.events import event_bus

published_events: list[dict[str, Any]] = []


def publish(envelope: dict[str, Any]) -> None:
    if envelope.get("correlation_id") is None:
        envelope["correlation_id"] = get_correlation_id()
    if envelope.get("tenant_id") is None:
        envelope["tenant_id"] = get_tenant_id()
    envelope.setdefault("occurred_at", datetime.now(timezone.utc).isoformat())

    published_events.append(envelope)
    event_type = envelope.get("event_type")
    if isinstance(event_type, str) and event_type:
        event_bus.publish(event_type, envelope)


def emit(event_type: str, **payload: Any) -> dict[str, Any]:
    envelope: dict[str, Any] = {"event_type": event_type, **payload}
    publish(envelope)
    return envelope
