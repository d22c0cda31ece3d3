from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from app.context import get_correlation_id, get_tenant_id


logger = logging.getLogger("app.audit")

AuditSink = Callable[[dict[str, Any]], None]

audit_entries: list[dict[str, Any]] = []


def _memory_sink(entry: dict[str, Any]) -> None:
    audit_entries.append(entry)


_sinks: list[AuditSink] = [_memory_sink]


def add_sink(sink: AuditSink) -> None:
    if sink not in _sinks:
        _sinks.append(sink)


def remove_sink(sink: AuditSink) -> None:
    if sink in _sinks and sink is not _memory_sink:
        _sinks.remove(sink)


def record(
    actor_user_id: str,
    entity_type: str,
    entity_id: str,
    action: str,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
    correlation_id: str | None = None,
    tenant_id: str | None = None,
) -> None:
    """Append an audit entry to every sink.

    Sink failures are logged and swallowed so the business action that is
    being described is never rolled back by the audit trail.
    """

    entry = {
        "id": str(uuid.uuid4()),
        "tenant_id": tenant_id or get_tenant_id(),
        "actor_user_id": actor_user_id,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "action": action,
        "before": before,
        "after": after,
        "correlation_id": correlation_id or get_correlation_id(),
        "occurred_at": datetime.now(timezone.utc).isoformat(),
    }
    for sink in list(_sinks):
        try:
            sink(entry)
        except Exception as exc:
            logger.warning(
                "audit_sink_failed",
                extra={"entity_name": entity_type, "entity_id": entity_id, "action": action, "error": str(exc)},
            )
