from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any


logger = logging.getLogger("app.events")


@dataclass
class InternalEvent:
    name: str
    payload: dict[str, Any]


EventHandler = Callable[[InternalEvent], None]


class InProcessEventBus:
    """Synchronous, best-effort fan-out to in-process subscribers.

    Each handler runs in isolation: a failing handler is logged and the
    remaining handlers still receive the event. Nothing is persisted, so
    subscribers needing durability must record what they receive.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_name: str, handler: EventHandler) -> None:
        if handler not in self._subscribers[event_name]:
            self._subscribers[event_name].append(handler)

    def unsubscribe(self, event_name: str, handler: EventHandler) -> None:
        handlers = self._subscribers.get(event_name, [])
        if handler in handlers:
            handlers.remove(handler)

    def publish(self, event_name: str, payload: dict[str, Any]) -> int:
        event = InternalEvent(name=event_name, payload=payload)
        delivered = 0
        for handler in list(self._subscribers.get(event_name, [])) + list(self._subscribers.get("*", [])):
            try:
                handler(event)
                delivered += 1
            except Exception:
                logger.exception(
                    "event_handler_failed",
                    extra={"event_name": event_name, "handler": getattr(handler, "__qualname__", repr(handler))},
                )
        return delivered


event_bus = InProcessEventBus()
