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
    """Runs handlers after commit; a failing handler is logged and the rest still run."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_name: str, handler: EventHandler) -> None:
        if handler not in self._subscribers[event_name]:
            self._subscribers[event_name].append(handler)

    def unsubscribe(self, event_name: str, handler: EventHandler) -> None:
        handlers = self._subscribers.get(event_name, [])
        if handler in handlers:
            handlers.remove(handler)

    def subscribers(self, event_name: str) -> list[EventHandler]:
        return list(self._subscribers.get(event_name, []))

    def publish(self, event_name: str, payload: dict[str, Any]) -> list[Exception]:
        event = InternalEvent(name=event_name, payload=payload)
        failures: list[Exception] = []
        for handler in self.subscribers(event_name):
            try:
                handler(event)
            except Exception as exc:
                failures.append(exc)
                logger.exception(
                    "event.handler_failed",
                    extra={
                        "event_name": event_name,
                        "execution_id": payload.get("execution_id"),
                        "error": str(exc),
                    },
                )
        return failures


event_bus = InProcessEventBus()
