from __future__ import annotations

import logging
from collections import deque

from app.core.events import InProcessEventBus, InternalEvent, event_bus


logger = logging.getLogger("app.process.notifications")

NOTIFIED_EVENT_TYPES = (
    "process.approval.requested",
    "process.approval.assigned",
    "process.escalation.triggered",
    "process.execution.completed",
    "process.execution.failed",
)

_RECIPIENT_KEYS = {
    "process.approval.requested": "approver_id",
    "process.approval.assigned": "approver_id",
    "process.escalation.triggered": "escalated_to_id",
    "process.execution.completed": "initiated_by_id",
    "process.execution.failed": "initiated_by_id",
}

MAX_SENT_NOTIFICATIONS = 1000

sent_notifications: deque[dict[str, object]] = deque(maxlen=MAX_SENT_NOTIFICATIONS)


def notify(event: InternalEvent) -> None:
    """Record a notification intent; delivery is handled outside this service."""
    payload = event.payload if isinstance(event.payload, dict) else {}
    recipient = payload.get(_RECIPIENT_KEYS.get(event.name, ""))
    notification = {
        "event_type": event.name,
        "recipient_id": recipient,
        "execution_id": payload.get("execution_id"),
        "team_id": payload.get("team_id"),
    }
    sent_notifications.append(notification)
    logger.info(
        "process.notification.queued",
        extra={
            "event_name": event.name,
            "execution_id": payload.get("execution_id"),
            "status": "unassigned" if recipient is None else "queued",
        },
    )


def register_notification_handlers(bus: InProcessEventBus = event_bus) -> None:
    for event_name in NOTIFIED_EVENT_TYPES:
        bus.subscribe(event_name, notify)


def unregister_notification_handlers(bus: InProcessEventBus = event_bus) -> None:
    for event_name in NOTIFIED_EVENT_TYPES:
        bus.unsubscribe(event_name, notify)
