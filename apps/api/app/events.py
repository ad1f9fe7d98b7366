from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from app.context import get_correlation_id
from app.core.events import event_bus

EVENT_SOURCE = "process-api"

published_events: list[dict[str, Any]] = []


def publish(envelope: dict[str, Any]) -> dict[str, Any]:
    """Stamp a domain event envelope and hand it to in-process subscribers."""
    envelope.setdefault("event_id", str(uuid.uuid4()))
    envelope.setdefault("source", EVENT_SOURCE)
    envelope.setdefault("occurred_at", datetime.now(timezone.utc).isoformat())
    if envelope.get("correlation_id") is None:
        envelope["correlation_id"] = get_correlation_id()

    published_events.append(envelope)
    event_type = envelope.get("event_type")
    if isinstance(event_type, str) and event_type:
        event_bus.publish(event_type, envelope)
    return envelope
