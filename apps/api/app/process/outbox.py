from __future__ import annotations

from typing import Any

from sqlalchemy.orm import Session

from app import events
from app.metrics import observe_process_event

_AUDIT_KEY = "process_audit_events"
_DOMAIN_KEY = "process_domain_events"


def queue_audit_event(session: Session, event_type: str) -> None:
    session.info.setdefault(_AUDIT_KEY, []).append(event_type)


def queue_domain_event(session: Session, envelope: dict[str, Any]) -> None:
    session.info.setdefault(_DOMAIN_KEY, []).append(envelope)


def discard(session: Session) -> None:
    session.info.pop(_AUDIT_KEY, None)
    session.info.pop(_DOMAIN_KEY, None)


def dispatch(session: Session) -> list[dict[str, Any]]:
    """Emit metrics and domain events collected during a committed unit of work."""
    audit_events: list[str] = session.info.pop(_AUDIT_KEY, [])
    envelopes: list[dict[str, Any]] = session.info.pop(_DOMAIN_KEY, [])
    for event_type in audit_events:
        observe_process_event(event_type)
    for envelope in envelopes:
        events.publish(envelope)
    return envelopes
