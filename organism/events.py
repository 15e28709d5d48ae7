"""Operator-visible diagnostic log (the ``events`` table)."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from organism.db import SessionFactory, session_scope
from organism.models import Event
from organism.utils import json_dump, json_parse

log = logging.getLogger(__name__)


def record_event(session: Session, event_type: str, payload: dict[str, Any] | None = None) -> Event:
    """Append an event to *session* (caller commits)."""
    event = Event(type=event_type, payload_json=json_dump(payload or {}))
    session.add(event)
    return event


def record_event_now(
    event_type: str, payload: dict[str, Any] | None = None,
    session_factory: SessionFactory | None = None,
) -> None:
    """Write an event in its own transaction; never raises.

    Used at failure boundaries where the surrounding session may be unusable.
    """
    try:
        with session_scope(session_factory) as session:
            record_event(session, event_type, payload)
            session.commit()
    except Exception as exc:
        log.error("Could not record %s event: %s", event_type, exc)


def latest_event(session: Session, event_type: str) -> Event | None:
    return session.execute(
        select(Event).where(Event.type == event_type).order_by(Event.id.desc()).limit(1)
    ).scalars().first()


def recent_events(
    session: Session, event_type: str | None = None, since: datetime | None = None, limit: int = 50,
) -> list[dict[str, Any]]:
    query = select(Event).order_by(Event.id.desc()).limit(limit)
    if event_type:
        query = query.where(Event.type == event_type)
    if since is not None:
        query = query.where(Event.created_at >= since)
    return [
        {"id": e.id, "type": e.type, "payload": json_parse(e.payload_json),
         "created_at": e.created_at.isoformat()}
        for e in session.execute(query).scalars().all()
    ]
