"""Append-only event recorder.

Events are inserted and read, never updated or deleted. ``content_hash``
holds the SHA-256 of a canonical JSON snapshot of whatever the event is
about, so a later reader can prove the snapshot was not altered.
"""
from __future__ import annotations

import json
import logging
from typing import Any

from sqlalchemy import desc, select
from sqlalchemy.orm import Session

from oddly.models import Event
from oddly.utils import canonical_hash, json_parse

log = logging.getLogger(__name__)

DEFAULT_ACTOR_LIMIT = 100
DEFAULT_RECENT_LIMIT = 50


def hash_snapshot(snapshot: Any) -> str:
    return canonical_hash(snapshot)


def emit(
    session: Session,
    actor_id: str,
    entity_type: str,
    entity_id: str,
    action: str,
    metadata: dict[str, Any] | None = None,
    content_hash: str | None = None,
    snapshot: Any = None,
) -> Event:
    """Append one event (caller must commit).

    Pass either a precomputed ``content_hash`` or a ``snapshot`` to hash.
    """
    if content_hash is None and snapshot is not None:
        content_hash = hash_snapshot(snapshot)
    event = Event(
        actor_id=actor_id,
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        content_hash=content_hash,
        metadata_json=json.dumps(metadata or {}, default=str),
    )
    session.add(event)
    session.flush()
    log.debug("Event %s %s:%s by %s", action, entity_type, entity_id, actor_id)
    return event


def get_trail(session: Session, entity_type: str, entity_id: str) -> list[Event]:
    return list(session.execute(
        select(Event)
        .where(Event.entity_type == entity_type, Event.entity_id == entity_id)
        .order_by(Event.created_at, Event.id)
    ).scalars())


def get_by_actor(session: Session, actor_id: str, limit: int = DEFAULT_ACTOR_LIMIT) -> list[Event]:
    return list(session.execute(
        select(Event)
        .where(Event.actor_id == actor_id)
        .order_by(desc(Event.created_at))
        .limit(limit)
    ).scalars())


def get_recent(session: Session, limit: int = DEFAULT_RECENT_LIMIT) -> list[Event]:
    return list(session.execute(
        select(Event).order_by(desc(Event.created_at)).limit(limit)
    ).scalars())


def verify_hash(event: Event, snapshot: Any) -> bool:
    if not event.content_hash:
        return False
    return event.content_hash == hash_snapshot(snapshot)


def event_summary(event: Event) -> dict:
    return {
        "id": event.id,
        "actorId": event.actor_id,
        "entityType": event.entity_type,
        "entityId": event.entity_id,
        "action": event.action,
        "contentHash": event.content_hash,
        "metadata": json_parse(event.metadata_json, {}),
        "createdAt": event.created_at.isoformat(),
    }
