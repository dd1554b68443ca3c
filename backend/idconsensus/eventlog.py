"""Utilities for recording identification lifecycle events."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from . import models

# purpose: persist change events for downstream collaborators (search, stats, notifications)
# inputs: SQLAlchemy session, observation or taxon change scope, event metadata
# outputs: ObservationEvent rows with sequential ordering per scope
# status: pilot

IDENTIFICATION_CREATED = "identification.created"
IDENTIFICATION_WITHDRAWN = "identification.withdrawn"
IDENTIFICATION_RESTORED = "identification.restored"
IDENTIFICATION_DELETED = "identification.deleted"
CATEGORIES_UPDATED = "identification.categories_updated"
COMMUNITY_TAXON_CHANGED = "observation.community_taxon_changed"
TAXON_CHANGE_COMMITTED = "taxon_change.committed"
TAXON_CHANGE_PROPAGATED = "taxon_change.propagated"


def _next_sequence(db: Session, *criteria) -> int:
    latest = (
        db.query(models.ObservationEvent)
        .filter(*criteria)
        .order_by(models.ObservationEvent.sequence.desc())
        .first()
    )
    return 1 if latest is None else latest.sequence + 1


def record_observation_event(
    db: Session,
    observation_id: int,
    event_type: str,
    payload: dict[str, Any],
    actor_id: UUID | None = None,
) -> models.ObservationEvent:
    """Persist a structured observation event for replay and fan-out."""

    event = models.ObservationEvent(
        observation_id=observation_id,
        event_type=event_type,
        payload=payload if isinstance(payload, dict) else {},
        actor_id=actor_id,
        sequence=_next_sequence(
            db,
            models.ObservationEvent.observation_id == observation_id,
        ),
        created_at=datetime.now(timezone.utc),
    )
    db.add(event)
    db.flush()
    return event


def record_taxon_change_event(
    db: Session,
    taxon_change: models.TaxonChange,
    event_type: str,
    payload: dict[str, Any],
    actor_id: UUID | None = None,
) -> models.ObservationEvent:
    """Persist taxon change lifecycle events that are not scoped to one observation."""

    event = models.ObservationEvent(
        taxon_change_id=taxon_change.id,
        event_type=event_type,
        payload=payload if isinstance(payload, dict) else {},
        actor_id=actor_id,
        sequence=_next_sequence(
            db,
            models.ObservationEvent.taxon_change_id == taxon_change.id,
            models.ObservationEvent.observation_id.is_(None),
        ),
        created_at=datetime.now(timezone.utc),
    )
    db.add(event)
    db.flush()
    return event


def event_envelope(event: models.ObservationEvent) -> dict[str, Any]:
    """Return the JSON-ready message published for an event."""

    return {
        "id": str(event.id) if event.id else None,
        "type": event.event_type,
        "observation_id": event.observation_id,
        "taxon_change_id": event.taxon_change_id,
        "sequence": event.sequence,
        "payload": event.payload or {},
        "actor_id": str(event.actor_id) if event.actor_id else None,
        "created_at": event.created_at,
    }
