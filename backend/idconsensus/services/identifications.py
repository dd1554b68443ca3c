"""Identification lifecycle orchestration."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from uuid import UUID

from sqlalchemy.orm import Session

from .. import models, schemas
from ..errors import IdentificationNotFound, IdentificationValidationError
from ..eventlog import (
    CATEGORIES_UPDATED,
    COMMUNITY_TAXON_CHANGED,
    IDENTIFICATION_CREATED,
    IDENTIFICATION_DELETED,
    IDENTIFICATION_RESTORED,
    IDENTIFICATION_WITHDRAWN,
    record_observation_event,
)
from ..locks import lock_observation
from ..metrics import IDENTIFICATIONS_CREATED
from ..taxonomy import SqlTaxonomyOracle, TaxonomyOracle
from . import categorizer, currency, disagreement
from .consensus import SqlConsensusHolder

# purpose: run currency, disagreement, consensus and categorization for identification writes
# inputs: SQLAlchemy session, identification payloads, taxonomy oracle, consensus holder
# outputs: IdentificationOutcome with the touched identification and the events it produced
# status: pilot
# depends_on: services.currency, services.disagreement, services.categorizer, services.consensus

logger = logging.getLogger(__name__)


@dataclass
class IdentificationOutcome:
    identification: models.Identification | None
    events: list[models.ObservationEvent] = field(default_factory=list)


def _collaborators(
    db: Session,
    oracle: TaxonomyOracle | None,
    consensus: SqlConsensusHolder | None,
) -> tuple[TaxonomyOracle, SqlConsensusHolder]:
    oracle = oracle or SqlTaxonomyOracle(db)
    consensus = consensus or SqlConsensusHolder(db, oracle)
    return oracle, consensus


def _load_identification(db: Session, identification_id: int) -> models.Identification:
    identification = db.get(models.Identification, identification_id)
    if identification is None:
        raise IdentificationNotFound(f"identification {identification_id} not found")
    return identification


def recompute_observation(
    db: Session,
    observation_id: int,
    *,
    oracle: TaxonomyOracle | None = None,
    consensus: SqlConsensusHolder | None = None,
    actor_id: UUID | None = None,
) -> list[models.ObservationEvent]:
    """Refresh the community taxon, then categories, and record what changed."""

    oracle, consensus = _collaborators(db, oracle, consensus)
    events: list[models.ObservationEvent] = []
    before, after = consensus.notify_identifications_changed(observation_id)
    if before != after:
        events.append(
            record_observation_event(
                db,
                observation_id,
                COMMUNITY_TAXON_CHANGED,
                {"from_taxon_id": before, "to_taxon_id": after},
                actor_id=actor_id,
            )
        )
    changed = categorizer.update_categories_for_observation(db, observation_id, oracle, consensus)
    if changed:
        events.append(
            record_observation_event(
                db,
                observation_id,
                CATEGORIES_UPDATED,
                {"categories": {str(ident_id): category for ident_id, category in changed.items()}},
                actor_id=actor_id,
            )
        )
    return events


def build_identification(
    db: Session,
    observation: models.Observation,
    *,
    user_id: UUID,
    taxon_id: int,
    oracle: TaxonomyOracle,
    consensus: SqlConsensusHolder,
    body: str | None = None,
    explicit_disagreement: bool = False,
    disagreement_type: str | None = None,
    taxon_change_id: int | None = None,
    previous_observation_taxon_id: int | None = None,
    skip_disagreement: bool = False,
) -> models.Identification:
    """Insert a new identification for ``observation`` and make it current.

    A supplied ``previous_observation_taxon_id`` is kept as is instead of being
    resolved. With ``skip_disagreement`` the classifier does not run and the
    identification starts as an agreement. Categories are not recomputed.
    """

    taxon_id = disagreement.replace_inactive_taxon(taxon_id, oracle)
    prior = (
        db.query(models.Identification)
        .filter(models.Identification.observation_id == observation.id)
        .order_by(models.Identification.id)
        .all()
    )
    if previous_observation_taxon_id is None:
        previous_observation_taxon_id = disagreement.resolve_previous_observation_taxon(
            observation,
            user_id,
            prior,
            consensus.probable_taxon(observation.id),
        )

    if skip_disagreement:
        verdict = disagreement.AGREEMENT
    else:
        nodes = oracle.prefetch({taxon_id, previous_observation_taxon_id})
        try:
            verdict = disagreement.classify_disagreement(
                oracle.node(taxon_id),
                nodes.get(previous_observation_taxon_id),
                explicit=explicit_disagreement,
                requested_type=disagreement_type,
            )
        except ValueError as exc:
            raise IdentificationValidationError(str(exc)) from exc

    identification = models.Identification(
        observation_id=observation.id,
        user_id=user_id,
        taxon_id=taxon_id,
        body=body,
        current=False,
        previous_observation_taxon_id=previous_observation_taxon_id,
        disagreement=verdict.disagreement,
        disagreement_type=verdict.disagreement_type,
        taxon_change_id=taxon_change_id,
    )
    db.add(identification)
    db.flush()
    if not currency.mark_current(db, observation.id, user_id, identification.id):
        logger.info("identification %s saved without currency", identification.id)
    return identification


def create_identification(
    db: Session,
    payload: schemas.IdentificationCreate,
    *,
    oracle: TaxonomyOracle | None = None,
    consensus: SqlConsensusHolder | None = None,
) -> IdentificationOutcome:
    """Validate, classify, persist and categorize one new identification."""

    if db.get(models.User, payload.user_id) is None:
        raise IdentificationValidationError(f"user {payload.user_id} not found")
    if db.get(models.Taxon, payload.taxon_id) is None:
        raise IdentificationValidationError("taxon for an identification must be something we recognize")
    if payload.disagreement_type is not None and payload.disagreement_type not in disagreement.EXPLICIT_DISAGREEMENT_TYPES:
        raise IdentificationValidationError(f"unsupported disagreement type {payload.disagreement_type}")
    observation = lock_observation(db, payload.observation_id)
    if observation is None:
        raise IdentificationValidationError(f"observation {payload.observation_id} not found")

    explicit = payload.disagreement is True or (
        payload.disagreement is None and payload.disagreement_type is not None
    )
    oracle, consensus = _collaborators(db, oracle, consensus)
    identification = build_identification(
        db,
        observation,
        user_id=payload.user_id,
        taxon_id=payload.taxon_id,
        oracle=oracle,
        consensus=consensus,
        body=payload.body,
        explicit_disagreement=explicit,
        disagreement_type=payload.disagreement_type,
    )
    IDENTIFICATIONS_CREATED.labels("user").inc()
    events = [
        record_observation_event(
            db,
            observation.id,
            IDENTIFICATION_CREATED,
            {
                "identification_id": identification.id,
                "user_id": str(identification.user_id),
                "taxon_id": identification.taxon_id,
                "disagreement": identification.disagreement,
                "disagreement_type": identification.disagreement_type,
            },
            actor_id=payload.user_id,
        )
    ]
    events.extend(
        recompute_observation(
            db, observation.id, oracle=oracle, consensus=consensus, actor_id=payload.user_id
        )
    )
    db.refresh(identification)
    return IdentificationOutcome(identification, events)


def withdraw_identification(
    db: Session,
    identification_id: int,
    *,
    oracle: TaxonomyOracle | None = None,
    consensus: SqlConsensusHolder | None = None,
) -> IdentificationOutcome:
    """Mark an identification superseded without promoting an older one."""

    identification = _load_identification(db, identification_id)
    lock_observation(db, identification.observation_id)
    if not identification.current:
        return IdentificationOutcome(identification, [])
    currency.supersede(db, identification.id)
    events = [
        record_observation_event(
            db,
            identification.observation_id,
            IDENTIFICATION_WITHDRAWN,
            {"identification_id": identification.id},
            actor_id=identification.user_id,
        )
    ]
    events.extend(
        recompute_observation(
            db,
            identification.observation_id,
            oracle=oracle,
            consensus=consensus,
            actor_id=identification.user_id,
        )
    )
    db.refresh(identification)
    return IdentificationOutcome(identification, events)


def restore_identification(
    db: Session,
    identification_id: int,
    *,
    oracle: TaxonomyOracle | None = None,
    consensus: SqlConsensusHolder | None = None,
) -> IdentificationOutcome:
    """Make a withdrawn or superseded identification current again."""

    identification = _load_identification(db, identification_id)
    lock_observation(db, identification.observation_id)
    if identification.current:
        return IdentificationOutcome(identification, [])
    currency.mark_current(db, identification.observation_id, identification.user_id, identification.id)
    db.refresh(identification)
    events = [
        record_observation_event(
            db,
            identification.observation_id,
            IDENTIFICATION_RESTORED,
            {"identification_id": identification.id, "current": identification.current},
            actor_id=identification.user_id,
        )
    ]
    events.extend(
        recompute_observation(
            db,
            identification.observation_id,
            oracle=oracle,
            consensus=consensus,
            actor_id=identification.user_id,
        )
    )
    db.refresh(identification)
    return IdentificationOutcome(identification, events)


def delete_identification(
    db: Session,
    identification_id: int,
    *,
    oracle: TaxonomyOracle | None = None,
    consensus: SqlConsensusHolder | None = None,
) -> IdentificationOutcome:
    """Delete an identification and restore the user's currency on the rest."""

    identification = _load_identification(db, identification_id)
    observation_id = identification.observation_id
    user_id = identification.user_id
    was_current = identification.current
    lock_observation(db, observation_id)
    db.delete(identification)
    db.flush()
    restored = None
    if was_current:
        restored = currency.restore_currency(db, observation_id, user_id)
    events = [
        record_observation_event(
            db,
            observation_id,
            IDENTIFICATION_DELETED,
            {
                "identification_id": identification_id,
                "restored_identification_id": restored.id if restored else None,
            },
            actor_id=user_id,
        )
    ]
    events.extend(
        recompute_observation(db, observation_id, oracle=oracle, consensus=consensus, actor_id=user_id)
    )
    return IdentificationOutcome(restored, events)


def list_identifications(db: Session, observation_id: int) -> list[models.Identification]:
    if db.get(models.Observation, observation_id) is None:
        raise IdentificationNotFound(f"observation {observation_id} not found")
    return (
        db.query(models.Identification)
        .filter(models.Identification.observation_id == observation_id)
        .order_by(models.Identification.created_at, models.Identification.id)
        .all()
    )
