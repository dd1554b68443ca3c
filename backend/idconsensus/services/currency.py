"""Per-user currency tracking for identifications."""

from __future__ import annotations

import logging
from enum import Enum
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .. import models
from ..metrics import CURRENCY_RACES

# purpose: keep exactly one current identification per (observation, user) pair
# inputs: SQLAlchemy session, observation id, user id, identification id
# outputs: current/superseded transitions applied inside a savepoint
# status: pilot
# depends_on: index_identifications_on_current

logger = logging.getLogger(__name__)


class CurrencyState(str, Enum):
    CURRENT = "current"
    SUPERSEDED = "superseded"


def transition(db: Session, state: CurrencyState, *criteria) -> int:
    """Move every identification matching ``criteria`` into ``state``.

    This is the only writer of ``Identification.current``.
    """

    return (
        db.query(models.Identification)
        .filter(*criteria)
        .update(
            {models.Identification.current: state is CurrencyState.CURRENT},
            synchronize_session="fetch",
        )
    )


def _supersede_others(db: Session, observation_id: int, user_id: UUID, identification_id: int) -> int:
    return transition(
        db,
        CurrencyState.SUPERSEDED,
        models.Identification.observation_id == observation_id,
        models.Identification.user_id == user_id,
        models.Identification.id != identification_id,
        models.Identification.current.is_(True),
    )


def _promote(db: Session, identification_id: int) -> int:
    updated = transition(
        db,
        CurrencyState.CURRENT,
        models.Identification.id == identification_id,
    )
    db.flush()
    return updated


def mark_current(db: Session, observation_id: int, user_id: UUID, identification_id: int) -> bool:
    """Supersede the pair's other identifications and make one current.

    Both writes happen in one savepoint. A uniqueness violation means another
    writer already installed a current identification for the pair; that is
    treated as success for the pair and ``False`` is returned.
    """

    try:
        with db.begin_nested():
            _supersede_others(db, observation_id, user_id, identification_id)
            _promote(db, identification_id)
    except IntegrityError:
        CURRENCY_RACES.inc()
        logger.info(
            "current identification already set for observation %s user %s; keeping it",
            observation_id,
            user_id,
        )
        return False
    return True


def supersede(db: Session, identification_id: int) -> int:
    return transition(db, CurrencyState.SUPERSEDED, models.Identification.id == identification_id)


def current_identification_for(
    db: Session, observation_id: int, user_id: UUID
) -> models.Identification | None:
    return (
        db.query(models.Identification)
        .filter(
            models.Identification.observation_id == observation_id,
            models.Identification.user_id == user_id,
            models.Identification.current.is_(True),
        )
        .order_by(models.Identification.id.desc())
        .first()
    )


def restore_currency(db: Session, observation_id: int, user_id: UUID) -> models.Identification | None:
    """Make the user's most recent remaining identification current.

    Returns the pair's current identification afterwards, or ``None`` when the
    user has no identifications left on the observation.
    """

    existing = current_identification_for(db, observation_id, user_id)
    if existing is not None:
        return existing
    candidate = (
        db.query(models.Identification)
        .filter(
            models.Identification.observation_id == observation_id,
            models.Identification.user_id == user_id,
        )
        .order_by(models.Identification.created_at.desc(), models.Identification.id.desc())
        .first()
    )
    if candidate is None:
        return None
    if not mark_current(db, observation_id, user_id, candidate.id):
        return current_identification_for(db, observation_id, user_id)
    return candidate
