"""Identification lifecycle API routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy.orm import Session

from .. import models, pubsub, schemas
from ..database import get_db
from ..errors import (
    IdentificationError,
    IdentificationNotFound,
    IdentificationValidationError,
    TaxonomyLookupError,
)
from ..locks import OBSERVATION_LOCKS
from ..services import identifications
from ..tasks import enqueue_recompute_observation_categories

# purpose: expose identification create/withdraw/restore/delete and category reads
# status: pilot
# depends_on: backend.idconsensus.services.identifications

router = APIRouter(prefix="/api", tags=["identifications"])


def _http_error(exc: IdentificationError) -> HTTPException:
    if isinstance(exc, IdentificationValidationError):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    if isinstance(exc, IdentificationNotFound):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, TaxonomyLookupError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))


def _observation_id_for(db: Session, identification_id: int) -> int:
    identification = db.get(models.Identification, identification_id)
    if not identification:
        raise HTTPException(status_code=404, detail="Identification not found")
    return identification.observation_id


async def _commit_outcome(db: Session, observation_id: int, operation) -> identifications.IdentificationOutcome:
    try:
        with OBSERVATION_LOCKS.hold(observation_id):
            outcome = operation()
            db.commit()
    except IdentificationError as exc:
        db.rollback()
        raise _http_error(exc) from exc
    await pubsub.publish_events(outcome.events)
    return outcome


def _mutation_out(outcome: identifications.IdentificationOutcome) -> schemas.IdentificationMutationOut:
    return schemas.IdentificationMutationOut(
        identification=schemas.IdentificationOut.model_validate(outcome.identification)
        if outcome.identification is not None
        else None,
        events=[schemas.ObservationEventOut.model_validate(event) for event in outcome.events],
    )


@router.post(
    "/identifications",
    status_code=status.HTTP_201_CREATED,
    response_model=schemas.IdentificationMutationOut,
)
async def create_identification(
    payload: schemas.IdentificationCreate,
    db: Session = Depends(get_db),
):
    outcome = await _commit_outcome(
        db,
        payload.observation_id,
        lambda: identifications.create_identification(db, payload),
    )
    return _mutation_out(outcome)


@router.post("/identifications/{identification_id}/withdraw", response_model=schemas.IdentificationMutationOut)
async def withdraw_identification(identification_id: int, db: Session = Depends(get_db)):
    observation_id = _observation_id_for(db, identification_id)
    outcome = await _commit_outcome(
        db,
        observation_id,
        lambda: identifications.withdraw_identification(db, identification_id),
    )
    return _mutation_out(outcome)


@router.post("/identifications/{identification_id}/restore", response_model=schemas.IdentificationMutationOut)
async def restore_identification(identification_id: int, db: Session = Depends(get_db)):
    observation_id = _observation_id_for(db, identification_id)
    outcome = await _commit_outcome(
        db,
        observation_id,
        lambda: identifications.restore_identification(db, identification_id),
    )
    return _mutation_out(outcome)


@router.delete("/identifications/{identification_id}", status_code=204)
async def delete_identification(identification_id: int, db: Session = Depends(get_db)):
    observation_id = _observation_id_for(db, identification_id)
    await _commit_outcome(
        db,
        observation_id,
        lambda: identifications.delete_identification(db, identification_id),
    )
    return Response(status_code=204)


@router.get(
    "/observations/{observation_id}/identifications",
    response_model=schemas.ObservationIdentificationsOut,
)
def list_observation_identifications(observation_id: int, db: Session = Depends(get_db)):
    try:
        rows = identifications.list_identifications(db, observation_id)
    except IdentificationNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    observation = db.get(models.Observation, observation_id)
    return schemas.ObservationIdentificationsOut(
        observation_id=observation.id,
        taxon_id=observation.taxon_id,
        community_taxon_id=observation.community_taxon_id,
        identifications=[schemas.IdentificationOut.model_validate(row) for row in rows],
    )


@router.get(
    "/observations/{observation_id}/events",
    response_model=list[schemas.ObservationEventOut],
)
def list_observation_events(observation_id: int, db: Session = Depends(get_db)):
    if not db.get(models.Observation, observation_id):
        raise HTTPException(status_code=404, detail="Observation not found")
    return (
        db.query(models.ObservationEvent)
        .filter(models.ObservationEvent.observation_id == observation_id)
        .order_by(models.ObservationEvent.sequence.asc())
        .all()
    )


@router.post(
    "/observations/{observation_id}/categories/recompute",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=schemas.CategoryRecomputeOut,
)
def recompute_categories(observation_id: int, db: Session = Depends(get_db)):
    if not db.get(models.Observation, observation_id):
        raise HTTPException(status_code=404, detail="Observation not found")
    # the worker writes on its own connection
    db.rollback()
    enqueue_recompute_observation_categories(observation_id)
    return schemas.CategoryRecomputeOut(observation_id=observation_id, queued=True)
