"""Taxon change and taxon move API routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from .. import models, pubsub, schemas
from ..database import get_db
from ..errors import TaxonChangeError, TaxonomyLookupError
from ..services import disagreement, taxon_changes
from ..taxonomy import SqlTaxonomyOracle, graft_taxon
from ..tasks import enqueue_recompute_observation_categories
from ..workers.taxon_changes import enqueue_taxon_change_propagation

# purpose: let curators stage, commit and replay taxon changes and move taxa
# status: pilot
# depends_on: backend.idconsensus.services.taxon_changes

router = APIRouter(prefix="/api", tags=["taxa", "taxon-changes"])


def _change_out(change: models.TaxonChange) -> schemas.TaxonChangeOut:
    return schemas.TaxonChangeOut(
        id=change.id,
        change_type=change.change_type,
        description=change.description,
        input_taxon_ids=change.input_taxon_ids,
        output_taxon_ids=change.output_taxon_ids,
        committed_at=change.committed_at,
        committed_by_id=change.committed_by_id,
    )


@router.post(
    "/taxon-changes",
    status_code=status.HTTP_201_CREATED,
    response_model=schemas.TaxonChangeOut,
)
def create_taxon_change(payload: schemas.TaxonChangeCreate, db: Session = Depends(get_db)):
    try:
        change = taxon_changes.create_taxon_change(db, payload)
        db.commit()
    except TaxonChangeError as exc:
        db.rollback()
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    db.refresh(change)
    return _change_out(change)


@router.get("/taxon-changes/{taxon_change_id}", response_model=schemas.TaxonChangeOut)
def get_taxon_change(taxon_change_id: int, db: Session = Depends(get_db)):
    change = db.get(models.TaxonChange, taxon_change_id)
    if not change:
        raise HTTPException(status_code=404, detail="Taxon change not found")
    return _change_out(change)


@router.post("/taxon-changes/{taxon_change_id}/commit", response_model=schemas.TaxonChangeOut)
async def commit_taxon_change(
    taxon_change_id: int,
    payload: schemas.TaxonChangeCommit,
    db: Session = Depends(get_db),
):
    if not db.get(models.TaxonChange, taxon_change_id):
        raise HTTPException(status_code=404, detail="Taxon change not found")
    try:
        change = taxon_changes.commit_taxon_change(db, taxon_change_id, actor_id=payload.user_id)
        events = list(
            db.query(models.ObservationEvent)
            .filter(models.ObservationEvent.taxon_change_id == taxon_change_id)
            .all()
        )
        db.commit()
    except TaxonChangeError as exc:
        db.rollback()
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    enqueue_taxon_change_propagation(taxon_change_id)
    await pubsub.publish_events(events)
    db.refresh(change)
    return _change_out(change)


@router.post("/taxa/{taxon_id}/move", response_model=schemas.TaxonMoveOut)
def move_taxon(taxon_id: int, payload: schemas.TaxonMove, db: Session = Depends(get_db)):
    taxon = db.get(models.Taxon, taxon_id)
    if not taxon:
        raise HTTPException(status_code=404, detail="Taxon not found")
    parent = None
    if payload.parent_id is not None:
        parent = db.get(models.Taxon, payload.parent_id)
        if not parent:
            raise HTTPException(status_code=404, detail="Parent taxon not found")
    try:
        moved = graft_taxon(db, taxon, parent)
        cleared = disagreement.reconcile_disagreements_for_taxon(db, taxon_id, SqlTaxonomyOracle(db))
        moved_ids = [t.id for t in moved]
        cleared_ids = [ident.id for ident in cleared]
        affected = {
            observation_id
            for (observation_id,) in db.query(models.Identification.observation_id)
            .filter(models.Identification.taxon_id.in_(moved_ids))
            .distinct()
            .all()
        }
        db.commit()
    except ValueError as exc:
        db.rollback()
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except TaxonomyLookupError as exc:
        db.rollback()
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    for observation_id in sorted(affected):
        enqueue_recompute_observation_categories(observation_id)
    db.refresh(taxon)
    return schemas.TaxonMoveOut(
        taxon_id=taxon.id,
        ancestry=taxon.ancestry,
        moved_taxon_ids=moved_ids,
        cleared_identification_ids=cleared_ids,
    )
