"""Taxon change commits and identification propagation."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterator, Sequence
from uuid import UUID

from sqlalchemy.orm import Session

from .. import models, schemas
from ..errors import TaxonChangeError
from ..eventlog import (
    TAXON_CHANGE_COMMITTED,
    TAXON_CHANGE_PROPAGATED,
    record_taxon_change_event,
)
from ..locks import lock_observation
from ..metrics import IDENTIFICATIONS_CREATED, TAXON_CHANGE_RECORDS_SKIPPED
from ..taxonomy import SqlTaxonomyOracle, TaxonomyOracle
from . import identifications as identification_service
from .consensus import SqlConsensusHolder
from .disagreement import previous_taxon_contains

# purpose: replay identifications when taxa are merged, split or swapped
# inputs: committed TaxonChange, taxonomy oracle, optional user/record filters
# outputs: replacement identifications, rewritten disagreements, PropagationReport
# status: pilot
# depends_on: services.identifications.build_identification, services.identifications.recompute_observation

logger = logging.getLogger(__name__)

BATCH_SIZE = int(os.getenv("TAXON_CHANGE_BATCH_SIZE", "100"))


@dataclass
class PropagationReport:
    taxon_change_id: int
    created: list[int] = field(default_factory=list)
    rewritten: list[int] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)
    observation_ids: list[int] = field(default_factory=list)

    def as_payload(self) -> dict[str, object]:
        return {
            "created": self.created,
            "rewritten": self.rewritten,
            "skipped": self.skipped,
            "observation_ids": self.observation_ids,
        }


def _chunks(values: Sequence[int], size: int) -> Iterator[list[int]]:
    for start in range(0, len(values), size):
        yield list(values[start:start + size])


def _load_change(db: Session, taxon_change_id: int) -> models.TaxonChange:
    change = db.get(models.TaxonChange, taxon_change_id)
    if change is None:
        raise TaxonChangeError(f"taxon change {taxon_change_id} not found")
    return change


def create_taxon_change(db: Session, payload: schemas.TaxonChangeCreate) -> models.TaxonChange:
    """Stage an uncommitted taxon change."""

    taxon_ids = set(payload.input_taxon_ids) | set(payload.output_taxon_ids)
    found = {
        taxon_id
        for (taxon_id,) in db.query(models.Taxon.id).filter(models.Taxon.id.in_(taxon_ids)).all()
    }
    missing = sorted(taxon_ids - found)
    if missing:
        raise TaxonChangeError(f"unknown taxa: {missing}")
    change = models.TaxonChange(change_type=payload.change_type, description=payload.description)
    for taxon_id in payload.input_taxon_ids:
        change.taxon_links.append(models.TaxonChangeTaxon(taxon_id=taxon_id, role="input"))
    for taxon_id in payload.output_taxon_ids:
        change.taxon_links.append(models.TaxonChangeTaxon(taxon_id=taxon_id, role="output"))
    db.add(change)
    db.flush()
    return change


def output_taxon_for(
    change: models.TaxonChange,
    identification: models.Identification,
    oracle: TaxonomyOracle,
) -> int | None:
    """Return the taxon an identification of an input taxon should move to."""

    outputs = change.output_taxon_ids
    if not outputs:
        return None
    if change.change_type in (models.MERGE, models.SWAP) or len(outputs) == 1:
        return outputs[0]
    # a split without range data can only retreat to what all outputs share
    nodes = oracle.prefetch(outputs)
    if len(nodes) != len(outputs):
        return None
    shared = set.intersection(*(set(node.self_and_ancestor_ids) for node in nodes.values()))
    if not shared:
        return None
    lineage = nodes[outputs[0]].ancestor_ids + (outputs[0],)
    deepest = next(taxon_id for taxon_id in reversed(lineage) if taxon_id in shared)
    node = oracle.prefetch([deepest]).get(deepest)
    if node is None or not node.is_grafted:
        return None
    return deepest


def commit_taxon_change(
    db: Session,
    taxon_change_id: int,
    *,
    actor_id: UUID | None = None,
) -> models.TaxonChange:
    """Retire the input taxa in favour of the outputs and stamp the change."""

    change = _load_change(db, taxon_change_id)
    if change.committed_at is not None:
        raise TaxonChangeError(f"taxon change {taxon_change_id} already committed")
    inputs, outputs = change.input_taxon_ids, change.output_taxon_ids
    if not inputs or not outputs:
        raise TaxonChangeError("a taxon change needs input and output taxa")
    if change.change_type in (models.MERGE, models.SWAP) and len(outputs) != 1:
        raise TaxonChangeError(f"a {change.change_type} must have exactly one output taxon")

    db.query(models.Taxon).filter(models.Taxon.id.in_(inputs)).update(
        {models.Taxon.is_active: False}, synchronize_session="fetch"
    )
    db.query(models.Taxon).filter(models.Taxon.id.in_(outputs)).update(
        {models.Taxon.is_active: True}, synchronize_session="fetch"
    )
    change.committed_at = datetime.now(timezone.utc)
    change.committed_by_id = actor_id
    db.flush()
    record_taxon_change_event(
        db,
        change,
        TAXON_CHANGE_COMMITTED,
        {"change_type": change.change_type, "input_taxon_ids": inputs, "output_taxon_ids": outputs},
        actor_id=actor_id,
    )
    return change


def propagate_taxon_change(
    db: Session,
    taxon_change_id: int,
    *,
    oracle: TaxonomyOracle | None = None,
    user_id: UUID | None = None,
    record_ids: Sequence[int] | None = None,
    batch_size: int = BATCH_SIZE,
) -> PropagationReport:
    """Replace current identifications of the change's input taxa.

    Only current identifications created before the run started are touched,
    so a second run over a completed change creates nothing.
    """

    change = _load_change(db, taxon_change_id)
    if change.committed_at is None:
        raise TaxonChangeError(f"taxon change {taxon_change_id} is not committed")
    oracle = oracle or SqlTaxonomyOracle(db)
    consensus = SqlConsensusHolder(db, oracle)
    input_ids = change.input_taxon_ids
    started_at = datetime.now(timezone.utc)
    report = PropagationReport(taxon_change_id=change.id)
    observation_ids: set[int] = set()

    query = db.query(models.Identification).filter(
        models.Identification.current.is_(True),
        models.Identification.taxon_id.in_(input_ids),
        models.Identification.created_at < started_at,
    )
    if user_id is not None:
        query = query.filter(models.Identification.user_id == user_id)
    if record_ids:
        query = query.filter(models.Identification.id.in_(list(record_ids)))
    targets = query.order_by(models.Identification.id).all()

    for ident in targets:
        output_taxon_id = output_taxon_for(change, ident, oracle)
        if output_taxon_id is None:
            TAXON_CHANGE_RECORDS_SKIPPED.labels(change.change_type).inc()
            logger.warning(
                "taxon change %s has no output taxon for identification %s; skipping",
                change.id,
                ident.id,
            )
            report.skipped.append(ident.id)
            continue
        observation = lock_observation(db, ident.observation_id)
        carried_previous = None
        if ident.disagreement and ident.previous_observation_taxon_id is not None:
            carried_previous = oracle.current_synonymous_taxon_id(ident.previous_observation_taxon_id)
        replacement = identification_service.build_identification(
            db,
            observation,
            user_id=ident.user_id,
            taxon_id=output_taxon_id,
            oracle=oracle,
            consensus=consensus,
            taxon_change_id=change.id,
            previous_observation_taxon_id=carried_previous,
            skip_disagreement=True,
        )
        if carried_previous is not None and not previous_taxon_contains(
            oracle.node(output_taxon_id), carried_previous
        ):
            replacement.disagreement = True
            replacement.disagreement_type = ident.disagreement_type
        IDENTIFICATIONS_CREATED.labels("taxon_change").inc()
        report.created.append(replacement.id)
        observation_ids.add(ident.observation_id)

    disagreeing = (
        db.query(models.Identification)
        .filter(
            models.Identification.current.is_(True),
            models.Identification.disagreement.is_(True),
            models.Identification.previous_observation_taxon_id.in_(input_ids),
        )
        .order_by(models.Identification.id)
        .all()
    )
    own_nodes = oracle.prefetch({ident.taxon_id for ident in disagreeing})
    for ident in disagreeing:
        if change.change_type in (models.MERGE, models.SWAP):
            ident.previous_observation_taxon_id = change.output_taxon_ids[0]
            # the output may now sit on the identification's own lineage
            own = own_nodes.get(ident.taxon_id)
            if own is not None and previous_taxon_contains(own, ident.previous_observation_taxon_id):
                ident.disagreement = False
                ident.disagreement_type = None
        else:
            ident.disagreement = False
            ident.disagreement_type = None
        report.rewritten.append(ident.id)
        observation_ids.add(ident.observation_id)
    db.flush()

    report.observation_ids = sorted(observation_ids)
    for batch in _chunks(report.observation_ids, batch_size):
        batch_identifications = (
            db.query(models.Identification.taxon_id)
            .filter(models.Identification.observation_id.in_(batch))
            .distinct()
            .all()
        )
        oracle.prefetch({taxon_id for (taxon_id,) in batch_identifications})
        for observation_id in batch:
            lock_observation(db, observation_id)
            identification_service.recompute_observation(
                db, observation_id, oracle=oracle, consensus=consensus
            )

    record_taxon_change_event(db, change, TAXON_CHANGE_PROPAGATED, report.as_payload())
    return report
