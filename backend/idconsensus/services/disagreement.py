"""Disagreement classification for newly created identifications."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Protocol, Sequence

from sqlalchemy.orm import Session

from .. import models
from ..taxonomy import TaxonNode, TaxonomyOracle, descendant_conditions

# purpose: decide whether a new identification disagrees with the taxon it replaces
# inputs: prefetched TaxonNode snapshots, explicit disagreement flags, prior identifications
# outputs: DisagreementVerdict values and previous observation taxon ids
# status: pilot

logger = logging.getLogger(__name__)

EXPLICIT_DISAGREEMENT_TYPES = (models.BRANCH, models.LEAF)


@dataclass(frozen=True)
class DisagreementVerdict:
    disagreement: bool | None
    disagreement_type: str | None = None


UNSET = DisagreementVerdict(None, None)
AGREEMENT = DisagreementVerdict(False, None)


class PriorIdentification(Protocol):
    id: int
    taxon_id: int
    current: bool
    created_at: datetime


def classify_disagreement(
    new_taxon: TaxonNode,
    previous_taxon: TaxonNode | None,
    explicit: bool = False,
    requested_type: str | None = None,
) -> DisagreementVerdict:
    """Classify ``new_taxon`` against the taxon it is effectively replacing."""

    # Can't disagree with nothing or with an unplaced taxon
    if previous_taxon is None or not previous_taxon.is_grafted:
        return UNSET

    # Can't disagree by suggesting an orphaned leaf
    if not new_taxon.is_grafted and not new_taxon.has_children:
        return UNSET

    if requested_type is not None and requested_type not in EXPLICIT_DISAGREEMENT_TYPES:
        raise ValueError(f"unsupported explicit disagreement type: {requested_type}")

    # Explicit disagreement only applies to a strict ancestor of the previous taxon
    if explicit and new_taxon.id in previous_taxon.ancestor_ids:
        return DisagreementVerdict(True, requested_type or models.BRANCH)

    ancestor_of_previous = new_taxon.id in previous_taxon.self_and_ancestor_ids
    descendant_of_previous = previous_taxon.id in new_taxon.self_and_ancestor_ids
    if not ancestor_of_previous and not descendant_of_previous:
        return DisagreementVerdict(True, models.IMPLICIT)
    return AGREEMENT


def previous_taxon_contains(taxon: TaxonNode, previous_taxon_id: int | None) -> bool:
    """Whether ``previous_taxon_id`` is ``taxon`` itself or one of its ancestors.

    An identification whose taxon sits at or below the taxon it replaced
    cannot disagree with it.
    """

    return previous_taxon_id is not None and previous_taxon_id in taxon.self_and_ancestor_ids


def resolve_previous_observation_taxon(
    observation: models.Observation,
    user_id,
    prior_identifications: Sequence[PriorIdentification],
    probable_taxon_id: int | None,
) -> int | None:
    """Return the taxon a new identification by ``user_id`` would be replacing.

    ``prior_identifications`` are the observation's identifications persisted
    before the new one; ``probable_taxon_id`` is the community taxon computed
    over them.
    """

    if user_id == observation.user_id:
        candidate = observation.taxon_id
    elif observation.community_mode:
        candidate = probable_taxon_id
    else:
        candidate = observation.taxon_id
    if candidate is not None:
        return candidate

    ordered = sorted(prior_identifications, key=lambda ident: (ident.created_at, ident.id))
    current = [ident for ident in ordered if ident.current]
    previous = (current or ordered)[-1] if ordered else None
    if previous is not None:
        return previous.taxon_id
    return observation.taxon_id


def replace_inactive_taxon(taxon_id: int, oracle: TaxonomyOracle) -> int:
    """Swap an inactive taxon for its current synonym when one exists."""

    node = oracle.prefetch([taxon_id]).get(taxon_id)
    if node is None or node.is_active:
        return taxon_id
    synonym = oracle.current_synonymous_taxon_id(taxon_id)
    if synonym is None:
        return taxon_id
    logger.info("replacing inactive taxon %s with synonym %s", taxon_id, synonym)
    return synonym


def reconcile_disagreements_for_taxon(
    db: Session,
    taxon_id: int,
    oracle: TaxonomyOracle,
) -> list[models.Identification]:
    """Clear disagreements that a taxon move turned into agreements.

    Looks at disagreeing identifications of ``taxon_id`` and its descendants;
    any whose taxon now descends from its previous observation taxon no longer
    disagrees.
    """

    candidates: Iterable[models.Identification] = (
        db.query(models.Identification)
        .join(models.Taxon, models.Taxon.id == models.Identification.taxon_id)
        .filter(models.Identification.disagreement.is_(True))
        .filter((models.Taxon.id == taxon_id) | descendant_conditions(taxon_id))
        .all()
    )
    candidates = list(candidates)
    nodes = oracle.prefetch({ident.taxon_id for ident in candidates})
    cleared: list[models.Identification] = []
    for ident in candidates:
        node = nodes.get(ident.taxon_id)
        if node is None:
            continue
        if previous_taxon_contains(node, ident.previous_observation_taxon_id):
            ident.disagreement = False
            ident.disagreement_type = None
            cleared.append(ident)
    if cleared:
        db.flush()
    return cleared
