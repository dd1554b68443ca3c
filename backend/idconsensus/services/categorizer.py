"""Observation categorizer assigning improving/supporting/leading/maverick."""

from __future__ import annotations

from collections import defaultdict
from typing import Mapping, Protocol, Sequence

from sqlalchemy.orm import Session

from .. import models
from ..errors import IdentificationNotFound, TaxonomyLookupError
from ..metrics import CATEGORIZATION_PASSES
from ..taxonomy import TaxonNode, TaxonomyOracle
from .consensus import ObservationConsensusHolder

# purpose: derive identification categories from hierarchy, identification list and community taxon
# inputs: identification snapshots ordered by id, community TaxonNode, prefetched nodes
# outputs: mapping of identification id to exactly one category
# status: pilot


class CategorizableIdentification(Protocol):
    id: int
    taxon_id: int
    disagreement: bool | None
    disagreement_type: str | None


def categorize(
    identifications: Sequence[CategorizableIdentification],
    community_taxon: TaxonNode | None,
    nodes: Mapping[int, TaxonNode],
) -> dict[int, str]:
    """Assign every identification one category in a single pass by id."""

    categories: dict[int, str] = {}
    # lineages of identifications already placed in improving or supporting
    corroborating: list[frozenset[int]] = []
    for ident in sorted(identifications, key=lambda i: i.id):
        node = nodes.get(ident.taxon_id)
        if node is None:
            raise TaxonomyLookupError(
                f"taxon {ident.taxon_id} for identification {ident.id} missing from snapshot"
            )
        c = community_taxon
        ancestor_of_c = c is not None and ident.taxon_id in c.ancestor_ids
        descendant_of_c = c is not None and c.id in node.ancestor_ids
        matches_c = c is not None and ident.taxon_id == c.id
        progressive = not any(ident.taxon_id in lineage for lineage in corroborating)

        if c is None or descendant_of_c:
            category = models.LEADING
        elif (ancestor_of_c or matches_c) and progressive:
            if ident.disagreement and ident.disagreement_type != models.LEAF:
                category = models.MAVERICK
            else:
                category = models.IMPROVING
        elif not ancestor_of_c and not matches_c:
            category = models.MAVERICK
        else:
            category = models.SUPPORTING

        categories[ident.id] = category
        if category in (models.IMPROVING, models.SUPPORTING):
            corroborating.append(node.self_and_ancestor_ids)
    return categories


def update_categories_for_observation(
    db: Session,
    observation_id: int,
    oracle: TaxonomyOracle,
    consensus: ObservationConsensusHolder | None = None,
) -> dict[int, str]:
    """Recategorize every identification on an observation from a fresh read.

    Only identifications whose category changed are written. Returns the
    identification ids that changed, mapped to their new category.
    """

    observation = db.get(models.Observation, observation_id)
    if observation is None:
        raise IdentificationNotFound(f"observation {observation_id} not found")
    identifications = (
        db.query(models.Identification)
        .filter(models.Identification.observation_id == observation_id)
        .order_by(models.Identification.id)
        .all()
    )
    if not identifications:
        return {}
    community_taxon_id = (
        consensus.community_taxon(observation_id)
        if consensus is not None
        else observation.community_taxon_id
    )
    nodes = oracle.prefetch({ident.taxon_id for ident in identifications} | {community_taxon_id})
    community_taxon = None
    if community_taxon_id is not None:
        community_taxon = nodes.get(community_taxon_id)
        if community_taxon is None:
            raise TaxonomyLookupError(f"community taxon {community_taxon_id} not found")

    categories = categorize(identifications, community_taxon, nodes)
    CATEGORIZATION_PASSES.inc()

    changed: dict[int, str] = {}
    by_category: dict[str, list[int]] = defaultdict(list)
    for ident in identifications:
        category = categories.get(ident.id)
        if category is None or category == ident.category:
            continue
        by_category[category].append(ident.id)
        changed[ident.id] = category
    for category, ids in by_category.items():
        (
            db.query(models.Identification)
            .filter(models.Identification.id.in_(ids))
            .update({models.Identification.category: category}, synchronize_session="fetch")
        )
    return changed
