"""Community taxon bookkeeping for observations."""

from __future__ import annotations

import os
from typing import Mapping, Protocol, Sequence

from sqlalchemy.orm import Session

from .. import models
from ..errors import IdentificationNotFound
from ..taxonomy import TaxonNode, TaxonomyOracle

# purpose: hold the observation consensus consumed by the categorizer
# inputs: current identifications, prefetched taxon nodes, score cutoff
# outputs: community taxon id and the observation's best-guess taxon
# status: pilot

COMMUNITY_TAXON_CUTOFF = float(os.getenv("COMMUNITY_TAXON_CUTOFF", str(2 / 3)))
MIN_SUPPORTING_IDENTIFICATIONS = 2


class ConsensusIdentification(Protocol):
    id: int
    taxon_id: int
    disagreement: bool | None


class ObservationConsensusHolder(Protocol):
    def community_taxon(self, observation_id: int) -> int | None: ...

    def notify_identifications_changed(self, observation_id: int) -> tuple[int | None, int | None]: ...


def compute_community_taxon(
    identifications: Sequence[ConsensusIdentification],
    nodes: Mapping[int, TaxonNode],
    cutoff: float = COMMUNITY_TAXON_CUTOFF,
) -> int | None:
    """Return the deepest taxon a qualified majority of identifications supports.

    For each taxon on any identification's lineage, identifications at or below
    it count as support; identifications outside its lineage and explicit
    disagreements placed at one of its ancestors count against it.
    """

    working = [ident for ident in identifications if ident.taxon_id in nodes]
    if not working:
        return None
    lineages: dict[int, tuple[int, ...]] = {}
    for ident in working:
        node = nodes[ident.taxon_id]
        path = (*node.ancestor_ids, node.id)
        for depth, taxon_id in enumerate(path):
            lineages.setdefault(taxon_id, path[:depth])

    best: tuple[int, float, int] | None = None
    for candidate, ancestors in lineages.items():
        ancestor_set = set(ancestors)
        support = 0
        against = 0
        conservative = 0
        for ident in working:
            lineage = nodes[ident.taxon_id].self_and_ancestor_ids
            if candidate in lineage:
                support += 1
            elif ident.taxon_id in ancestor_set:
                if ident.disagreement:
                    conservative += 1
            else:
                against += 1
        if support < MIN_SUPPORTING_IDENTIFICATIONS:
            continue
        score = support / (support + against + conservative)
        if score <= cutoff:
            continue
        key = (len(ancestors), score, -candidate)
        if best is None or key > best:
            best = key
    return -best[2] if best else None


class SqlConsensusHolder:
    """Consensus holder reading and writing ``observations.community_taxon_id``."""

    def __init__(self, db: Session, oracle: TaxonomyOracle, cutoff: float = COMMUNITY_TAXON_CUTOFF) -> None:
        self.db = db
        self.oracle = oracle
        self.cutoff = cutoff

    def _observation(self, observation_id: int) -> models.Observation:
        observation = self.db.get(models.Observation, observation_id)
        if observation is None:
            raise IdentificationNotFound(f"observation {observation_id} not found")
        return observation

    def _current_identifications(self, observation_id: int):
        return (
            self.db.query(models.Identification)
            .filter(
                models.Identification.observation_id == observation_id,
                models.Identification.current.is_(True),
            )
            .order_by(models.Identification.id)
            .all()
        )

    def community_taxon(self, observation_id: int) -> int | None:
        return self._observation(observation_id).community_taxon_id

    def probable_taxon(self, observation_id: int) -> int | None:
        """Community taxon over the current identifications, without writing it."""

        identifications = self._current_identifications(observation_id)
        nodes = self.oracle.prefetch({ident.taxon_id for ident in identifications})
        return compute_community_taxon(identifications, nodes, self.cutoff)

    def notify_identifications_changed(self, observation_id: int) -> tuple[int | None, int | None]:
        """Recompute the community taxon and best guess; return (before, after)."""

        observation = self._observation(observation_id)
        before = observation.community_taxon_id
        identifications = self._current_identifications(observation_id)
        nodes = self.oracle.prefetch({ident.taxon_id for ident in identifications})
        after = compute_community_taxon(identifications, nodes, self.cutoff)
        observation.community_taxon_id = after

        observer_ident = next(
            (ident for ident in reversed(identifications) if ident.user_id == observation.user_id),
            None,
        )
        if observation.community_mode and after is not None:
            observation.taxon_id = after
        else:
            observation.taxon_id = observer_ident.taxon_id if observer_ident else None
        self.db.flush()
        return before, after
