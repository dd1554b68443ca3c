"""Taxonomy oracle answering ancestor and descendant membership queries."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Mapping

import sqlalchemy as sa
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import models
from .errors import TaxonomyLookupError

# purpose: treat the taxon hierarchy as an opaque oracle backed by a materialized path
# inputs: taxon ids, SQLAlchemy session or an in-memory snapshot
# outputs: TaxonNode snapshots carrying ancestor ids, graft and child flags
# status: pilot


@dataclass(frozen=True)
class TaxonNode:
    """Immutable view of one taxon inside a hierarchy snapshot."""

    id: int
    ancestor_ids: tuple[int, ...] = ()
    is_grafted: bool = False
    has_children: bool = False
    is_active: bool = True

    @property
    def self_and_ancestor_ids(self) -> frozenset[int]:
        return frozenset((*self.ancestor_ids, self.id))


def parse_ancestry(ancestry: str | None) -> tuple[int, ...]:
    if not ancestry:
        return ()
    return tuple(int(part) for part in ancestry.split("/") if part)


def format_ancestry(ancestor_ids: Iterable[int]) -> str | None:
    path = "/".join(str(taxon_id) for taxon_id in ancestor_ids)
    return path or None


def descendant_conditions(taxon_id: int):
    """SQL criteria matching taxa whose ancestry contains ``taxon_id``."""

    token = str(taxon_id)
    return sa.or_(
        models.Taxon.ancestry == token,
        models.Taxon.ancestry.like(f"{token}/%"),
        models.Taxon.ancestry.like(f"%/{token}"),
        models.Taxon.ancestry.like(f"%/{token}/%"),
    )


class TaxonomyOracle:
    """Read-only hierarchy queries used by the classifier and categorizer."""

    def prefetch(self, taxon_ids: Iterable[int | None]) -> dict[int, TaxonNode]:
        raise NotImplementedError

    def current_synonymous_taxon_id(self, taxon_id: int) -> int | None:
        raise NotImplementedError

    def node(self, taxon_id: int) -> TaxonNode:
        nodes = self.prefetch([taxon_id])
        try:
            return nodes[taxon_id]
        except KeyError:
            raise TaxonomyLookupError(f"taxon {taxon_id} not found") from None

    def ancestor_ids(self, taxon_id: int) -> tuple[int, ...]:
        return self.node(taxon_id).ancestor_ids

    def self_and_ancestor_ids(self, taxon_id: int) -> frozenset[int]:
        return self.node(taxon_id).self_and_ancestor_ids

    def is_grafted(self, taxon_id: int) -> bool:
        return self.node(taxon_id).is_grafted

    def has_children(self, taxon_id: int) -> bool:
        return self.node(taxon_id).has_children


class StaticTaxonomyOracle(TaxonomyOracle):
    """Oracle over a fixed in-memory snapshot."""

    def __init__(
        self,
        nodes: Iterable[TaxonNode],
        synonyms: Mapping[int, int] | None = None,
    ) -> None:
        self._nodes = {node.id: node for node in nodes}
        self._synonyms = dict(synonyms or {})

    def prefetch(self, taxon_ids: Iterable[int | None]) -> dict[int, TaxonNode]:
        return {
            taxon_id: self._nodes[taxon_id]
            for taxon_id in taxon_ids
            if taxon_id is not None and taxon_id in self._nodes
        }

    def current_synonymous_taxon_id(self, taxon_id: int) -> int | None:
        return self._synonyms.get(taxon_id)


class SqlTaxonomyOracle(TaxonomyOracle):
    """Oracle answering from the ``taxa`` table, caching nodes per instance."""

    def __init__(self, db: Session) -> None:
        self.db = db
        self._cache: dict[int, TaxonNode] = {}
        self._root_ids: frozenset[int] | None = None

    def prefetch(self, taxon_ids: Iterable[int | None]) -> dict[int, TaxonNode]:
        wanted = {taxon_id for taxon_id in taxon_ids if taxon_id is not None}
        missing = wanted - self._cache.keys()
        if missing:
            self._load(missing)
        return {taxon_id: self._cache[taxon_id] for taxon_id in wanted if taxon_id in self._cache}

    def _load(self, taxon_ids: set[int]) -> None:
        try:
            rows = (
                self.db.query(
                    models.Taxon.id,
                    models.Taxon.ancestry,
                    models.Taxon.is_active,
                )
                .filter(models.Taxon.id.in_(taxon_ids))
                .all()
            )
            parents = {
                parent_id
                for (parent_id,) in self.db.query(models.Taxon.parent_id)
                .filter(models.Taxon.parent_id.in_(taxon_ids))
                .distinct()
                .all()
            }
            root_ids = self._roots()
        except SQLAlchemyError as exc:
            raise TaxonomyLookupError(f"taxonomy lookup failed: {exc}") from exc
        for taxon_id, ancestry, is_active in rows:
            ancestor_ids = parse_ancestry(ancestry)
            self._cache[taxon_id] = TaxonNode(
                id=taxon_id,
                ancestor_ids=ancestor_ids,
                is_grafted=bool(ancestor_ids) and ancestor_ids[0] in root_ids,
                has_children=taxon_id in parents,
                is_active=bool(is_active),
            )

    def _roots(self) -> frozenset[int]:
        if self._root_ids is None:
            self._root_ids = frozenset(
                taxon_id
                for (taxon_id,) in self.db.query(models.Taxon.id)
                .filter(models.Taxon.is_root.is_(True))
                .all()
            )
        return self._root_ids

    def current_synonymous_taxon_id(self, taxon_id: int) -> int | None:
        """Follow committed merges and swaps from an inactive taxon to its replacement."""

        node = self.prefetch([taxon_id]).get(taxon_id)
        if node is None or node.is_active:
            return None
        candidate = taxon_id
        seen: set[int] = set()
        while candidate not in seen:
            seen.add(candidate)
            try:
                change = (
                    self.db.query(models.TaxonChange)
                    .join(models.TaxonChangeTaxon)
                    .filter(
                        models.TaxonChangeTaxon.taxon_id == candidate,
                        models.TaxonChangeTaxon.role == "input",
                        models.TaxonChange.committed_at.isnot(None),
                        models.TaxonChange.change_type.in_([models.MERGE, models.SWAP]),
                    )
                    .order_by(models.TaxonChange.committed_at.desc(), models.TaxonChange.id.desc())
                    .first()
                )
            except SQLAlchemyError as exc:
                raise TaxonomyLookupError(f"taxon change lookup failed: {exc}") from exc
            if change is None:
                return None
            outputs = change.output_taxon_ids
            if len(outputs) != 1:
                return None
            candidate = outputs[0]
            output_node = self.prefetch([candidate]).get(candidate)
            if output_node is not None and output_node.is_active:
                return candidate
        return None


def graft_taxon(db: Session, taxon: models.Taxon, parent: models.Taxon | None) -> list[models.Taxon]:
    """Attach ``taxon`` under ``parent`` and rewrite the ancestry of its subtree."""

    if parent is not None:
        if parent.id == taxon.id or taxon.id in parse_ancestry(parent.ancestry):
            raise ValueError("a taxon cannot be moved beneath itself")
    old_path = format_ancestry((*parse_ancestry(taxon.ancestry), taxon.id))
    taxon.parent_id = parent.id if parent is not None else None
    taxon.ancestry = (
        format_ancestry((*parse_ancestry(parent.ancestry), parent.id)) if parent is not None else None
    )
    new_path = format_ancestry((*parse_ancestry(taxon.ancestry), taxon.id))
    descendants = (
        db.query(models.Taxon)
        .filter(
            sa.or_(
                models.Taxon.ancestry == old_path,
                models.Taxon.ancestry.like(f"{old_path}/%"),
            )
        )
        .all()
    )
    for descendant in descendants:
        descendant.ancestry = new_path + descendant.ancestry[len(old_path):]
    db.flush()
    return [taxon, *descendants]
