from datetime import datetime, timezone

import pytest

from idconsensus import models
from idconsensus.errors import TaxonomyLookupError
from idconsensus.taxonomy import SqlTaxonomyOracle, graft_taxon, parse_ancestry
from .conftest import make_taxon


def test_nodes_carry_lineage_and_flags(db, tree):
    oracle = SqlTaxonomyOracle(db)
    nodes = oracle.prefetch([tree.life, tree.chordata, tree.aves, tree.unplaced, None])

    assert nodes[tree.aves].ancestor_ids == (tree.life, tree.animalia, tree.chordata)
    assert nodes[tree.chordata].has_children is True
    assert nodes[tree.aves].has_children is False
    assert nodes[tree.chordata].is_grafted is True
    assert nodes[tree.life].is_grafted is False
    assert nodes[tree.unplaced].is_grafted is False
    assert oracle.self_and_ancestor_ids(tree.aves) == {tree.life, tree.animalia, tree.chordata, tree.aves}


def test_unknown_taxon_raises(db, tree):
    oracle = SqlTaxonomyOracle(db)
    assert oracle.prefetch([12345]) == {}
    with pytest.raises(TaxonomyLookupError):
        oracle.node(12345)


def test_graft_rewrites_subtree_ancestry(db, tree):
    aves = db.get(models.Taxon, tree.aves)
    passer = make_taxon(db, "Passer", aves)
    arthropoda = db.get(models.Taxon, tree.arthropoda)

    moved = graft_taxon(db, aves, arthropoda)
    db.commit()

    assert {taxon.id for taxon in moved} == {tree.aves, passer.id}
    assert parse_ancestry(db.get(models.Taxon, tree.aves).ancestry) == (tree.life, tree.animalia, tree.arthropoda)
    assert parse_ancestry(db.get(models.Taxon, passer.id).ancestry) == (
        tree.life,
        tree.animalia,
        tree.arthropoda,
        tree.aves,
    )


def test_graft_under_own_descendant_is_rejected(db, tree):
    chordata = db.get(models.Taxon, tree.chordata)
    aves = db.get(models.Taxon, tree.aves)
    with pytest.raises(ValueError):
        graft_taxon(db, chordata, aves)


def test_synonym_follows_committed_merges(db, tree):
    chordata = db.get(models.Taxon, tree.chordata)
    old = make_taxon(db, "Old name", chordata, is_active=False)
    middle = make_taxon(db, "Middle name", chordata, is_active=False)
    accepted = make_taxon(db, "Accepted name", chordata)
    for source, target in ((old, middle), (middle, accepted)):
        change = models.TaxonChange(change_type=models.MERGE, committed_at=datetime.now(timezone.utc))
        change.taxon_links.append(models.TaxonChangeTaxon(taxon_id=source.id, role="input"))
        change.taxon_links.append(models.TaxonChangeTaxon(taxon_id=target.id, role="output"))
        db.add(change)
    db.commit()

    oracle = SqlTaxonomyOracle(db)
    assert oracle.current_synonymous_taxon_id(old.id) == accepted.id
    assert oracle.current_synonymous_taxon_id(accepted.id) is None


def test_uncommitted_change_is_not_a_synonym(db, tree):
    chordata = db.get(models.Taxon, tree.chordata)
    old = make_taxon(db, "Old name", chordata, is_active=False)
    accepted = make_taxon(db, "Accepted name", chordata)
    change = models.TaxonChange(change_type=models.SWAP)
    change.taxon_links.append(models.TaxonChangeTaxon(taxon_id=old.id, role="input"))
    change.taxon_links.append(models.TaxonChangeTaxon(taxon_id=accepted.id, role="output"))
    db.add(change)
    db.commit()

    assert SqlTaxonomyOracle(db).current_synonymous_taxon_id(old.id) is None
