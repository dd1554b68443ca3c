from types import SimpleNamespace

import pytest

from idconsensus import models
from idconsensus.errors import TaxonomyLookupError
from idconsensus.services.categorizer import categorize, update_categories_for_observation
from idconsensus.taxonomy import SqlTaxonomyOracle, TaxonNode
from .conftest import add_identification, make_observation, make_user

# Life(1) > Animalia(2) > Chordata(3) > {Aves(4), Mammalia(6)}; Animalia > Arthropoda(5)
NODES = {
    1: TaxonNode(1, (), has_children=True),
    2: TaxonNode(2, (1,), is_grafted=True, has_children=True),
    3: TaxonNode(3, (1, 2), is_grafted=True, has_children=True),
    4: TaxonNode(4, (1, 2, 3), is_grafted=True),
    5: TaxonNode(5, (1, 2), is_grafted=True),
    6: TaxonNode(6, (1, 2, 3), is_grafted=True),
}


def _ident(ident_id, taxon_id, disagreement=None, disagreement_type=None):
    return SimpleNamespace(
        id=ident_id,
        taxon_id=taxon_id,
        disagreement=disagreement,
        disagreement_type=disagreement_type,
    )


def test_everything_leads_without_community_taxon():
    idents = [_ident(1, 3), _ident(2, 5)]
    assert categorize(idents, None, NODES) == {1: models.LEADING, 2: models.LEADING}


def test_first_match_improves_and_later_matches_support():
    idents = [_ident(1, 3), _ident(2, 3)]
    assert categorize(idents, NODES[3], NODES) == {1: models.IMPROVING, 2: models.SUPPORTING}


def test_descendant_of_community_taxon_leads():
    idents = [_ident(1, 3), _ident(2, 4)]
    assert categorize(idents, NODES[3], NODES) == {1: models.IMPROVING, 2: models.LEADING}


def test_outside_lineage_is_maverick():
    idents = [_ident(1, 3), _ident(2, 3), _ident(3, 3), _ident(4, 5, disagreement=True)]
    categories = categorize(idents, NODES[3], NODES)
    assert categories[4] == models.MAVERICK
    assert [categories[i] for i in (1, 2, 3)] == [models.IMPROVING, models.SUPPORTING, models.SUPPORTING]


def test_ancestor_after_corroboration_supports():
    idents = [_ident(1, 3), _ident(2, 2)]
    assert categorize(idents, NODES[3], NODES) == {1: models.IMPROVING, 2: models.SUPPORTING}


def test_ancestor_first_is_improving_then_deeper_match_still_improves():
    idents = [_ident(1, 2), _ident(2, 3)]
    assert categorize(idents, NODES[3], NODES) == {1: models.IMPROVING, 2: models.IMPROVING}


def test_progressive_branch_disagreement_is_maverick():
    idents = [_ident(1, 2, disagreement=True, disagreement_type=models.BRANCH), _ident(2, 3), _ident(3, 3)]
    categories = categorize(idents, NODES[3], NODES)
    assert categories[1] == models.MAVERICK


def test_progressive_leaf_disagreement_still_improves():
    idents = [_ident(1, 2, disagreement=True, disagreement_type=models.LEAF), _ident(2, 3), _ident(3, 3)]
    categories = categorize(idents, NODES[3], NODES)
    assert categories[1] == models.IMPROVING


def test_categories_are_assigned_in_id_order():
    idents = [_ident(2, 3), _ident(1, 3)]
    assert categorize(idents, NODES[3], NODES) == {1: models.IMPROVING, 2: models.SUPPORTING}


def test_every_identification_gets_exactly_one_category():
    idents = [_ident(i, taxon_id) for i, taxon_id in enumerate([3, 4, 5, 2, 6, 3, 1], start=1)]
    categories = categorize(idents, NODES[3], NODES)
    assert set(categories) == {ident.id for ident in idents}
    assert set(categories.values()) <= set(models.CATEGORIES)


def test_missing_node_raises():
    with pytest.raises(TaxonomyLookupError):
        categorize([_ident(1, 99)], NODES[3], NODES)


def test_categorize_is_deterministic():
    idents = [
        _ident(1, 3),
        _ident(2, 2, disagreement=True, disagreement_type=models.BRANCH),
        _ident(3, 4),
        _ident(4, 5, disagreement=True, disagreement_type=models.IMPLICIT),
        _ident(5, 3),
    ]
    first = categorize(idents, NODES[3], NODES)
    assert categorize(idents, NODES[3], NODES) == first
    assert categorize(list(reversed(idents)), NODES[3], NODES) == first


def test_recategorizing_unchanged_observation_writes_nothing(db, tree):
    observer = make_user(db)
    observation = make_observation(db, observer, community_taxon_id=tree.chordata)
    taxa = {taxon.id: taxon for taxon in db.query(models.Taxon).all()}
    for taxon_id in (tree.chordata, tree.aves, tree.chordata, tree.arthropoda):
        add_identification(db, observation, make_user(db), taxa[taxon_id])
    oracle = SqlTaxonomyOracle(db)

    changed = update_categories_for_observation(db, observation.id, oracle)
    assert len(changed) == 4
    assert update_categories_for_observation(db, observation.id, oracle) == {}
    stored = {
        ident.id: ident.category
        for ident in db.query(models.Identification).filter(
            models.Identification.observation_id == observation.id
        )
    }
    assert stored == changed
    db.rollback()
