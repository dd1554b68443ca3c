from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from idconsensus import models
from idconsensus.services.disagreement import (
    AGREEMENT,
    UNSET,
    classify_disagreement,
    replace_inactive_taxon,
    resolve_previous_observation_taxon,
)
from idconsensus.taxonomy import StaticTaxonomyOracle, TaxonNode

# Life(1) > Animalia(2) > Chordata(3) > Aves(4); Animalia > Arthropoda(5)
LIFE = TaxonNode(1, (), is_grafted=False, has_children=True)
ANIMALIA = TaxonNode(2, (1,), is_grafted=True, has_children=True)
CHORDATA = TaxonNode(3, (1, 2), is_grafted=True, has_children=True)
AVES = TaxonNode(4, (1, 2, 3), is_grafted=True)
ARTHROPODA = TaxonNode(5, (1, 2), is_grafted=True)
ORPHAN_LEAF = TaxonNode(6)
ORPHAN_BRANCH = TaxonNode(7, has_children=True)


def test_no_previous_taxon_leaves_disagreement_unset():
    assert classify_disagreement(CHORDATA, None) == UNSET
    assert classify_disagreement(CHORDATA, None).disagreement is None


def test_ungrafted_previous_taxon_leaves_disagreement_unset():
    assert classify_disagreement(CHORDATA, ORPHAN_BRANCH) == UNSET
    assert classify_disagreement(AVES, LIFE) == UNSET


def test_orphaned_leaf_cannot_disagree():
    assert classify_disagreement(ORPHAN_LEAF, CHORDATA) == UNSET


def test_orphaned_branch_disagrees_implicitly():
    verdict = classify_disagreement(ORPHAN_BRANCH, CHORDATA)
    assert verdict.disagreement is True
    assert verdict.disagreement_type == models.IMPLICIT


def test_explicit_ancestor_defaults_to_branch():
    verdict = classify_disagreement(ANIMALIA, ARTHROPODA, explicit=True)
    assert verdict.disagreement is True
    assert verdict.disagreement_type == models.BRANCH


def test_explicit_ancestor_can_request_leaf():
    verdict = classify_disagreement(ANIMALIA, AVES, explicit=True, requested_type=models.LEAF)
    assert verdict.disagreement is True
    assert verdict.disagreement_type == models.LEAF


def test_explicit_flag_on_same_taxon_is_agreement():
    assert classify_disagreement(CHORDATA, CHORDATA, explicit=True) == AGREEMENT


def test_unrelated_taxon_is_implicit_disagreement():
    verdict = classify_disagreement(ARTHROPODA, AVES)
    assert verdict.disagreement is True
    assert verdict.disagreement_type == models.IMPLICIT


@pytest.mark.parametrize("new_taxon", [ANIMALIA, CHORDATA, AVES])
def test_same_lineage_is_agreement(new_taxon):
    verdict = classify_disagreement(new_taxon, CHORDATA)
    assert verdict.disagreement is False
    assert verdict.disagreement_type is None


def test_unknown_requested_type_is_rejected():
    with pytest.raises(ValueError):
        classify_disagreement(ANIMALIA, AVES, explicit=True, requested_type="implicit")


def _observation(user_id, taxon_id=None, community_mode=True):
    return SimpleNamespace(user_id=user_id, taxon_id=taxon_id, community_mode=community_mode)


def _ident(ident_id, taxon_id, current=True, minutes=0):
    created = datetime(2024, 1, 1, tzinfo=timezone.utc) + timedelta(minutes=minutes)
    return SimpleNamespace(id=ident_id, taxon_id=taxon_id, current=current, created_at=created)


def test_observer_replaces_observation_taxon():
    observation = _observation("observer", taxon_id=5)
    assert resolve_previous_observation_taxon(observation, "observer", [], probable_taxon_id=3) == 5


def test_other_user_in_community_mode_replaces_probable_taxon():
    observation = _observation("observer", taxon_id=5)
    assert resolve_previous_observation_taxon(observation, "someone", [], probable_taxon_id=3) == 3


def test_other_user_without_community_mode_replaces_observation_taxon():
    observation = _observation("observer", taxon_id=5, community_mode=False)
    assert resolve_previous_observation_taxon(observation, "someone", [], probable_taxon_id=3) == 5


def test_falls_back_to_latest_current_prior_identification():
    observation = _observation("observer")
    prior = [_ident(1, 3, minutes=0), _ident(2, 4, minutes=5), _ident(3, 5, current=False, minutes=10)]
    assert resolve_previous_observation_taxon(observation, "someone", prior, None) == 4


def test_falls_back_to_latest_prior_when_none_current():
    observation = _observation("observer")
    prior = [_ident(1, 3, current=False, minutes=0), _ident(2, 4, current=False, minutes=5)]
    assert resolve_previous_observation_taxon(observation, "someone", prior, None) == 4


def test_nothing_to_replace():
    assert resolve_previous_observation_taxon(_observation("observer"), "someone", [], None) is None


def test_inactive_taxon_is_replaced_by_synonym():
    inactive = TaxonNode(8, (1, 2), is_grafted=True, is_active=False)
    oracle = StaticTaxonomyOracle([CHORDATA, inactive], synonyms={8: 3})
    assert replace_inactive_taxon(8, oracle) == 3
    assert replace_inactive_taxon(3, oracle) == 3


def test_inactive_taxon_without_synonym_is_kept():
    inactive = TaxonNode(8, (1, 2), is_grafted=True, is_active=False)
    oracle = StaticTaxonomyOracle([inactive])
    assert replace_inactive_taxon(8, oracle) == 8
