import pytest
from sqlalchemy.exc import IntegrityError

from idconsensus import models
from idconsensus.errors import TaxonomyLookupError
from idconsensus.locks import ObservationLocks
from idconsensus.services import currency
from idconsensus.services import identifications as identification_service
from idconsensus.taxonomy import TaxonomyOracle
from .conftest import TestingSessionLocal, add_identification


class OfflineOracle(TaxonomyOracle):
    def prefetch(self, taxon_ids):
        raise TaxonomyLookupError("taxonomy offline")

    def current_synonymous_taxon_id(self, taxon_id):
        raise TaxonomyLookupError("taxonomy offline")


def _current_ids(db, observation_id, user_id):
    return [
        ident.id
        for ident in db.query(models.Identification)
        .filter(
            models.Identification.observation_id == observation_id,
            models.Identification.user_id == user_id,
            models.Identification.current.is_(True),
        )
        .all()
    ]


def test_mark_current_supersedes_other_identifications(db, tree, people):
    observation = db.get(models.Observation, people.observation)
    user = db.get(models.User, people.observer)
    first = add_identification(db, observation, user, db.get(models.Taxon, tree.chordata))
    second = add_identification(db, observation, user, db.get(models.Taxon, tree.aves), current=False)

    assert currency.mark_current(db, observation.id, user.id, second.id) is True
    db.commit()

    assert _current_ids(db, observation.id, user.id) == [second.id]
    assert db.get(models.Identification, first.id).current is False


def test_second_current_identification_violates_index(db, tree, people):
    observation = db.get(models.Observation, people.observation)
    user = db.get(models.User, people.observer)
    add_identification(db, observation, user, db.get(models.Taxon, tree.chordata))
    with pytest.raises(IntegrityError):
        add_identification(db, observation, user, db.get(models.Taxon, tree.aves))
    db.rollback()


def test_lost_race_keeps_existing_current(db, tree, people, monkeypatch):
    observation = db.get(models.Observation, people.observation)
    user = db.get(models.User, people.observer)
    winner = add_identification(db, observation, user, db.get(models.Taxon, tree.chordata))
    loser = add_identification(db, observation, user, db.get(models.Taxon, tree.aves), current=False)
    # simulate another writer installing its row between the supersede and promote steps
    monkeypatch.setattr(currency, "_supersede_others", lambda *args: 0)

    assert currency.mark_current(db, observation.id, user.id, loser.id) is False
    db.commit()

    assert _current_ids(db, observation.id, user.id) == [winner.id]


def test_restore_currency_promotes_latest_remaining(db, tree, people):
    observation = db.get(models.Observation, people.observation)
    user = db.get(models.User, people.observer)
    older = add_identification(db, observation, user, db.get(models.Taxon, tree.chordata), current=False)
    newer = add_identification(db, observation, user, db.get(models.Taxon, tree.mammalia), current=False)
    db.commit()

    restored = currency.restore_currency(db, observation.id, user.id)
    db.commit()

    assert restored.id == newer.id
    assert _current_ids(db, observation.id, user.id) == [newer.id]
    assert older.current is False


def test_restore_currency_with_nothing_left(db, people):
    assert currency.restore_currency(db, people.observation, people.observer) is None


def test_observation_locks_release_entries():
    locks = ObservationLocks()
    with locks.hold(1):
        with locks.hold(1):
            assert len(locks) == 1
        with locks.hold(2):
            assert len(locks) == 2
    assert len(locks) == 0


def test_failed_restore_leaves_currency_untouched(db, tree, people):
    observation = db.get(models.Observation, people.observation)
    user = db.get(models.User, people.observer)
    older = add_identification(db, observation, user, db.get(models.Taxon, tree.chordata), current=False)
    newer = add_identification(db, observation, user, db.get(models.Taxon, tree.aves))
    older_id, newer_id = older.id, newer.id
    db.commit()

    with pytest.raises(TaxonomyLookupError):
        identification_service.restore_identification(db, older_id, oracle=OfflineOracle())
    db.rollback()

    with TestingSessionLocal() as session:
        assert session.get(models.Identification, older_id).current is False
        assert session.get(models.Identification, newer_id).current is True
