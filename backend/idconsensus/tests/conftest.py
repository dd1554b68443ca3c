import os
os.environ["TESTING"] = "1"
os.environ["DATABASE_URL"] = "sqlite:///./test_idconsensus.db"
os.environ["CELERY_BROKER_URL"] = "memory://"
import pytest
from fastapi.testclient import TestClient

import sys
from pathlib import Path
from types import SimpleNamespace

import uuid

sys.path.append(str(Path(__file__).resolve().parents[2]))

from idconsensus import models, pubsub
from idconsensus.main import app
from idconsensus.database import Base, engine, get_db, SessionLocal as TestingSessionLocal
from idconsensus.taxonomy import format_ancestry, parse_ancestry


def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()

app.dependency_overrides[get_db] = override_get_db


@pytest.fixture(autouse=True)
def reset_database():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    pubsub._redis = None
    yield


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


@pytest.fixture
def db(reset_database):
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


def make_user(db, login: str | None = None, *, prefers_community_taxa: bool = True) -> models.User:
    user = models.User(
        login=login or f"user-{uuid.uuid4().hex[:8]}",
        prefers_community_taxa=prefers_community_taxa,
    )
    db.add(user)
    db.flush()
    return user


def make_taxon(db, name: str, parent: models.Taxon | None = None, **kwargs) -> models.Taxon:
    ancestry = None
    if parent is not None:
        ancestry = format_ancestry((*parse_ancestry(parent.ancestry), parent.id))
    taxon = models.Taxon(
        name=name,
        parent_id=parent.id if parent is not None else None,
        ancestry=ancestry,
        **kwargs,
    )
    db.add(taxon)
    db.flush()
    return taxon


def make_observation(db, user: models.User, **kwargs) -> models.Observation:
    observation = models.Observation(user_id=user.id, **kwargs)
    db.add(observation)
    db.flush()
    return observation


def add_identification(db, observation, user, taxon, **kwargs) -> models.Identification:
    """Insert an identification row directly, bypassing the lifecycle services."""

    identification = models.Identification(
        observation_id=observation.id,
        user_id=user.id,
        taxon_id=taxon.id,
        **kwargs,
    )
    db.add(identification)
    db.flush()
    return identification


@pytest.fixture
def tree(db):
    """Life > Animalia > {Chordata > {Aves, Mammalia}, Arthropoda}, plus an unplaced taxon."""

    life = make_taxon(db, "Life", rank="stateofmatter", is_root=True)
    animalia = make_taxon(db, "Animalia", life, rank="kingdom")
    chordata = make_taxon(db, "Chordata", animalia, rank="phylum")
    aves = make_taxon(db, "Aves", chordata, rank="class")
    mammalia = make_taxon(db, "Mammalia", chordata, rank="class")
    arthropoda = make_taxon(db, "Arthropoda", animalia, rank="phylum")
    unplaced = make_taxon(db, "Incertae sedis")
    ids = SimpleNamespace(
        life=life.id,
        animalia=animalia.id,
        chordata=chordata.id,
        aves=aves.id,
        mammalia=mammalia.id,
        arthropoda=arthropoda.id,
        unplaced=unplaced.id,
    )
    db.commit()
    return ids


@pytest.fixture
def people(db):
    observer = make_user(db, "observer")
    others = [make_user(db, f"identifier-{i}") for i in range(1, 4)]
    observation = make_observation(db, observer)
    ids = SimpleNamespace(
        observer=observer.id,
        identifiers=[user.id for user in others],
        observation=observation.id,
    )
    db.commit()
    return ids
