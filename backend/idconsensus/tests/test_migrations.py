import importlib.util
from pathlib import Path

import sqlalchemy as sa
from alembic.migration import MigrationContext
from alembic.operations import Operations

VERSIONS = Path(__file__).resolve().parents[2] / "alembic" / "versions"


def _load(name: str):
    module_spec = importlib.util.spec_from_file_location(name, VERSIONS / f"{name}.py")
    module = importlib.util.module_from_spec(module_spec)
    module_spec.loader.exec_module(module)
    return module


def test_initial_migration_creates_partial_unique_index(tmp_path):
    migration = _load("20261019_01_identification_consensus")
    engine = sa.create_engine(f"sqlite:///{tmp_path / 'migrated.db'}")
    with engine.begin() as conn:
        with Operations.context(MigrationContext.configure(conn)):
            migration.upgrade()
        inspector = sa.inspect(conn)
        assert {
            "users",
            "taxa",
            "observations",
            "identifications",
            "taxon_changes",
            "taxon_change_taxa",
            "observation_events",
        } <= set(inspector.get_table_names())
        indexes = {index["name"]: index for index in inspector.get_indexes("identifications")}
        current = indexes["index_identifications_on_current"]
        assert current["unique"]
        assert current["column_names"] == ["observation_id", "user_id"]

        with Operations.context(MigrationContext.configure(conn)):
            migration.downgrade()
        assert "identifications" not in sa.inspect(conn).get_table_names()
