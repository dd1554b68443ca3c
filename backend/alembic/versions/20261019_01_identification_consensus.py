"""Create identification consensus tables."""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "20261019_01"
down_revision: str | Sequence[str] | None = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create users, taxa, observations, identifications, taxon changes and events."""

    op.create_table(
        "users",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("login", sa.String(), nullable=False, unique=True),
        sa.Column("prefers_community_taxa", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.func.now()),
    )
    op.create_table(
        "taxa",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("rank", sa.String(), nullable=True),
        sa.Column("parent_id", sa.Integer(), sa.ForeignKey("taxa.id"), nullable=True),
        sa.Column("ancestry", sa.String(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_root", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.func.now()),
    )
    op.create_index("ix_taxa_ancestry", "taxa", ["ancestry"])
    op.create_table(
        "observations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("taxon_id", sa.Integer(), sa.ForeignKey("taxa.id"), nullable=True),
        sa.Column("community_taxon_id", sa.Integer(), sa.ForeignKey("taxa.id"), nullable=True),
        sa.Column("prefers_community_taxon", sa.Boolean(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=True, server_default=sa.func.now()),
    )
    op.create_table(
        "taxon_changes",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("change_type", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("committed_at", sa.DateTime(), nullable=True),
        sa.Column("committed_by_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.func.now()),
    )
    op.create_table(
        "taxon_change_taxa",
        sa.Column("taxon_change_id", sa.Integer(), sa.ForeignKey("taxon_changes.id"), primary_key=True),
        sa.Column("taxon_id", sa.Integer(), sa.ForeignKey("taxa.id"), primary_key=True),
        sa.Column("role", sa.String(), primary_key=True),
    )
    op.create_table(
        "identifications",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("observation_id", sa.Integer(), sa.ForeignKey("observations.id"), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("taxon_id", sa.Integer(), sa.ForeignKey("taxa.id"), nullable=False),
        sa.Column("body", sa.Text(), nullable=True),
        sa.Column("current", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("previous_observation_taxon_id", sa.Integer(), sa.ForeignKey("taxa.id"), nullable=True),
        sa.Column("disagreement", sa.Boolean(), nullable=True),
        sa.Column("disagreement_type", sa.String(), nullable=True),
        sa.Column("category", sa.String(), nullable=True),
        sa.Column("taxon_change_id", sa.Integer(), sa.ForeignKey("taxon_changes.id"), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=True, server_default=sa.func.now()),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_identifications_observation_id", "identifications", ["observation_id"])
    op.create_index("ix_identifications_user_id", "identifications", ["user_id"])
    op.create_index(
        "index_identifications_on_current",
        "identifications",
        ["observation_id", "user_id"],
        unique=True,
        sqlite_where=sa.text("current = 1"),
        postgresql_where=sa.text("current"),
    )
    op.create_table(
        "observation_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("observation_id", sa.Integer(), sa.ForeignKey("observations.id"), nullable=True),
        sa.Column("taxon_change_id", sa.Integer(), sa.ForeignKey("taxon_changes.id"), nullable=True),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("actor_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.func.now()),
    )
    op.create_index("ix_observation_events_observation_id", "observation_events", ["observation_id"])
    op.create_index("ix_observation_events_taxon_change_id", "observation_events", ["taxon_change_id"])


def downgrade() -> None:
    """Drop identification consensus tables."""

    op.drop_index("ix_observation_events_taxon_change_id", table_name="observation_events")
    op.drop_index("ix_observation_events_observation_id", table_name="observation_events")
    op.drop_table("observation_events")
    op.drop_index("index_identifications_on_current", table_name="identifications")
    op.drop_index("ix_identifications_user_id", table_name="identifications")
    op.drop_index("ix_identifications_observation_id", table_name="identifications")
    op.drop_table("identifications")
    op.drop_table("taxon_change_taxa")
    op.drop_table("taxon_changes")
    op.drop_table("observations")
    op.drop_index("ix_taxa_ancestry", table_name="taxa")
    op.drop_table("taxa")
    op.drop_table("users")
