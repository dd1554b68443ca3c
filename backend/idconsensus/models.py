import uuid
from datetime import datetime, timezone

import sqlalchemy as sa
from sqlalchemy import (
    Column,
    String,
    Boolean,
    DateTime,
    ForeignKey,
    JSON,
    Integer,
    Text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from .database import Base

IMPROVING = "improving"
SUPPORTING = "supporting"
LEADING = "leading"
MAVERICK = "maverick"

CATEGORIES = (IMPROVING, SUPPORTING, LEADING, MAVERICK)

LEAF = "leaf"
BRANCH = "branch"
IMPLICIT = "implicit"

DISAGREEMENT_TYPES = (BRANCH, LEAF, IMPLICIT)

MERGE = "merge"
SPLIT = "split"
SWAP = "swap"

TAXON_CHANGE_TYPES = (MERGE, SPLIT, SWAP)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    __tablename__ = "users"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    login = Column(String, unique=True, nullable=False)
    prefers_community_taxa = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=_utcnow)


class Taxon(Base):
    __tablename__ = "taxa"
    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    rank = Column(String)
    parent_id = Column(Integer, ForeignKey("taxa.id"))
    # purpose: materialized path of ancestor ids, root first ("1/4/9")
    ancestry = Column(String, index=True)
    is_active = Column(Boolean, default=True, nullable=False)
    is_root = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=_utcnow)

    parent = relationship("Taxon", remote_side=[id])


class Observation(Base):
    __tablename__ = "observations"
    id = Column(Integer, primary_key=True)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)
    taxon_id = Column(Integer, ForeignKey("taxa.id"))
    community_taxon_id = Column(Integer, ForeignKey("taxa.id"))
    # None defers to the observer's prefers_community_taxa setting
    prefers_community_taxon = Column(Boolean, nullable=True)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    user = relationship("User")
    taxon = relationship("Taxon", foreign_keys=[taxon_id])
    community_taxon = relationship("Taxon", foreign_keys=[community_taxon_id])
    identifications = relationship(
        "Identification",
        back_populates="observation",
        cascade="all, delete-orphan",
        order_by="Identification.id",
    )

    @property
    def community_mode(self) -> bool:
        """Whether the observation's best guess follows the community taxon."""

        if self.prefers_community_taxon is False:
            return False
        return bool(self.user.prefers_community_taxa) if self.user else True


class Identification(Base):
    __tablename__ = "identifications"
    id = Column(Integer, primary_key=True)
    observation_id = Column(Integer, ForeignKey("observations.id"), nullable=False, index=True)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    taxon_id = Column(Integer, ForeignKey("taxa.id"), nullable=False)
    body = Column(Text)
    current = Column(Boolean, default=True, nullable=False)
    previous_observation_taxon_id = Column(Integer, ForeignKey("taxa.id"))
    disagreement = Column(Boolean, nullable=True)
    disagreement_type = Column(String, nullable=True)
    category = Column(String, nullable=True)
    taxon_change_id = Column(Integer, ForeignKey("taxon_changes.id"))
    created_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    observation = relationship("Observation", back_populates="identifications")
    user = relationship("User")
    taxon = relationship("Taxon", foreign_keys=[taxon_id])
    previous_observation_taxon = relationship(
        "Taxon", foreign_keys=[previous_observation_taxon_id]
    )
    taxon_change = relationship("TaxonChange")

    __table_args__ = (
        sa.Index(
            "index_identifications_on_current",
            "observation_id",
            "user_id",
            unique=True,
            sqlite_where=sa.text("current = 1"),
            postgresql_where=sa.text("current"),
        ),
        {"sqlite_autoincrement": True},
    )

    def __repr__(self) -> str:
        return (
            f"<Identification {self.id} observation_id: {self.observation_id} "
            f"taxon_id: {self.taxon_id} user_id: {self.user_id} current: {self.current}>"
        )


class TaxonChange(Base):
    __tablename__ = "taxon_changes"
    id = Column(Integer, primary_key=True)
    change_type = Column(String, nullable=False)
    description = Column(Text)
    committed_at = Column(DateTime)
    committed_by_id = Column(UUID(as_uuid=True), ForeignKey("users.id"))
    created_at = Column(DateTime, default=_utcnow)

    taxon_links = relationship(
        "TaxonChangeTaxon",
        back_populates="taxon_change",
        cascade="all, delete-orphan",
    )

    @property
    def input_taxon_ids(self) -> list[int]:
        return sorted(link.taxon_id for link in self.taxon_links if link.role == "input")

    @property
    def output_taxon_ids(self) -> list[int]:
        return sorted(link.taxon_id for link in self.taxon_links if link.role == "output")


class TaxonChangeTaxon(Base):
    __tablename__ = "taxon_change_taxa"
    taxon_change_id = Column(Integer, ForeignKey("taxon_changes.id"), primary_key=True)
    taxon_id = Column(Integer, ForeignKey("taxa.id"), primary_key=True)
    role = Column(String, primary_key=True)

    taxon_change = relationship("TaxonChange", back_populates="taxon_links")
    taxon = relationship("Taxon")


class ObservationEvent(Base):
    __tablename__ = "observation_events"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    observation_id = Column(Integer, ForeignKey("observations.id"), index=True)
    taxon_change_id = Column(Integer, ForeignKey("taxon_changes.id"), index=True)
    sequence = Column(Integer, nullable=False)
    event_type = Column(String, nullable=False)
    payload = Column(JSON, default=dict)
    actor_id = Column(UUID(as_uuid=True), ForeignKey("users.id"))
    created_at = Column(DateTime, default=_utcnow)
