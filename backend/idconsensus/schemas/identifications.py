"""Pydantic schemas for identification and taxon change surfaces."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator


class IdentificationCreate(BaseModel):
    observation_id: int
    user_id: UUID
    taxon_id: int
    body: Optional[str] = None
    # explicit "I disagree" request; a disagreement_type alone implies it
    disagreement: Optional[bool] = None
    disagreement_type: Optional[Literal["branch", "leaf"]] = None


class IdentificationOut(BaseModel):
    id: int
    observation_id: int
    user_id: UUID
    taxon_id: int
    body: Optional[str] = None
    current: bool
    previous_observation_taxon_id: Optional[int] = None
    disagreement: Optional[bool] = None
    disagreement_type: Optional[str] = None
    category: Optional[str] = None
    taxon_change_id: Optional[int] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ObservationEventOut(BaseModel):
    id: UUID
    observation_id: Optional[int] = None
    taxon_change_id: Optional[int] = None
    sequence: int
    event_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    actor_id: Optional[UUID] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class IdentificationMutationOut(BaseModel):
    identification: Optional[IdentificationOut] = None
    events: list[ObservationEventOut] = Field(default_factory=list)


class ObservationIdentificationsOut(BaseModel):
    observation_id: int
    taxon_id: Optional[int] = None
    community_taxon_id: Optional[int] = None
    identifications: list[IdentificationOut] = Field(default_factory=list)


class CategoryRecomputeOut(BaseModel):
    observation_id: int
    queued: bool = True


class TaxonChangeCreate(BaseModel):
    change_type: Literal["merge", "split", "swap"]
    input_taxon_ids: list[int] = Field(min_length=1)
    output_taxon_ids: list[int] = Field(min_length=1)
    description: Optional[str] = None

    @model_validator(mode="after")
    def _check_shape(self) -> "TaxonChangeCreate":
        if self.change_type in ("merge", "swap") and len(self.output_taxon_ids) != 1:
            raise ValueError(f"a {self.change_type} must have exactly one output taxon")
        if self.change_type == "swap" and len(self.input_taxon_ids) != 1:
            raise ValueError("a swap must have exactly one input taxon")
        if self.change_type == "split" and len(self.input_taxon_ids) != 1:
            raise ValueError("a split must have exactly one input taxon")
        if set(self.input_taxon_ids) & set(self.output_taxon_ids):
            raise ValueError("input and output taxa must differ")
        return self


class TaxonChangeCommit(BaseModel):
    user_id: Optional[UUID] = None


class TaxonChangeOut(BaseModel):
    id: int
    change_type: str
    description: Optional[str] = None
    input_taxon_ids: list[int] = Field(default_factory=list)
    output_taxon_ids: list[int] = Field(default_factory=list)
    committed_at: Optional[datetime] = None
    committed_by_id: Optional[UUID] = None

    model_config = ConfigDict(from_attributes=True)


class TaxonMove(BaseModel):
    parent_id: Optional[int] = None


class TaxonMoveOut(BaseModel):
    taxon_id: int
    ancestry: Optional[str] = None
    moved_taxon_ids: list[int] = Field(default_factory=list)
    cleared_identification_ids: list[int] = Field(default_factory=list)
