"""Pydantic schemas consolidating the engine's API contracts."""

# purpose: aggregate request and response schemas for FastAPI surfaces and services
# status: pilot

from .identifications import (
    CategoryRecomputeOut,
    IdentificationCreate,
    IdentificationMutationOut,
    IdentificationOut,
    ObservationEventOut,
    ObservationIdentificationsOut,
    TaxonChangeCommit,
    TaxonChangeCreate,
    TaxonChangeOut,
    TaxonMove,
    TaxonMoveOut,
)

__all__ = [
    "CategoryRecomputeOut",
    "IdentificationCreate",
    "IdentificationMutationOut",
    "IdentificationOut",
    "ObservationEventOut",
    "ObservationIdentificationsOut",
    "TaxonChangeCommit",
    "TaxonChangeCreate",
    "TaxonChangeOut",
    "TaxonMove",
    "TaxonMoveOut",
]
