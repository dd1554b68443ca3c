"""Exception hierarchy shared by the identification services."""

# purpose: give routes, workers and services one vocabulary for engine failures
# status: pilot


class IdentificationError(RuntimeError):
    """Base error for identification consensus operations."""


class IdentificationValidationError(IdentificationError):
    """Raised before any write when an identification payload is unusable."""


class IdentificationNotFound(IdentificationError):
    """Raised when an identification or observation cannot be located."""


class TaxonomyLookupError(IdentificationError):
    """Raised when the taxonomy cannot answer a hierarchy query."""


class TaxonChangeError(IdentificationError):
    """Raised when a taxon change cannot be committed or propagated."""
