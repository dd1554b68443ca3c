from prometheus_client import Counter

IDENTIFICATIONS_CREATED = Counter(
    "identifications_created_total",
    "Identifications created",
    ["source"],
)
CATEGORIZATION_PASSES = Counter(
    "identification_categorization_passes_total",
    "Observation categorization passes",
)
CURRENCY_RACES = Counter(
    "identification_currency_races_total",
    "Currency updates abandoned because another writer won",
)
TAXON_CHANGE_RECORDS_SKIPPED = Counter(
    "taxon_change_records_skipped_total",
    "Identifications skipped during taxon change propagation",
    ["change_type"],
)
