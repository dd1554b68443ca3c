"""Celery worker replaying identifications for committed taxon changes."""

from __future__ import annotations

from celery.utils.log import get_task_logger

from ..database import SessionLocal
from ..errors import TaxonChangeError, TaxonomyLookupError
from ..services import taxon_changes
from ..tasks import MAX_RETRIES, RETRY_BACKOFF_SECONDS, celery_app

# purpose: run taxon change propagation outside the commit request
# inputs: committed taxon change id
# outputs: replacement identifications, recomputed categories, taxon_change.propagated event
# status: pilot

_logger = get_task_logger(__name__)


def enqueue_taxon_change_propagation(taxon_change_id: int) -> None:
    """Dispatch a committed taxon change for asynchronous propagation."""

    if celery_app.conf.task_always_eager:
        propagate_taxon_change_job(taxon_change_id)
    else:
        propagate_taxon_change_job.delay(taxon_change_id)


@celery_app.task(bind=True, name="idconsensus.workers.taxon_changes.propagate_taxon_change_job")
def propagate_taxon_change_job(self, taxon_change_id: int) -> dict[str, object]:
    """Propagate one taxon change; safe to re-run after partial failures."""

    db = SessionLocal()
    try:
        try:
            report = taxon_changes.propagate_taxon_change(db, int(taxon_change_id))
        except TaxonChangeError as exc:
            db.rollback()
            _logger.warning("Taxon change %s not propagated: %s", taxon_change_id, exc)
            return {"status": "rejected", "error": str(exc)}
        except TaxonomyLookupError as exc:
            db.rollback()
            _logger.warning("Taxonomy unavailable for taxon change %s: %s", taxon_change_id, exc)
            if self.request.retries < MAX_RETRIES and not celery_app.conf.task_always_eager:
                raise self.retry(exc=exc, countdown=RETRY_BACKOFF_SECONDS * (self.request.retries + 1))
            raise
        db.commit()
        if report.skipped:
            _logger.info(
                "Taxon change %s skipped %d identifications without an output taxon",
                taxon_change_id,
                len(report.skipped),
            )
        return {"status": "propagated", **report.as_payload()}
    finally:
        db.close()
