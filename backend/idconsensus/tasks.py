import os
from celery import Celery
from celery.utils.log import get_task_logger

from .database import SessionLocal
from .errors import IdentificationNotFound, TaxonomyLookupError
from .locks import OBSERVATION_LOCKS, lock_observation
from . import models

# purpose: drain "recompute needed for observation X" messages outside the request cycle
# inputs: observation ids from identification writes, taxon changes and maintenance commands
# outputs: refreshed community taxon and categories with persisted observation events
# status: pilot

CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "memory://")
celery_app = Celery("idconsensus", broker=CELERY_BROKER_URL)
celery_app.conf.task_always_eager = (
    CELERY_BROKER_URL == "memory://" or os.getenv("TESTING") == "1"
)

MAX_RETRIES = int(os.getenv("CATEGORY_RECOMPUTE_MAX_RETRIES", "5"))
RETRY_BACKOFF_SECONDS = int(os.getenv("CATEGORY_RECOMPUTE_RETRY_SECONDS", "30"))

_logger = get_task_logger(__name__)


@celery_app.task(bind=True, name="idconsensus.tasks.recompute_observation_categories")
def recompute_observation_categories(self, observation_id: int) -> str:
    """Recompute community taxon and categories for one observation from a fresh read."""

    from .services.identifications import recompute_observation

    db = SessionLocal()
    try:
        with OBSERVATION_LOCKS.hold(observation_id):
            observation = lock_observation(db, observation_id)
            if observation is None:
                _logger.warning("Observation %s missing; nothing to recompute", observation_id)
                return "missing"
            try:
                events = recompute_observation(db, observation_id)
            except TaxonomyLookupError as exc:
                db.rollback()
                _logger.warning("Taxonomy unavailable while recomputing observation %s: %s", observation_id, exc)
                if self.request.retries < MAX_RETRIES and not celery_app.conf.task_always_eager:
                    raise self.retry(exc=exc, countdown=RETRY_BACKOFF_SECONDS * (self.request.retries + 1))
                raise
            except IdentificationNotFound:
                db.rollback()
                return "missing"
            db.commit()
            return "updated" if events else "noop"
    finally:
        db.close()


def enqueue_recompute_observation_categories(observation_id: int) -> None:
    if celery_app.conf.task_always_eager:
        recompute_observation_categories(observation_id)
    else:
        recompute_observation_categories.delay(observation_id)


def enqueue_recompute_all_observations(batch_size: int = 500) -> int:
    """Queue a recompute for every observation that has identifications."""

    db = SessionLocal()
    try:
        observation_ids = [
            observation_id
            for (observation_id,) in db.query(models.Identification.observation_id)
            .distinct()
            .order_by(models.Identification.observation_id)
            .all()
        ]
    finally:
        db.close()
    for start in range(0, len(observation_ids), batch_size):
        for observation_id in observation_ids[start:start + batch_size]:
            enqueue_recompute_observation_categories(observation_id)
    return len(observation_ids)
