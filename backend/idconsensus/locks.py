"""Per-observation serialization for identification writes."""

from __future__ import annotations

from contextlib import contextmanager
from threading import Lock, RLock
from typing import Iterator

from sqlalchemy.orm import Session

from . import models

# purpose: serialize currency and category writes that share one observation
# inputs: observation ids, SQLAlchemy session
# outputs: in-process lock scope plus a row lock on the observation
# status: pilot


class ObservationLocks:
    """Registry handing out one re-entrant lock per observation id."""

    def __init__(self) -> None:
        self._guard = Lock()
        self._locks: dict[int, list] = {}

    @contextmanager
    def hold(self, observation_id: int) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(observation_id, [RLock(), 0])
            entry[1] += 1
        lock = entry[0]
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(observation_id, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


OBSERVATION_LOCKS = ObservationLocks()


def lock_observation(db: Session, observation_id: int) -> models.Observation | None:
    """Load an observation with a row lock held until the transaction ends."""

    return (
        db.query(models.Observation)
        .filter(models.Observation.id == observation_id)
        .with_for_update()
        .one_or_none()
    )
