"""CLI utilities for identification maintenance."""

# purpose: let administrators recategorize observations and replay taxon changes by hand
# status: pilot
# depends_on: backend.idconsensus.tasks, backend.idconsensus.services.taxon_changes

from __future__ import annotations

import json
import logging
from typing import List, Optional
from uuid import UUID

import typer

from ..database import SessionLocal
from ..errors import IdentificationError, TaxonChangeError
from ..services import taxon_changes
from ..tasks import enqueue_recompute_all_observations, enqueue_recompute_observation_categories

app = typer.Typer(help="Identification maintenance commands")

logger = logging.getLogger(__name__)


def recategorize(observation_ids: list[int] | None = None, batch_size: int = 500) -> dict[str, int]:
    """Queue a recompute for the given observations, or for every observation."""

    if observation_ids:
        for observation_id in observation_ids:
            enqueue_recompute_observation_categories(observation_id)
        return {"queued": len(observation_ids)}
    return {"queued": enqueue_recompute_all_observations(batch_size=batch_size)}


@app.command("recategorize")
def recategorize_command(
    observation_id: Optional[List[int]] = typer.Option(
        None, "--observation-id", help="Observation to recompute; repeat for several"
    ),
    batch_size: int = typer.Option(500, help="Observations queued per batch"),
) -> None:
    """CLI wrapper for :func:`recategorize`."""

    summary = recategorize(observation_id or None, batch_size=batch_size)
    typer.echo(json.dumps(summary))


def propagate(
    taxon_change_id: int,
    *,
    user_id: UUID | None = None,
    record_ids: list[int] | None = None,
    dry_run: bool = False,
) -> dict[str, object]:
    """Replay one committed taxon change synchronously."""

    session = SessionLocal()
    try:
        report = taxon_changes.propagate_taxon_change(
            session,
            taxon_change_id,
            user_id=user_id,
            record_ids=record_ids,
        )
        if dry_run:
            session.rollback()
        else:
            session.commit()
        return {"taxon_change_id": taxon_change_id, "dry_run": dry_run, **report.as_payload()}
    except IdentificationError:
        session.rollback()
        raise
    finally:
        session.close()


@app.command("propagate-taxon-change")
def propagate_command(
    taxon_change_id: int = typer.Argument(..., help="Committed taxon change to replay"),
    user_id: Optional[str] = typer.Option(None, help="Only replace this user's identifications"),
    record_id: Optional[List[int]] = typer.Option(
        None, "--record-id", help="Only replace these identifications; repeat for several"
    ),
    dry_run: bool = typer.Option(False, help="Roll back instead of committing"),
) -> None:
    """CLI wrapper for :func:`propagate`."""

    try:
        parsed_user = UUID(user_id) if user_id else None
    except ValueError as exc:
        raise typer.BadParameter("user id must be a UUID") from exc
    try:
        summary = propagate(
            taxon_change_id,
            user_id=parsed_user,
            record_ids=record_id or None,
            dry_run=dry_run,
        )
    except TaxonChangeError as exc:
        logger.warning("taxon change %s not propagated: %s", taxon_change_id, exc)
        typer.echo(json.dumps({"taxon_change_id": taxon_change_id, "error": str(exc)}))
        raise typer.Exit(code=1) from exc
    typer.echo(json.dumps(summary))


if __name__ == "__main__":  # pragma: no cover
    app()
