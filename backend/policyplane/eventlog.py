"""Utilities for recording rollout audit events."""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy.orm import Session

from . import models

# purpose: shareable helper for appending rollout events from the deployment ledger
# inputs: SQLAlchemy session, the deployment row written, the lane's previous percent
# outputs: RolloutEvent rows, one per accepted percent change
# status: pilot


def record_rollout_event(
    db: Session,
    deployment: models.Deployment,
    from_percent: int | None,
    actor: str | None = None,
) -> models.RolloutEvent:
    """Persist an append-only rollout event for a lane transition."""

    event = models.RolloutEvent(
        deployment_id=deployment.id,
        snapshot_id=deployment.snapshot_id,
        target=deployment.target,
        region=deployment.region,
        from_percent=from_percent,
        to_percent=deployment.percent,
        is_rollback=bool(deployment.is_rollback),
        actor=actor or deployment.activated_by or "system",
        validation_run_id=deployment.validation_run_id,
        created_at=datetime.now(timezone.utc),
    )
    db.add(event)
    return event
