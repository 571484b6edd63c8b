"""Deployment ledger: lane upserts, canary ladder, rollback and rollout history."""

from __future__ import annotations

import logging
import math
from typing import Optional, Sequence

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from .. import models, schemas
from ..eventlog import record_rollout_event
from .errors import InvalidState, LaneConflict, PercentDecreaseBlocked, SnapshotNotFound

# purpose: keep at most one active deployment per (target, region) lane and audit every move
# inputs: DeploymentUpsertRequest payloads from routes, the CLI and the pipeline
# outputs: Deployment rows, RolloutEvent rows, snapshot activation side effects
# status: pilot
# depends_on: pkg_deployments, pkg_rollout_events, pkg_snapshots

logger = logging.getLogger(__name__)

CANARY_LADDER: tuple[int, ...] = (0, 5, 25, 50, 100)
DEFAULT_REGION = "global"
DEFAULT_ACTOR = "system"
DEFAULT_DEPLOYMENT_KEY = "default"


def clamp_percent(value: float | int | None) -> int:
    """Round half up and clamp into [0, 100]."""

    if value is None:
        return 0
    rounded = int(math.floor(float(value) + 0.5))
    return max(0, min(100, rounded))


def normalize_region(region: str | None) -> str:
    cleaned = (region or "").strip()
    return cleaned or DEFAULT_REGION


def lane_key(target: str, region: str | None = None) -> str:
    """Return the ``target:region`` identifier for a lane."""

    return f"{target.strip()}:{normalize_region(region)}"


def calculate_canary_step(current_percent: int) -> int:
    """Return the next rung of the canary ladder for ``current_percent``."""

    if current_percent == 0:
        return 5
    if current_percent == 5:
        return 25
    if current_percent == 25:
        return 50
    if current_percent == 50:
        return 100
    return 100


def describe_canary_step(current_percent: int) -> schemas.CanaryStepOut:
    current = clamp_percent(current_percent)
    return schemas.CanaryStepOut(
        current_percent=current,
        next_percent=calculate_canary_step(current),
        at_ceiling=current >= 100,
    )


def _active_lane_row(db: Session, target: str, region: str) -> Optional[models.Deployment]:
    return (
        db.query(models.Deployment)
        .filter(
            models.Deployment.target == target,
            models.Deployment.region == region,
            models.Deployment.is_active.is_(True),
        )
        .order_by(models.Deployment.id.desc())
        .with_for_update()
        .first()
    )


def _latest_lane_row(db: Session, target: str, region: str) -> Optional[models.Deployment]:
    return (
        db.query(models.Deployment)
        .filter(models.Deployment.target == target, models.Deployment.region == region)
        .order_by(models.Deployment.id.desc())
        .first()
    )


def _is_replay(
    row: Optional[models.Deployment],
    snapshot_id: int,
    deployment_key: str,
    percent: int,
    is_active: bool,
    is_rollback: bool,
) -> bool:
    if row is None:
        return False
    return (
        row.snapshot_id == snapshot_id
        and row.deployment_key == deployment_key
        and row.percent == percent
        and bool(row.is_active) == is_active
        and bool(row.is_rollback) == is_rollback
    )


def _noop_response(row: models.Deployment) -> schemas.DeploymentUpsertResponse:
    current = schemas.DeploymentCurrent.model_validate(row).model_copy(update={"noop": True})
    return schemas.DeploymentUpsertResponse(current=current)


def _activate_snapshot(db: Session, snapshot: models.PolicySnapshot, percent: int) -> None:
    (
        db.query(models.PolicySnapshot)
        .filter(
            models.PolicySnapshot.env == snapshot.env,
            models.PolicySnapshot.id != snapshot.id,
            models.PolicySnapshot.is_active.is_(True),
        )
        .update({"is_active": False}, synchronize_session=False)
    )
    snapshot.is_active = True
    snapshot.stage = "PROD" if percent >= 100 else "CANARY"


def _retire_if_idle(db: Session, snapshot: models.PolicySnapshot) -> None:
    remaining = (
        db.query(models.Deployment)
        .filter(
            models.Deployment.snapshot_id == snapshot.id,
            models.Deployment.is_active.is_(True),
        )
        .count()
    )
    if remaining == 0 and snapshot.is_active:
        snapshot.is_active = False
        logger.info("Snapshot %s has no active lanes left and was deactivated", snapshot.version)


def create_or_update_deployment(
    db: Session,
    request: schemas.DeploymentUpsertRequest,
) -> schemas.DeploymentUpsertResponse:
    """Move a lane to ``request.percent`` of ``request.snapshot_id`` atomically.

    The lane's active row is locked, the lane is deactivated in bulk, a new row
    is inserted and a rollout event appended within the caller's transaction.
    Requests that would not change the lane are reported with ``noop=True``
    and write nothing. The same-percent no-op and the monotonic guard only
    apply when the lane already runs ``request.snapshot_id``. A rollback must
    name the snapshot the lane runs. The caller commits.
    """

    target = (request.target or "").strip()
    if not target:
        raise InvalidState("deployment target is required")
    if request.snapshot_id < 1:
        raise InvalidState("snapshot_id must be a positive integer")
    snapshot = db.get(models.PolicySnapshot, request.snapshot_id)
    if snapshot is None:
        raise SnapshotNotFound(f"snapshot {request.snapshot_id} not found")

    region = normalize_region(request.region)
    percent = clamp_percent(request.percent)
    is_active = bool(request.is_active) and percent > 0
    is_rollback = bool(request.is_rollback)
    actor = (request.activated_by or "").strip() or DEFAULT_ACTOR
    deployment_key = (request.deployment_key or "").strip() or DEFAULT_DEPLOYMENT_KEY

    current = _active_lane_row(db, target, region)
    same_snapshot = current is not None and current.snapshot_id == snapshot.id
    if is_rollback and current is not None and not same_snapshot:
        raise InvalidState(
            f"lane {lane_key(target, region)} runs snapshot {current.snapshot_id}, "
            f"not {snapshot.id}; roll back the active snapshot"
        )

    if same_snapshot and not is_rollback and current.percent == percent and is_active:
        logger.info("Lane %s already at %s%% of %s", lane_key(target, region), percent, snapshot.version)
        return _noop_response(current)

    latest = current or _latest_lane_row(db, target, region)
    if _is_replay(latest, snapshot.id, deployment_key, percent, is_active, is_rollback):
        logger.info("Replayed deployment request for lane %s ignored", lane_key(target, region))
        return _noop_response(latest)

    if (
        same_snapshot
        and not is_rollback
        and request.enforce_monotonic_increase
        and percent < current.percent
    ):
        raise PercentDecreaseBlocked(
            f"Percent decrease blocked ({current.percent}% → {percent}%). "
            "Set is_rollback=true to allow."
        )

    previous: Optional[schemas.DeploymentOut] = None
    from_percent: Optional[int] = None
    displaced: Optional[models.PolicySnapshot] = None
    if current is not None:
        previous = schemas.DeploymentOut.model_validate(current)
        from_percent = current.percent
        if not same_snapshot:
            displaced = current.snapshot

    (
        db.query(models.Deployment)
        .filter(
            models.Deployment.target == target,
            models.Deployment.region == region,
            models.Deployment.is_active.is_(True),
        )
        .update({"is_active": False}, synchronize_session=False)
    )
    if current is not None:
        db.expire(current)

    deployment = models.Deployment(
        snapshot_id=snapshot.id,
        target=target,
        region=region,
        percent=percent,
        is_active=is_active,
        activated_by=actor,
        deployment_key=deployment_key,
        is_rollback=is_rollback,
        validation_run_id=request.validation_run_id,
    )
    db.add(deployment)
    try:
        db.flush()
    except IntegrityError as exc:
        raise LaneConflict(
            f"concurrent deployment on lane {lane_key(target, region)}"
        ) from exc

    record_rollout_event(db, deployment, from_percent, actor)

    if is_active and percent > 0:
        _activate_snapshot(db, snapshot, percent)
    elif is_rollback:
        _retire_if_idle(db, snapshot)
    if displaced is not None:
        _retire_if_idle(db, displaced)
    db.flush()
    db.refresh(deployment)

    logger.info(
        "Lane %s moved %s%% → %s%% for %s (rollback=%s)",
        lane_key(target, region),
        from_percent,
        percent,
        snapshot.version,
        is_rollback,
    )
    return schemas.DeploymentUpsertResponse(
        current=schemas.DeploymentCurrent.model_validate(deployment),
        previous=previous,
    )


def rollback_deployment_lane(
    db: Session,
    snapshot_id: int,
    target: str,
    region: str | None = DEFAULT_REGION,
    activated_by: str | None = DEFAULT_ACTOR,
    deployment_key: str | None = DEFAULT_DEPLOYMENT_KEY,
    validation_run_id: int | None = None,
) -> schemas.DeploymentUpsertResponse:
    """Drop the lane to 0% as a rollback, recording one event."""

    return create_or_update_deployment(
        db,
        schemas.DeploymentUpsertRequest(
            snapshot_id=snapshot_id,
            target=target,
            region=region,
            percent=0,
            is_active=False,
            activated_by=activated_by,
            deployment_key=deployment_key,
            is_rollback=True,
            validation_run_id=validation_run_id,
        ),
    )


def deactivate_deployment_lane(
    db: Session,
    snapshot_id: int,
    target: str,
    region: str | None = DEFAULT_REGION,
    activated_by: str | None = DEFAULT_ACTOR,
    deployment_key: str | None = DEFAULT_DEPLOYMENT_KEY,
) -> schemas.DeploymentUpsertResponse:
    return rollback_deployment_lane(
        db,
        snapshot_id,
        target,
        region=region,
        activated_by=activated_by,
        deployment_key=deployment_key,
    )


def list_deployments(db: Session, active_only: bool = True) -> list[models.Deployment]:
    query = db.query(models.Deployment).options(joinedload(models.Deployment.snapshot))
    if active_only:
        query = query.filter(models.Deployment.is_active.is_(True))
    rows: Sequence[models.Deployment] = query.order_by(
        models.Deployment.activated_at.desc(),
        models.Deployment.id.desc(),
    ).all()
    return list(rows)


def list_active_deployments(db: Session) -> list[schemas.ActiveDeployment]:
    """Return the active row of every lane joined with its snapshot version."""

    rows = (
        db.query(models.Deployment, models.PolicySnapshot.version)
        .join(models.PolicySnapshot, models.PolicySnapshot.id == models.Deployment.snapshot_id)
        .filter(models.Deployment.is_active.is_(True))
        .order_by(models.Deployment.target.asc(), models.Deployment.region.asc())
        .all()
    )
    return [
        schemas.ActiveDeployment(
            target=deployment.target,
            region=deployment.region,
            snapshot=version,
            snapshot_id=deployment.snapshot_id,
            percent=deployment.percent,
            activated_at=deployment.activated_at,
            activated_by=deployment.activated_by,
        )
        for deployment, version in rows
    ]


def get_active_deployment(
    db: Session, target: str, region: str | None = None
) -> Optional[models.Deployment]:
    return (
        db.query(models.Deployment)
        .filter(
            models.Deployment.target == target.strip(),
            models.Deployment.region == normalize_region(region),
            models.Deployment.is_active.is_(True),
        )
        .one_or_none()
    )


def list_rollout_events(
    db: Session,
    target: str | None = None,
    region: str | None = None,
    limit: int = 50,
) -> list[models.RolloutEvent]:
    query = db.query(models.RolloutEvent)
    if target:
        query = query.filter(models.RolloutEvent.target == target.strip())
    if region:
        query = query.filter(models.RolloutEvent.region == normalize_region(region))
    return (
        query.order_by(models.RolloutEvent.created_at.desc(), models.RolloutEvent.id.desc())
        .limit(max(1, limit))
        .all()
    )
