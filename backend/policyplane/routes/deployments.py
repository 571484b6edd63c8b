"""Deployment lane endpoints: upsert, rollback, listings and the canary ladder."""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from .. import schemas
from ..database import get_db
from ..services import deployments
from ..services.errors import PolicyPlaneError
from .common import raise_http

# purpose: expose the deployment ledger to the operator console
# status: pilot
# depends_on: policyplane.services.deployments

router = APIRouter(prefix="/api/deployments", tags=["deployments"])


@router.get("", response_model=List[schemas.DeploymentOut])
def list_deployments(active_only: bool = True, db: Session = Depends(get_db)):
    rows = deployments.list_deployments(db, active_only=active_only)
    return [schemas.DeploymentOut.model_validate(row) for row in rows]


@router.post("", response_model=schemas.DeploymentUpsertResponse)
def upsert_deployment(
    payload: schemas.DeploymentUpsertRequest,
    db: Session = Depends(get_db),
):
    try:
        result = deployments.create_or_update_deployment(db, payload)
    except PolicyPlaneError as exc:
        raise_http(db, exc)
    db.commit()
    return result


@router.get("/active", response_model=List[schemas.ActiveDeployment])
def list_active_deployments(db: Session = Depends(get_db)):
    return deployments.list_active_deployments(db)


@router.get("/events", response_model=List[schemas.RolloutEventOut])
def list_rollout_events(
    target: Optional[str] = None,
    region: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=500),
    db: Session = Depends(get_db),
):
    rows = deployments.list_rollout_events(db, target=target, region=region, limit=limit)
    return [schemas.RolloutEventOut.model_validate(row) for row in rows]


@router.post("/rollback", response_model=schemas.DeploymentUpsertResponse)
def rollback_deployment(
    payload: schemas.DeploymentRollbackRequest,
    db: Session = Depends(get_db),
):
    try:
        result = deployments.rollback_deployment_lane(
            db,
            payload.snapshot_id,
            payload.target,
            region=payload.region,
            activated_by=payload.activated_by,
            deployment_key=payload.deployment_key,
            validation_run_id=payload.validation_run_id,
        )
    except PolicyPlaneError as exc:
        raise_http(db, exc)
    db.commit()
    return result


@router.get("/canary-step", response_model=schemas.CanaryStepOut)
def canary_step(current_percent: int = Query(default=0, ge=0, le=100)):
    return deployments.describe_canary_step(current_percent)
