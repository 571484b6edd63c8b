"""Snapshot catalogue endpoints."""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from .. import schemas
from ..database import get_db
from ..services import snapshots, validation
from ..services.errors import PolicyPlaneError
from ..services.promotion import ArtifactPromoter, RuleCompiler
from .common import get_rule_compiler, raise_http

# purpose: create, list, inspect, clone, promote and validate policy snapshots
# status: pilot
# depends_on: policyplane.services.snapshots, policyplane.services.promotion, policyplane.services.validation

router = APIRouter(prefix="/api/snapshots", tags=["snapshots"])


@router.get("", response_model=List[schemas.Snapshot])
def list_snapshots(env: Optional[schemas.PkgEnv] = None, db: Session = Depends(get_db)):
    return [schemas.Snapshot.model_validate(row) for row in snapshots.list_snapshots(db, env)]


@router.post("", response_model=schemas.Snapshot)
def create_snapshot(payload: schemas.SnapshotCreate, db: Session = Depends(get_db)):
    try:
        snapshot = snapshots.create_snapshot(db, payload)
    except PolicyPlaneError as exc:
        raise_http(db, exc)
    db.commit()
    db.refresh(snapshot)
    return schemas.Snapshot.model_validate(snapshot)


@router.get("/{snapshot_id}", response_model=schemas.Snapshot)
def get_snapshot(snapshot_id: int, db: Session = Depends(get_db)):
    snapshot = snapshots.get_snapshot(db, snapshot_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail="Snapshot not found")
    return schemas.Snapshot.model_validate(snapshot)


@router.post("/{snapshot_id}/clone", response_model=schemas.Snapshot)
def clone_snapshot(
    snapshot_id: int,
    payload: schemas.SnapshotCloneRequest,
    db: Session = Depends(get_db),
):
    try:
        clone = snapshots.clone_snapshot(db, snapshot_id, payload)
    except PolicyPlaneError as exc:
        raise_http(db, exc)
    db.commit()
    db.refresh(clone)
    return schemas.Snapshot.model_validate(clone)


def _snapshot_rules(db: Session, snapshot_id: int) -> list[schemas.Rule]:
    return [
        schemas.Rule.model_validate(row)
        for row in snapshots.list_rules(db, snapshot_id, include_disabled=True)
    ]


@router.post("/{snapshot_id}/promote", response_model=schemas.Snapshot)
async def promote_snapshot(
    snapshot_id: int,
    db: Session = Depends(get_db),
    compiler: RuleCompiler = Depends(get_rule_compiler),
):
    """Compile a native snapshot and record its wasm artifact."""

    try:
        snapshot = schemas.Snapshot.model_validate(snapshots.require_snapshot(db, snapshot_id))
        promoted = await ArtifactPromoter(compiler).promote(
            snapshot, _snapshot_rules(db, snapshot_id)
        )
        row = snapshots.update_snapshot_artifact(
            db,
            snapshot_id,
            artifact_format=promoted.artifact_format or "wasm",
            checksum=promoted.checksum,
            size_bytes=promoted.size_bytes,
        )
    except PolicyPlaneError as exc:
        raise_http(db, exc)
    db.commit()
    db.refresh(row)
    return schemas.Snapshot.model_validate(row)


@router.post("/{snapshot_id}/validate", response_model=schemas.ValidationRunOut)
def validate_snapshot(snapshot_id: int, db: Session = Depends(get_db)):
    """Run the validation gate over a compiled snapshot and store the run."""

    try:
        snapshot = schemas.Snapshot.model_validate(snapshots.require_snapshot(db, snapshot_id))
        validation.ensure_wasm(snapshot)
        rules = _snapshot_rules(db, snapshot_id)
        run = validation.start_validation_run(db, snapshot_id)
        report = validation.ValidationGate().run(snapshot_id, rules)
        run = validation.finish_validation_run(db, run.id, report.success, report)
    except PolicyPlaneError as exc:
        raise_http(db, exc)
    db.commit()
    db.refresh(run)
    return schemas.ValidationRunOut.model_validate(run)
