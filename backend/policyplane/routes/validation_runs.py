"""Validation run endpoints."""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from .. import schemas
from ..database import get_db
from ..services import validation
from ..services.errors import PolicyPlaneError
from .common import raise_http

router = APIRouter(prefix="/api/validation-runs", tags=["validation"])


@router.get("", response_model=List[schemas.ValidationRunOut])
def list_validation_runs(snapshot_id: Optional[int] = None, db: Session = Depends(get_db)):
    rows = validation.list_validation_runs(db, snapshot_id)
    return [schemas.ValidationRunOut.model_validate(row) for row in rows]


@router.post("/start", response_model=schemas.ValidationRunOut)
def start_validation_run(payload: schemas.ValidationRunStart, db: Session = Depends(get_db)):
    try:
        run = validation.start_validation_run(db, payload.snapshot_id)
    except PolicyPlaneError as exc:
        raise_http(db, exc)
    db.commit()
    db.refresh(run)
    return schemas.ValidationRunOut.model_validate(run)


@router.post("/finish", response_model=schemas.ValidationRunOut)
def finish_validation_run(payload: schemas.ValidationRunFinish, db: Session = Depends(get_db)):
    try:
        run = validation.finish_validation_run(db, payload.id, payload.success, payload.report)
    except PolicyPlaneError as exc:
        raise_http(db, exc)
    db.commit()
    db.refresh(run)
    return schemas.ValidationRunOut.model_validate(run)
