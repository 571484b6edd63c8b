"""Rule and subtask type endpoints."""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from .. import schemas
from ..database import get_db
from ..services import snapshots
from ..services.errors import PolicyPlaneError
from .common import raise_http

router = APIRouter(prefix="/api", tags=["rules"])


@router.get("/subtask-types", response_model=List[schemas.SubtaskTypeOut])
def list_subtask_types(snapshot_id: Optional[int] = None, db: Session = Depends(get_db)):
    return [
        schemas.SubtaskTypeOut.model_validate(row)
        for row in snapshots.list_subtask_types(db, snapshot_id)
    ]


@router.post("/subtask-types", response_model=schemas.SubtaskTypeOut)
def create_subtask_type(payload: schemas.SubtaskTypeCreate, db: Session = Depends(get_db)):
    try:
        subtask_type = snapshots.create_subtask_type(db, payload)
    except PolicyPlaneError as exc:
        raise_http(db, exc)
    db.commit()
    db.refresh(subtask_type)
    return schemas.SubtaskTypeOut.model_validate(subtask_type)


@router.get("/rules", response_model=List[schemas.Rule])
def list_rules(
    snapshot_id: Optional[int] = None,
    include_disabled: bool = False,
    db: Session = Depends(get_db),
):
    rows = snapshots.list_rules(db, snapshot_id, include_disabled=include_disabled)
    return [schemas.Rule.model_validate(row) for row in rows]


@router.post("/rules", response_model=schemas.Rule)
def create_rule(payload: schemas.RuleCreate, db: Session = Depends(get_db)):
    try:
        rule = snapshots.create_rule(db, payload)
    except PolicyPlaneError as exc:
        raise_http(db, exc)
    db.commit()
    db.refresh(rule)
    return schemas.Rule.model_validate(rule)
