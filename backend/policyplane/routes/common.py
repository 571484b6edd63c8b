"""Translate service errors into HTTP responses and provide shared dependencies."""

from __future__ import annotations

from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from ..services.errors import (
    CompilationFailed,
    InvalidState,
    LaneConflict,
    PercentDecreaseBlocked,
    PolicyPlaneError,
    ProposalGenerationFailed,
    SnapshotNotFound,
    SnapshotVersionConflict,
    ValidationPrecondition,
    ValidationRunNotFound,
)
from ..services.promotion import HttpRuleCompiler, RuleCompiler
from ..services.store import DatabasePolicyStore

# purpose: one mapping from PolicyPlaneError kinds to status codes for every router
# status: pilot

_CONFLICTS = (LaneConflict, SnapshotVersionConflict, PercentDecreaseBlocked)
_UPSTREAM = (CompilationFailed, ProposalGenerationFailed)


def status_for(exc: PolicyPlaneError) -> int:
    if isinstance(exc, (SnapshotNotFound, ValidationRunNotFound)):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, _CONFLICTS):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, (InvalidState, ValidationPrecondition)):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(exc, _UPSTREAM):
        return status.HTTP_502_BAD_GATEWAY
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def raise_http(db: Session, exc: PolicyPlaneError) -> None:
    """Roll back the request transaction and re-raise ``exc`` as an HTTPException."""

    db.rollback()
    raise HTTPException(status_code=status_for(exc), detail=str(exc)) from exc


def get_rule_compiler() -> RuleCompiler:
    return HttpRuleCompiler()


def get_policy_store() -> DatabasePolicyStore:
    return DatabasePolicyStore()
