"""Validation gate over compiled snapshots and persisted validation runs."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional, Sequence

from sqlalchemy.orm import Session

from .. import models, schemas
from .errors import InvalidState, ValidationPrecondition, ValidationRunNotFound
from .snapshots import require_snapshot

# purpose: decide whether a wasm snapshot may be deployed and keep an audit of each attempt
# inputs: snapshot id and its rules; pluggable per-rule checks
# outputs: ValidationReport, pkg_validation_runs rows, snapshot stage transitions
# status: pilot

logger = logging.getLogger(__name__)

RuleCheck = Callable[[schemas.Rule], Optional[str]]

PASSING_SCORE = 0.99
FAILING_SCORE = 0.45


def negative_priority_check(rule: schemas.Rule) -> Optional[str]:
    if rule.priority < 0:
        return f"Rule {rule.rule_name} has invalid priority"
    return None


def empty_emissions_check(rule: schemas.Rule) -> Optional[str]:
    if not rule.emissions:
        return f"Rule {rule.rule_name} emits no subtasks"
    return None


DEFAULT_CHECKS: tuple[RuleCheck, ...] = (negative_priority_check,)


def ensure_wasm(snapshot: schemas.Snapshot) -> None:
    """Raise unless the snapshot carries a compiled artifact."""

    if snapshot.artifact_format != "wasm":
        raise ValidationPrecondition(
            f"snapshot {snapshot.version} must be promoted to wasm before validation"
        )


class ValidationGate:
    """Run per-rule checks and summarise them as a report."""

    def __init__(self, checks: Sequence[RuleCheck] | None = None) -> None:
        self.checks: tuple[RuleCheck, ...] = tuple(checks) if checks is not None else DEFAULT_CHECKS

    def run(self, snapshot_id: int, rules: Iterable[schemas.Rule]) -> schemas.ValidationReport:
        evaluated = [rule for rule in rules if rule.snapshot_id == snapshot_id]
        conflicts: list[str] = []
        failed = 0
        for rule in evaluated:
            problems = [problem for problem in (check(rule) for check in self.checks) if problem]
            if problems:
                failed += 1
                conflicts.extend(problems)
        report = schemas.ValidationReport(
            type="validation",
            engine="wasm",
            rules_evaluated=len(evaluated),
            passed=max(0, len(evaluated) - failed),
            failed=failed,
            conflicts=conflicts,
            simulation_score=PASSING_SCORE if failed == 0 else FAILING_SCORE,
        )
        logger.info(
            "Validated snapshot %s: %s rules, %s failing",
            snapshot_id,
            report.rules_evaluated,
            failed,
        )
        return report


def start_validation_run(db: Session, snapshot_id: int) -> models.ValidationRun:
    """Open a validation run and move the snapshot into VALIDATING."""

    snapshot = require_snapshot(db, snapshot_id)
    run = models.ValidationRun(
        snapshot_id=snapshot.id,
        started_at=datetime.now(timezone.utc),
    )
    db.add(run)
    snapshot.stage = "VALIDATING"
    db.flush()
    db.refresh(run)
    return run


def finish_validation_run(
    db: Session,
    run_id: int,
    success: bool,
    report: schemas.ValidationReport | dict | None = None,
) -> models.ValidationRun:
    """Close a run; the snapshot becomes VALIDATED on success, DRAFT otherwise."""

    run = db.get(models.ValidationRun, run_id)
    if run is None:
        raise ValidationRunNotFound(f"validation run {run_id} not found")
    if run.finished_at is not None:
        raise InvalidState(f"validation run {run_id} already finished")
    if isinstance(report, schemas.ValidationReport):
        report = report.model_dump(mode="json", by_alias=True)
    run.finished_at = datetime.now(timezone.utc)
    run.success = success
    run.report = report
    snapshot = require_snapshot(db, run.snapshot_id)
    snapshot.stage = "VALIDATED" if success else "DRAFT"
    db.flush()
    return run


def list_validation_runs(db: Session, snapshot_id: int | None = None) -> list[models.ValidationRun]:
    query = db.query(models.ValidationRun)
    if snapshot_id is not None:
        query = query.filter(models.ValidationRun.snapshot_id == snapshot_id)
    return query.order_by(
        models.ValidationRun.started_at.desc(),
        models.ValidationRun.id.desc(),
    ).all()
