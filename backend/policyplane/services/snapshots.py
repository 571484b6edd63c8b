"""Snapshot, subtask type and rule persistence."""

from __future__ import annotations

import logging
import re
from typing import Iterable, Optional, Sequence

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from .. import models, schemas
from .errors import PersistenceFailed, SnapshotNotFound, SnapshotVersionConflict

# purpose: own the snapshot/rule arena; a snapshot's rules are a filtered view of pkg_policy_rules
# inputs: pydantic payloads from routes and DatabasePolicyStore
# outputs: flushed ORM rows; callers commit
# status: pilot
# depends_on: pkg_snapshots, pkg_subtask_types, pkg_policy_rules, pkg_rule_conditions, pkg_rule_emissions

logger = logging.getLogger(__name__)


def _deactivate_env(db: Session, env: str) -> None:
    db.query(models.PolicySnapshot).filter(
        models.PolicySnapshot.env == env,
        models.PolicySnapshot.is_active.is_(True),
    ).update({"is_active": False}, synchronize_session=False)


def _version_taken(db: Session, version: str) -> bool:
    return (
        db.query(models.PolicySnapshot.id)
        .filter(models.PolicySnapshot.version == version)
        .first()
        is not None
    )


def create_snapshot(db: Session, payload: schemas.SnapshotCreate) -> models.PolicySnapshot:
    """Insert a snapshot; an active snapshot displaces the env's current one."""

    if _version_taken(db, payload.version):
        raise SnapshotVersionConflict(f"snapshot version {payload.version!r} already exists")
    if payload.is_active:
        _deactivate_env(db, payload.env)

    snapshot = models.PolicySnapshot(
        version=payload.version,
        env=payload.env,
        stage=payload.stage,
        is_active=payload.is_active,
        artifact_format=payload.artifact_format,
        entrypoint=payload.entrypoint,
        schema_version=payload.schema_version,
        checksum=payload.checksum,
        size_bytes=payload.size_bytes,
        signature=payload.signature,
        notes=payload.notes,
        parent_id=payload.parent_id,
    )
    db.add(snapshot)
    try:
        db.flush()
    except IntegrityError as exc:
        raise PersistenceFailed(f"could not store snapshot {payload.version!r}") from exc
    db.refresh(snapshot)
    return snapshot


def get_snapshot(db: Session, snapshot_id: int) -> Optional[models.PolicySnapshot]:
    return db.get(models.PolicySnapshot, snapshot_id)


def require_snapshot(db: Session, snapshot_id: int) -> models.PolicySnapshot:
    snapshot = get_snapshot(db, snapshot_id)
    if snapshot is None:
        raise SnapshotNotFound(f"snapshot {snapshot_id} not found")
    return snapshot


def list_snapshots(db: Session, env: str | None = None) -> list[models.PolicySnapshot]:
    query = db.query(models.PolicySnapshot)
    if env:
        query = query.filter(models.PolicySnapshot.env == env)
    snapshots: Sequence[models.PolicySnapshot] = query.order_by(
        models.PolicySnapshot.created_at.desc(),
        models.PolicySnapshot.id.desc(),
    ).all()
    return list(snapshots)


def update_snapshot_artifact(
    db: Session,
    snapshot_id: int,
    *,
    artifact_format: str,
    checksum: str,
    size_bytes: int,
) -> models.PolicySnapshot:
    """Record the compiled artifact of a snapshot."""

    snapshot = require_snapshot(db, snapshot_id)
    snapshot.artifact_format = artifact_format
    snapshot.checksum = checksum
    snapshot.size_bytes = size_bytes
    db.flush()
    return snapshot


def create_subtask_type(db: Session, payload: schemas.SubtaskTypeCreate) -> models.SubtaskType:
    """Insert a subtask type, or refresh the params of the same-named one."""

    require_snapshot(db, payload.snapshot_id)
    existing = (
        db.query(models.SubtaskType)
        .filter(
            models.SubtaskType.snapshot_id == payload.snapshot_id,
            models.SubtaskType.name == payload.name,
        )
        .one_or_none()
    )
    if existing:
        existing.default_params = dict(payload.default_params)
        db.flush()
        return existing
    subtask_type = models.SubtaskType(
        snapshot_id=payload.snapshot_id,
        name=payload.name,
        default_params=dict(payload.default_params),
    )
    db.add(subtask_type)
    db.flush()
    return subtask_type


def list_subtask_types(db: Session, snapshot_id: int | None = None) -> list[models.SubtaskType]:
    query = db.query(models.SubtaskType)
    if snapshot_id is not None:
        query = query.filter(models.SubtaskType.snapshot_id == snapshot_id)
    return query.order_by(models.SubtaskType.snapshot_id, models.SubtaskType.name).all()


def _resolve_subtask_type_id(
    emission: schemas.Emission,
    by_id: dict[str, models.SubtaskType],
    by_name: dict[str, models.SubtaskType],
) -> Optional[str]:
    if emission.subtask_type_id and emission.subtask_type_id in by_id:
        return emission.subtask_type_id
    if emission.subtask_name and emission.subtask_name in by_name:
        return by_name[emission.subtask_name].id
    return None


def _write_rule_children(
    db: Session,
    rule: models.PolicyRule,
    conditions: Iterable[schemas.Condition],
    emissions: Iterable[schemas.Emission],
) -> None:
    types = list_subtask_types(db, rule.snapshot_id)
    by_id = {item.id: item for item in types}
    by_name = {item.name: item for item in types}

    for position, condition in enumerate(conditions):
        rule.conditions.append(
            models.RuleCondition(
                condition_type=condition.condition_type,
                condition_key=condition.condition_key,
                operator=condition.operator,
                value=condition.value,
                position=position,
            )
        )
    position = 0
    for emission in emissions:
        subtask_type_id = _resolve_subtask_type_id(emission, by_id, by_name)
        if subtask_type_id is None:
            logger.warning(
                "Dropping emission of %s: subtask type %s not in snapshot %s",
                rule.rule_name,
                emission.subtask_name or emission.subtask_type_id,
                rule.snapshot_id,
            )
            continue
        rule.emissions.append(
            models.RuleEmission(
                subtask_type_id=subtask_type_id,
                relationship_type=emission.relationship_type,
                params=emission.params,
                position=position,
            )
        )
        position += 1


def create_rule(db: Session, payload: schemas.RuleCreate) -> models.PolicyRule:
    """Upsert a rule by (snapshot, rule_name) and rewrite its conditions and emissions."""

    require_snapshot(db, payload.snapshot_id)
    rule = (
        db.query(models.PolicyRule)
        .filter(
            models.PolicyRule.snapshot_id == payload.snapshot_id,
            models.PolicyRule.rule_name == payload.rule_name,
        )
        .one_or_none()
    )
    if rule is None:
        rule = models.PolicyRule(snapshot_id=payload.snapshot_id, rule_name=payload.rule_name)
        if payload.id:
            rule.id = payload.id
        db.add(rule)
    else:
        rule.conditions.clear()
        rule.emissions.clear()
        db.flush()
    return _write_rule(db, rule, payload)


def insert_rule(db: Session, payload: schemas.RuleCreate) -> models.PolicyRule:
    """Insert a new rule; a name already used in the snapshot raises ``PersistenceFailed``."""

    require_snapshot(db, payload.snapshot_id)
    taken = (
        db.query(models.PolicyRule.id)
        .filter(
            models.PolicyRule.snapshot_id == payload.snapshot_id,
            models.PolicyRule.rule_name == payload.rule_name,
        )
        .first()
    )
    if taken is not None:
        raise PersistenceFailed(
            f"rule {payload.rule_name!r} already exists in snapshot {payload.snapshot_id}"
        )
    rule = models.PolicyRule(snapshot_id=payload.snapshot_id, rule_name=payload.rule_name)
    if payload.id:
        rule.id = payload.id
    db.add(rule)
    return _write_rule(db, rule, payload)


def _write_rule(
    db: Session, rule: models.PolicyRule, payload: schemas.RuleCreate
) -> models.PolicyRule:
    rule.priority = payload.priority
    rule.engine = payload.engine
    rule.disabled = payload.disabled
    rule.rule_source = payload.rule_source
    rule.compiled_rule = payload.compiled_rule
    rule.rule_hash = payload.rule_hash
    rule.rule_metadata = payload.metadata
    rule.parent_rule_id = payload.parent_rule_id
    _write_rule_children(db, rule, payload.conditions, payload.emissions)
    try:
        db.flush()
    except IntegrityError as exc:
        raise PersistenceFailed(f"could not store rule {payload.rule_name!r}") from exc
    return rule


def list_rules(
    db: Session,
    snapshot_id: int | None = None,
    include_disabled: bool = False,
) -> list[models.PolicyRule]:
    query = db.query(models.PolicyRule).options(
        selectinload(models.PolicyRule.conditions),
        selectinload(models.PolicyRule.emissions).selectinload(models.RuleEmission.subtask_type),
    )
    if snapshot_id is not None:
        query = query.filter(models.PolicyRule.snapshot_id == snapshot_id)
    if not include_disabled:
        query = query.filter(models.PolicyRule.disabled.is_(False))
    return query.order_by(
        models.PolicyRule.snapshot_id.asc(),
        models.PolicyRule.priority.desc(),
        models.PolicyRule.rule_name.asc(),
    ).all()


def copy_subtask_types(db: Session, source_id: int, target_id: int) -> dict[str, str]:
    """Copy subtask types into ``target_id`` and return the old-to-new id map."""

    remap: dict[str, str] = {}
    for subtask_type in list_subtask_types(db, source_id):
        copied = create_subtask_type(
            db,
            schemas.SubtaskTypeCreate(
                snapshot_id=target_id,
                name=subtask_type.name,
                default_params=dict(subtask_type.default_params or {}),
            ),
        )
        remap[subtask_type.id] = copied.id
    return remap


def remap_emissions(
    emissions: Iterable[schemas.Emission], remap: dict[str, str]
) -> list[schemas.Emission]:
    """Rewrite emission subtask ids through ``remap``; unmapped ids fall back to the name."""

    remapped = []
    for emission in emissions:
        new_id = remap.get(emission.subtask_type_id or "")
        remapped.append(emission.model_copy(update={"subtask_type_id": new_id}))
    return remapped


def clone_snapshot(
    db: Session,
    source_id: int,
    payload: schemas.SnapshotCloneRequest,
) -> models.PolicySnapshot:
    """Deep-copy a snapshot with its subtask types, rules, conditions and emissions."""

    source = require_snapshot(db, source_id)
    clone = create_snapshot(
        db,
        schemas.SnapshotCreate(
            version=payload.version,
            env=payload.env or source.env,
            stage="DRAFT",
            entrypoint=source.entrypoint,
            schema_version=source.schema_version,
            size_bytes=source.size_bytes or 0,
            notes=payload.notes or f"Cloned from {source.version}",
            is_active=payload.is_active,
            artifact_format="native",
            parent_id=source.id,
        ),
    )
    remap = copy_subtask_types(db, source.id, clone.id)

    for rule in list_rules(db, source.id, include_disabled=True):
        emissions = [
            schemas.Emission(
                subtask_type_id=remap.get(emission.subtask_type_id),
                relationship_type=emission.relationship_type,
                params=emission.params,
            )
            for emission in rule.emissions
            if emission.subtask_type_id in remap
        ]
        create_rule(
            db,
            schemas.RuleCreate(
                snapshot_id=clone.id,
                rule_name=rule.rule_name,
                priority=rule.priority,
                engine=rule.engine,
                disabled=rule.disabled,
                rule_source=rule.rule_source,
                compiled_rule=rule.compiled_rule,
                rule_hash=rule.rule_hash,
                metadata=rule.rule_metadata,
                parent_rule_id=rule.id,
                conditions=[schemas.Condition.model_validate(item) for item in rule.conditions],
                emissions=emissions,
            ),
        )
    logger.info("Cloned snapshot %s into %s", source.version, clone.version)
    return clone


def generate_version(base_name: str, existing_versions: Iterable[str]) -> str:
    """Bump the patch of the highest ``<base>-vX.Y.Z`` in ``existing_versions``."""

    pattern = re.compile(rf"{re.escape(base_name)}-v(\d+)\.(\d+)\.(\d+)")
    highest = (0, 0, 0)
    for version in existing_versions:
        match = pattern.search(version)
        if match:
            highest = max(highest, tuple(int(part) for part in match.groups()))
    major, minor, patch = highest
    return f"{base_name}-v{major}.{minor}.{patch + 1}"
