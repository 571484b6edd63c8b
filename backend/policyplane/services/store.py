"""Async persistence facade over the snapshot, validation and deployment services."""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, Callable, Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .. import schemas
from ..cache import TTLCache
from ..database import SessionLocal, session_scope
from . import deployments, snapshots, validation
from .errors import PersistenceFailed

# purpose: give the pipeline one awaitable persistence collaborator with cached listings
# inputs: session factory, TTLCache
# outputs: pydantic Snapshot/Rule/Deployment views; each call is its own transaction
# status: pilot

logger = logging.getLogger(__name__)

CACHE_TTL_SECONDS = float(os.getenv("PKG_CACHE_TTL_SECONDS", "300"))


def _snapshot_out(row) -> schemas.Snapshot:
    return schemas.Snapshot.model_validate(row)


def _rule_out(row) -> schemas.Rule:
    return schemas.Rule.model_validate(row)


class DatabasePolicyStore:
    """Run the synchronous services in worker threads, one session per call."""

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        cache: TTLCache | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.cache = cache if cache is not None else TTLCache(CACHE_TTL_SECONDS)

    def _run(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            with session_scope(self._session_factory) as db:
                return fn(db, *args, **kwargs)
        except SQLAlchemyError as exc:
            logger.exception("Policy store call %s failed", getattr(fn, "__name__", fn))
            raise PersistenceFailed(str(exc)) from exc

    async def _call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        return await asyncio.to_thread(self._run, fn, *args, **kwargs)

    async def _cached(self, key: Any, fn: Callable[[Session], Any]) -> Any:
        return await asyncio.to_thread(self.cache.get_or_load, key, lambda: self._run(fn))

    async def _write(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return await self._call(fn, *args, **kwargs)
        finally:
            self.cache.invalidate()

    async def get_snapshot(self, snapshot_id: int) -> Optional[schemas.Snapshot]:
        def load(db: Session) -> Optional[schemas.Snapshot]:
            row = snapshots.get_snapshot(db, snapshot_id)
            return _snapshot_out(row) if row is not None else None

        return await self._call(load)

    async def list_snapshots(self) -> list[schemas.Snapshot]:
        def load(db: Session) -> list[schemas.Snapshot]:
            return [_snapshot_out(row) for row in snapshots.list_snapshots(db)]

        return await self._cached("snapshots", load)

    async def create_snapshot(self, payload: schemas.SnapshotCreate) -> schemas.Snapshot:
        def write(db: Session) -> schemas.Snapshot:
            return _snapshot_out(snapshots.create_snapshot(db, payload))

        return await self._write(write)

    async def update_snapshot_artifact(self, snapshot: schemas.Snapshot) -> schemas.Snapshot:
        def write(db: Session) -> schemas.Snapshot:
            row = snapshots.update_snapshot_artifact(
                db,
                snapshot.id,
                artifact_format=snapshot.artifact_format or "native",
                checksum=snapshot.checksum,
                size_bytes=snapshot.size_bytes,
            )
            return _snapshot_out(row)

        return await self._write(write)

    async def list_rules(
        self, snapshot_id: int | None = None, include_disabled: bool = True
    ) -> list[schemas.Rule]:
        def load(db: Session) -> list[schemas.Rule]:
            rows = snapshots.list_rules(db, snapshot_id, include_disabled=include_disabled)
            return [_rule_out(row) for row in rows]

        return await self._cached(("rules", snapshot_id, include_disabled), load)

    async def copy_subtask_types(self, source_id: int, target_id: int) -> dict[str, str]:
        return await self._write(snapshots.copy_subtask_types, source_id, target_id)

    async def save_rules(
        self,
        snapshot_id: int,
        rules: Iterable[schemas.Rule],
        remap: dict[str, str] | None = None,
    ) -> list[schemas.Rule]:
        """Insert draft rules under ``snapshot_id`` with emissions remapped."""

        def write(db: Session) -> list[schemas.Rule]:
            saved = []
            for rule in rules:
                payload = schemas.RuleCreate(
                    id=rule.id,
                    snapshot_id=snapshot_id,
                    rule_name=rule.rule_name,
                    priority=rule.priority,
                    engine=rule.engine,
                    disabled=rule.disabled,
                    rule_source=rule.rule_source,
                    compiled_rule=rule.compiled_rule,
                    rule_hash=rule.rule_hash,
                    metadata=rule.metadata,
                    parent_rule_id=rule.parent_rule_id,
                    conditions=rule.conditions,
                    emissions=snapshots.remap_emissions(rule.emissions, remap or {}),
                )
                saved.append(snapshots.insert_rule(db, payload))
            return [_rule_out(row) for row in saved]

        return await self._write(write)

    async def start_validation_run(self, snapshot_id: int) -> int:
        def write(db: Session) -> int:
            return validation.start_validation_run(db, snapshot_id).id

        return await self._write(write)

    async def finish_validation_run(self, run_id: int, report: schemas.ValidationReport) -> None:
        def write(db: Session) -> None:
            validation.finish_validation_run(db, run_id, report.success, report)

        await self._write(write)

    async def has_deployments(self) -> bool:
        def load(db: Session) -> bool:
            return bool(deployments.list_deployments(db, active_only=False))

        return await self._call(load)

    async def list_deployments(self, active_only: bool = True) -> list[schemas.DeploymentOut]:
        def load(db: Session) -> list[schemas.DeploymentOut]:
            rows = deployments.list_deployments(db, active_only=active_only)
            return [schemas.DeploymentOut.model_validate(row) for row in rows]

        return await self._cached(("deployments", active_only), load)

    async def active_deployment(
        self, target: str, region: str | None = None
    ) -> Optional[schemas.DeploymentOut]:
        def load(db: Session) -> Optional[schemas.DeploymentOut]:
            row = deployments.get_active_deployment(db, target, region)
            return schemas.DeploymentOut.model_validate(row) if row is not None else None

        return await self._call(load)

    async def deploy(
        self, request: schemas.DeploymentUpsertRequest
    ) -> schemas.DeploymentUpsertResponse:
        return await self._write(deployments.create_or_update_deployment, request)

    async def rollback(
        self,
        snapshot_id: int,
        target: str,
        region: str | None = None,
        activated_by: str | None = None,
        deployment_key: str | None = None,
    ) -> schemas.DeploymentUpsertResponse:
        return await self._write(
            deployments.rollback_deployment_lane,
            snapshot_id,
            target,
            region=region,
            activated_by=activated_by,
            deployment_key=deployment_key,
        )
