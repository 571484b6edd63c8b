"""Evolution pipeline: propose, build, promote, validate, then walk the canary ladder."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Literal, Optional

from .. import schemas
from .deployments import calculate_canary_step
from .errors import InvalidState, PersistenceFailed, ValidationPrecondition
from .promotion import ArtifactPromoter, RuleCompiler
from .proposals import ProposalProducer, propose_evolution
from .rule_diff import build_snapshot_from_proposal
from .store import DatabasePolicyStore
from .validation import ValidationGate, ensure_wasm

# purpose: drive one snapshot from intent to full rollout, one awaited step at a time
# inputs: DatabasePolicyStore, ProposalProducer, RuleCompiler, ValidationGate
# outputs: pipeline state, run log, deployments written through the store
# status: pilot

logger = logging.getLogger(__name__)

AgentName = Literal["EVOLUTION", "VALIDATION", "DEPLOYMENT"]
LogLevel = Literal["INFO", "WARN", "ERROR", "SUCCESS"]

_LOG_LEVELS = {
    "INFO": logging.INFO,
    "SUCCESS": logging.INFO,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
}


class PipelineState(str, Enum):
    IDLE = "IDLE"
    PROPOSED = "PROPOSED"
    BUILT = "BUILT"
    PROMOTED = "PROMOTED"
    VALIDATED = "VALIDATED"
    DEPLOYING = "DEPLOYING"
    COMPLETE = "COMPLETE"
    ROLLED_BACK = "ROLLED_BACK"


@dataclass
class AgentLog:
    agent: AgentName
    level: LogLevel
    message: str
    run_id: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def _new_run_id() -> str:
    return uuid.uuid4().hex[:12]


class PipelineOrchestrator:
    """Stateful controller for one evolution run at a time.

    ``evolve``, ``initialize`` and ``reset`` mint a new run token. Every step
    captures the token before awaiting a collaborator and drops its result when
    the token has moved on in the meantime. Steps never raise: failures land in
    ``last_error`` and the run log, the state is left where it was and the step
    returns ``False``.
    """

    def __init__(
        self,
        store: DatabasePolicyStore,
        producer: ProposalProducer,
        compiler: RuleCompiler,
        *,
        gate: ValidationGate | None = None,
        target: str = "router",
        region: str = "global",
        actor: str = "pipeline",
        persist_rules_on_build: bool = True,
        strict_diff: bool = False,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.producer = producer
        self.promoter = ArtifactPromoter(compiler)
        self.gate = gate or ValidationGate()
        self.target = target
        self.region = region
        self.actor = actor
        self.persist_rules_on_build = persist_rules_on_build
        self.strict_diff = strict_diff
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.logs: list[AgentLog] = []
        self.run_id = _new_run_id()
        self._clear()

    def _clear(self) -> None:
        self.state = PipelineState.IDLE
        self.proposal: Optional[schemas.Proposal] = None
        self.base_rules: list[schemas.Rule] = []
        self.snapshot: Optional[schemas.Snapshot] = None
        self.rules: list[schemas.Rule] = []
        self.report: Optional[schemas.ValidationReport] = None
        self.validation_run_id: Optional[int] = None
        self.selected = False
        self.current_percent = 0
        self.last_error: Optional[str] = None

    def log(self, agent: AgentName, level: LogLevel, message: str, run_id: str | None = None) -> AgentLog:
        entry = AgentLog(
            agent=agent,
            level=level,
            message=message,
            run_id=run_id or self.run_id,
            timestamp=self._clock(),
        )
        self.logs.insert(0, entry)
        logger.log(_LOG_LEVELS[level], "[%s] %s: %s", entry.run_id, agent, message)
        return entry

    def _fail(self, agent: AgentName, run: str, exc: Exception) -> bool:
        if run != self.run_id:
            return self._discard(agent, run)
        self.last_error = str(exc) or exc.__class__.__name__
        self.log(agent, "ERROR", self.last_error, run)
        return False

    def _discard(self, agent: AgentName, run: str) -> bool:
        self.log(agent, "WARN", f"Discarding stale result from run {run}", run)
        return False

    def _blocked(self, agent: AgentName, message: str) -> bool:
        return self._fail(agent, self.run_id, InvalidState(message))

    async def evolve(self, intent: str, base_snapshot_id: int | None = None) -> bool:
        """Start a new run and ask the producer for a proposal against a base snapshot."""

        self.run_id = run = _new_run_id()
        self._clear()
        self.log("EVOLUTION", "INFO", f"Evolving policy: {intent}", run)
        try:
            base: Optional[schemas.Snapshot] = None
            base_rules: list[schemas.Rule] = []
            if base_snapshot_id:
                base = await self.store.get_snapshot(base_snapshot_id)
                if base is None:
                    raise InvalidState(f"base snapshot {base_snapshot_id} not found")
                base_rules = await self.store.list_rules(base.id)
            proposal = await propose_evolution(self.producer, intent, base, base_rules)
        except Exception as exc:
            return self._fail("EVOLUTION", run, exc)
        if run != self.run_id:
            return self._discard("EVOLUTION", run)

        self.proposal = proposal
        self.base_rules = base_rules
        self.state = PipelineState.PROPOSED
        self.log(
            "EVOLUTION",
            "SUCCESS",
            f"Proposal {proposal.new_version} with {len(proposal.changes)} changes",
            run,
        )
        return True

    async def initialize(self, intent: str) -> bool:
        """Bootstrap a first snapshot with no base."""

        return await self.evolve(intent, None)

    async def build(self) -> bool:
        run = self.run_id
        if self.state != PipelineState.PROPOSED or self.proposal is None:
            return self._blocked("EVOLUTION", "build requires a pending proposal")
        proposal = self.proposal
        try:
            draft, rules = build_snapshot_from_proposal(
                proposal, self.base_rules, strict=self.strict_diff, now=self._clock()
            )
            snapshot = await self.store.create_snapshot(
                schemas.SnapshotCreate(
                    version=draft.version,
                    env=draft.env,
                    stage=draft.stage,
                    checksum=draft.checksum,
                    size_bytes=draft.size_bytes,
                    notes=draft.notes,
                    artifact_format="native",
                    parent_id=draft.parent_id,
                )
            )
            if snapshot.id < 1:
                raise PersistenceFailed(f"snapshot {draft.version} was stored without an id")
            if run != self.run_id:
                return self._discard("EVOLUTION", run)
            if self.persist_rules_on_build:
                remap: dict[str, str] = {}
                if proposal.base_snapshot_id:
                    remap = await self.store.copy_subtask_types(proposal.base_snapshot_id, snapshot.id)
                rules = await self.store.save_rules(snapshot.id, rules, remap)
            else:
                rules = [rule.model_copy(update={"snapshot_id": snapshot.id}) for rule in rules]
        except Exception as exc:
            return self._fail("EVOLUTION", run, exc)
        if run != self.run_id:
            return self._discard("EVOLUTION", run)

        self.snapshot = snapshot
        self.rules = rules
        self.proposal = proposal.model_copy(update={"status": "APPLIED"})
        self.state = PipelineState.BUILT
        self.log(
            "EVOLUTION",
            "SUCCESS",
            f"Built snapshot {snapshot.version} ({len(rules)} rules, {snapshot.size_bytes} bytes)",
            run,
        )
        return True

    async def promote(self) -> bool:
        run = self.run_id
        snapshot = self.snapshot
        if snapshot is None or not snapshot.is_persisted:
            return self._blocked("VALIDATION", "promote requires a persisted snapshot")
        if snapshot.artifact_format == "wasm":
            return self._blocked("VALIDATION", f"snapshot {snapshot.version} is already wasm")
        try:
            promoted = await self.promoter.promote(snapshot, self.rules)
            if run != self.run_id:
                return self._discard("VALIDATION", run)
            promoted = await self.store.update_snapshot_artifact(promoted)
        except Exception as exc:
            return self._fail("VALIDATION", run, exc)
        if run != self.run_id:
            return self._discard("VALIDATION", run)

        self.snapshot = promoted
        self.state = PipelineState.PROMOTED
        self.log("VALIDATION", "SUCCESS", f"Promoted {promoted.version} to wasm ({promoted.checksum[:12]})", run)
        return True

    async def validate(self) -> bool:
        """Run the gate; returns whether the snapshot may be deployed."""

        run = self.run_id
        snapshot = self.snapshot
        if snapshot is None:
            return self._blocked("VALIDATION", "validate requires a snapshot")
        try:
            ensure_wasm(snapshot)
            run_row_id = await self.store.start_validation_run(snapshot.id)
            report = self.gate.run(snapshot.id, self.rules)
            await self.store.finish_validation_run(run_row_id, report)
        except Exception as exc:
            return self._fail("VALIDATION", run, exc)
        if run != self.run_id:
            return self._discard("VALIDATION", run)

        self.report = report
        self.validation_run_id = run_row_id
        if not report.success:
            self.last_error = "Validation failed: " + "; ".join(report.conflicts)
            self.log("VALIDATION", "ERROR", self.last_error, run)
            return False
        self.state = PipelineState.VALIDATED
        self.log(
            "VALIDATION",
            "SUCCESS",
            f"Validation passed: {report.passed}/{report.rules_evaluated} rules",
            run,
        )
        return True

    async def select_snapshot(self, snapshot_id: int) -> bool:
        """Adopt an existing snapshot for deployment, bypassing build and validation."""

        run = self.run_id
        try:
            snapshot = await self.store.get_snapshot(snapshot_id)
            if snapshot is None:
                raise InvalidState(f"snapshot {snapshot_id} not found")
            rules = await self.store.list_rules(snapshot.id)
            if snapshot.artifact_format != "wasm":
                if await self.store.has_deployments():
                    raise ValidationPrecondition(
                        f"snapshot {snapshot.version} must be promoted to wasm before deployment"
                    )
                self.log("DEPLOYMENT", "WARN", f"Bootstrapping: auto-promoting {snapshot.version}", run)
                snapshot = await self.store.update_snapshot_artifact(
                    await self.promoter.promote(snapshot, rules)
                )
            active = await self.store.active_deployment(self.target, self.region)
        except Exception as exc:
            return self._fail("DEPLOYMENT", run, exc)
        if run != self.run_id:
            return self._discard("DEPLOYMENT", run)

        self.snapshot = snapshot
        self.rules = rules
        self.selected = True
        self.report = None
        self.current_percent = (
            active.percent if active is not None and active.snapshot_id == snapshot.id else 0
        )
        self.state = PipelineState.PROMOTED
        self.log("DEPLOYMENT", "INFO", f"Selected snapshot {snapshot.version}", run)
        return True

    async def deploy_step(self) -> bool:
        """Advance the lane one rung of the canary ladder."""

        run = self.run_id
        snapshot = self.snapshot
        if snapshot is None:
            return self._blocked("DEPLOYMENT", "deploy requires a snapshot")
        validated = self.report is not None and self.report.success
        if not (validated or self.selected):
            return self._blocked("DEPLOYMENT", "deploy requires a successful validation")
        if snapshot.artifact_format != "wasm":
            return self._fail(
                "DEPLOYMENT", run, ValidationPrecondition("deploy requires a wasm artifact")
            )
        try:
            active = await self.store.active_deployment(self.target, self.region)
            current = active.percent if active is not None and active.snapshot_id == snapshot.id else 0
            if current >= 100:
                if run != self.run_id:
                    return self._discard("DEPLOYMENT", run)
                self.current_percent = current
                self.state = PipelineState.COMPLETE
                self.log("DEPLOYMENT", "WARN", f"Canary at ceiling for {snapshot.version}", run)
                return False
            next_percent = calculate_canary_step(current)
            response = await self.store.deploy(
                schemas.DeploymentUpsertRequest(
                    snapshot_id=snapshot.id,
                    target=self.target,
                    region=self.region,
                    percent=next_percent,
                    is_active=True,
                    activated_by=self.actor,
                    deployment_key=f"pipeline-{run}",
                    validation_run_id=self.validation_run_id,
                )
            )
        except Exception as exc:
            return self._fail("DEPLOYMENT", run, exc)
        if run != self.run_id:
            return self._discard("DEPLOYMENT", run)

        self.current_percent = response.current.percent
        self.state = PipelineState.COMPLETE if self.current_percent >= 100 else PipelineState.DEPLOYING
        if response.current.noop:
            self.log("DEPLOYMENT", "WARN", f"Percent unchanged at {self.current_percent}%", run)
        else:
            self.log(
                "DEPLOYMENT",
                "SUCCESS",
                f"{snapshot.version} at {current}% → {self.current_percent}% on {self.target}",
                run,
            )
        return True

    async def rollback(self) -> bool:
        run = self.run_id
        snapshot = self.snapshot
        if snapshot is None:
            return self._blocked("DEPLOYMENT", "rollback requires a snapshot")
        try:
            await self.store.rollback(
                snapshot.id,
                self.target,
                region=self.region,
                activated_by=self.actor,
                deployment_key=f"pipeline-{run}",
            )
        except Exception as exc:
            return self._fail("DEPLOYMENT", run, exc)
        if run != self.run_id:
            return self._discard("DEPLOYMENT", run)

        self.current_percent = 0
        self.state = PipelineState.ROLLED_BACK
        self.log("DEPLOYMENT", "WARN", f"Rolled back {snapshot.version} on {self.target}", run)
        return True

    async def reset(self) -> bool:
        self.run_id = _new_run_id()
        self._clear()
        self.log("EVOLUTION", "INFO", "Pipeline reset")
        return True
