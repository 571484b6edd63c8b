"""Pydantic schemas for snapshot, rule, validation and deployment contracts."""

# purpose: share request/response contracts between services, routes and the pipeline
# status: pilot
# depends_on: policyplane.models

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

PkgEnv = Literal["prod", "staging", "dev"]
PkgEngine = Literal["wasm", "native"]
ArtifactFormat = Literal["native", "wasm"]
SnapshotStage = Literal["DRAFT", "VALIDATING", "VALIDATED", "CANARY", "PROD", "ARCHIVED"]
ConditionType = Literal["TAG", "SIGNAL", "VALUE", "FACT"]
Operator = Literal["=", "!=", ">=", "<=", ">", "<", "EXISTS", "IN", "MATCHES"]
Relation = Literal["EMITS", "ORDERS", "GATE"]
ChangeAction = Literal["CREATE", "MODIFY", "DELETE"]

ZERO_CHECKSUM = "0" * 64


class WireModel(BaseModel):
    # purpose: camelCase JSON on the wire, snake_case attributes in Python
    # status: pilot
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class Snapshot(WireModel):
    # purpose: persisted or draft snapshot; id 0 marks an unsaved draft
    # status: pilot
    id: int = 0
    version: str
    env: PkgEnv = "prod"
    stage: SnapshotStage = "DRAFT"
    is_active: bool = False
    artifact_format: Optional[ArtifactFormat] = None
    checksum: str = ZERO_CHECKSUM
    size_bytes: int = 0
    created_at: Optional[datetime] = None
    notes: Optional[str] = None
    parent_id: Optional[int] = None

    @property
    def is_persisted(self) -> bool:
        return self.id > 0


class SnapshotCreate(WireModel):
    version: str = Field(min_length=1)
    env: PkgEnv = "prod"
    stage: SnapshotStage = "DRAFT"
    entrypoint: str = "data.pkg"
    schema_version: str = "1"
    checksum: str = ZERO_CHECKSUM
    size_bytes: int = Field(default=0, ge=0)
    signature: Optional[str] = None
    notes: Optional[str] = None
    is_active: bool = False
    artifact_format: Optional[ArtifactFormat] = "native"
    parent_id: Optional[int] = None


class SnapshotCloneRequest(WireModel):
    version: str = Field(min_length=1)
    env: Optional[PkgEnv] = None
    notes: Optional[str] = None
    is_active: bool = False


class SubtaskTypeCreate(WireModel):
    snapshot_id: int
    name: str = Field(min_length=1)
    default_params: dict[str, Any] = Field(default_factory=dict)


class SubtaskTypeOut(WireModel):
    id: str
    snapshot_id: int
    name: str
    default_params: dict[str, Any] = Field(default_factory=dict)


class Condition(WireModel):
    condition_type: ConditionType
    condition_key: str
    operator: Operator
    value: Optional[str] = None


class Emission(WireModel):
    subtask_type_id: Optional[str] = None
    subtask_name: Optional[str] = None
    relationship_type: Relation = "EMITS"
    params: Optional[dict[str, Any]] = None


class Rule(WireModel):
    # purpose: rule with ordered conditions and emissions, owned by exactly one snapshot
    # status: pilot
    id: str
    snapshot_id: int
    rule_name: str
    priority: int = 100
    engine: PkgEngine = "wasm"
    disabled: bool = False
    rule_source: Optional[str] = None
    compiled_rule: Optional[str] = None
    rule_hash: Optional[str] = None
    metadata: Optional[dict[str, Any]] = Field(
        default=None,
        validation_alias=AliasChoices("rule_metadata", "metadata"),
    )
    parent_rule_id: Optional[str] = None
    conditions: list[Condition] = Field(default_factory=list)
    emissions: list[Emission] = Field(default_factory=list)


class RuleCreate(WireModel):
    id: Optional[str] = None
    snapshot_id: int
    rule_name: str = Field(min_length=1)
    priority: int = 100
    engine: PkgEngine = "wasm"
    disabled: bool = False
    rule_source: Optional[str] = None
    compiled_rule: Optional[str] = None
    rule_hash: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None
    parent_rule_id: Optional[str] = None
    conditions: list[Condition] = Field(default_factory=list)
    emissions: list[Emission] = Field(default_factory=list)


class RuleChange(WireModel):
    action: ChangeAction
    rule_id: Optional[str] = None
    rule_data: Optional[dict[str, Any]] = None
    rationale: str = ""


class Proposal(WireModel):
    # purpose: structured change-set produced for one evolution run
    # status: pilot
    id: str
    base_snapshot_id: int = 0
    new_version: str
    reason: str = ""
    changes: list[RuleChange] = Field(default_factory=list)
    status: Literal["PENDING", "APPROVED", "REJECTED", "APPLIED"] = "PENDING"
    generated_at: Optional[datetime] = None


class CompileResult(WireModel):
    compiled_count: int = 0
    artifact_hash: str
    size_bytes: Optional[int] = None


class ValidationReport(WireModel):
    # purpose: pass/fail summary of one validation attempt
    # status: pilot
    type: Literal["simulation", "validation", "canary", "regression"] = "validation"
    engine: PkgEngine = "wasm"
    rules_evaluated: int = 0
    passed: int = 0
    failed: int = 0
    conflicts: list[str] = Field(default_factory=list)
    simulation_score: float = 0.0

    @property
    def success(self) -> bool:
        return self.failed == 0


class ValidationRunStart(WireModel):
    snapshot_id: int = Field(ge=1)


class ValidationRunFinish(WireModel):
    id: int = Field(ge=1)
    success: bool
    report: Optional[ValidationReport] = None


class ValidationRunOut(WireModel):
    id: int
    snapshot_id: int
    started_at: datetime
    finished_at: Optional[datetime] = None
    success: Optional[bool] = None
    report: Optional[dict[str, Any]] = None


class DeploymentUpsertRequest(WireModel):
    # purpose: wire shape of a lane upsert; normalisation happens in the ledger
    # status: pilot
    snapshot_id: int
    target: str
    region: Optional[str] = "global"
    percent: float = 0
    is_active: bool = True
    activated_by: Optional[str] = "system"
    deployment_key: Optional[str] = "default"
    is_rollback: bool = False
    validation_run_id: Optional[int] = None
    enforce_monotonic_increase: bool = True


class DeploymentRollbackRequest(WireModel):
    snapshot_id: int
    target: str
    region: Optional[str] = "global"
    activated_by: Optional[str] = "system"
    deployment_key: Optional[str] = "default"
    validation_run_id: Optional[int] = None


class DeploymentOut(WireModel):
    id: int
    snapshot_id: int
    target: str
    region: str
    percent: int
    is_active: bool
    activated_at: datetime
    activated_by: str
    deployment_key: str
    is_rollback: bool = False
    validation_run_id: Optional[int] = None
    snapshot_version: Optional[str] = None


class DeploymentCurrent(DeploymentOut):
    noop: bool = False


class DeploymentUpsertResponse(WireModel):
    current: DeploymentCurrent
    previous: Optional[DeploymentOut] = None


class ActiveDeployment(WireModel):
    target: str
    region: str
    snapshot: str
    snapshot_id: int
    percent: int
    activated_at: datetime
    activated_by: str


class RolloutEventOut(WireModel):
    id: int
    target: str
    region: str
    snapshot_id: int
    deployment_id: Optional[int] = None
    from_percent: Optional[int] = None
    to_percent: int
    is_rollback: bool
    actor: str
    validation_run_id: Optional[int] = None
    created_at: datetime


class CanaryStepOut(WireModel):
    current_percent: int
    next_percent: int
    at_ceiling: bool

    @field_validator("current_percent", "next_percent")
    @classmethod
    def _within_bounds(cls, value: int) -> int:
        if value < 0 or value > 100:
            raise ValueError("percent must be within [0, 100]")
        return value


class ProposalDraft(WireModel):
    new_version: str = Field(min_length=1)
    reason: str = ""
    changes: list[RuleChange] = Field(default_factory=list)


class PipelineRunRequest(WireModel):
    # purpose: operator-submitted change-set driven through the evolution pipeline
    # status: pilot
    intent: str = Field(min_length=1)
    base_snapshot_id: Optional[int] = None
    proposal: ProposalDraft
    through: Literal["BUILT", "PROMOTED", "VALIDATED"] = "VALIDATED"
    strict: bool = False


class AgentLogOut(WireModel):
    agent: str
    level: str
    message: str
    run_id: str
    timestamp: datetime


class PipelineRunOut(WireModel):
    run_id: str
    state: str
    snapshot: Optional[Snapshot] = None
    report: Optional[ValidationReport] = None
    validation_run_id: Optional[int] = None
    last_error: Optional[str] = None
    logs: list[AgentLogOut] = Field(default_factory=list)
