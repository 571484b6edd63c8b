import uuid
import sqlalchemy as sa
from sqlalchemy import (
    Column,
    String,
    Boolean,
    DateTime,
    ForeignKey,
    JSON,
    Integer,
    Text,
)
from sqlalchemy.orm import relationship
from datetime import datetime, timezone

from .database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _rule_id() -> str:
    return f"rule-{uuid.uuid4().hex[:12]}"


class PolicySnapshot(Base):
    __tablename__ = "pkg_snapshots"

    # purpose: immutable versioned bundle of policy rules plus compiled artifact metadata
    # status: pilot
    # depends_on: pkg_snapshots (lineage)

    id = Column(Integer, primary_key=True, autoincrement=True)
    version = Column(String, unique=True, nullable=False)
    env = Column(String, default="prod", nullable=False)
    stage = Column(String, default="DRAFT", nullable=False)
    is_active = Column(Boolean, default=False, nullable=False)
    artifact_format = Column(String, nullable=True)
    entrypoint = Column(String, default="data.pkg", nullable=False)
    schema_version = Column(String, default="1", nullable=False)
    checksum = Column(String(64), default="0" * 64, nullable=False)
    size_bytes = Column(Integer, default=0, nullable=False)
    signature = Column(String, nullable=True)
    notes = Column(Text, nullable=True)
    parent_id = Column(
        Integer,
        ForeignKey("pkg_snapshots.id", ondelete="SET NULL"),
        nullable=True,
    )
    created_at = Column(DateTime, default=_utcnow, nullable=False)

    parent = relationship("PolicySnapshot", remote_side=[id])
    rules = relationship(
        "PolicyRule",
        back_populates="snapshot",
        cascade="all, delete-orphan",
        order_by="PolicyRule.priority.desc()",
    )
    subtask_types = relationship(
        "SubtaskType",
        back_populates="snapshot",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        sa.CheckConstraint("env IN ('prod', 'staging', 'dev')", name="ck_pkg_snapshot_env"),
        sa.CheckConstraint(
            "stage IN ('DRAFT', 'VALIDATING', 'VALIDATED', 'CANARY', 'PROD', 'ARCHIVED')",
            name="ck_pkg_snapshot_stage",
        ),
        sa.CheckConstraint(
            "artifact_format IS NULL OR artifact_format IN ('native', 'wasm')",
            name="ck_pkg_snapshot_artifact_format",
        ),
        sa.Index(
            "uq_pkg_snapshot_active_env",
            "env",
            unique=True,
            sqlite_where=sa.text("is_active = 1"),
            postgresql_where=sa.text("is_active IS TRUE"),
        ),
    )


class SubtaskType(Base):
    __tablename__ = "pkg_subtask_types"

    # purpose: name the subtasks a snapshot's rules may emit
    # status: pilot
    # depends_on: pkg_snapshots

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    snapshot_id = Column(
        Integer,
        ForeignKey("pkg_snapshots.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name = Column(String, nullable=False)
    default_params = Column(JSON, default=dict, nullable=False)

    snapshot = relationship("PolicySnapshot", back_populates="subtask_types")

    __table_args__ = (
        sa.UniqueConstraint("snapshot_id", "name", name="uq_pkg_subtask_type_name"),
    )


class PolicyRule(Base):
    __tablename__ = "pkg_policy_rules"

    # purpose: arena of policy rules keyed by (snapshot_id, id); a snapshot's rules are a filtered view
    # status: pilot
    # depends_on: pkg_snapshots

    id = Column(String, primary_key=True, default=_rule_id)
    snapshot_id = Column(
        Integer,
        ForeignKey("pkg_snapshots.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    rule_name = Column(String, nullable=False)
    priority = Column(Integer, default=100, nullable=False)
    engine = Column(String, default="wasm", nullable=False)
    disabled = Column(Boolean, default=False, nullable=False)
    rule_source = Column(Text, nullable=True)
    compiled_rule = Column(Text, nullable=True)
    rule_hash = Column(String, nullable=True)
    rule_metadata = Column("metadata", JSON, nullable=True)
    parent_rule_id = Column(String, nullable=True)

    snapshot = relationship("PolicySnapshot", back_populates="rules")
    conditions = relationship(
        "RuleCondition",
        back_populates="rule",
        cascade="all, delete-orphan",
        order_by="RuleCondition.position",
    )
    emissions = relationship(
        "RuleEmission",
        back_populates="rule",
        cascade="all, delete-orphan",
        order_by="RuleEmission.position",
    )

    __table_args__ = (
        sa.UniqueConstraint("snapshot_id", "rule_name", name="uq_pkg_rule_name"),
        sa.CheckConstraint("engine IN ('wasm', 'native')", name="ck_pkg_rule_engine"),
    )


class RuleCondition(Base):
    __tablename__ = "pkg_rule_conditions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    rule_id = Column(
        String,
        ForeignKey("pkg_policy_rules.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    condition_type = Column(String, nullable=False)
    condition_key = Column(String, nullable=False)
    operator = Column(String, nullable=False)
    value = Column(String, nullable=True)
    position = Column(Integer, nullable=False)

    rule = relationship("PolicyRule", back_populates="conditions")

    __table_args__ = (
        sa.UniqueConstraint("rule_id", "position", name="uq_pkg_rule_condition_position"),
    )


class RuleEmission(Base):
    __tablename__ = "pkg_rule_emissions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    rule_id = Column(
        String,
        ForeignKey("pkg_policy_rules.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    subtask_type_id = Column(
        String,
        ForeignKey("pkg_subtask_types.id", ondelete="CASCADE"),
        nullable=False,
    )
    relationship_type = Column(String, default="EMITS", nullable=False)
    params = Column(JSON, nullable=True)
    position = Column(Integer, nullable=False)

    rule = relationship("PolicyRule", back_populates="emissions")
    subtask_type = relationship("SubtaskType")

    __table_args__ = (
        sa.UniqueConstraint("rule_id", "position", name="uq_pkg_rule_emission_position"),
    )

    @property
    def subtask_name(self) -> str | None:
        return self.subtask_type.name if self.subtask_type is not None else None


class ValidationRun(Base):
    __tablename__ = "pkg_validation_runs"

    # purpose: record each validation attempt and its report for a snapshot
    # status: pilot
    # depends_on: pkg_snapshots

    id = Column(Integer, primary_key=True, autoincrement=True)
    snapshot_id = Column(
        Integer,
        ForeignKey("pkg_snapshots.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    started_at = Column(DateTime, default=_utcnow, nullable=False)
    finished_at = Column(DateTime, nullable=True)
    success = Column(Boolean, nullable=True)
    report = Column(JSON, nullable=True)

    snapshot = relationship("PolicySnapshot")


class Deployment(Base):
    __tablename__ = "pkg_deployments"

    # purpose: per-lane deployment rows; at most one active row per (target, region)
    # status: pilot
    # depends_on: pkg_snapshots, pkg_validation_runs

    id = Column(Integer, primary_key=True, autoincrement=True)
    snapshot_id = Column(
        Integer,
        ForeignKey("pkg_snapshots.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    target = Column(String, nullable=False)
    region = Column(String, default="global", nullable=False)
    percent = Column(Integer, default=0, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    activated_at = Column(DateTime, default=_utcnow, nullable=False)
    activated_by = Column(String, default="system", nullable=False)
    deployment_key = Column(String, default="default", nullable=False)
    is_rollback = Column(Boolean, default=False, nullable=False)
    validation_run_id = Column(
        Integer,
        ForeignKey("pkg_validation_runs.id", ondelete="SET NULL"),
        nullable=True,
    )

    snapshot = relationship("PolicySnapshot")

    @property
    def snapshot_version(self) -> str | None:
        return self.snapshot.version if self.snapshot is not None else None

    __table_args__ = (
        sa.CheckConstraint("percent >= 0 AND percent <= 100", name="ck_pkg_deployment_percent"),
        sa.Index(
            "uq_pkg_deployment_active_lane",
            "target",
            "region",
            unique=True,
            sqlite_where=sa.text("is_active = 1"),
            postgresql_where=sa.text("is_active IS TRUE"),
        ),
        sa.Index("ix_pkg_deployment_lane", "target", "region"),
    )


class RolloutEvent(Base):
    __tablename__ = "pkg_rollout_events"

    # purpose: append-only audit of accepted percent changes on a lane
    # status: pilot
    # depends_on: pkg_deployments

    id = Column(Integer, primary_key=True, autoincrement=True)
    deployment_id = Column(
        Integer,
        ForeignKey("pkg_deployments.id", ondelete="SET NULL"),
        nullable=True,
    )
    snapshot_id = Column(Integer, nullable=False)
    target = Column(String, nullable=False)
    region = Column(String, nullable=False)
    from_percent = Column(Integer, nullable=True)
    to_percent = Column(Integer, nullable=False)
    is_rollback = Column(Boolean, default=False, nullable=False)
    actor = Column(String, default="system", nullable=False)
    validation_run_id = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=_utcnow, nullable=False)

    deployment = relationship("Deployment")
