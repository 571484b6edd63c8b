"""Policy snapshots, rules, validation runs, deployment lanes and rollout events."""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261019_01_policy_snapshots"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "pkg_snapshots",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("version", sa.String(), nullable=False, unique=True),
        sa.Column("env", sa.String(), nullable=False, server_default="prod"),
        sa.Column("stage", sa.String(), nullable=False, server_default="DRAFT"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("artifact_format", sa.String(), nullable=True),
        sa.Column("entrypoint", sa.String(), nullable=False, server_default="data.pkg"),
        sa.Column("schema_version", sa.String(), nullable=False, server_default="1"),
        sa.Column("checksum", sa.String(length=64), nullable=False, server_default="0" * 64),
        sa.Column("size_bytes", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("signature", sa.String(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("parent_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.ForeignKeyConstraint(["parent_id"], ["pkg_snapshots.id"], ondelete="SET NULL"),
        sa.CheckConstraint("env IN ('prod', 'staging', 'dev')", name="ck_pkg_snapshot_env"),
        sa.CheckConstraint(
            "stage IN ('DRAFT', 'VALIDATING', 'VALIDATED', 'CANARY', 'PROD', 'ARCHIVED')",
            name="ck_pkg_snapshot_stage",
        ),
        sa.CheckConstraint(
            "artifact_format IS NULL OR artifact_format IN ('native', 'wasm')",
            name="ck_pkg_snapshot_artifact_format",
        ),
    )
    op.create_index(
        "uq_pkg_snapshot_active_env",
        "pkg_snapshots",
        ["env"],
        unique=True,
        postgresql_where=sa.text("is_active IS TRUE"),
    )

    op.create_table(
        "pkg_subtask_types",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("snapshot_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("default_params", sa.JSON(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.ForeignKeyConstraint(["snapshot_id"], ["pkg_snapshots.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("snapshot_id", "name", name="uq_pkg_subtask_type_name"),
    )
    op.create_index("ix_pkg_subtask_types_snapshot_id", "pkg_subtask_types", ["snapshot_id"])

    op.create_table(
        "pkg_policy_rules",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("snapshot_id", sa.Integer(), nullable=False),
        sa.Column("rule_name", sa.String(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="100"),
        sa.Column("engine", sa.String(), nullable=False, server_default="wasm"),
        sa.Column("disabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("rule_source", sa.Text(), nullable=True),
        sa.Column("compiled_rule", sa.Text(), nullable=True),
        sa.Column("rule_hash", sa.String(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("parent_rule_id", sa.String(), nullable=True),
        sa.ForeignKeyConstraint(["snapshot_id"], ["pkg_snapshots.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("snapshot_id", "rule_name", name="uq_pkg_rule_name"),
        sa.CheckConstraint("engine IN ('wasm', 'native')", name="ck_pkg_rule_engine"),
    )
    op.create_index("ix_pkg_policy_rules_snapshot_id", "pkg_policy_rules", ["snapshot_id"])

    op.create_table(
        "pkg_rule_conditions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("rule_id", sa.String(), nullable=False),
        sa.Column("condition_type", sa.String(), nullable=False),
        sa.Column("condition_key", sa.String(), nullable=False),
        sa.Column("operator", sa.String(), nullable=False),
        sa.Column("value", sa.String(), nullable=True),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["rule_id"], ["pkg_policy_rules.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("rule_id", "position", name="uq_pkg_rule_condition_position"),
    )
    op.create_index("ix_pkg_rule_conditions_rule_id", "pkg_rule_conditions", ["rule_id"])

    op.create_table(
        "pkg_rule_emissions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("rule_id", sa.String(), nullable=False),
        sa.Column("subtask_type_id", sa.String(), nullable=False),
        sa.Column("relationship_type", sa.String(), nullable=False, server_default="EMITS"),
        sa.Column("params", sa.JSON(), nullable=True),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["rule_id"], ["pkg_policy_rules.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["subtask_type_id"], ["pkg_subtask_types.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("rule_id", "position", name="uq_pkg_rule_emission_position"),
    )
    op.create_index("ix_pkg_rule_emissions_rule_id", "pkg_rule_emissions", ["rule_id"])

    op.create_table(
        "pkg_validation_runs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("snapshot_id", sa.Integer(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=True),
        sa.Column("report", sa.JSON(), nullable=True),
        sa.ForeignKeyConstraint(["snapshot_id"], ["pkg_snapshots.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_pkg_validation_runs_snapshot_id", "pkg_validation_runs", ["snapshot_id"])

    op.create_table(
        "pkg_deployments",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("snapshot_id", sa.Integer(), nullable=False),
        sa.Column("target", sa.String(), nullable=False),
        sa.Column("region", sa.String(), nullable=False, server_default="global"),
        sa.Column("percent", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("activated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("activated_by", sa.String(), nullable=False, server_default="system"),
        sa.Column("deployment_key", sa.String(), nullable=False, server_default="default"),
        sa.Column("is_rollback", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("validation_run_id", sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(["snapshot_id"], ["pkg_snapshots.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["validation_run_id"], ["pkg_validation_runs.id"], ondelete="SET NULL"),
        sa.CheckConstraint("percent >= 0 AND percent <= 100", name="ck_pkg_deployment_percent"),
    )
    op.create_index("ix_pkg_deployments_snapshot_id", "pkg_deployments", ["snapshot_id"])
    op.create_index("ix_pkg_deployment_lane", "pkg_deployments", ["target", "region"])
    op.create_index(
        "uq_pkg_deployment_active_lane",
        "pkg_deployments",
        ["target", "region"],
        unique=True,
        postgresql_where=sa.text("is_active IS TRUE"),
    )

    op.create_table(
        "pkg_rollout_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("deployment_id", sa.Integer(), nullable=True),
        sa.Column("snapshot_id", sa.Integer(), nullable=False),
        sa.Column("target", sa.String(), nullable=False),
        sa.Column("region", sa.String(), nullable=False),
        sa.Column("from_percent", sa.Integer(), nullable=True),
        sa.Column("to_percent", sa.Integer(), nullable=False),
        sa.Column("is_rollback", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("actor", sa.String(), nullable=False, server_default="system"),
        sa.Column("validation_run_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.ForeignKeyConstraint(["deployment_id"], ["pkg_deployments.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_pkg_rollout_events_lane", "pkg_rollout_events", ["target", "region", "created_at"])


def downgrade() -> None:
    op.drop_index("ix_pkg_rollout_events_lane", table_name="pkg_rollout_events")
    op.drop_table("pkg_rollout_events")
    op.drop_index("uq_pkg_deployment_active_lane", table_name="pkg_deployments")
    op.drop_index("ix_pkg_deployment_lane", table_name="pkg_deployments")
    op.drop_index("ix_pkg_deployments_snapshot_id", table_name="pkg_deployments")
    op.drop_table("pkg_deployments")
    op.drop_index("ix_pkg_validation_runs_snapshot_id", table_name="pkg_validation_runs")
    op.drop_table("pkg_validation_runs")
    op.drop_index("ix_pkg_rule_emissions_rule_id", table_name="pkg_rule_emissions")
    op.drop_table("pkg_rule_emissions")
    op.drop_index("ix_pkg_rule_conditions_rule_id", table_name="pkg_rule_conditions")
    op.drop_table("pkg_rule_conditions")
    op.drop_index("ix_pkg_policy_rules_snapshot_id", table_name="pkg_policy_rules")
    op.drop_table("pkg_policy_rules")
    op.drop_index("ix_pkg_subtask_types_snapshot_id", table_name="pkg_subtask_types")
    op.drop_table("pkg_subtask_types")
    op.drop_index("uq_pkg_snapshot_active_env", table_name="pkg_snapshots")
    op.drop_table("pkg_snapshots")
