"""Operator commands for walking deployment lanes through the canary ladder."""

# purpose: let operators advance, roll back and inspect lanes without the console
# status: pilot
# depends_on: policyplane.database, policyplane.services.deployments

from __future__ import annotations

import json

import typer

from .. import schemas
from ..database import SessionLocal
from ..services import deployments
from ..services.errors import PolicyPlaneError

app = typer.Typer(help="Deployment lane rollout commands")


def advance_lane(
    snapshot_id: int,
    target: str,
    *,
    region: str = deployments.DEFAULT_REGION,
    actor: str = "cli",
) -> dict[str, object]:
    """Move ``target``/``region`` one canary rung for ``snapshot_id``."""

    session = SessionLocal()
    try:
        active = deployments.get_active_deployment(session, target, region)
        current = active.percent if active is not None and active.snapshot_id == snapshot_id else 0
        next_percent = deployments.calculate_canary_step(current)
        result = deployments.create_or_update_deployment(
            session,
            schemas.DeploymentUpsertRequest(
                snapshot_id=snapshot_id,
                target=target,
                region=region,
                percent=next_percent,
                activated_by=actor,
            ),
        )
        session.commit()
        return {
            "lane": deployments.lane_key(target, region),
            "from_percent": current,
            "to_percent": result.current.percent,
            "noop": result.current.noop,
        }
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def rollback_lane(
    snapshot_id: int,
    target: str,
    *,
    region: str = deployments.DEFAULT_REGION,
    actor: str = "cli",
) -> dict[str, object]:
    session = SessionLocal()
    try:
        result = deployments.rollback_deployment_lane(
            session, snapshot_id, target, region=region, activated_by=actor
        )
        session.commit()
        return {
            "lane": deployments.lane_key(target, region),
            "from_percent": result.previous.percent if result.previous else None,
            "to_percent": result.current.percent,
            "noop": result.current.noop,
        }
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def recent_events(
    target: str | None = None,
    region: str | None = None,
    limit: int = 20,
) -> list[dict[str, object]]:
    session = SessionLocal()
    try:
        rows = deployments.list_rollout_events(session, target=target, region=region, limit=limit)
        return [
            schemas.RolloutEventOut.model_validate(row).model_dump(mode="json")
            for row in rows
        ]
    finally:
        session.close()


@app.command("advance")
def advance_command(
    snapshot_id: int,
    target: str,
    region: str = typer.Option(deployments.DEFAULT_REGION, help="Lane region"),
    actor: str = typer.Option("cli", help="Recorded as activated_by"),
) -> None:
    """CLI wrapper for :func:`advance_lane`."""

    try:
        summary = advance_lane(snapshot_id, target, region=region, actor=actor)
    except PolicyPlaneError as exc:
        raise typer.BadParameter(str(exc))
    typer.echo(json.dumps(summary))


@app.command("rollback")
def rollback_command(
    snapshot_id: int,
    target: str,
    region: str = typer.Option(deployments.DEFAULT_REGION, help="Lane region"),
    actor: str = typer.Option("cli", help="Recorded as activated_by"),
) -> None:
    """CLI wrapper for :func:`rollback_lane`."""

    try:
        summary = rollback_lane(snapshot_id, target, region=region, actor=actor)
    except PolicyPlaneError as exc:
        raise typer.BadParameter(str(exc))
    typer.echo(json.dumps(summary))


@app.command("events")
def events_command(
    target: str = typer.Option(None, help="Filter by target"),
    region: str = typer.Option(None, help="Filter by region"),
    limit: int = typer.Option(20, help="Maximum events to print"),
) -> None:
    for event in recent_events(target, region, limit):
        typer.echo(json.dumps(event))


@app.command("ladder")
def ladder_command() -> None:
    """Print each canary rung and the one after it."""

    for percent in deployments.CANARY_LADDER:
        step = deployments.describe_canary_step(percent)
        typer.echo(f"{step.current_percent} -> {step.next_percent}")


if __name__ == "__main__":
    app()
