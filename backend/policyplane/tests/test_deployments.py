import pytest

from policyplane import models, schemas
from policyplane.services import deployments
from policyplane.services.errors import (
    InvalidState,
    LaneConflict,
    PercentDecreaseBlocked,
    SnapshotNotFound,
)
from .conftest import make_snapshot


def _upsert(db, snapshot_id, percent, **overrides):
    values = {"snapshot_id": snapshot_id, "target": "router", "percent": percent}
    values.update(overrides)
    result = deployments.create_or_update_deployment(db, schemas.DeploymentUpsertRequest(**values))
    db.commit()
    return result


def _lane_rows(db, target="router", region="global"):
    return (
        db.query(models.Deployment)
        .filter(models.Deployment.target == target, models.Deployment.region == region)
        .order_by(models.Deployment.id)
        .all()
    )


@pytest.mark.parametrize(
    "current, expected",
    [(0, 5), (5, 25), (25, 50), (50, 100), (100, 100), (10, 100)],
)
def test_canary_ladder(current, expected):
    assert deployments.calculate_canary_step(current) == expected


def test_normalisation_helpers():
    assert deployments.clamp_percent(140) == 100
    assert deployments.clamp_percent(-3) == 0
    assert deployments.clamp_percent(24.5) == 25
    assert deployments.normalize_region("  ") == "global"
    assert deployments.lane_key("router", None) == "router:global"
    assert deployments.lane_key("router", "eu-west") == "router:eu-west"


def test_ladder_writes_one_event_per_step(db):
    snapshot = make_snapshot(db)

    for percent in (5, 25, 50):
        _upsert(db, snapshot.id, percent)

    events = deployments.list_rollout_events(db, target="router")
    chain = [(event.from_percent, event.to_percent) for event in reversed(events)]
    assert chain == [(None, 5), (5, 25), (25, 50)]
    active = [row for row in _lane_rows(db) if row.is_active]
    assert len(active) == 1
    assert active[0].percent == 50

    db.expire_all()
    refreshed = db.get(models.PolicySnapshot, snapshot.id)
    assert refreshed.is_active is True
    assert refreshed.stage == "CANARY"


def test_full_rollout_marks_snapshot_prod(db):
    snapshot = make_snapshot(db)

    result = _upsert(db, snapshot.id, 100)

    assert result.current.percent == 100
    assert result.previous is None
    db.expire_all()
    assert db.get(models.PolicySnapshot, snapshot.id).stage == "PROD"


def test_same_percent_is_noop(db):
    snapshot = make_snapshot(db)
    _upsert(db, snapshot.id, 25)

    result = _upsert(db, snapshot.id, 25, deployment_key="another-key")

    assert result.current.noop is True
    assert len(_lane_rows(db)) == 1
    assert len(deployments.list_rollout_events(db)) == 1


def test_replayed_request_is_reported_as_noop(db):
    snapshot = make_snapshot(db)
    _upsert(db, snapshot.id, 5, deployment_key="run-1")
    deployments.rollback_deployment_lane(db, snapshot.id, "router", deployment_key="run-1")
    db.commit()

    replay = deployments.rollback_deployment_lane(db, snapshot.id, "router", deployment_key="run-1")
    db.commit()

    assert replay.current.noop is True
    assert len(deployments.list_rollout_events(db)) == 2


def test_percent_decrease_requires_rollback(db):
    snapshot = make_snapshot(db)
    _upsert(db, snapshot.id, 50)

    with pytest.raises(PercentDecreaseBlocked, match="50% → 25%"):
        _upsert(db, snapshot.id, 25)
    db.rollback()

    result = _upsert(db, snapshot.id, 25, enforce_monotonic_increase=False)
    assert result.current.percent == 25
    assert result.previous.percent == 50


def test_new_snapshot_replaces_lane_and_previous_snapshot(db):
    first = make_snapshot(db, "router-v1.0.0")
    second = make_snapshot(db, "router-v1.0.1")
    _upsert(db, first.id, 100)

    result = _upsert(db, second.id, 5)

    assert result.previous.snapshot_id == first.id
    assert result.current.snapshot_id == second.id
    assert result.current.snapshot_version == "router-v1.0.1"
    active = [row for row in _lane_rows(db) if row.is_active]
    assert [row.snapshot_id for row in active] == [second.id]
    db.expire_all()
    assert db.get(models.PolicySnapshot, first.id).is_active is False
    assert db.get(models.PolicySnapshot, second.id).is_active is True


def test_rollback_zeroes_lane_and_retires_snapshot(db):
    snapshot = make_snapshot(db)
    _upsert(db, snapshot.id, 25)

    result = deployments.rollback_deployment_lane(db, snapshot.id, "router", activated_by="oncall")
    db.commit()

    assert result.current.percent == 0
    assert result.current.is_active is False
    assert result.current.is_rollback is True
    assert result.previous.percent == 25
    assert deployments.list_deployments(db, active_only=True) == []
    latest = deployments.list_rollout_events(db)[0]
    assert (latest.from_percent, latest.to_percent, latest.is_rollback, latest.actor) == (
        25,
        0,
        True,
        "oncall",
    )
    db.expire_all()
    assert db.get(models.PolicySnapshot, snapshot.id).is_active is False


def test_rollback_must_name_the_lane_snapshot(db):
    running = make_snapshot(db, "router-v1.0.0")
    other = make_snapshot(db, "router-v1.0.1")
    _upsert(db, running.id, 50)

    with pytest.raises(InvalidState, match="runs snapshot"):
        deployments.rollback_deployment_lane(db, other.id, "router")
    db.rollback()

    [active] = [row for row in _lane_rows(db) if row.is_active]
    assert (active.snapshot_id, active.percent) == (running.id, 50)
    assert [event.snapshot_id for event in deployments.list_rollout_events(db)] == [running.id]


def test_displaced_snapshot_in_another_env_is_retired(db):
    staging = make_snapshot(db, "router-v1.0.0", env="staging")
    prod = make_snapshot(db, "router-v1.0.1")
    _upsert(db, staging.id, 25)

    _upsert(db, prod.id, 5)

    db.expire_all()
    assert db.get(models.PolicySnapshot, staging.id).is_active is False
    assert db.get(models.PolicySnapshot, prod.id).is_active is True


def test_racing_writer_surfaces_as_lane_conflict(db, monkeypatch):
    snapshot = make_snapshot(db)
    original_flush = db.flush
    raced = []

    def racing_flush(*args, **kwargs):
        if not raced:
            raced.append(True)
            db.execute(
                models.Deployment.__table__.insert().values(
                    snapshot_id=snapshot.id,
                    target="router",
                    region="global",
                    percent=5,
                    is_active=True,
                    activated_by="racer",
                    deployment_key="race",
                )
            )
        return original_flush(*args, **kwargs)

    monkeypatch.setattr(db, "flush", racing_flush)

    with pytest.raises(LaneConflict, match="router:global"):
        deployments.create_or_update_deployment(
            db,
            schemas.DeploymentUpsertRequest(snapshot_id=snapshot.id, target="router", percent=25),
        )
    db.rollback()
    monkeypatch.undo()

    assert _lane_rows(db) == []
    assert deployments.list_rollout_events(db) == []


def test_lanes_are_independent_per_region(db):
    snapshot = make_snapshot(db)
    _upsert(db, snapshot.id, 5, region="eu-west")
    _upsert(db, snapshot.id, 25, region="us-east")

    active = deployments.list_active_deployments(db)

    assert [(item.region, item.percent, item.snapshot) for item in active] == [
        ("eu-west", 5, "router-v1.0.0"),
        ("us-east", 25, "router-v1.0.0"),
    ]


def test_zero_percent_forces_inactive(db):
    snapshot = make_snapshot(db)

    result = _upsert(db, snapshot.id, 0, is_active=True, activated_by="  ", deployment_key="")

    assert result.current.is_active is False
    assert result.current.activated_by == "system"
    assert result.current.deployment_key == "default"


def test_rejects_missing_target_and_snapshot(db):
    snapshot = make_snapshot(db)
    with pytest.raises(InvalidState):
        _upsert(db, snapshot.id, 5, target="  ")
    with pytest.raises(InvalidState):
        _upsert(db, 0, 5)
    with pytest.raises(SnapshotNotFound):
        _upsert(db, 424242, 5)


def test_deployment_api_round_trip(client, db):
    snapshot = make_snapshot(db)

    resp = client.post(
        "/api/deployments",
        json={"snapshotId": snapshot.id, "target": "router", "percent": 5, "activatedBy": "alice"},
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["current"]["percent"] == 5
    assert body["current"]["isActive"] is True
    assert body["current"]["noop"] is False
    assert body["current"]["snapshotVersion"] == "router-v1.0.0"

    listing = client.get("/api/deployments").json()
    assert [item["percent"] for item in listing] == [5]

    active = client.get("/api/deployments/active").json()
    assert active[0]["snapshot"] == "router-v1.0.0"

    blocked = client.post(
        "/api/deployments",
        json={"snapshotId": snapshot.id, "target": "router", "percent": 0, "isActive": True},
    )
    assert blocked.status_code == 409

    rolled = client.post(
        "/api/deployments/rollback",
        json={"snapshotId": snapshot.id, "target": "router"},
    )
    assert rolled.status_code == 200
    assert rolled.json()["previous"]["percent"] == 5

    events = client.get("/api/deployments/events", params={"target": "router"}).json()
    assert [(e["fromPercent"], e["toPercent"], e["isRollback"]) for e in events] == [
        (5, 0, True),
        (None, 5, False),
    ]
    assert client.get("/api/deployments", params={"active_only": "false"}).status_code == 200


def test_deployment_api_error_mapping(client):
    missing = client.post("/api/deployments", json={"snapshotId": 999, "target": "router", "percent": 5})
    assert missing.status_code == 404

    invalid = client.post("/api/deployments", json={"snapshotId": 0, "target": "router", "percent": 5})
    assert invalid.status_code == 400


def test_canary_step_endpoint(client):
    resp = client.get("/api/deployments/canary-step", params={"current_percent": 25})
    assert resp.json() == {"currentPercent": 25, "nextPercent": 50, "atCeiling": False}
