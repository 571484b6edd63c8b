import pytest

from policyplane import models, schemas
from policyplane.services import validation
from policyplane.services.errors import ValidationPrecondition
from policyplane.services.validation import ValidationGate, empty_emissions_check, ensure_wasm
from .conftest import make_snapshot


def _rule(name: str, priority: int = 10, snapshot_id: int = 1, emissions=None) -> schemas.Rule:
    return schemas.Rule(
        id=f"rule-{name}",
        snapshot_id=snapshot_id,
        rule_name=name,
        priority=priority,
        emissions=emissions or [],
    )


def test_gate_passes_clean_snapshot():
    report = ValidationGate().run(1, [_rule("a"), _rule("b"), _rule("c", snapshot_id=2)])

    assert report.success
    assert report.rules_evaluated == 2
    assert report.passed == 2
    assert report.failed == 0
    assert report.conflicts == []
    assert report.simulation_score == pytest.approx(0.99)


def test_gate_flags_negative_priority():
    report = ValidationGate().run(1, [_rule("ok"), _rule("broken", priority=-5)])

    assert not report.success
    assert report.failed == 1
    assert report.passed == 1
    assert report.conflicts == ["Rule broken has invalid priority"]
    assert report.simulation_score == pytest.approx(0.45)


def test_gate_accepts_custom_checks():
    gate = ValidationGate(checks=[empty_emissions_check])

    report = gate.run(1, [_rule("silent")])

    assert report.conflicts == ["Rule silent emits no subtasks"]


def test_gate_counts_offending_rules_once_across_checks():
    gate = ValidationGate(checks=[validation.negative_priority_check, empty_emissions_check])
    clean = _rule("clean", emissions=[schemas.Emission(subtask_name="notify")])

    report = gate.run(1, [_rule("broken", priority=-1), clean])

    assert report.rules_evaluated == 2
    assert report.failed == 1
    assert report.passed == 1
    assert report.conflicts == [
        "Rule broken has invalid priority",
        "Rule broken emits no subtasks",
    ]


def test_ensure_wasm_rejects_native_snapshots():
    with pytest.raises(ValidationPrecondition):
        ensure_wasm(schemas.Snapshot(id=1, version="v", artifact_format="native"))
    ensure_wasm(schemas.Snapshot(id=1, version="v", artifact_format="wasm"))


def test_validation_run_moves_snapshot_stage(db):
    snapshot = make_snapshot(db)

    run = validation.start_validation_run(db, snapshot.id)
    db.commit()
    assert db.get(models.PolicySnapshot, snapshot.id).stage == "VALIDATING"

    report = ValidationGate().run(snapshot.id, [_rule("a", snapshot_id=snapshot.id)])
    validation.finish_validation_run(db, run.id, report.success, report)
    db.commit()

    refreshed = db.get(models.PolicySnapshot, snapshot.id)
    assert refreshed.stage == "VALIDATED"
    stored = validation.list_validation_runs(db, snapshot.id)[0]
    assert stored.success is True
    assert stored.report["rulesEvaluated"] == 1


def test_failed_validation_returns_snapshot_to_draft(client, db):
    snapshot = make_snapshot(db)

    started = client.post("/api/validation-runs/start", json={"snapshotId": snapshot.id})
    assert started.status_code == 200
    run_id = started.json()["id"]

    finished = client.post(
        "/api/validation-runs/finish",
        json={"id": run_id, "success": False, "report": {"failed": 1, "conflicts": ["x"]}},
    )
    assert finished.status_code == 200
    assert finished.json()["success"] is False

    listing = client.get("/api/validation-runs", params={"snapshot_id": snapshot.id}).json()
    assert [item["id"] for item in listing] == [run_id]
    db.expire_all()
    assert db.get(models.PolicySnapshot, snapshot.id).stage == "DRAFT"


def test_finish_unknown_run_is_404(client):
    resp = client.post("/api/validation-runs/finish", json={"id": 999, "success": True})
    assert resp.status_code == 404
