import pytest

from policyplane import schemas
from policyplane.main import app
from policyplane.routes.common import get_policy_store, get_rule_compiler
from policyplane.services import snapshots
from policyplane.services.errors import CompilationFailed
from policyplane.services.store import DatabasePolicyStore
from .conftest import TestingSessionLocal, make_snapshot


class StubCompiler:
    def __init__(self, error: Exception | None = None):
        self.error = error
        self.calls = []

    async def compile(self, snapshot_id):
        self.calls.append(snapshot_id)
        if self.error:
            raise self.error
        return schemas.CompileResult(compiled_count=1, artifact_hash="a" * 64, size_bytes=512)


@pytest.fixture
def compiler():
    stub = StubCompiler()
    app.dependency_overrides[get_rule_compiler] = lambda: stub
    app.dependency_overrides[get_policy_store] = lambda: DatabasePolicyStore(TestingSessionLocal)
    yield stub
    app.dependency_overrides.pop(get_rule_compiler, None)
    app.dependency_overrides.pop(get_policy_store, None)


def _native_snapshot(client, version="router-v1.0.0"):
    resp = client.post("/api/snapshots", json={"version": version})
    assert resp.status_code == 200, resp.text
    return resp.json()


def test_promote_then_validate_snapshot(client, compiler):
    snapshot = _native_snapshot(client)
    client.post("/api/rules", json={"snapshotId": snapshot["id"], "ruleName": "vip", "priority": 5})

    premature = client.post(f"/api/snapshots/{snapshot['id']}/validate")
    assert premature.status_code == 400
    assert "must be promoted" in premature.json()["detail"]

    promoted = client.post(f"/api/snapshots/{snapshot['id']}/promote")
    assert promoted.status_code == 200, promoted.text
    body = promoted.json()
    assert body["artifactFormat"] == "wasm"
    assert body["checksum"] == "a" * 64
    assert body["sizeBytes"] == 512
    assert compiler.calls == [snapshot["id"]]

    validated = client.post(f"/api/snapshots/{snapshot['id']}/validate")
    assert validated.status_code == 200, validated.text
    run = validated.json()
    assert run["success"] is True
    assert run["report"]["rulesEvaluated"] == 1
    assert client.get(f"/api/snapshots/{snapshot['id']}").json()["stage"] == "VALIDATED"


def test_promote_maps_compiler_failure_to_bad_gateway(client, compiler):
    snapshot = _native_snapshot(client)
    compiler.error = CompilationFailed("compiler unavailable")

    resp = client.post(f"/api/snapshots/{snapshot['id']}/promote")

    assert resp.status_code == 502
    assert client.get(f"/api/snapshots/{snapshot['id']}").json()["artifactFormat"] == "native"


def test_promote_missing_snapshot_is_404(client, compiler):
    assert client.post("/api/snapshots/4040/promote").status_code == 404
    assert compiler.calls == []


def test_pipeline_run_reports_failed_validation(client, compiler, db):
    base = make_snapshot(db, "router-v1.0.0", is_active=True)
    snapshots.create_rule(db, schemas.RuleCreate(snapshot_id=base.id, rule_name="R1", priority=10))
    db.commit()

    resp = client.post(
        "/api/pipeline/runs",
        json={
            "intent": "add R2",
            "baseSnapshotId": base.id,
            "proposal": {
                "newVersion": "router-v1.0.1",
                "changes": [
                    {"action": "CREATE", "ruleData": {"ruleName": "R2", "priority": -1}},
                ],
            },
        },
    )

    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["state"] == "PROMOTED"
    assert body["report"]["failed"] == 1
    assert body["report"]["conflicts"] == ["Rule R2 has invalid priority"]
    assert body["lastError"].startswith("Validation failed")
    assert body["snapshot"]["parentId"] == base.id
    assert body["logs"][0]["agent"] == "EVOLUTION"
    assert body["logs"][-1]["level"] == "ERROR"

    rules = client.get("/api/rules", params={"snapshot_id": body["snapshot"]["id"]}).json()
    assert sorted((rule["ruleName"], rule["priority"]) for rule in rules) == [("R1", 10), ("R2", -1)]


def test_pipeline_run_can_stop_after_build(client, compiler):
    resp = client.post(
        "/api/pipeline/runs",
        json={
            "intent": "seed",
            "through": "BUILT",
            "proposal": {
                "newVersion": "router-v0.0.1",
                "changes": [{"action": "CREATE", "ruleData": {"ruleName": "vip"}}],
            },
        },
    )

    body = resp.json()
    assert body["state"] == "BUILT"
    assert body["lastError"] is None
    assert body["snapshot"]["artifactFormat"] == "native"
    assert body["report"] is None
    assert compiler.calls == []
