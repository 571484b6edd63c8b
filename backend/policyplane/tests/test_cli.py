import json

import pytest
from typer.testing import CliRunner

from policyplane.cli import rollout
from .conftest import TestingSessionLocal, make_snapshot


@pytest.fixture(autouse=True)
def cli_session(monkeypatch):
    monkeypatch.setattr(rollout, "SessionLocal", TestingSessionLocal)


runner = CliRunner()


def test_advance_walks_one_rung_at_a_time(db):
    snapshot = make_snapshot(db)

    first = rollout.advance_lane(snapshot.id, "router")
    second = rollout.advance_lane(snapshot.id, "router", actor="oncall")

    assert first == {"lane": "router:global", "from_percent": 0, "to_percent": 5, "noop": False}
    assert second["from_percent"] == 5
    assert second["to_percent"] == 25

    events = rollout.recent_events("router")
    assert [event["to_percent"] for event in events] == [25, 5]
    assert events[0]["actor"] == "oncall"


def test_rollback_command_prints_summary(db):
    snapshot = make_snapshot(db)
    rollout.advance_lane(snapshot.id, "router", region="eu-west")

    result = runner.invoke(rollout.app, ["rollback", str(snapshot.id), "router", "--region", "eu-west"])

    assert result.exit_code == 0, result.output
    summary = json.loads(result.output)
    assert summary == {"lane": "router:eu-west", "from_percent": 5, "to_percent": 0, "noop": False}


def test_advance_command_rejects_unknown_snapshot():
    result = runner.invoke(rollout.app, ["advance", "4242", "router"])

    assert result.exit_code != 0


def test_ladder_command_lists_rungs():
    result = runner.invoke(rollout.app, ["ladder"])

    assert result.exit_code == 0
    assert result.output.splitlines() == [
        "0 -> 5",
        "5 -> 25",
        "25 -> 50",
        "50 -> 100",
        "100 -> 100",
    ]
