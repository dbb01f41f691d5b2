"""HTTP API over a running container."""
from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from contentops.config import ContainerConfig, default_mapping
from contentops.main import create_app
from support import KeptStorage, ScriptedAI, make_container


@pytest.fixture
def client():
    data = default_mapping()
    data.update(
        retry={"max_attempts": 2, "backoff_ms_base": 1, "backoff_cap_ms": 5},
        supervisor={"interval_ms": 60_000, "degraded_timeout_ms": 60_000},
        messaging={"heartbeat_ms": 60_000},
    )
    container = make_container(ContainerConfig.from_mapping(data), storage=KeptStorage(), ai=ScriptedAI())
    with TestClient(create_app(container)) as client:
        yield client


def test_health_and_agent_listing(client: TestClient) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "OK"
    assert body["agents"] == {"creation": "RUNNING", "optimisation": "RUNNING"}
    assert body["capabilities"]["ai"] == {"ok": True, "circuit": "CLOSED"}

    agents = client.get("/agents").json()
    assert [agent["name"] for agent in agents] == ["creation", "optimisation"]
    optimisation = client.get("/agents/optimisation").json()
    assert optimisation["modules"] == [{"name": "seo_optimizer", "state": "RUNNING", "last_error": None}]
    assert optimisation["counters"]["commands_handled"] == 0
    assert client.get("/agents/ghost").status_code == 404


def test_command_round_trip(client: TestClient) -> None:
    response = client.post(
        "/agents/creation/commands",
        json={
            "type": "create_content",
            "payload": {"title": "Launch checklist", "body": "Plan early.", "keywords": ["launch"]},
            "correlation_id": "campaign-7",
            "wait": True,
            "timeout_ms": 2_000,
        },
    )
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "completed"
    assert body["correlation_id"] == "campaign-7"
    assert body["result"]["content_id"]

    seo = client.post(
        "/agents/optimisation/commands",
        json={"type": "generate_seo", "payload": {"content_id": body["result"]["content_id"]}, "wait": True},
    )
    assert seo.status_code == 200
    assert seo.json()["result"]["count"] > 0


def test_fire_and_forget_command(client: TestClient) -> None:
    response = client.post("/agents/creation/commands", json={"type": "create_content", "payload": {"title": "Hi"}})
    assert response.status_code == 202
    assert response.json()["status"] == "accepted"


def test_command_errors_map_to_http_status(client: TestClient) -> None:
    missing = client.post(
        "/agents/optimisation/commands",
        json={"type": "generate_seo", "payload": {"content_id": "nope"}, "wait": True},
    )
    assert missing.status_code == 404
    assert missing.json()["detail"]["code"] == "NotFound"

    invalid = client.post(
        "/agents/optimisation/commands",
        json={"type": "generate_seo", "payload": {}, "wait": True},
    )
    assert invalid.status_code == 422
    assert invalid.json()["detail"]["code"] == "ValidationError"

    unknown = client.post("/agents/ghost/commands", json={"type": "generate_seo"})
    assert unknown.status_code == 404


def test_dead_letters_can_be_listed_and_replayed(client: TestClient) -> None:
    sent = client.post(
        "/agents/optimisation/commands",
        json={"type": "generate_seo", "payload": {"content_id": "nope"}, "wait": True},
    )
    assert sent.status_code == 404

    [record] = client.get("/agents/optimisation/dead-letters").json()
    assert record["failure_reason"] == "NotFound"
    assert record["kind"] == "command"
    assert record["attempt"] == 1

    replay = client.post(f"/agents/optimisation/dead-letters/{record['envelope_id']}/replay")
    assert replay.status_code == 202
    assert replay.json() == {"envelope_id": record["envelope_id"], "status": "replayed"}
    assert client.post("/agents/optimisation/dead-letters/unknown/replay").status_code == 404


def test_restart_agent(client: TestClient) -> None:
    response = client.post("/agents/creation/restart")
    assert response.status_code == 200
    assert response.json()["state"] == "RUNNING"
    assert client.post("/agents/ghost/restart").status_code == 404
