"""HTTP API for starting and controlling executions."""

import pytest
from fastapi.testclient import TestClient

from migration_engine.api.main import create_app
from migration_engine.api.service import ExecutionService

from .conftest import PROJECT_ID


@pytest.fixture
def service(shop, adapter_factory, report_sink):
    return ExecutionService(shop, report_sink=report_sink, adapter_factory=adapter_factory)


@pytest.fixture
def client(service):
    return TestClient(create_app(service))


def start(client, **payload):
    payload.setdefault("project_id", PROJECT_ID)
    payload.setdefault("retry_delay_seconds", 0)
    return client.post("/api/executions", json=payload)


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


def test_start_and_poll_execution(client, report_sink):
    response = start(client, batch_size=250)

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "started"

    status = client.get(f"/api/executions/{body['execution_id']}")
    assert status.status_code == 200
    execution = status.json()
    assert execution["status"] == "completed"
    assert execution["progress"] == 100.0
    assert execution["total_records"] == 1025
    assert [stage["stage_id"] for stage in execution["stages"]] == [
        "extract",
        "transform",
        "load-dimensions",
        "load-facts",
        "validate",
        "report",
    ]
    assert report_sink.get(body["execution_id"]) is not None


def test_list_executions(client):
    first = start(client).json()["execution_id"]
    second = start(client).json()["execution_id"]

    response = client.get("/api/executions")
    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 2
    assert {e["id"] for e in body["executions"]} == {first, second}


def test_unknown_execution_returns_404(client):
    assert client.get("/api/executions/missing").status_code == 404
    assert client.post("/api/executions/missing/pause").status_code == 404


def test_unknown_action_returns_400(client):
    execution_id = start(client).json()["execution_id"]
    response = client.post(f"/api/executions/{execution_id}/restart")
    assert response.status_code == 400


def test_actions_on_finished_execution_are_harmless(client):
    execution_id = start(client).json()["execution_id"]

    for action in ("pause", "resume", "cancel", "cancel"):
        response = client.post(f"/api/executions/{execution_id}/{action}")
        assert response.status_code == 200
        assert response.json() == {"execution_id": execution_id, "action": action, "status": "completed"}


def test_invalid_config_rejected(client):
    assert start(client, project_id="").status_code == 400
    assert start(client, batch_size=0).status_code == 422
    assert start(client, error_handling="retry-forever").status_code == 422


def test_duplicate_execution_id_conflicts(client):
    assert start(client, execution_id="run-1").status_code == 200
    assert start(client, execution_id="run-1").status_code == 409


def test_unknown_project_fails_in_background(client):
    execution_id = start(client, project_id="missing").json()["execution_id"]

    execution = client.get(f"/api/executions/{execution_id}").json()
    assert execution["status"] == "failed"
    assert execution["stages"] == []
    assert "Unknown project" in execution["errors"][0]["error"]
