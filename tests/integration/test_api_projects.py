import time
from pathlib import Path
from typing import Any

import yaml
from fastapi.testclient import TestClient

from killall.api.app import create_app
from killall.api.deps import build_services
from killall.core.settings import EnvSettings


def _client(tmp_path: Path) -> TestClient:
    config_path = tmp_path / "killall.yaml"
    config_path.write_text(
        yaml.safe_dump(
            {
                "scheduler": {"poll_interval": 0.02, "retry_attempts": 0, "warning_minutes": []},
                "executor": {"default_shell": "/bin/sh", "retry_backoff": 0},
            }
        ),
        encoding="utf-8",
    )
    env = EnvSettings(config_path=config_path, database_path=tmp_path / "killall.db")
    return TestClient(create_app(build_services(env)))


def _discover(client: TestClient, path: Path, config: dict[str, Any]) -> dict[str, Any]:
    path.mkdir(parents=True, exist_ok=True)
    response = client.post("/api/v1/projects/discover", json={"path": str(path), "config": config})
    assert response.status_code == 201, response.text
    project: dict[str, Any] = response.json()["project"]
    return project


def _wait_for_status(client: TestClient, project_id: str, status: str) -> dict[str, Any]:
    deadline = time.monotonic() + 5
    while time.monotonic() < deadline:
        project: dict[str, Any] = client.get(f"/api/v1/projects/{project_id}").json()["project"]
        if project["status"] == status:
            return project
        time.sleep(0.05)
    raise AssertionError(f"project {project_id} never reached {status}")


def test_project_discovery_and_listing(tmp_path: Path) -> None:
    with _client(tmp_path) as client:
        project = _discover(client, tmp_path / "demo", {"version": 1, "timeout": "1 hour"})
        assert project["status"] == "scheduled"

        listing = client.get("/api/v1/projects")
        assert listing.status_code == 200
        assert [item["id"] for item in listing.json()["items"]] == [project["id"]]

        scheduled = client.get("/api/v1/projects", params={"status": "scheduled"})
        assert len(scheduled.json()["items"]) == 1
        cancelled = client.get("/api/v1/projects", params={"status": "cancelled"})
        assert cancelled.json()["items"] == []

        active = client.get("/api/v1/projects/active")
        assert len(active.json()["items"]) == 1

        fetched = client.get(f"/api/v1/projects/{project['id']}")
        assert fetched.status_code == 200
        assert fetched.json()["project"]["path"] == str(tmp_path / "demo")


def test_discovery_reads_config_file(tmp_path: Path) -> None:
    project_dir = tmp_path / "infra"
    project_dir.mkdir()
    (project_dir / ".killall.yaml").write_text("version: 1\ntimeout: 2h\n", encoding="utf-8")

    with _client(tmp_path) as client:
        response = client.post("/api/v1/projects/discover", json={"path": str(project_dir)})

    assert response.status_code == 201
    assert response.json()["project"]["config"]["timeout"] == "2h"


def test_invalid_config_is_unprocessable(tmp_path: Path) -> None:
    with _client(tmp_path) as client:
        response = client.post(
            "/api/v1/projects/discover",
            json={"path": str(tmp_path / "demo"), "config": {"version": 1, "timeout": "500ms"}},
        )

    assert response.status_code == 422
    detail = response.json()["detail"]
    assert detail["field"] == "timeout"
    assert "1 second" in detail["message"]


def test_oversized_timeout_is_unprocessable(tmp_path: Path) -> None:
    with _client(tmp_path) as client:
        response = client.post(
            "/api/v1/projects/discover",
            json={"path": str(tmp_path / "demo"), "config": {"version": 1, "timeout": "9" * 400 + "d"}},
        )

    assert response.status_code == 422
    assert response.json()["detail"]["field"] == "timeout"


def test_extend_cancel_and_conflicts(tmp_path: Path) -> None:
    with _client(tmp_path) as client:
        project = _discover(client, tmp_path / "demo", {"version": 1, "timeout": "1 hour"})
        project_id = project["id"]

        extended = client.post(f"/api/v1/projects/{project_id}/extend", json={"duration": "30m"})
        assert extended.status_code == 200
        assert extended.json()["project"]["destroy_at"] != project["destroy_at"]

        bad_extend = client.post(f"/api/v1/projects/{project_id}/extend", json={"duration": "soon"})
        assert bad_extend.status_code == 422

        cancel = client.post(f"/api/v1/projects/{project_id}/cancel")
        assert cancel.status_code == 200
        assert cancel.json()["project"]["status"] == "cancelled"

        again = client.post(f"/api/v1/projects/{project_id}/cancel")
        assert again.status_code == 409
        assert again.json()["detail"]["current"] == "cancelled"

        missing = client.post("/api/v1/projects/missing/cancel")
        assert missing.status_code == 404


def test_destroy_runs_command_and_records_execution(tmp_path: Path) -> None:
    with _client(tmp_path) as client:
        project = _discover(
            client,
            tmp_path / "demo",
            {"version": 1, "timeout": "1 hour", "command": "echo tearing-down"},
        )
        project_id = project["id"]

        destroy = client.post(f"/api/v1/projects/{project_id}/destroy")
        assert destroy.status_code == 200

        destroyed = _wait_for_status(client, project_id, "destroyed")
        assert destroyed["last_execution_id"]

        executions = client.get(f"/api/v1/projects/{project_id}/executions").json()["items"]
        assert len(executions) == 1
        assert executions[0]["status"] == "completed"
        assert "tearing-down" in executions[0]["stdout"]

        events = client.get(f"/api/v1/projects/{project_id}/events").json()["items"]
        event_types = [event["event_type"] for event in events]
        assert "project.discovered" in event_types
        assert "execution.started" in event_types
        assert "project.destroyed" in event_types

        filtered = client.get(
            f"/api/v1/projects/{project_id}/events",
            params={"event_type": "project.destroyed"},
        )
        assert len(filtered.json()["items"]) == 1
        invalid = client.get(
            f"/api/v1/projects/{project_id}/events",
            params={"event_type": "nope"},
        )
        assert invalid.status_code == 400

        conflict = client.post(f"/api/v1/projects/{project_id}/extend", json={"duration": "1h"})
        assert conflict.status_code == 409
        assert conflict.json()["detail"]["required"] == ["scheduled"]


def test_running_executions_and_unknown_cancel(tmp_path: Path) -> None:
    with _client(tmp_path) as client:
        running = client.get("/api/v1/executions/running")
        assert running.status_code == 200
        assert running.json()["items"] == []

        missing = client.post("/api/v1/executions/missing/cancel")
        assert missing.status_code == 404
