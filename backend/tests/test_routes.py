"""Tests for api/routes.py and api/websocket.py -- HTTP and WebSocket handlers.

Uses FastAPI TestClient (backed by httpx) against a real Orchestrator whose
timers and verification runs are scripted, so no test commands are executed.
"""

from collections.abc import Generator
from typing import Any

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from api import router, websocket_router
from conftest import ManualScheduler, ScriptedExecutor
from orchestrator import Orchestrator

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


def _plan_payload(name: str = "Add user login") -> dict[str, Any]:
    return {
        "plan": {
            "name": name,
            "tasks": [
                {"id": "schema", "priority": 1, "estimated_minutes": 20},
                {"id": "api", "dependencies": ["schema"], "priority": 1},
                {"id": "ui", "dependencies": ["schema"], "priority": 2},
            ],
        }
    }


@pytest.fixture()
def client(orchestrator: Orchestrator) -> Generator[TestClient, None, None]:
    """Create a FastAPI TestClient bound to the test orchestrator."""
    app = FastAPI()
    app.include_router(router)
    app.include_router(websocket_router)
    app.state.orchestrator = orchestrator
    with TestClient(app) as c:
        yield c


def _create(client: TestClient, name: str = "Add user login") -> str:
    resp = client.post("/api/sessions", json=_plan_payload(name))
    assert resp.status_code == 201
    return resp.json()["session_id"]


def _create_running(client: TestClient) -> str:
    session_id = _create(client)
    assert client.post(f"/api/sessions/{session_id}/start").status_code == 200
    return session_id


# =========================================================================
# Health Check
# =========================================================================


class TestHealthCheck:
    """GET /health."""

    def test_health_returns_200(self, client: TestClient) -> None:
        resp = client.get("/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "healthy"
        assert "timestamp" in data
        assert data["version"] == "0.1.0"
        assert data["active_sessions"] == 0
        assert data["pending_verifications"] == 0

    def test_health_counts_active_sessions(self, client: TestClient) -> None:
        _create(client)
        assert client.get("/health").json()["active_sessions"] == 1

    def test_missing_orchestrator(self) -> None:
        app = FastAPI()
        app.include_router(router)
        with TestClient(app, raise_server_exceptions=False) as c:
            assert c.get("/health").status_code == 500


# =========================================================================
# Create Session
# =========================================================================


class TestCreateSession:
    """POST /api/sessions."""

    def test_create_session_success(self, client: TestClient) -> None:
        resp = client.post("/api/sessions", json=_plan_payload())
        assert resp.status_code == 201
        data = resp.json()
        assert data["session_id"].startswith("exec_")
        assert data["websocket_url"] == f"/ws/{data['session_id']}"
        assert data["state"] == "idle"

    def test_create_session_cycle_rejected(self, client: TestClient) -> None:
        resp = client.post(
            "/api/sessions",
            json={
                "plan": {
                    "name": "cyclic",
                    "tasks": [
                        {"id": "x", "dependencies": ["y"]},
                        {"id": "y", "dependencies": ["x"]},
                    ],
                }
            },
        )
        assert resp.status_code == 422
        detail = resp.json()["detail"]
        assert detail["message"] == "Invalid task graph"
        assert "circular-dependency" in [e["kind"] for e in detail["errors"]]

    def test_create_session_missing_plan(self, client: TestClient) -> None:
        resp = client.post("/api/sessions", json={})
        assert resp.status_code == 422  # Validation error

    def test_create_session_empty_name(self, client: TestClient) -> None:
        resp = client.post("/api/sessions", json={"plan": {"name": "", "tasks": []}})
        assert resp.status_code == 422

    def test_task_ids_in_use(self, client: TestClient) -> None:
        _create(client)
        resp = client.post("/api/sessions", json=_plan_payload("again"))
        assert resp.status_code == 409
        assert "already belongs" in resp.json()["detail"]


# =========================================================================
# Read Sessions
# =========================================================================


class TestReadSessions:
    """GET /api/sessions and per-session reads."""

    def test_list_sessions(self, client: TestClient) -> None:
        session_id = _create(client)
        resp = client.get("/api/sessions")
        assert resp.status_code == 200
        data = resp.json()
        assert len(data) == 1
        assert data[0]["session_id"] == session_id
        assert data[0]["total_tasks"] == 3
        assert data[0]["progress_percent"] == 0

    def test_get_session_detail(self, client: TestClient) -> None:
        session_id = _create_running(client)
        data = client.get(f"/api/sessions/{session_id}").json()
        assert data["plan_name"] == "Add user login"
        assert data["state"] == "running"
        assert data["execution_order"] == ["schema", "api", "ui"]
        assert data["task_statuses"] == {"schema": "pending", "api": "pending", "ui": "pending"}
        assert [e["state"] for e in data["state_log"]] == ["idle", "preparing", "running"]
        assert data["started_at"] is not None
        assert data["ended_at"] is None

    def test_get_session_not_found(self, client: TestClient) -> None:
        resp = client.get("/api/sessions/exec_000000000000")
        assert resp.status_code == 404
        assert "not found" in resp.json()["detail"]

    def test_progress(self, client: TestClient) -> None:
        session_id = _create(client)
        data = client.get(f"/api/sessions/{session_id}/progress").json()
        assert data["total_tasks"] == 3
        assert data["pending_tasks"] == 3
        assert data["progress_percent"] == 0

    def test_available_tasks_only_when_running(self, client: TestClient) -> None:
        session_id = _create(client)
        assert client.get(f"/api/sessions/{session_id}/available-tasks").json() == []
        client.post(f"/api/sessions/{session_id}/start")
        tasks = client.get(f"/api/sessions/{session_id}/available-tasks").json()
        assert [t["id"] for t in tasks] == ["schema"]

    def test_stats(self, client: TestClient) -> None:
        session_id = _create(client)
        data = client.get(f"/api/sessions/{session_id}/stats").json()
        assert data["pending"] == 3
        assert data["total"] == 3
        assert client.get("/api/stats").json()["total"] == 3


# =========================================================================
# Session Control
# =========================================================================


class TestSessionControl:
    """POST /api/sessions/{id}/start|pause|resume|cancel|retry."""

    def test_start_pause_resume(self, client: TestClient) -> None:
        session_id = _create(client)
        assert client.post(f"/api/sessions/{session_id}/start").json()["state"] == "running"
        assert client.post(f"/api/sessions/{session_id}/pause").json()["state"] == "paused"
        assert client.post(f"/api/sessions/{session_id}/resume").json()["state"] == "running"

    def test_illegal_transition_conflict(self, client: TestClient) -> None:
        session_id = _create(client)
        resp = client.post(f"/api/sessions/{session_id}/pause")
        assert resp.status_code == 409

    def test_retry_requires_failed(self, client: TestClient) -> None:
        session_id = _create_running(client)
        assert client.post(f"/api/sessions/{session_id}/retry").status_code == 409

    def test_cancel(self, client: TestClient) -> None:
        session_id = _create_running(client)
        resp = client.post(f"/api/sessions/{session_id}/cancel")
        assert resp.status_code == 200
        assert resp.json()["state"] == "cancelled"
        assert client.post(f"/api/sessions/{session_id}/start").status_code == 409

    def test_control_unknown_session(self, client: TestClient) -> None:
        assert client.post("/api/sessions/exec_missing/start").status_code == 404


# =========================================================================
# Worker Flow
# =========================================================================


class TestWorkerFlow:
    """Claiming tasks, reporting work and verification control."""

    def test_next_task(self, client: TestClient) -> None:
        session_id = _create_running(client)
        resp = client.post(f"/api/sessions/{session_id}/next-task")
        assert resp.status_code == 200
        data = resp.json()
        assert data["id"] == "schema"
        assert data["status"] == "running"
        assert data["context_files"] == []

        assert client.post(f"/api/sessions/{session_id}/next-task").json() is None

    def test_next_task_idle_session(self, client: TestClient) -> None:
        session_id = _create(client)
        assert client.post(f"/api/sessions/{session_id}/next-task").json() is None

    def test_done_queues_verification(
        self, client: TestClient, scheduler: ManualScheduler
    ) -> None:
        session_id = _create_running(client)
        client.post(f"/api/sessions/{session_id}/next-task")

        resp = client.post(
            "/api/tasks/schema/done",
            json={"modified_files": ["db/schema.sql"], "change_summary": "tables"},
        )
        assert resp.status_code == 202
        data = resp.json()
        assert data["task_id"] == "schema"
        assert data["timer_armed"] is True
        assert data["retry_count"] == 0
        assert scheduler.pending == 1
        assert client.get("/health").json()["pending_verifications"] == 1

    def test_files_changed_resets_timer(
        self, client: TestClient, scheduler: ManualScheduler
    ) -> None:
        session_id = _create_running(client)
        client.post(f"/api/sessions/{session_id}/next-task")
        client.post("/api/tasks/schema/files-changed", json={"modified_files": ["a.sql"]})
        resp = client.post(
            "/api/tasks/schema/files-changed", json={"modified_files": ["b.sql"]}
        )
        assert resp.status_code == 202
        assert scheduler.pending == 1

    def test_verify_now_completes_task(
        self, client: TestClient, executor: ScriptedExecutor
    ) -> None:
        session_id = _create_running(client)
        client.post(f"/api/sessions/{session_id}/next-task")
        client.post("/api/tasks/schema/done", json={"modified_files": ["db/schema.sql"]})

        resp = client.post("/api/tasks/schema/verify")
        assert resp.status_code == 200
        assert resp.json() == {"task_id": "schema", "outcome": "passed", "status": "completed"}
        assert executor.calls == 1

        tasks = client.get(f"/api/sessions/{session_id}/available-tasks").json()
        assert [t["id"] for t in tasks] == ["api", "ui"]
        assert client.get("/api/tasks/schema/verification").status_code == 404

    def test_verify_now_failure_blocks_task(
        self, client: TestClient, executor: ScriptedExecutor
    ) -> None:
        executor.outcomes = [False]
        session_id = _create_running(client)
        client.post(f"/api/sessions/{session_id}/next-task")
        client.post("/api/tasks/schema/done", json={"modified_files": ["db/schema.sql"]})

        data = client.post("/api/tasks/schema/verify").json()
        assert data["outcome"] == "needs_revision"
        assert data["status"] == "blocked"

        verification = client.get("/api/tasks/schema/verification").json()
        assert verification["retry_count"] == 1
        assert verification["last_result"]["passed"] is False

    def test_verify_without_pending(self, client: TestClient) -> None:
        _create(client)
        assert client.post("/api/tasks/schema/verify").status_code == 404

    def test_cancel_verification(self, client: TestClient, scheduler: ManualScheduler) -> None:
        session_id = _create_running(client)
        client.post(f"/api/sessions/{session_id}/next-task")
        client.post("/api/tasks/schema/done", json={"modified_files": []})

        resp = client.delete("/api/tasks/schema/verification")
        assert resp.json() == {"task_id": "schema", "accepted": True, "status": "running"}
        assert scheduler.pending == 0
        assert client.delete("/api/tasks/schema/verification").json()["accepted"] is False

    def test_fail_task_stalls_session(self, client: TestClient) -> None:
        session_id = _create_running(client)
        client.post(f"/api/sessions/{session_id}/next-task")

        resp = client.post("/api/tasks/schema/fail", json={"reason": "migration broke"})
        assert resp.status_code == 200
        assert resp.json() == {"task_id": "schema", "accepted": True, "status": "failed"}
        assert client.get(f"/api/sessions/{session_id}").json()["state"] == "failed"

        resp = client.post(f"/api/sessions/{session_id}/retry")
        assert resp.json()["state"] == "running"
        assert client.post(f"/api/sessions/{session_id}/next-task").json()["id"] == "schema"

    def test_fail_requires_reason(self, client: TestClient) -> None:
        _create(client)
        assert client.post("/api/tasks/schema/fail", json={"reason": ""}).status_code == 422

    def test_unknown_task(self, client: TestClient) -> None:
        resp = client.post("/api/tasks/ghost/done", json={"modified_files": []})
        assert resp.status_code == 404
        assert client.post("/api/tasks/ghost/fail", json={"reason": "x"}).status_code == 404


# =========================================================================
# WebSocket
# =========================================================================


class TestWebSocket:
    """/ws/{channel}."""

    def test_replays_history_and_answers_ping(self, client: TestClient) -> None:
        session_id = _create(client)
        with client.websocket_connect(f"/ws/{session_id}") as ws:
            event = ws.receive_json()
            assert event["type"] == "session_created"
            assert event["channel"] == session_id
            assert event["data"]["task_count"] == 3

            ws.send_json({"type": "ping", "timestamp": 42})
            assert ws.receive_json() == {"type": "pong", "timestamp": 42}

    def test_cancel_command(self, client: TestClient, orchestrator: Orchestrator) -> None:
        session_id = _create(client)
        with client.websocket_connect(f"/ws/{session_id}") as ws:
            assert ws.receive_json()["type"] == "session_created"
            ws.send_json({"type": "cancel"})
            event = ws.receive_json()
            assert event["type"] == "session_state_changed"
            assert event["data"]["state"] == "cancelled"
        assert orchestrator.get_session(session_id).state.value == "cancelled"


# =========================================================================
# Application
# =========================================================================


class TestApplication:
    """main.app with its lifespan."""

    def test_lifespan_builds_orchestrator(self) -> None:
        from main import app

        with TestClient(app) as c:
            assert c.get("/").json()["message"] == "Taskgate API"
            assert c.get("/health").json()["status"] == "healthy"
            assert isinstance(app.state.orchestrator, Orchestrator)
            assert not app.state.cleanup_task.done()
        assert app.state.cleanup_task.done()
