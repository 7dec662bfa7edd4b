"""
Tests for the FastAPI control surface.

Runs the app with TestClient (lifespan included) against a temporary
workspace, with python http.server processes standing in for ttyd.
"""

import asyncio
import os
import sys
import shutil
import tempfile

import pytest
from fastapi.testclient import TestClient

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from agent_manager import __version__
from agent_manager.dashboard.events import ConnectionManager, EventType
from agent_manager.dashboard.main import create_app
from agent_manager.ports import SessionRegistry
from agent_manager.sessions import SessionManager
from agent_manager.workspace import get_flat_mirror_path
from fixtures import (
    create_agent_descriptor,
    create_flat_mirror,
    find_free_port_block,
    http_server_command,
    missing_binary_command,
    read_json,
    silent_command,
)


def make_manager(port_range=3, command_factory=http_server_command, **overrides):
    options = dict(command_factory=command_factory, startup_delay=0.1, poll_interval=0.1, max_attempts=50)
    options.update(overrides)
    return SessionManager(SessionRegistry(find_free_port_block(port_range), port_range), **options)


@pytest.fixture
def workspace():
    temp_dir = tempfile.mkdtemp(prefix="test_api_")
    yield temp_dir
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def client(workspace):
    app = create_app(workspace_root=workspace, session_manager=make_manager())
    with TestClient(app) as client:
        yield client


def seed_developer(client):
    response = client.post("/api/update-agent-tasks/developer", json=[
        {"description": "A", "status": "pending"},
        {"description": "B", "status": "pending"},
    ])
    assert response.status_code == 200
    return response.json()


class TestHealth:

    def test_health(self, client, workspace):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["version"] == __version__
        assert data["sessions"] == 0
        assert data["workspace_root"] == os.path.abspath(workspace)

    def test_root(self, client):
        data = client.get("/").json()
        assert data["websocket"] == "/ws"
        assert data["health"] == "/health"

    def test_health_counts_feed_connections(self, client):
        assert client.get("/health").json()["connections"] == 0
        with client.websocket_connect("/ws") as websocket:
            websocket.receive_json()
            assert client.get("/health").json()["connections"] == 1



class TestTerminalRoutes:

    def test_start_list_and_stop(self, client):
        started = client.post("/api/terminal/start")
        assert started.status_code == 200
        session = started.json()
        assert set(session) == {"sessionId", "url", "port", "status"}
        assert session["status"] == "running"
        assert session["url"] == f"http://localhost:{session['port']}"

        listed = client.get("/api/terminal/sessions").json()
        assert [s["sessionId"] for s in listed] == [session["sessionId"]]
        assert listed[0]["pid"] is not None

        stopped = client.post(f"/api/terminal/stop/{session['sessionId']}")
        assert stopped.json() == {"sessionId": session["sessionId"], "status": "stopped"}

        again = client.post(f"/api/terminal/stop/{session['sessionId']}")
        assert again.status_code == 200
        assert again.json()["status"] == "not-found"

    def test_two_sessions_get_distinct_ports(self, client):
        first = client.post("/api/terminal/start").json()
        second = client.post("/api/terminal/start").json()
        assert first["port"] != second["port"]
        assert first["url"] != second["url"]

    def test_exhausted_range_is_503(self, workspace):
        app = create_app(workspace_root=workspace, session_manager=make_manager(port_range=1))
        with TestClient(app) as client:
            assert client.post("/api/terminal/start").status_code == 200

            response = client.post("/api/terminal/start")
            assert response.status_code == 503
            assert response.json()["error"] == "resource_exhausted"

    def test_startup_timeout_is_504(self, workspace):
        manager = make_manager(command_factory=silent_command, startup_delay=0.0, poll_interval=0.05, max_attempts=2)
        with TestClient(create_app(workspace_root=workspace, session_manager=manager)) as client:
            response = client.post("/api/terminal/start")
            assert response.status_code == 504
            assert response.json()["error"] == "startup_timeout"
            assert client.get("/api/terminal/sessions").json() == []

    def test_spawn_failure_is_500(self, workspace):
        manager = make_manager(command_factory=missing_binary_command)
        with TestClient(create_app(workspace_root=workspace, session_manager=manager)) as client:
            response = client.post("/api/terminal/start")
            assert response.status_code == 500
            assert response.json()["error"] == "spawn_failure"

    def test_shutdown_stops_sessions(self, workspace):
        manager = make_manager()
        with TestClient(create_app(workspace_root=workspace, session_manager=manager)) as client:
            client.post("/api/terminal/start")
            assert len(manager.registry) == 1
        assert len(manager.registry) == 0


class TestTaskRoutes:

    def test_replace_with_array(self, client, workspace):
        data = seed_developer(client)
        assert data["success"] is True
        assert data["agentId"] == "developer"
        assert data["count"] == 2
        assert [e["description"] for e in read_json(get_flat_mirror_path(workspace, "developer"))] == ["A", "B"]

    def test_replace_with_tasks_object(self, client):
        response = client.post("/api/update-agent-tasks/tester", json={"tasks": ["write tests"]})
        assert response.status_code == 200
        assert response.json()["count"] == 1

    def test_replace_reports_mirror_warnings(self, client, workspace):
        data = seed_developer(client)
        # No descriptor file exists for this agent
        assert len(data["warnings"]) == 1

        create_agent_descriptor(workspace, "developer")
        assert seed_developer(client)["warnings"] == []

    def test_replace_rejects_bad_body(self, client):
        response = client.post("/api/update-agent-tasks/developer", json={"items": []})
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

        response = client.post("/api/update-agent-tasks/developer", json=[{"description": "x", "progress": 500}])
        assert response.status_code == 400

    def test_replace_rejects_bad_agent_name(self, client):
        response = client.post("/api/update-agent-tasks/bad name!", json=["x"])
        assert response.status_code == 400

    def test_patch_with_json_body(self, client):
        seed_developer(client)

        response = client.post("/api/task-progress/developer/0", json={"status": "in-progress", "progress": 30})
        assert response.status_code == 200
        task = response.json()["task"]
        assert task["agentId"] == "developer"
        assert task["index"] == 0
        assert task["status"] == "in-progress"
        assert task["progress"] == 30
        assert task["queued"] is False
        assert task["updatedAt"] is not None

    def test_patch_unknown_row_is_404(self, client):
        seed_developer(client)
        response = client.post("/api/task-progress/developer/9", json={"status": "completed"})
        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    def test_patch_non_integer_index_is_400(self, client):
        response = client.post("/api/task-progress/developer/first", json={"status": "completed"})
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    def test_single_field_path_form(self, client):
        seed_developer(client)

        assert client.post("/api/task/developer/1/queued/true").json()["task"]["queued"] is True
        assert client.post("/api/task/developer/1/status/in-progress").json()["task"]["status"] == "in-progress"
        assert client.post("/api/task/developer/1/progress/55").json()["task"]["progress"] == 55

        assert client.post("/api/task/developer/1/progress/lots").status_code == 400
        assert client.post("/api/task/developer/1/description/x").status_code == 400
        assert client.post("/api/task/developer/7/queued/true").status_code == 404

    def test_list_hides_deleted_unless_asked(self, client):
        seed_developer(client)
        client.post("/api/task/developer/0/status/deleted")

        visible = client.get("/api/task-progress/developer").json()
        assert [t["description"] for t in visible] == ["B"]

        everything = client.get("/api/task-progress/developer", params={"include_deleted": "true"}).json()
        assert [t["index"] for t in everything] == [0, 1]

    def test_list_all_and_clear(self, client):
        seed_developer(client)
        client.post("/api/update-agent-tasks/tester", json=["T"])

        tasks = client.get("/api/task-progress").json()
        assert [(t["agentId"], t["index"]) for t in tasks] == [("developer", 0), ("developer", 1), ("tester", 0)]

        cleared = client.delete("/api/task-progress").json()
        assert cleared["success"] is True
        assert cleared["deleted"] == 3
        assert client.get("/api/task-progress").json() == []

    def test_legacy_mirror_with_non_string_values(self, client, workspace):
        create_flat_mirror(workspace, "legacy", [{"description": 5}, "plain"])

        response = client.get("/api/task-progress/legacy")
        assert response.status_code == 200
        assert [(t["index"], t["description"]) for t in response.json()] == [(0, "5"), (1, "plain")]

    def test_developer_scenario(self, client):
        seed_developer(client)
        client.post("/api/task-progress/developer/0", json={"queued": True})
        client.post("/api/task-progress/developer/0", json={"status": "in-progress", "progress": 30})

        tasks = client.get("/api/task-progress/developer").json()
        assert [(t["description"], t["status"], t["progress"], t["queued"]) for t in tasks] == [
            ("A", "in-progress", 30, True),
            ("B", "pending", 0, False),
        ]

    def test_developer_scenario_from_string_shorthand(self, client):
        response = client.post("/api/update-agent-tasks/developer", json=["task A", "task B"])
        assert response.json()["count"] == 2
        client.post("/api/task-progress/developer/0", json={"status": "in-progress", "progress": 40})

        tasks = client.get("/api/task-progress/developer").json()
        assert [(t["index"], t["description"], t["status"], t["progress"]) for t in tasks] == [
            (0, "task A", "in-progress", 40),
            (1, "task B", "pending", 0),
        ]
        assert all(t["queued"] is False and t["subtasks"] == [] for t in tasks)



class TestWorkQueueRoute:

    def test_queue_and_instructions(self, client):
        seed_developer(client)
        client.post("/api/update-agent-tasks/tester", json=["check login", "check logout"])
        client.post("/api/task/developer/0/queued/true")
        client.post("/api/task/tester/1/status/completed")

        data = client.get("/api/work-queue").json()
        assert [(t["agentId"], t["index"]) for t in data["tasks"]] == [("developer", 1), ("tester", 0)]
        assert data["instructions"].startswith(
            "Use the developer sub agent to B [task 1], then use the tester sub agent to check login [task 0]"
        )
        assert "curl -X POST http://testserver/api/task/{agent-name}/{task-index}/queued/true" in data["instructions"]

    def test_empty_queue(self, client):
        assert client.get("/api/work-queue").json() == {"tasks": [], "instructions": ""}


class TestEventFeed:

    def test_connection_status_then_task_events(self, client):
        with client.websocket_connect("/ws") as websocket:
            hello = websocket.receive_json()
            assert hello["type"] == "connection_status"
            assert hello["status"] == "connected"

            seed_developer(client)
            event = websocket.receive_json()
            assert event["type"] == "tasks_replaced"
            assert event["agent_id"] == "developer"
            assert event["count"] == 2

            client.post("/api/task/developer/1/progress/10")
            event = websocket.receive_json()
            assert event["type"] == "task_updated"
            assert event["index"] == 1
            assert event["task"]["progress"] == 10

    def test_session_events(self, client):
        with client.websocket_connect("/ws") as websocket:
            websocket.receive_json()

            session = client.post("/api/terminal/start").json()
            event = websocket.receive_json()
            assert event["type"] == "session_started"
            assert event["session_id"] == session["sessionId"]

            client.post(f"/api/terminal/stop/{session['sessionId']}")
            event = websocket.receive_json()
            assert event["type"] == "session_stopped"

    def test_ping(self, client):
        with client.websocket_connect("/ws") as websocket:
            websocket.receive_json()
            websocket.send_json({"type": "ping"})
            assert websocket.receive_json()["type"] == "pong"


class TestConnectionManager:

    def test_lock_is_created_inside_the_running_loop(self):
        events = ConnectionManager()
        assert events._lock is None

        asyncio.run(events.disconnect("nobody"))
        assert events._lock is not None
        assert events.get_connection_stats() == {"total_connections": 0, "clients": []}

    def test_publish_without_loop_is_a_no_op(self):
        assert ConnectionManager().publish(EventType.TASKS_CLEARED, {"deleted": 0}) is None
